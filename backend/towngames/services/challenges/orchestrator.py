"""Session orchestrator: start / answer / finish.

Every reward-bearing number is computed here from what the store holds:
the problem snapshot issued at start and the answers accepted before the
deadline. Nothing a client reports about its own score is ever read.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from flask import current_app

from towngames import db, socketio
from towngames.models import ChallengeSession, CreditStatus, FeatureFlag, SessionStatus, utcnow
from towngames.socketio_events import user_room
from . import store
from .catalog import ChallengeCatalog, ChallengeType, Problem
from .errors import AlreadyGraded, DuplicateAnswer, InvalidState, NotEligible, OutOfRange, QuotaExceeded, UpstreamFailure
from .grading import grade_one, grade_session, review
from .locks import quota_locks, session_locks
from .progression import ProgressionBridge
from .quota import next_reset, remaining_plays, try_consume
from .rewards import calculate_reward
from .selector import select_problems

DOUBLES_DAY_FLAG = 'doubles-day'


@dataclass
class ChallengeEngine:
    catalog: ChallengeCatalog
    bridge: ProgressionBridge
    rng: random.Random


def get_engine() -> ChallengeEngine:
    return current_app.extensions['towngames']


def _now(now: Optional[datetime]) -> datetime:
    return now or utcnow()


def _notify(session: ChallengeSession) -> None:
    payload = {'session_id': session.id, 'status': session.status, 'challenge_type': session.challenge_type}
    if session.status == SessionStatus.COMPLETED:
        payload['result'] = session.result_dict()
    socketio.emit('session_update', payload, to=user_room(session.user_id), namespace='/ws')


def expiry_cutoff(session: ChallengeSession) -> datetime:
    """Instant after which an unfinished session is aborted."""
    deadline = session.deadline
    if deadline is not None:
        return deadline + timedelta(seconds=int(current_app.config.get('CHALLENGE_FINISH_GRACE_SEC', 30)))
    return session.started_at + timedelta(seconds=int(current_app.config.get('CHALLENGE_ABANDON_AFTER_SEC', 3600)))


def _expire_if_overdue(session: ChallengeSession, now: datetime) -> bool:
    if session.status not in (SessionStatus.CREATED, SessionStatus.IN_PROGRESS):
        return False
    if now < expiry_cutoff(session):
        return False
    if store.abort(session, 'expired', now):
        db.session.commit()
        current_app.logger.info(f"[challenge-expire] session={session.id} user={session.user_id} type={session.challenge_type}")
        _notify(session)
        return True
    return False


def _check_eligible(user, ctype: ChallengeType) -> None:
    if ctype.job and (getattr(user, 'job_name', None) or '').lower() != ctype.job.lower():
        raise NotEligible(f'Only a {ctype.job.title()} can play {ctype.title}')


def start_challenge(user, challenge_type: str, difficulty: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    engine = get_engine()
    ctype = engine.catalog.get(challenge_type)
    engine.catalog.bucket(challenge_type, difficulty)
    _check_eligible(user, ctype)
    now = _now(now)

    with quota_locks.hold((user.id, challenge_type)):
        try:
            decision = try_consume(user.id, challenge_type, ctype.daily_limit, now=now)
            if not decision.allowed:
                db.session.rollback()
                current_app.logger.warning(
                    f"[quota-denied] user={user.id} type={challenge_type} limit={ctype.daily_limit}"
                )
                raise QuotaExceeded(remaining_plays=0, daily_limit=ctype.daily_limit)

            for stale in store.active_sessions(user.id, challenge_type):
                reason = 'expired' if now >= expiry_cutoff(stale) else 'superseded'
                if store.abort(stale, reason, now):
                    current_app.logger.info(f"[challenge-abandon] session={stale.id} user={user.id} reason={reason}")

            problems = select_problems(engine.catalog, challenge_type, difficulty, ctype.problem_count, engine.rng)
            session = store.create_session(
                user.id,
                challenge_type,
                difficulty,
                problems,
                time_limit_seconds=ctype.time_limit_seconds,
                max_problems=ctype.max_problems,
                now=now,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    current_app.logger.info(
        f"[challenge-start] user={user.id} type={challenge_type} difficulty={difficulty} "
        f"session={session.id} plays_used={decision.plays_used}/{ctype.daily_limit}"
    )
    if session.time_limit_seconds:
        from .scheduler import schedule_expiry
        schedule_expiry(current_app._get_current_object(), session.id)

    return {
        'session_id': session.id,
        'challenge_type': challenge_type,
        'difficulty': difficulty,
        'problems': [problem.to_public(i) for i, problem in enumerate(problems)],
        'time_limit': session.time_limit_seconds,
        'max_problems': session.max_problems,
        'deadline': session.deadline.isoformat() if session.deadline else None,
        'remaining_plays': decision.remaining,
    }


def submit_answer(user, session_id: str, problem_index, value, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Record one answer and return non-authoritative feedback for the UI."""
    if isinstance(problem_index, bool) or not isinstance(problem_index, int):
        raise OutOfRange('problem_index must be an integer')
    now = _now(now)

    with session_locks.hold(session_id):
        session = store.get_session(session_id, user.id)
        _expire_if_overdue(session, now)
        if session.status != SessionStatus.IN_PROGRESS:
            raise InvalidState()
        deadline = session.deadline
        if deadline is not None and now >= deadline:
            current_app.logger.warning(
                f"[answer-late] session={session.id} user={user.id} index={problem_index} deadline={deadline.isoformat()}"
            )
            raise InvalidState('Time is up')
        try:
            store.append_answer(session, problem_index, value, now)
            db.session.commit()
        except DuplicateAnswer:
            db.session.rollback()
            current_app.logger.warning(f"[answer-duplicate] session={session.id} user={user.id} index={problem_index}")
            raise
        except Exception:
            db.session.rollback()
            raise

        problem = Problem.from_snapshot(session.problems[problem_index])
        answered = store.answered_count(session)
        response = {
            'correct': grade_one(problem, value),
            'answered': answered,
            'remaining': len(session.problems) - answered,
        }
        if session.max_problems and answered >= session.max_problems:
            response['finished'] = True
            response['result'] = _finish_locked(session, now)
    return response


def finish_challenge(user, session_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _now(now)
    with session_locks.hold(session_id):
        session = store.get_session(session_id, user.id)
        return _finish_locked(session, now)


def _finish_locked(session: ChallengeSession, now: datetime) -> Dict[str, Any]:
    if session.status == SessionStatus.COMPLETED:
        current_app.logger.info(f"[challenge-finish-replay] session={session.id}")
        return session.result_dict()
    _expire_if_overdue(session, now)
    if session.status == SessionStatus.ABORTED:
        raise InvalidState()

    engine = get_engine()
    try:
        store.transition_to_grading(session)
    except AlreadyGraded:
        db.session.rollback()
        db.session.refresh(session)
        if session.status == SessionStatus.COMPLETED:
            return session.result_dict()
        raise InvalidState('Session is not in progress')

    try:
        ctype = engine.catalog.get(session.challenge_type)
        problems = [Problem.from_snapshot(p) for p in session.problems]
        grade = grade_session(problems, session.submitted_answers())
        reward = calculate_reward(
            ctype.rewards,
            session.difficulty,
            grade.correct_count,
            grade.max_streak,
            doubles_day=FeatureFlag.is_enabled(DOUBLES_DAY_FLAG),
        )
        session.score = grade.score
        session.correct_count = grade.correct_count
        session.total_answered = grade.total_answered
        session.max_streak = grade.max_streak
        session.earnings = reward.earnings
        session.experience_points = reward.experience_points
        db.session.flush()

        _credit(session, ctype)
        store.finalize(session, now)
        session.is_new_high_score = store.update_high_score(
            session.user_id, session.challenge_type, session.difficulty, grade.score, now
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        f"[challenge-finish] session={session.id} user={session.user_id} score={session.score} "
        f"earnings={session.earnings} xp={session.experience_points} credit={session.credit_status}"
    )
    _notify(session)
    return session.result_dict()


def _credit(session: ChallengeSession, ctype: ChallengeType) -> None:
    """Hand the stored terminal reward to the progression bridge.

    Runs in a savepoint: a bridge failure rolls back only the credit, and
    the session keeps ``credit_status = pending`` for a later retry.
    """
    bridge = get_engine().bridge
    session.credit_attempts = (session.credit_attempts or 0) + 1
    db.session.flush()
    try:
        with db.session.begin_nested():
            level = bridge.credit_experience(
                session.user_id, ctype.job, session.experience_points or 0, session_id=session.id
            )
            bridge.credit_currency(
                session.user_id,
                float(session.earnings or 0),
                session_id=session.id,
                description=f"{ctype.title} Earnings - {session.difficulty.capitalize()}",
            )
    except UpstreamFailure as exc:
        session.credit_status = CreditStatus.PENDING
        session.last_credit_error = exc.message
        current_app.logger.warning(
            f"[credit-pending] session={session.id} user={session.user_id} attempt={session.credit_attempts} error={exc.message}"
        )
        return
    session.credit_status = CreditStatus.CREDITED
    session.last_credit_error = None
    if level and level.get('leveled_up'):
        session.new_level = level.get('new_level')


def retry_pending_credits(limit: Optional[int] = None) -> Dict[str, int]:
    """Re-run the bridge for completed sessions whose credit is pending.

    Uses the stored earnings and XP; sessions are never re-graded.
    """
    engine = get_engine()
    query = ChallengeSession.query.filter_by(
        status=SessionStatus.COMPLETED, credit_status=CreditStatus.PENDING
    ).order_by(ChallengeSession.completed_at)
    if limit:
        query = query.limit(limit)
    ids = [s.id for s in query.all()]
    counts = {'credited': 0, 'pending': 0}
    for session_id in ids:
        with session_locks.hold(session_id):
            session = db.session.get(ChallengeSession, session_id)
            if session is None or session.credit_status != CreditStatus.PENDING:
                continue
            try:
                _credit(session, engine.catalog.get(session.challenge_type))
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            counts[session.credit_status] += 1
            if session.credit_status == CreditStatus.CREDITED:
                current_app.logger.info(f"[credit-retry] session={session.id} credited")
                _notify(session)
    return counts


def expire_session(session_id: str, now: Optional[datetime] = None) -> bool:
    now = _now(now)
    with session_locks.hold(session_id):
        session = db.session.get(ChallengeSession, session_id)
        if session is None:
            return False
        return _expire_if_overdue(session, now)


def expire_stale_sessions(now: Optional[datetime] = None) -> int:
    """Abort every unfinished session past its cutoff; returns how many."""
    now = _now(now)
    ids = [
        s.id for s in ChallengeSession.query.filter(
            ChallengeSession.status.in_((SessionStatus.CREATED, SessionStatus.IN_PROGRESS))
        ).all()
    ]
    return sum(1 for session_id in ids if expire_session(session_id, now))


def challenge_status(user, challenge_type: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    engine = get_engine()
    ctype = engine.catalog.get(challenge_type)
    now = _now(now)
    for session in store.active_sessions(user.id, challenge_type):
        expire_session(session.id, now)

    best = store.high_scores(user.id, challenge_type)
    reset_hour = int(current_app.config.get('CHALLENGE_RESET_HOUR', 4))
    return {
        'challenge_type': challenge_type,
        'remaining_plays': remaining_plays(user.id, challenge_type, ctype.daily_limit, now=now),
        'daily_limit': ctype.daily_limit,
        'window_resets_at': next_reset(now, reset_hour).isoformat(),
        'high_scores': {tier: best.get(tier, 0) for tier in ctype.difficulties},
        'recent_sessions': [s.to_summary() for s in store.recent_sessions(user.id, challenge_type)],
    }


def session_view(user, session_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Read-only projection of a session for the owning client."""
    now = _now(now)
    session = store.get_session(session_id, user.id)
    expire_session(session.id, now)
    db.session.refresh(session)

    problems = [Problem.from_snapshot(p) for p in session.problems]
    answers = session.submitted_answers()
    view = session.to_summary()
    view.update({
        'time_limit': session.time_limit_seconds,
        'max_problems': session.max_problems,
        'deadline': session.deadline.isoformat() if session.deadline else None,
        'problems': [p.to_public(i) for i, p in enumerate(problems)],
        'answered': {str(i): grade_one(problems[i], v) for i, v in answers.items()},
    })
    if session.status == SessionStatus.COMPLETED:
        view['result'] = session.result_dict()
        view['review'] = review(problems, answers, grade_session(problems, answers))
    return view
