"""Session store: the authoritative record of every challenge session.

Status changes go through conditional UPDATEs (``WHERE status = ...``) so
that a row only ever moves forward, whatever the number of concurrent
callers. Functions here flush but never commit; the orchestrator owns
transaction boundaries.
"""

import json
from datetime import datetime
from typing import Any, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from towngames import db
from towngames.models import (
    ChallengeAnswer,
    ChallengeSession,
    HighScore,
    SessionStatus,
    utcnow,
)
from .catalog import Problem
from .errors import AlreadyGraded, DuplicateAnswer, InvalidState, NotFound, OutOfRange


def create_session(user_id: int, challenge_type: str, difficulty: str, problems: Sequence[Problem],
                   time_limit_seconds: Optional[int], max_problems: Optional[int],
                   now: Optional[datetime] = None) -> ChallengeSession:
    session = ChallengeSession(
        user_id=user_id,
        challenge_type=challenge_type,
        difficulty=difficulty,
        status=SessionStatus.CREATED,
        issued_problems=json.dumps([p.to_snapshot() for p in problems], ensure_ascii=False),
        time_limit_seconds=time_limit_seconds,
        max_problems=max_problems,
        started_at=now or utcnow(),
    )
    db.session.add(session)
    db.session.flush()
    _move(session, SessionStatus.CREATED, SessionStatus.IN_PROGRESS)
    return session


def get_session(session_id: str, user_id: Optional[int] = None) -> ChallengeSession:
    session = db.session.get(ChallengeSession, session_id) if session_id else None
    if session is None or (user_id is not None and session.user_id != user_id):
        raise NotFound()
    return session


def _move(session: ChallengeSession, from_status, to_status: str, **values) -> bool:
    """Conditionally move ``session`` from one of ``from_status`` to ``to_status``."""
    allowed = (from_status,) if isinstance(from_status, str) else tuple(from_status)
    result = db.session.execute(
        update(ChallengeSession)
        .where(ChallengeSession.id == session.id, ChallengeSession.status.in_(allowed))
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(session)
    return result.rowcount == 1


def append_answer(session: ChallengeSession, problem_index: int, value: Any,
                  now: Optional[datetime] = None) -> ChallengeAnswer:
    if session.status != SessionStatus.IN_PROGRESS:
        raise InvalidState()
    if not (0 <= problem_index < len(session.problems)):
        raise OutOfRange('Problem index out of range')
    existing = db.session.execute(
        select(ChallengeAnswer.id).where(
            ChallengeAnswer.session_id == session.id,
            ChallengeAnswer.problem_index == problem_index,
        )
    ).first()
    if existing is not None:
        raise DuplicateAnswer()

    answer = ChallengeAnswer(
        session_id=session.id,
        problem_index=problem_index,
        value_json=json.dumps(value, ensure_ascii=False),
        submitted_at=now or utcnow(),
    )
    try:
        with db.session.begin_nested():
            db.session.add(answer)
    except IntegrityError:
        raise DuplicateAnswer()
    db.session.expire(session, ['answers'])
    return answer


def answered_count(session: ChallengeSession) -> int:
    return db.session.execute(
        select(db.func.count(ChallengeAnswer.id)).where(ChallengeAnswer.session_id == session.id)
    ).scalar_one()


def transition_to_grading(session: ChallengeSession) -> None:
    """IN_PROGRESS -> GRADING, exactly once per session.

    Raises AlreadyGraded for every caller after the first.
    """
    if not _move(session, SessionStatus.IN_PROGRESS, SessionStatus.GRADING):
        raise AlreadyGraded()


def finalize(session: ChallengeSession, now: Optional[datetime] = None) -> None:
    """GRADING -> COMPLETED; irreversible."""
    if not _move(session, SessionStatus.GRADING, SessionStatus.COMPLETED, completed_at=now or utcnow()):
        raise InvalidState('Session is not being graded')


def abort(session: ChallengeSession, reason: str, now: Optional[datetime] = None) -> bool:
    return _move(
        session,
        (SessionStatus.CREATED, SessionStatus.IN_PROGRESS),
        SessionStatus.ABORTED,
        completed_at=now or utcnow(),
        ended_reason=reason,
    )


def active_sessions(user_id: int, challenge_type: Optional[str] = None) -> List[ChallengeSession]:
    query = ChallengeSession.query.filter(
        ChallengeSession.user_id == user_id,
        ChallengeSession.status.in_((SessionStatus.CREATED, SessionStatus.IN_PROGRESS)),
    )
    if challenge_type:
        query = query.filter(ChallengeSession.challenge_type == challenge_type)
    return query.all()


def recent_sessions(user_id: int, challenge_type: str, limit: int = 5) -> List[ChallengeSession]:
    return (
        ChallengeSession.query
        .filter_by(user_id=user_id, challenge_type=challenge_type)
        .order_by(ChallengeSession.started_at.desc())
        .limit(limit)
        .all()
    )


def update_high_score(user_id: int, challenge_type: str, difficulty: str, score: int,
                      now: Optional[datetime] = None) -> bool:
    """Upsert the best score for the key; returns True when ``score`` is a new record."""
    now = now or utcnow()
    if _raise_high_score(user_id, challenge_type, difficulty, score, now):
        return True
    exists = db.session.execute(
        select(HighScore.id).where(
            HighScore.user_id == user_id,
            HighScore.challenge_type == challenge_type,
            HighScore.difficulty == difficulty,
        )
    ).first()
    if exists is not None:
        return False
    try:
        with db.session.begin_nested():
            db.session.add(HighScore(
                user_id=user_id,
                challenge_type=challenge_type,
                difficulty=difficulty,
                best_score=score,
                achieved_at=now,
            ))
    except IntegrityError:
        # Another writer created the key first; compare against its score
        return _raise_high_score(user_id, challenge_type, difficulty, score, now)
    return True


def _raise_high_score(user_id, challenge_type, difficulty, score, now) -> bool:
    result = db.session.execute(
        update(HighScore)
        .where(
            HighScore.user_id == user_id,
            HighScore.challenge_type == challenge_type,
            HighScore.difficulty == difficulty,
            HighScore.best_score < score,
        )
        .values(best_score=score, achieved_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def high_scores(user_id: int, challenge_type: str) -> dict:
    rows = HighScore.query.filter_by(user_id=user_id, challenge_type=challenge_type).all()
    return {row.difficulty: row.best_score for row in rows}
