from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from towngames import db
from towngames.models import ChallengeSession, FeatureFlag, RewardLedgerEntry
from towngames.services.challenges import orchestrator
from towngames.services.challenges.errors import InvalidState, UpstreamFailure
from towngames.services.challenges.progression import LedgerProgressionBridge, ProgressionBridge

from conftest import issued_answers, wrong

T0 = datetime(2026, 3, 10, 12, 0, 0)


class UnavailableBridge(ProgressionBridge):
    def __init__(self):
        self.calls = 0

    def credit_experience(self, user_id, job, points, session_id):
        self.calls += 1
        raise UpstreamFailure('progression service down')

    def credit_currency(self, user_id, amount, session_id, description=None):
        self.calls += 1
        raise UpstreamFailure('progression service down')


def _stored(session_id):
    session = db.session.get(ChallengeSession, session_id)
    db.session.refresh(session)
    return session


def test_late_answers_rejected_and_finish_grades_earlier_ones(flask_app, user):
    started = orchestrator.start_challenge(user, 'drill', 'easy', now=T0)
    sid = started['session_id']
    assert started['deadline'] == (T0 + timedelta(seconds=60)).isoformat()
    answers = issued_answers(sid)

    orchestrator.submit_answer(user, sid, 0, answers[0], now=T0 + timedelta(seconds=10))
    orchestrator.submit_answer(user, sid, 1, answers[1], now=T0 + timedelta(seconds=59))
    with pytest.raises(InvalidState):
        orchestrator.submit_answer(user, sid, 2, answers[2], now=T0 + timedelta(seconds=60))

    result = orchestrator.finish_challenge(user, sid, now=T0 + timedelta(seconds=65))
    assert result['score'] == 2
    assert result['total_answered'] == 2
    assert _stored(sid).submitted_answers() == {0: answers[0], 1: answers[1]}


def test_finish_after_grace_aborts_session(flask_app, user):
    sid = orchestrator.start_challenge(user, 'drill', 'easy', now=T0)['session_id']
    orchestrator.submit_answer(user, sid, 0, issued_answers(sid)[0], now=T0 + timedelta(seconds=5))

    with pytest.raises(InvalidState):
        orchestrator.finish_challenge(user, sid, now=T0 + timedelta(seconds=91))
    session = _stored(sid)
    assert session.status == 'aborted'
    assert session.ended_reason == 'expired'
    assert session.earnings is None
    assert RewardLedgerEntry.query.count() == 0


def test_expire_stale_sessions_sweeps_only_overdue(flask_app, user, architect):
    old = orchestrator.start_challenge(user, 'drill', 'easy', now=T0)['session_id']
    fresh = orchestrator.start_challenge(architect, 'drill', 'hard', now=T0 + timedelta(seconds=60))['session_id']

    assert orchestrator.expire_stale_sessions(now=T0 + timedelta(seconds=95)) == 1
    assert _stored(old).status == 'aborted'
    assert _stored(fresh).status == 'in_progress'
    assert orchestrator.expire_stale_sessions(now=T0 + timedelta(seconds=95)) == 0


def test_reaching_max_problems_finishes_session(flask_app, user):
    sid = orchestrator.start_challenge(user, 'drill', 'hard', now=T0)['session_id']
    answers = issued_answers(sid)
    for i in range(4):
        response = orchestrator.submit_answer(user, sid, i, answers[i], now=T0 + timedelta(seconds=i + 1))
        assert 'finished' not in response
    response = orchestrator.submit_answer(user, sid, 4, answers[4], now=T0 + timedelta(seconds=6))
    assert response['finished'] is True
    # 5 correct x base 10 x hard 2.0
    assert response['result']['earnings'] == 100.0
    assert response['result']['experience_points'] == 20
    assert _stored(sid).status == 'completed'


def test_finish_replays_stored_result(flask_app, user):
    sid = orchestrator.start_challenge(user, 'drill', 'easy', now=T0)['session_id']
    orchestrator.submit_answer(user, sid, 0, issued_answers(sid)[0], now=T0 + timedelta(seconds=1))
    first = orchestrator.finish_challenge(user, sid, now=T0 + timedelta(seconds=2))
    # Replays even once the grace window is long gone
    again = orchestrator.finish_challenge(user, sid, now=T0 + timedelta(days=2))
    assert first == again
    assert RewardLedgerEntry.query.count() == 1


def test_unavailable_bridge_leaves_credit_pending_then_retry(flask_app, user, engine):
    engine.bridge = UnavailableBridge()
    sid = orchestrator.start_challenge(user, 'drill', 'easy', now=T0)['session_id']
    answers = issued_answers(sid)
    orchestrator.submit_answer(user, sid, 0, answers[0], now=T0 + timedelta(seconds=1))
    orchestrator.submit_answer(user, sid, 1, wrong(answers[1]), now=T0 + timedelta(seconds=2))

    result = orchestrator.finish_challenge(user, sid, now=T0 + timedelta(seconds=3))
    assert result['score'] == 1
    assert result['earnings'] == 10.0
    assert result['credit_status'] == 'pending'
    assert engine.bridge.calls == 1
    session = _stored(sid)
    assert session.status == 'completed'
    assert session.last_credit_error == 'progression service down'
    db.session.refresh(user)
    assert user.balance == 0

    engine.bridge = LedgerProgressionBridge()
    assert orchestrator.retry_pending_credits() == {'credited': 1, 'pending': 0}
    session = _stored(sid)
    assert session.credit_status == 'credited'
    assert session.credit_attempts == 2
    assert session.earnings == 10.0
    db.session.refresh(user)
    assert user.balance == 10.0

    assert orchestrator.retry_pending_credits() == {'credited': 0, 'pending': 0}
    db.session.refresh(user)
    assert user.balance == 10.0


def test_doubles_day_flag_doubles_earnings(flask_app, user):
    db.session.add(FeatureFlag(name='doubles-day', enabled=True))
    db.session.commit()
    sid = orchestrator.start_challenge(user, 'drill', 'easy', now=T0)['session_id']
    orchestrator.submit_answer(user, sid, 0, issued_answers(sid)[0], now=T0 + timedelta(seconds=1))
    result = orchestrator.finish_challenge(user, sid, now=T0 + timedelta(seconds=2))
    assert result['earnings'] == 20.0


def test_high_score_only_on_improvement(flask_app, user):
    scores = []
    for offset, correct in ((0, 2), (120, 1), (240, 3)):
        now = T0 + timedelta(seconds=offset)
        sid = orchestrator.start_challenge(user, 'drill', 'easy', now=now)['session_id']
        answers = issued_answers(sid)
        for i in range(correct):
            orchestrator.submit_answer(user, sid, i, answers[i], now=now + timedelta(seconds=1))
        scores.append(orchestrator.finish_challenge(user, sid, now=now + timedelta(seconds=2))['is_new_high_score'])
    assert scores == [True, False, True]
    assert orchestrator.challenge_status(user, 'drill', now=T0)['high_scores']['easy'] == 3


def test_session_without_time_limit_is_abandoned(flask_app, user, engine):
    drill = engine.catalog.types['drill']
    engine.catalog.types['drill'] = replace(drill, time_limit_seconds=None)

    sid = orchestrator.start_challenge(user, 'drill', 'easy', now=T0)['session_id']
    assert _stored(sid).deadline is None
    # Well past a minute is fine without a time limit
    orchestrator.submit_answer(user, sid, 0, 1, now=T0 + timedelta(minutes=30))
    assert orchestrator.expire_stale_sessions(now=T0 + timedelta(minutes=59)) == 0
    assert orchestrator.expire_stale_sessions(now=T0 + timedelta(hours=1)) == 1
    assert _stored(sid).status == 'aborted'


def test_status_lazily_expires_overdue_session(flask_app, user):
    sid = orchestrator.start_challenge(user, 'drill', 'easy', now=T0)['session_id']
    status = orchestrator.challenge_status(user, 'drill', now=T0 + timedelta(minutes=5))
    assert status['remaining_plays'] == 2
    assert status['recent_sessions'][0]['session_id'] == sid
    assert status['recent_sessions'][0]['status'] == 'aborted'
    assert status['window_resets_at'] == datetime(2026, 3, 11, 4, 0).isoformat()


def test_oversized_answer_still_lets_session_finish(flask_app, user):
    sid = orchestrator.start_challenge(user, 'drill', 'easy', now=T0)['session_id']
    answers = issued_answers(sid)
    orchestrator.submit_answer(user, sid, 0, answers[0], now=T0 + timedelta(seconds=1))
    response = orchestrator.submit_answer(user, sid, 1, 10 ** 400, now=T0 + timedelta(seconds=2))
    assert response['correct'] is False

    result = orchestrator.finish_challenge(user, sid, now=T0 + timedelta(seconds=3))
    assert result['score'] == 1
    assert result['total_answered'] == 2
    assert result['earnings'] == 10.0
    assert _stored(sid).status == 'completed'
