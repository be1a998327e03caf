from datetime import timedelta

from towngames import db
from towngames.models import ChallengeSession, FeatureFlag, User, utcnow
from towngames.services.challenges import orchestrator


def test_validate_catalog_reports_bank_sizes(flask_app):
    result = flask_app.test_cli_runner().invoke(args=['validate-catalog'])
    assert result.exit_code == 0, result.output
    assert 'drill: easy=5, hard=5' in result.output
    assert 'Catalog OK' in result.output


def test_validate_catalog_fails_on_bad_path(flask_app, tmp_path):
    result = flask_app.test_cli_runner().invoke(args=['validate-catalog', '--catalog', str(tmp_path / 'missing.json')])
    assert result.exit_code != 0
    assert 'not found' in result.output


def test_feature_flag_toggle(flask_app):
    runner = flask_app.test_cli_runner()
    assert runner.invoke(args=['feature-flag', 'doubles-day', '--enable']).exit_code == 0
    assert FeatureFlag.is_enabled('doubles-day')
    assert runner.invoke(args=['feature-flag', 'doubles-day', '--disable']).exit_code == 0
    db.session.expire_all()
    assert not FeatureFlag.is_enabled('doubles-day')


def test_expire_sessions_command(flask_app, user):
    sid = orchestrator.start_challenge(user, 'drill', 'easy', now=utcnow() - timedelta(minutes=10))['session_id']
    result = flask_app.test_cli_runner().invoke(args=['expire-sessions'])
    assert 'Expired 1 session(s).' in result.output
    session = db.session.get(ChallengeSession, sid)
    db.session.refresh(session)
    assert session.status == 'aborted'


def test_retry_credits_with_nothing_pending(flask_app):
    result = flask_app.test_cli_runner().invoke(args=['retry-credits'])
    assert result.exit_code == 0
    assert 'Credited 0, still pending 0.' in result.output


def test_db_reset_seeds_job_holders(flask_app):
    result = flask_app.test_cli_runner().invoke(args=['db-reset'])
    assert result.exit_code == 0, result.output
    db.session.remove()
    jobs = {u.username: u.job_name for u in User.query.all()}
    assert jobs['architect1'] == 'Architect'
    assert jobs['testuser1'] is None
