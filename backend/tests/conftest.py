import json
import os
import sys
import pytest

# Ensure the backend root (containing the `towngames` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from towngames import create_app, db, socketio


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    CHALLENGE_RESET_HOUR = 4
    CHALLENGE_DAILY_LIMIT = 3
    CHALLENGE_FINISH_GRACE_SEC = 30
    CHALLENGE_ABANDON_AFTER_SEC = 3600
    CHALLENGE_CATALOG_PATH = None
    CHALLENGE_BANK_DIR = None
    CHALLENGE_RNG_SEED = '7'
    PROGRESSION_MAX_LEVEL = 10


# "drill": five-problem sessions with round reward numbers
DRILL_CATALOG = {
    'challenges': {
        'drill': {
            'title': 'Drill',
            'time_limit_seconds': 60,
            'max_problems': 5,
            'problem_count': 5,
            'daily_limit': 3,
            'rewards': {
                'base_rate': 10,
                'xp_rate': 2,
                'difficulty_multipliers': {'easy': 1.0, 'hard': 2.0},
                'max_earnings': 150,
                'doubles_day': True,
            },
        },
        'sprint': {
            'title': 'Sprint',
            'job': 'Architect',
            'time_limit_seconds': 60,
            'problem_count': 8,
            'daily_limit': 2,
            'rewards': {
                'base_rate': 1,
                'xp_rate': 1,
                'difficulty_multipliers': {'easy': 1.0},
                'streak_bonuses': [{'min_streak': 3, 'multiplier': 1.1}],
            },
        },
    }
}

DRILL_BANK = {
    'easy': [{'id': f'e{n}', 'prompt': f'{n} + {n} =', 'answer': n + n} for n in range(1, 6)],
    'hard': [{'id': f'h{n}', 'prompt': f'{n} x {n} =', 'answer': n * n} for n in range(11, 16)],
}

SPRINT_BANK = {
    'easy': [{'id': 's1', 'prompt': 'Capital of France?', 'answer': 'Paris'},
             {'id': 's2', 'prompt': 'Sides on a hexagon?', 'answer': 6}],
}


def write_catalog(directory, catalog=None, banks=None):
    """Write a catalog and its banks under ``directory``; returns (catalog_path, bank_dir)."""
    bank_dir = os.path.join(directory, 'banks')
    os.makedirs(bank_dir, exist_ok=True)
    catalog_path = os.path.join(directory, 'challenges.json')
    with open(catalog_path, 'w', encoding='utf-8') as fh:
        json.dump(catalog or DRILL_CATALOG, fh)
    if banks is None:
        banks = {'drill': DRILL_BANK, 'sprint': SPRINT_BANK}
    for key, bank in banks.items():
        with open(os.path.join(bank_dir, f'{key}.json'), 'w', encoding='utf-8') as fh:
            json.dump(bank, fh)
    return catalog_path, bank_dir


def _make_app(config_class, tmp_path):
    catalog_path, bank_dir = write_catalog(str(tmp_path / 'catalog'))

    class _Config(config_class):
        CHALLENGE_CATALOG_PATH = catalog_path
        CHALLENGE_BANK_DIR = bank_dir

    return create_app(_Config)


@pytest.fixture()
def flask_app(tmp_path):
    application = _make_app(TestConfig, tmp_path)
    with application.app_context():
        # Ensure models are imported so tables are created
        import towngames.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def file_app(tmp_path):
    """App on a file-backed SQLite database, for tests that use threads."""
    db_path = tmp_path / 'challenges.db'

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{db_path}'
        SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'check_same_thread': False, 'timeout': 30}}

    application = _make_app(FileConfig, tmp_path)
    with application.app_context():
        import towngames.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


def make_user(username='student1', job_name=None, password='password'):
    from towngames.models import User
    user = User(username=username, job_name=job_name)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture()
def user(flask_app):
    return make_user()


@pytest.fixture()
def architect(flask_app):
    return make_user('architect1', job_name='Architect')


@pytest.fixture()
def logged_in(client, user):
    res = client.post('/login', json={'username': user.username, 'password': 'password'})
    assert res.status_code == 200
    return client


@pytest.fixture()
def engine(flask_app):
    return flask_app.extensions['towngames']


def issued_answers(session_id):
    """Correct answers of a session, read straight from the stored snapshot."""
    from towngames.models import ChallengeSession
    session = db.session.get(ChallengeSession, session_id)
    return [p['answer'] for p in session.problems]


def wrong(answer):
    if isinstance(answer, (int, float)) and not isinstance(answer, bool):
        return answer + 1000
    return f'not {answer}'
