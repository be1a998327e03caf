from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import random
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)


def init_engine(flask_app, catalog=None, bridge=None, rng=None):
    """Load the challenge catalog and attach the engine to ``flask_app``.

    A broken catalog raises CatalogError here, at startup.
    """
    from towngames.services.challenges.catalog import load_catalog
    from towngames.services.challenges.orchestrator import ChallengeEngine
    from towngames.services.challenges.progression import LedgerProgressionBridge

    if catalog is None:
        catalog = load_catalog(
            flask_app.config.get('CHALLENGE_CATALOG_PATH'),
            flask_app.config.get('CHALLENGE_BANK_DIR'),
            default_daily_limit=int(flask_app.config.get('CHALLENGE_DAILY_LIMIT', 3)),
        )
    if rng is None:
        seed = flask_app.config.get('CHALLENGE_RNG_SEED')
        rng = random.Random(int(seed)) if seed not in (None, '') else random.SystemRandom()
    engine = ChallengeEngine(
        catalog=catalog,
        bridge=bridge or LedgerProgressionBridge(max_level=flask_app.config.get('PROGRESSION_MAX_LEVEL')),
        rng=rng,
    )
    flask_app.extensions['towngames'] = engine
    return engine


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    engine = init_engine(flask_app)
    flask_app.logger.info(f"[catalog] loaded types={sorted(engine.catalog.types)}")

    from towngames.main import main
    flask_app.register_blueprint(main)

    from towngames.api.challenges import challenges
    flask_app.register_blueprint(challenges, url_prefix='/api/challenge')

    from towngames.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from towngames.models import User, FeatureFlag

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Authentication required', 'kind': 'unauthorized'}), 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            # Seed users: one per job plus a jobless student
            seeds = [
                ('testuser1', None),
                ('architect1', 'Architect'),
                ('engineer1', 'Software Engineer'),
                ('accountant1', 'Chartered Accountant'),
            ]
            for username, job in seeds:
                user = User(username=username, job_name=job)
                user.set_password('password')
                db.session.add(user)

            db.session.commit()
            print('Database has been reset and seeded!')

    @click.command('expire-sessions')
    def expire_sessions_command():
        """Aborts every unfinished session past its deadline."""
        from towngames.services.challenges.orchestrator import expire_stale_sessions
        with flask_app.app_context():
            count = expire_stale_sessions()
            print(f'Expired {count} session(s).')

    @click.command('retry-credits')
    @click.option('--limit', type=int, default=None, help='Maximum sessions to retry.')
    def retry_credits_command(limit):
        """Retries progression credit for completed sessions left pending."""
        from towngames.services.challenges.orchestrator import retry_pending_credits
        with flask_app.app_context():
            counts = retry_pending_credits(limit=limit)
            print(f"Credited {counts['credited']}, still pending {counts['pending']}.")

    @click.command('validate-catalog')
    @click.option('--catalog', 'catalog_path', default=None, help='Catalog JSON to validate.')
    @click.option('--banks', 'bank_dir', default=None, help='Directory holding the problem banks.')
    def validate_catalog_command(catalog_path, bank_dir):
        """Loads and validates the challenge catalog and problem banks."""
        from towngames.services.challenges.catalog import load_catalog
        from towngames.services.challenges.errors import CatalogError
        try:
            catalog = load_catalog(
                catalog_path or flask_app.config.get('CHALLENGE_CATALOG_PATH'),
                bank_dir or flask_app.config.get('CHALLENGE_BANK_DIR'),
            )
        except CatalogError as exc:
            raise click.ClickException(str(exc))
        for entry in catalog.summary():
            sizes = ', '.join(f'{tier}={n}' for tier, n in entry['bank_sizes'].items())
            print(f"{entry['challenge_type']}: {sizes}")
        print('Catalog OK')

    @click.command('feature-flag')
    @click.argument('name')
    @click.option('--enable/--disable', default=True)
    def feature_flag_command(name, enable):
        """Turns a feature flag (e.g. doubles-day) on or off."""
        with flask_app.app_context():
            flag = FeatureFlag.query.filter_by(name=name).first()
            if flag is None:
                flag = FeatureFlag(name=name)
                db.session.add(flag)
            flag.enabled = enable
            db.session.commit()
            print(f"Feature flag '{name}' {'enabled' if enable else 'disabled'}.")

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(expire_sessions_command)
    flask_app.cli.add_command(retry_credits_command)
    flask_app.cli.add_command(validate_catalog_command)
    flask_app.cli.add_command(feature_flag_command)

    return flask_app
