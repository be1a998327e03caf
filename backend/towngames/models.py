from towngames import db, bcrypt
from flask_login import UserMixin
from datetime import datetime, timedelta, timezone
import json
import uuid


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column in this schema is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_session_id() -> str:
    return uuid.uuid4().hex


class SessionStatus:
    CREATED = 'created'
    IN_PROGRESS = 'in_progress'
    GRADING = 'grading'
    COMPLETED = 'completed'
    ABORTED = 'aborted'

    TERMINAL = frozenset({COMPLETED, ABORTED})


class CreditStatus:
    CREDITED = 'credited'
    PENDING = 'pending'


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(32), nullable=False, default='student')
    job_name = db.Column(db.String(64), nullable=True)
    job_level = db.Column(db.Integer, nullable=False, default=1)
    job_experience_points = db.Column(db.Integer, nullable=False, default=0)
    balance = db.Column(db.Numeric(12, 2, asdecimal=False), nullable=False, default=0)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'role': self.role,
            'job_name': self.job_name,
            'job_level': self.job_level,
            'job_experience_points': self.job_experience_points,
            'balance': float(self.balance or 0),
        }


class ChallengeSession(db.Model):
    __tablename__ = 'challenge_session'
    id = db.Column(db.String(32), primary_key=True, default=generate_session_id)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    challenge_type = db.Column(db.String(64), nullable=False)
    difficulty = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(32), nullable=False, default=SessionStatus.CREATED, index=True)
    # JSON snapshot of the issued problems, answers included; written once at start
    issued_problems = db.Column(db.Text, nullable=False)
    time_limit_seconds = db.Column(db.Integer, nullable=True)
    max_problems = db.Column(db.Integer, nullable=True)
    started_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    ended_reason = db.Column(db.String(32), nullable=True)  # expired, superseded
    # Terminal result
    score = db.Column(db.Integer, nullable=True)
    correct_count = db.Column(db.Integer, nullable=True)
    total_answered = db.Column(db.Integer, nullable=True)
    max_streak = db.Column(db.Integer, nullable=True)
    earnings = db.Column(db.Numeric(12, 2, asdecimal=False), nullable=True)
    experience_points = db.Column(db.Integer, nullable=True)
    is_new_high_score = db.Column(db.Boolean, nullable=True)
    new_level = db.Column(db.Integer, nullable=True)
    credit_status = db.Column(db.String(32), nullable=True)
    credit_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_credit_error = db.Column(db.Text, nullable=True)

    answers = db.relationship(
        'ChallengeAnswer',
        back_populates='session',
        order_by='ChallengeAnswer.id',
        lazy='select',
    )

    __table_args__ = (
        db.Index('ix_challenge_session_owner_type', 'user_id', 'challenge_type', 'status'),
    )

    @property
    def problems(self):
        return json.loads(self.issued_problems)

    @property
    def deadline(self):
        if not self.time_limit_seconds:
            return None
        return self.started_at + timedelta(seconds=self.time_limit_seconds)

    @property
    def is_terminal(self):
        return self.status in SessionStatus.TERMINAL

    def submitted_answers(self):
        """Mapping of problem index -> submitted value, in submission order."""
        return {a.problem_index: a.value for a in self.answers}

    def result_dict(self):
        return {
            'session_id': self.id,
            'score': self.score,
            'correct_count': self.correct_count,
            'total_answered': self.total_answered,
            'earnings': float(self.earnings or 0),
            'experience_points': self.experience_points or 0,
            'is_new_high_score': bool(self.is_new_high_score),
            'new_level': self.new_level,
            'credit_status': self.credit_status,
        }

    def to_summary(self):
        return {
            'session_id': self.id,
            'challenge_type': self.challenge_type,
            'difficulty': self.difficulty,
            'status': self.status,
            'score': self.score,
            'earnings': float(self.earnings) if self.earnings is not None else None,
            'experience_points': self.experience_points,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'ended_reason': self.ended_reason,
        }


class ChallengeAnswer(db.Model):
    __tablename__ = 'challenge_answer'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(32), db.ForeignKey('challenge_session.id'), nullable=False)
    problem_index = db.Column(db.Integer, nullable=False)
    # JSON-encoded submitted value (numbers and strings keep their type)
    value_json = db.Column(db.Text, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    session = db.relationship('ChallengeSession', back_populates='answers')

    __table_args__ = (
        db.UniqueConstraint('session_id', 'problem_index', name='uq_answer_session_index'),
    )

    @property
    def value(self):
        return json.loads(self.value_json)


class QuotaRecord(db.Model):
    __tablename__ = 'quota_record'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    challenge_type = db.Column(db.String(64), nullable=False)
    window_start = db.Column(db.DateTime, nullable=False)
    plays_used = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'challenge_type', 'window_start', name='uq_quota_user_type_window'),
    )


class HighScore(db.Model):
    __tablename__ = 'high_score'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    challenge_type = db.Column(db.String(64), nullable=False)
    difficulty = db.Column(db.String(32), nullable=False)
    best_score = db.Column(db.Integer, nullable=False, default=0)
    achieved_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'challenge_type', 'difficulty', name='uq_high_score_key'),
    )


class RewardLedgerEntry(db.Model):
    __tablename__ = 'reward_ledger_entry'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(32), db.ForeignKey('challenge_session.id'), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    earnings = db.Column(db.Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    experience_points = db.Column(db.Integer, nullable=False, default=0)
    currency_credited = db.Column(db.Boolean, nullable=False, default=False)
    experience_credited = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class Transaction(db.Model):
    __tablename__ = 'transaction'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2, asdecimal=False), nullable=False)
    transaction_type = db.Column(db.String(32), nullable=False, default='deposit')
    description = db.Column(db.String(256), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class FeatureFlag(db.Model):
    __tablename__ = 'feature_flag'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), unique=True, nullable=False)
    enabled = db.Column(db.Boolean, nullable=False, default=False)

    @staticmethod
    def is_enabled(name: str) -> bool:
        flag = FeatureFlag.query.filter_by(name=name).first()
        return bool(flag and flag.enabled)
