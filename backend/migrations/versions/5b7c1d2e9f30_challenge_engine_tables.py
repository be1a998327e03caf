"""challenge engine tables

Revision ID: 5b7c1d2e9f30
Revises:
Create Date: 2026-03-02 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5b7c1d2e9f30'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(64), nullable=False),
        sa.Column('password_hash', sa.String(256), nullable=False),
        sa.Column('role', sa.String(32), nullable=False, server_default='student'),
        sa.Column('job_name', sa.String(64), nullable=True),
        sa.Column('job_level', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('job_experience_points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('balance', sa.Numeric(12, 2), nullable=False, server_default='0'),
    )
    op.create_index('ix_user_username', 'user', ['username'], unique=True)

    op.create_table(
        'challenge_session',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('challenge_type', sa.String(64), nullable=False),
        sa.Column('difficulty', sa.String(32), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('issued_problems', sa.Text(), nullable=False),
        sa.Column('time_limit_seconds', sa.Integer(), nullable=True),
        sa.Column('max_problems', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('ended_reason', sa.String(32), nullable=True),
        sa.Column('score', sa.Integer(), nullable=True),
        sa.Column('correct_count', sa.Integer(), nullable=True),
        sa.Column('total_answered', sa.Integer(), nullable=True),
        sa.Column('max_streak', sa.Integer(), nullable=True),
        sa.Column('earnings', sa.Numeric(12, 2), nullable=True),
        sa.Column('experience_points', sa.Integer(), nullable=True),
        sa.Column('is_new_high_score', sa.Boolean(), nullable=True),
        sa.Column('new_level', sa.Integer(), nullable=True),
        sa.Column('credit_status', sa.String(32), nullable=True),
        sa.Column('credit_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_credit_error', sa.Text(), nullable=True),
    )
    op.create_index('ix_challenge_session_user_id', 'challenge_session', ['user_id'])
    op.create_index('ix_challenge_session_status', 'challenge_session', ['status'])
    op.create_index('ix_challenge_session_owner_type', 'challenge_session', ['user_id', 'challenge_type', 'status'])

    op.create_table(
        'challenge_answer',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.String(32), sa.ForeignKey('challenge_session.id'), nullable=False),
        sa.Column('problem_index', sa.Integer(), nullable=False),
        sa.Column('value_json', sa.Text(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('session_id', 'problem_index', name='uq_answer_session_index'),
    )

    op.create_table(
        'quota_record',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('challenge_type', sa.String(64), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('plays_used', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('user_id', 'challenge_type', 'window_start', name='uq_quota_user_type_window'),
    )

    op.create_table(
        'high_score',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('challenge_type', sa.String(64), nullable=False),
        sa.Column('difficulty', sa.String(32), nullable=False),
        sa.Column('best_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('achieved_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id', 'challenge_type', 'difficulty', name='uq_high_score_key'),
    )

    op.create_table(
        'reward_ledger_entry',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.String(32), sa.ForeignKey('challenge_session.id'), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('earnings', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('experience_points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency_credited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('experience_credited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reward_ledger_entry_user_id', 'reward_ledger_entry', ['user_id'])

    op.create_table(
        'transaction',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('transaction_type', sa.String(32), nullable=False, server_default='deposit'),
        sa.Column('description', sa.String(256), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transaction_user_id', 'transaction', ['user_id'])

    op.create_table(
        'feature_flag',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(64), nullable=False, unique=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
    )


def downgrade():
    op.drop_table('feature_flag')
    op.drop_index('ix_transaction_user_id', table_name='transaction')
    op.drop_table('transaction')
    op.drop_index('ix_reward_ledger_entry_user_id', table_name='reward_ledger_entry')
    op.drop_table('reward_ledger_entry')
    op.drop_table('high_score')
    op.drop_table('quota_record')
    op.drop_table('challenge_answer')
    op.drop_index('ix_challenge_session_owner_type', table_name='challenge_session')
    op.drop_index('ix_challenge_session_status', table_name='challenge_session')
    op.drop_index('ix_challenge_session_user_id', table_name='challenge_session')
    op.drop_table('challenge_session')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
