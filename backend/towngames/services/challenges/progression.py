"""Progression bridge: where verified rewards leave the challenge engine.

The engine only talks to the ``ProgressionBridge`` interface. The default
``LedgerProgressionBridge`` keeps job XP, levels and balances in this
database and records one ``RewardLedgerEntry`` per session, which makes
every credit idempotent on ``session_id``.
"""

from typing import Dict, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from towngames import db
from towngames.models import RewardLedgerEntry, Transaction, User
from .errors import UpstreamFailure


def xp_for_level(level: int) -> int:
    """Cumulative XP needed to reach ``level`` (L2=100, L3=500, L4=900 ...)."""
    if level <= 1:
        return 0
    if level == 2:
        return 100
    return 100 * level * (level + 1) // 2 - 100


def level_for_xp(xp: int, max_level: int = 10, start_level: int = 1) -> int:
    level = max(1, start_level)
    while level < max_level and xp >= xp_for_level(level + 1):
        level += 1
    return level


class ProgressionBridge:
    """Interface consumed by the orchestrator; both calls keyed by session."""

    def credit_experience(self, user_id: int, job: Optional[str], points: int, session_id: str) -> Dict:
        raise NotImplementedError

    def credit_currency(self, user_id: int, amount: float, session_id: str,
                        description: Optional[str] = None) -> None:
        raise NotImplementedError


class LedgerProgressionBridge(ProgressionBridge):

    def __init__(self, max_level: Optional[int] = None):
        self.max_level = max_level

    def _max_level(self) -> int:
        if self.max_level is not None:
            return self.max_level
        return int(current_app.config.get('PROGRESSION_MAX_LEVEL', 10))

    def _ledger_entry(self, user_id: int, session_id: str) -> RewardLedgerEntry:
        entry = RewardLedgerEntry.query.filter_by(session_id=session_id).first()
        if entry is None:
            entry = RewardLedgerEntry(session_id=session_id, user_id=user_id, earnings=0, experience_points=0)
            db.session.add(entry)
            db.session.flush()
        return entry

    def _user(self, user_id: int) -> User:
        user = db.session.get(User, user_id)
        if user is None:
            raise UpstreamFailure(f'No progression account for user {user_id}')
        return user

    def credit_experience(self, user_id, job, points, session_id):
        try:
            entry = self._ledger_entry(user_id, session_id)
            user = self._user(user_id)
            previous_level = user.job_level or 1
            if entry.experience_credited:
                return {'new_level': user.job_level, 'leveled_up': False}
            user.job_experience_points = (user.job_experience_points or 0) + int(points)
            user.job_level = level_for_xp(user.job_experience_points, self._max_level(), previous_level)
            entry.experience_points = int(points)
            entry.experience_credited = True
            db.session.flush()
        except SQLAlchemyError as exc:
            raise UpstreamFailure('Progression store unavailable') from exc
        return {'new_level': user.job_level, 'leveled_up': user.job_level > previous_level}

    def credit_currency(self, user_id, amount, session_id, description=None):
        try:
            entry = self._ledger_entry(user_id, session_id)
            if entry.currency_credited:
                return
            user = self._user(user_id)
            amount = round(float(amount), 2)
            user.balance = round(float(user.balance or 0) + amount, 2)
            if amount > 0:
                db.session.add(Transaction(
                    user_id=user_id,
                    amount=amount,
                    transaction_type='deposit',
                    description=description,
                ))
            entry.earnings = amount
            entry.currency_credited = True
            db.session.flush()
        except SQLAlchemyError as exc:
            raise UpstreamFailure('Progression store unavailable') from exc
