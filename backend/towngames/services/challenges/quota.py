from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from towngames import db
from towngames.models import QuotaRecord, utcnow
from .locks import quota_locks


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: int
    plays_used: int
    window_start: datetime


def window_start(now: datetime, reset_hour: int) -> datetime:
    """Most recent reset boundary at or before ``now`` (naive UTC)."""
    boundary = now.replace(hour=reset_hour, minute=0, second=0, microsecond=0)
    if now < boundary:
        boundary -= timedelta(days=1)
    return boundary


def next_reset(now: datetime, reset_hour: int) -> datetime:
    return window_start(now, reset_hour) + timedelta(days=1)


def _reset_hour(reset_hour: Optional[int]) -> int:
    if reset_hour is not None:
        return reset_hour
    return int(current_app.config.get('CHALLENGE_RESET_HOUR', 4))


def _plays_used(user_id: int, challenge_type: str, start: datetime) -> int:
    used = db.session.execute(
        select(QuotaRecord.plays_used).where(
            QuotaRecord.user_id == user_id,
            QuotaRecord.challenge_type == challenge_type,
            QuotaRecord.window_start == start,
        )
    ).scalar_one_or_none()
    return used or 0


def _increment_within_limit(user_id: int, challenge_type: str, start: datetime, daily_limit: int) -> bool:
    result = db.session.execute(
        update(QuotaRecord)
        .where(
            QuotaRecord.user_id == user_id,
            QuotaRecord.challenge_type == challenge_type,
            QuotaRecord.window_start == start,
            QuotaRecord.plays_used < daily_limit,
        )
        .values(plays_used=QuotaRecord.plays_used + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def try_consume(user_id: int, challenge_type: str, daily_limit: int,
                now: Optional[datetime] = None, reset_hour: Optional[int] = None) -> QuotaDecision:
    """Atomically take one play from the current window, if one is left.

    The increment is a conditional UPDATE guarded by ``plays_used < limit``
    (first play of a window inserts the row under a unique constraint), so
    concurrent callers can never push the count past the limit. Denials
    leave the record untouched. The caller owns the transaction.
    """
    now = now or utcnow()
    start = window_start(now, _reset_hour(reset_hour))

    with quota_locks.hold((user_id, challenge_type)):
        allowed = _increment_within_limit(user_id, challenge_type, start, daily_limit)
        if not allowed and daily_limit > 0:
            exists = db.session.execute(
                select(QuotaRecord.id).where(
                    QuotaRecord.user_id == user_id,
                    QuotaRecord.challenge_type == challenge_type,
                    QuotaRecord.window_start == start,
                )
            ).first()
            if exists is None:
                try:
                    with db.session.begin_nested():
                        db.session.add(QuotaRecord(
                            user_id=user_id,
                            challenge_type=challenge_type,
                            window_start=start,
                            plays_used=1,
                        ))
                    allowed = True
                except IntegrityError:
                    # Another writer opened the window first
                    allowed = _increment_within_limit(user_id, challenge_type, start, daily_limit)

        used = _plays_used(user_id, challenge_type, start)
    return QuotaDecision(
        allowed=allowed,
        remaining=max(0, daily_limit - used),
        plays_used=used,
        window_start=start,
    )


def remaining_plays(user_id: int, challenge_type: str, daily_limit: int,
                    now: Optional[datetime] = None, reset_hour: Optional[int] = None) -> int:
    now = now or utcnow()
    start = window_start(now, _reset_hour(reset_hour))
    return max(0, daily_limit - _plays_used(user_id, challenge_type, start))
