"""
Weekly message/token quotas.

Every mutation is a single conditional UPDATE evaluated by the database, so
concurrent requests from independent processes cannot over-draw a budget and a
weekly reset cannot silently drop a concurrent increment.
"""
import logging
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lesson_core.core.config import settings
from lesson_core.core.errors import ConcurrencyConflict, NotFound, QuotaExceeded, ValidationError
from lesson_core.database import transaction
from lesson_core.models.records import QuotaRecord, TIERS
from lesson_core.schemas.lessons import CanSendResult, QuotaInfo
from lesson_core.utils.clock import WEEK, to_naive_utc, utcnow, week_start, weeks_elapsed

logger = logging.getLogger(__name__)

TIER_LIMITS = {
    "free": {"messages": 100, "tokens": 300000},
    "plus": {"messages": 250, "tokens": 750000},
    "pro": {"messages": 600, "tokens": 1500000},
}


class UsageResult(BaseModel):
    messages_remaining: int
    tokens_remaining: int


def _now(now: Optional[datetime]) -> datetime:
    return to_naive_utc(now) if now is not None else utcnow()


def _load(db: Session, user_id: str) -> Optional[QuotaRecord]:
    return db.execute(
        select(QuotaRecord).where(QuotaRecord.user_id == user_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_or_create_profile(db: Session, user_id: str, email: Optional[str] = None) -> QuotaRecord:
    """Return the user's quota record, creating it with the default tier on first access."""
    record = _load(db, user_id)
    if record:
        return record

    limits = TIER_LIMITS[settings.default_tier]
    record = QuotaRecord(
        user_id=user_id,
        email=email,
        tier=settings.default_tier,
        weekly_message_quota=limits["messages"],
        weekly_messages_used=0,
        weekly_token_quota=limits["tokens"],
        weekly_tokens_used=0,
        reset_at=week_start(utcnow()),
    )
    try:
        with transaction(db):
            db.add(record)
        logger.info(f"Created quota profile for user {user_id} (tier={settings.default_tier})")
        return record
    except IntegrityError:
        # Concurrent first login inserted it first
        logger.info(f"Profile for user {user_id} created concurrently; re-reading")
        record = _load(db, user_id)
        if record is None:
            raise
        return record


def _advance_window(db: Session, user_id: str, old_reset_at: datetime, weeks: int) -> bool:
    """CAS reset: zero the counters only if reset_at is still the value we saw."""
    with transaction(db):
        result = db.execute(
            update(QuotaRecord)
            .where(QuotaRecord.user_id == user_id, QuotaRecord.reset_at == old_reset_at)
            .values(
                weekly_messages_used=0,
                weekly_tokens_used=0,
                reset_at=old_reset_at + weeks * WEEK,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


def _current(db: Session, user_id: str, now: datetime) -> QuotaRecord:
    """Load (or create) the record and catch up any elapsed weekly windows."""
    record = get_or_create_profile(db, user_id)
    weeks = weeks_elapsed(record.reset_at, now)
    if weeks >= 1:
        if _advance_window(db, user_id, record.reset_at, weeks):
            logger.info(f"Lazy quota reset for user {user_id}: advanced {weeks} week(s)")
        record = _load(db, user_id)
    return record


def _exhausted_reason(record: QuotaRecord) -> Optional[str]:
    # Messages checked first (the common limit); tokens catch abuse
    if record.weekly_messages_used >= record.weekly_message_quota:
        return "messages"
    if record.weekly_tokens_used >= record.weekly_token_quota:
        return "tokens"
    return None


def can_send_message(db: Session, user_id: str, now: Optional[datetime] = None) -> CanSendResult:
    """Whether the user may start another paid turn right now."""
    record = _current(db, user_id, _now(now))
    reason = _exhausted_reason(record)
    if reason:
        logger.info(f"User {user_id} blocked by {reason} quota")
        return CanSendResult(can_send=False, reason=reason)
    return CanSendResult(can_send=True)


def _to_info(record: QuotaRecord) -> QuotaInfo:
    return QuotaInfo(
        user_id=record.user_id,
        tier=record.tier,
        message_quota=record.weekly_message_quota,
        messages_used=record.weekly_messages_used,
        messages_remaining=max(0, record.weekly_message_quota - record.weekly_messages_used),
        token_quota=record.weekly_token_quota,
        tokens_used=record.weekly_tokens_used,
        tokens_remaining=max(0, record.weekly_token_quota - record.weekly_tokens_used),
        reset_at=record.reset_at,
        next_reset_at=record.reset_at + WEEK,
    )


def get_quota_info(db: Session, user_id: str, now: Optional[datetime] = None) -> QuotaInfo:
    """Snapshot of the user's quota with derived remaining counts (never negative)."""
    return _to_info(_current(db, user_id, _now(now)))


def record_usage(
    db: Session,
    user_id: str,
    message_delta: int = 1,
    token_delta: int = 0,
    now: Optional[datetime] = None,
) -> Union[UsageResult, QuotaExceeded, NotFound]:
    """
    Atomically add usage to the user's weekly counters.

    A turn (message_delta > 0) is only counted while the pre-increment values are
    under quota, so two racing turns cannot both spend the last message. A
    token-only report (message_delta == 0) always lands: the call already happened,
    and at most that one late report can push tokens past the quota.

    An elapsed weekly window is advanced first (same CAS as the sweep), so a
    lesson running across the reset boundary bills the new week.

    Returns:
        UsageResult with remaining counts, QuotaExceeded if a concurrent request
        used up the budget first, or NotFound if the user has no quota record.

    Raises:
        ConcurrencyConflict: the update matched nothing but the quota is not
            exhausted (the record moved underneath us, e.g. a reset). Retry once.
    """
    if message_delta < 0 or token_delta < 0:
        raise ValidationError("message_delta" if message_delta < 0 else "token_delta", "must be >= 0")

    record = _load(db, user_id)
    if record is None:
        return NotFound(kind="user", key=user_id)
    weeks = weeks_elapsed(record.reset_at, _now(now))
    if weeks >= 1 and _advance_window(db, user_id, record.reset_at, weeks):
        logger.info(f"Lazy quota reset for user {user_id} before billing: advanced {weeks} week(s)")

    conditions = [QuotaRecord.user_id == user_id]
    if message_delta > 0:
        conditions.append(QuotaRecord.weekly_messages_used + message_delta <= QuotaRecord.weekly_message_quota)
        conditions.append(QuotaRecord.weekly_tokens_used < QuotaRecord.weekly_token_quota)

    with transaction(db):
        result = db.execute(
            update(QuotaRecord)
            .where(and_(*conditions))
            .values(
                weekly_messages_used=QuotaRecord.weekly_messages_used + message_delta,
                weekly_tokens_used=QuotaRecord.weekly_tokens_used + token_delta,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
    affected = result.rowcount

    record = _load(db, user_id)
    if record is None:
        return NotFound(kind="user", key=user_id)
    if affected == 0:
        reason = _exhausted_reason(record)
        if reason:
            logger.info(f"Usage for user {user_id} rejected: {reason} quota exhausted by a concurrent request")
            return QuotaExceeded(reason=reason)
        raise ConcurrencyConflict(f"quota record for {user_id} changed during update")

    return UsageResult(
        messages_remaining=max(0, record.weekly_message_quota - record.weekly_messages_used),
        tokens_remaining=max(0, record.weekly_token_quota - record.weekly_tokens_used),
    )


def reset_due_quotas(db: Session, now: Optional[datetime] = None) -> int:
    """
    Weekly sweep: reset every record whose window has fully elapsed.

    reset_at advances by the number of whole weeks elapsed (a user who missed
    three sweeps catches up in one call). Each row is reset with a CAS on the
    old reset_at, so running the sweep twice, or alongside the lazy per-user
    reset, never advances a window twice.

    Returns:
        Number of records advanced.
    """
    now = _now(now)
    due = db.execute(
        select(QuotaRecord.user_id, QuotaRecord.reset_at).where(QuotaRecord.reset_at <= now - WEEK)
    ).all()

    advanced = 0
    for user_id, reset_at in due:
        weeks = weeks_elapsed(reset_at, now)
        if weeks >= 1 and _advance_window(db, user_id, reset_at, weeks):
            advanced += 1
    logger.info(f"Weekly quota reset complete: {advanced} users reset ({len(due)} due)")
    return advanced


def pending_reset_count(db: Session, now: Optional[datetime] = None) -> int:
    """How many records are due for a reset (monitoring)."""
    now = _now(now)
    return db.execute(
        select(func.count()).select_from(QuotaRecord).where(QuotaRecord.reset_at <= now - WEEK)
    ).scalar_one()


def update_subscription_tier(db: Session, user_id: str, tier: str) -> QuotaInfo:
    """Move a user to another tier and re-seed both quotas from the tier table."""
    if tier not in TIERS:
        raise ValidationError("tier", f"must be one of {', '.join(TIERS)}")
    get_or_create_profile(db, user_id)
    limits = TIER_LIMITS[tier]
    with transaction(db):
        db.execute(
            update(QuotaRecord)
            .where(QuotaRecord.user_id == user_id)
            .values(
                tier=tier,
                weekly_message_quota=limits["messages"],
                weekly_token_quota=limits["tokens"],
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
    logger.info(f"User {user_id} moved to tier {tier}")
    return _to_info(_load(db, user_id))
