"""Lesson lifecycle: active -> ended, plus the per-lesson usage mirror."""
import logging
import uuid
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lesson_core.core.errors import NotFound, QuotaExceeded, ValidationError
from lesson_core.database import transaction
from lesson_core.models.records import Lesson, LEARNING_MODES
from lesson_core.schemas.lessons import LessonCounters, TurnResult
from lesson_core.services import quota
from lesson_core.utils.clock import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


def get_lesson(db: Session, lesson_id: str) -> Optional[Lesson]:
    return db.execute(
        select(Lesson).where(Lesson.id == lesson_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def create(
    db: Session,
    user_id: str,
    surah_id: Optional[int] = None,
    learning_mode: str = "mix",
    lesson_id: Optional[str] = None,
) -> Union[Lesson, QuotaExceeded]:
    """Start a lesson if the user still has quota; no row is written otherwise."""
    if learning_mode not in LEARNING_MODES:
        raise ValidationError("learning_mode", f"must be one of {', '.join(LEARNING_MODES)}")

    if lesson_id and get_lesson(db, lesson_id) is not None:
        raise ValidationError("lesson_id", "already exists")

    check = quota.can_send_message(db, user_id)
    if not check.can_send:
        return QuotaExceeded(reason=check.reason)

    lesson = Lesson(
        id=lesson_id or str(uuid.uuid4()),
        user_id=user_id,
        surah_id=surah_id,
        learning_mode=learning_mode,
        started_at=utcnow(),
        messages_count=0,
        tokens_used=0,
    )
    try:
        with transaction(db):
            db.add(lesson)
    except IntegrityError as e:
        # Same id inserted by a concurrent start
        raise ValidationError("lesson_id", "already exists") from e
    logger.info(f"Lesson {lesson.id} started for user {user_id} (mode={learning_mode}, surah={surah_id})")
    return lesson


def record_turn(
    db: Session,
    lesson_id: str,
    token_delta: int,
    message_delta: int = 1,
) -> Union[TurnResult, QuotaExceeded, NotFound]:
    """
    Bill one turn: the quota counters first (authoritative), then the lesson mirror.

    New messages on an ended lesson are rejected. A token-only report
    (message_delta == 0) is still billed to the quota so post-call cost is not
    lost, but an ended lesson's counters stay frozen.
    """
    lesson = get_lesson(db, lesson_id)
    if lesson is None:
        return NotFound(kind="lesson", key=lesson_id)
    if not lesson.is_active and message_delta > 0:
        raise ValidationError("lesson_id", "lesson has ended")

    usage = quota.record_usage(db, lesson.user_id, message_delta, token_delta)
    if not isinstance(usage, quota.UsageResult):
        return usage

    with transaction(db):
        db.execute(
            update(Lesson)
            .where(Lesson.id == lesson_id, Lesson.ended_at.is_(None))
            .values(
                messages_count=Lesson.messages_count + message_delta,
                tokens_used=Lesson.tokens_used + token_delta,
            )
            .execution_options(synchronize_session=False)
        )
    lesson = get_lesson(db, lesson_id)
    return TurnResult(
        lesson_id=lesson_id,
        messages_count=lesson.messages_count,
        tokens_used=lesson.tokens_used,
        messages_remaining=usage.messages_remaining,
        tokens_remaining=usage.tokens_remaining,
    )


def end(db: Session, lesson_id: str, now: Optional[datetime] = None) -> Union[LessonCounters, NotFound]:
    """
    End a lesson. Idempotent: ending an ended lesson keeps its original ended_at
    and returns the same counters.
    """
    ended_at = to_naive_utc(now) if now is not None else utcnow()
    with transaction(db):
        result = db.execute(
            update(Lesson)
            .where(Lesson.id == lesson_id, Lesson.ended_at.is_(None))
            .values(ended_at=ended_at)
            .execution_options(synchronize_session=False)
        )
    lesson = get_lesson(db, lesson_id)
    if lesson is None:
        return NotFound(kind="lesson", key=lesson_id)
    if result.rowcount:
        logger.info(
            f"Lesson {lesson_id} ended: {lesson.messages_count} messages, {lesson.tokens_used} tokens"
        )
    return LessonCounters(
        lesson_id=lesson.id,
        user_id=lesson.user_id,
        ended_at=lesson.ended_at,
        messages_count=lesson.messages_count,
        tokens_used=lesson.tokens_used,
    )


def get_active(db: Session, user_id: str) -> Optional[Lesson]:
    """Most recent lesson of the user that has not ended."""
    return db.execute(
        select(Lesson)
        .where(Lesson.user_id == user_id, Lesson.ended_at.is_(None))
        .order_by(Lesson.started_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def set_performance_summary(db: Session, lesson_id: str, summary: str) -> None:
    with transaction(db):
        db.execute(
            update(Lesson)
            .where(Lesson.id == lesson_id)
            .values(performance_summary=summary)
            .execution_options(synchronize_session=False)
        )
