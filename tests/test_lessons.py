"""Tests for the lesson lifecycle."""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from conftest import make_lesson, set_usage
from lesson_core.core.errors import NotFound, QuotaExceeded, ValidationError
from lesson_core.models.records import Lesson
from lesson_core.schemas.lessons import TurnResult
from lesson_core.services import lessons, quota
from lesson_core.utils.clock import utcnow


def test_create_starts_active_lesson_with_zero_counters(db):
    lesson = lessons.create(db, "user-1", surah_id=1, learning_mode="grammar")

    assert isinstance(lesson, Lesson)
    assert lesson.is_active
    assert lesson.messages_count == 0
    assert lesson.tokens_used == 0
    assert lesson.learning_mode == "grammar"


def test_create_uses_caller_lesson_id(db):
    lesson = lessons.create(db, "user-1", lesson_id="lesson-abc")

    assert lesson.id == "lesson-abc"
    assert lessons.get_lesson(db, "lesson-abc") is not None


def test_create_blocked_by_quota_writes_nothing(db):
    set_usage(db, "user-1", messages_used=10, message_quota=10)

    result = lessons.create(db, "user-1", surah_id=1)

    assert result == QuotaExceeded(reason="messages")
    assert db.query(Lesson).count() == 0


def test_create_rejects_duplicate_lesson_id(db):
    lessons.create(db, "user-1", lesson_id="lesson-abc")

    with pytest.raises(ValidationError) as exc_info:
        lessons.create(db, "user-2", lesson_id="lesson-abc")

    assert exc_info.value.field == "lesson_id"
    assert lessons.get_lesson(db, "lesson-abc").user_id == "user-1"


def test_create_duplicate_lesson_id_from_concurrent_start(db):
    """Another request inserted the id after our existence check."""
    lessons.create(db, "user-1", lesson_id="lesson-abc")
    db.expunge_all()

    with patch.object(lessons, "get_lesson", return_value=None):
        with pytest.raises(ValidationError) as exc_info:
            lessons.create(db, "user-1", lesson_id="lesson-abc")

    assert exc_info.value.field == "lesson_id"
    assert db.query(Lesson).count() == 1


def test_create_rejects_unknown_learning_mode(db):
    with pytest.raises(ValidationError) as exc_info:
        lessons.create(db, "user-1", learning_mode="poetry")
    assert exc_info.value.field == "learning_mode"


def test_record_turn_updates_lesson_and_quota(db):
    lesson = lessons.create(db, "user-1")

    lessons.record_turn(db, lesson.id, token_delta=120)
    result = lessons.record_turn(db, lesson.id, token_delta=80)

    assert isinstance(result, TurnResult)
    assert result.messages_count == 2
    assert result.tokens_used == 200
    info = quota.get_quota_info(db, "user-1")
    assert info.messages_used == 2
    assert info.tokens_used == 200
    assert result.messages_remaining == info.messages_remaining


def test_record_turn_unknown_lesson(db):
    assert lessons.record_turn(db, "missing", token_delta=10) == NotFound(kind="lesson", key="missing")


def test_record_turn_over_quota_leaves_lesson_counters(db):
    lesson = lessons.create(db, "user-1")
    set_usage(db, "user-1", messages_used=10, message_quota=10)

    result = lessons.record_turn(db, lesson.id, token_delta=10)

    assert result == QuotaExceeded(reason="messages")
    assert lessons.get_lesson(db, lesson.id).messages_count == 0


def test_turn_across_weekly_boundary_bills_new_week(db):
    lesson = lessons.create(db, "user-1")
    set_usage(db, "user-1", messages_used=10, message_quota=10, reset_at=utcnow() - timedelta(days=8))

    result = lessons.record_turn(db, lesson.id, token_delta=20)

    assert isinstance(result, TurnResult)
    assert result.messages_count == 1
    info = quota.get_quota_info(db, "user-1")
    assert info.messages_used == 1
    assert info.tokens_used == 20


def test_end_is_idempotent(db):
    lesson = lessons.create(db, "user-1")
    lessons.record_turn(db, lesson.id, token_delta=42)

    first = lessons.end(db, lesson.id, now=datetime(2026, 10, 18, 12, 0))
    second = lessons.end(db, lesson.id, now=datetime(2026, 10, 18, 13, 30))

    assert first == second
    assert first.ended_at == datetime(2026, 10, 18, 12, 0)
    assert first.messages_count == 1
    assert first.tokens_used == 42


def test_end_unknown_lesson(db):
    assert lessons.end(db, "missing") == NotFound(kind="lesson", key="missing")


def test_new_turn_on_ended_lesson_rejected(db):
    lesson = lessons.create(db, "user-1")
    lessons.end(db, lesson.id)

    with pytest.raises(ValidationError):
        lessons.record_turn(db, lesson.id, token_delta=10)


def test_late_token_report_on_ended_lesson_bills_quota_only(db):
    lesson = lessons.create(db, "user-1")
    lessons.record_turn(db, lesson.id, token_delta=10)
    frozen = lessons.end(db, lesson.id)

    result = lessons.record_turn(db, lesson.id, token_delta=300, message_delta=0)

    assert isinstance(result, TurnResult)
    assert result.messages_count == 1
    assert result.tokens_used == 10
    assert lessons.end(db, lesson.id) == frozen
    assert quota.get_quota_info(db, "user-1").tokens_used == 310


def test_get_active_returns_most_recent_open_lesson(db):
    make_lesson(db, "old", ended=False, started_at=datetime(2026, 10, 10, 9, 0))
    make_lesson(db, "new", ended=False, started_at=datetime(2026, 10, 17, 9, 0))
    make_lesson(db, "done", ended=True, started_at=datetime(2026, 10, 18, 9, 0))

    assert lessons.get_active(db, "user-1").id == "new"


def test_get_active_none_after_end(db):
    lesson = lessons.create(db, "user-1")
    lessons.end(db, lesson.id)

    assert lessons.get_active(db, "user-1") is None
