"""Tests for the observation store."""
import pytest

from conftest import obs
from lesson_core.core.errors import ValidationError
from lesson_core.models.records import Observation
from lesson_core.schemas.lessons import ObservationCreate
from lesson_core.services import observations


def test_append_single_returns_id(db):
    ids = observations.append(db, obs("lesson-1", "gender", "mastered"))

    assert len(ids) == 1
    stored = db.get(Observation, ids[0])
    assert stored.grammar_feature == "gender"
    assert stored.performance_level == "mastered"


def test_append_accepts_schema_objects(db):
    item = ObservationCreate(**obs("lesson-1", "verb_tense", "emerging"))

    assert len(observations.append(db, [item, item])) == 2


def test_batch_is_all_or_nothing(db):
    batch = [
        obs("lesson-1", "gender", "mastered"),
        obs("lesson-1", "gender", "excellent"),
        obs("lesson-1", "gender", "struggling"),
    ]

    with pytest.raises(ValidationError) as exc_info:
        observations.append(db, batch)

    assert exc_info.value.field == "performance_level"
    assert "observation 1" in exc_info.value.message
    assert db.query(Observation).count() == 0


def test_missing_field_is_named(db):
    item = obs("lesson-1", "gender", "mastered")
    del item["grammar_feature"]

    with pytest.raises(ValidationError) as exc_info:
        observations.append(db, item)
    assert exc_info.value.field == "grammar_feature"


def test_invalid_context_type_is_named(db):
    with pytest.raises(ValidationError) as exc_info:
        observations.append(db, obs("lesson-1", "gender", "mastered", context_type="guess"))
    assert exc_info.value.field == "context_type"


def test_empty_session_id_rejected(db):
    with pytest.raises(ValidationError) as exc_info:
        observations.append(db, obs("", "gender", "mastered"))
    assert exc_info.value.field == "session_id"


def test_query_newest_first_with_filters(db):
    first, second, third = observations.append(db, [
        obs("lesson-1", "gender", "mastered"),
        obs("lesson-1", "gender", "struggling"),
        obs("lesson-2", "verb_tense", "struggling", user_id="user-2"),
    ])

    assert [o.id for o in observations.query(db)] == [third, second, first]
    assert [o.id for o in observations.query(db, session_id="lesson-1")] == [second, first]
    assert [o.id for o in observations.query(db, performance_level="struggling")] == [third, second]
    assert [o.id for o in observations.query(db, user_id="user-2")] == [third]
    assert [o.id for o in observations.query(db, grammar_feature="gender", limit=1)] == [second]


def test_query_rejects_unknown_performance_level(db):
    with pytest.raises(ValidationError):
        observations.query(db, performance_level="perfect")


def test_for_lesson_is_chronological(db):
    ids = observations.append(db, [obs("lesson-1", "gender", lvl) for lvl in ("mastered", "emerging", "struggling")])

    assert [o.id for o in observations.for_lesson(db, "lesson-1")] == ids
