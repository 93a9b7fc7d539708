"""Shared fixtures: in-memory database, API client and row builders."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("CACHE_ENABLED", "false")

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lesson_core.database import get_db
from lesson_core.main import app
from lesson_core.models.records import Base, Lesson
from lesson_core.services import quota


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def set_usage(db, user_id, messages_used=None, tokens_used=None, message_quota=None, token_quota=None, reset_at=None):
    """Create the user's profile if needed and overwrite selected quota fields."""
    record = quota.get_or_create_profile(db, user_id)
    if messages_used is not None:
        record.weekly_messages_used = messages_used
    if tokens_used is not None:
        record.weekly_tokens_used = tokens_used
    if message_quota is not None:
        record.weekly_message_quota = message_quota
    if token_quota is not None:
        record.weekly_token_quota = token_quota
    if reset_at is not None:
        record.reset_at = reset_at
    db.commit()
    return record


def make_lesson(db, lesson_id, user_id="user-1", ended=True, started_at=None):
    lesson = Lesson(
        id=lesson_id,
        user_id=user_id,
        learning_mode="mix",
        started_at=started_at or datetime(2026, 10, 12, 9, 0),
        ended_at=datetime(2026, 10, 12, 10, 0) if ended else None,
        messages_count=0,
        tokens_used=0,
    )
    db.add(lesson)
    db.commit()
    return lesson


def obs(session_id, feature, level, user_id="user-1", context_type="production", attempt=None, correct=None):
    return {
        "session_id": session_id,
        "user_id": user_id,
        "grammar_feature": feature,
        "grammar_value": "value",
        "performance_level": level,
        "context_type": context_type,
        "student_attempt": attempt,
        "correct_form": correct,
    }


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite shared by several threads, one session each."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'lesson_core.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autoflush=False, bind=engine)
    finally:
        engine.dispose()
