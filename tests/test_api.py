"""Integration tests for the HTTP endpoints."""
from unittest.mock import patch

from conftest import obs, set_usage
from lesson_core.core.config import settings


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data


def test_start_lesson_returns_context_and_quota(client):
    response = client.post("/api/v1/lessons/start", json={"user_id": "user-1", "surah_id": 1})

    assert response.status_code == 201
    data = response.json()
    assert data["lesson"]["user_id"] == "user-1"
    assert data["lesson"]["messages_count"] == 0
    assert data["quota"]["messages_remaining"] == 100
    assert data["context_prompt"].startswith("NEW LEARNER")


def test_start_lesson_quota_exceeded(client, db):
    set_usage(db, "user-1", messages_used=100)

    response = client.post("/api/v1/lessons/start", json={"user_id": "user-1"})

    assert response.status_code == 429
    detail = response.json()["detail"]
    assert detail["error"] == "quota_exceeded"
    assert detail["reason"] == "messages"
    assert detail["messages_remaining"] == 0
    assert "next_reset_at" in detail


def test_start_lesson_bad_mode_is_rejected(client):
    response = client.post("/api/v1/lessons/start", json={"user_id": "user-1", "learning_mode": "poetry"})
    assert response.status_code == 422


def test_start_lesson_duplicate_id_is_client_error(client):
    first = client.post("/api/v1/lessons/start", json={"user_id": "user-1", "lesson_id": "dup"})
    second = client.post("/api/v1/lessons/start", json={"user_id": "user-1", "lesson_id": "dup"})

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.json()["field"] == "lesson_id"


def test_turns_and_quota(client):
    lesson_id = client.post("/api/v1/lessons/start", json={"user_id": "user-1"}).json()["lesson"]["id"]

    response = client.post(f"/api/v1/lessons/{lesson_id}/turns", json={"token_delta": 250})

    assert response.status_code == 200
    assert response.json()["messages_count"] == 1
    quota = client.get("/api/v1/quota", params={"user_id": "user-1"}).json()
    assert quota["messages_used"] == 1
    assert quota["tokens_used"] == 250


def test_turn_on_unknown_lesson(client):
    response = client.post("/api/v1/lessons/missing/turns", json={"token_delta": 10})
    assert response.status_code == 404


def test_turn_over_quota(client, db):
    lesson_id = client.post("/api/v1/lessons/start", json={"user_id": "user-1"}).json()["lesson"]["id"]
    set_usage(db, "user-1", messages_used=100)

    response = client.post(f"/api/v1/lessons/{lesson_id}/turns", json={"token_delta": 10})

    assert response.status_code == 429
    assert response.json()["detail"]["reason"] == "messages"


def test_end_unknown_lesson(client):
    response = client.post("/api/v1/lessons/end", json={"lesson_id": "missing"})
    assert response.status_code == 404


def test_invalid_observation_batch(client):
    bad = obs("lesson-1", "gender", "excellent")

    response = client.post("/api/v1/observations", json={"observations": [obs("lesson-1", "gender", "mastered"), bad]})

    assert response.status_code == 400
    assert response.json()["field"] == "performance_level"
    assert client.get("/api/v1/observations", params={"session_id": "lesson-1"}).json() == []


def test_update_tier(client):
    response = client.put("/api/v1/quota/user-1/tier", json={"tier": "plus"})

    assert response.status_code == 200
    assert response.json()["message_quota"] == 250


def test_update_tier_unknown(client):
    response = client.put("/api/v1/quota/user-1/tier", json={"tier": "platinum"})
    assert response.status_code == 422


def test_cron_requires_secret_when_configured(client):
    with patch.object(settings, "cron_secret", "s3cret"):
        denied = client.post("/api/v1/cron/reset-quotas")
        allowed = client.post("/api/v1/cron/reset-quotas", headers={"Authorization": "Bearer s3cret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["users_reset"] == 0


def test_full_lesson_flow(client):
    """Start, talk, observe, end; the next lesson's prompt knows the struggle."""
    start = client.post("/api/v1/lessons/start", json={"user_id": "user-1", "surah_id": 112, "learning_mode": "grammar"})
    lesson_id = start.json()["lesson"]["id"]
    client.post(f"/api/v1/lessons/{lesson_id}/turns", json={"token_delta": 300})
    observed = client.post("/api/v1/observations", json={"observations": [
        obs(lesson_id, "gender", "struggling", attempt="كبيرة", correct="كبير") for _ in range(3)
    ]})
    assert observed.status_code == 201
    assert len(observed.json()["ids"]) == 3

    end = client.post("/api/v1/lessons/end", json={"lesson_id": lesson_id})

    assert end.status_code == 200
    data = end.json()
    assert data["counters"]["messages_count"] == 1
    assert data["counters"]["tokens_used"] == 300
    assert data["merge"]["facts_created"] == 1
    assert data["analysis"]["performance_summary"].startswith("Grammar: 0/3 (0%)")

    again = client.post("/api/v1/lessons/end", json={"lesson_id": lesson_id}).json()
    assert again["counters"] == data["counters"]
    assert again["merge"]["lessons_merged"] == 0

    profile = client.get("/api/v1/learner/profile", params={"user_id": "user-1"}).json()
    assert profile["has_history"] is True
    assert [f["fact_text"] for f in profile["context"]["struggles"]] == ["Struggles with gender agreement"]
    assert "LEARNER STRUGGLES (address carefully):" in profile["context_prompt"]
    assert "Last lesson (grammar): Grammar: 0/3 (0%)" in profile["context_prompt"]
    assert client.get("/api/v1/lessons/active", params={"user_id": "user-1"}).json()["lesson"] is None

    next_start = client.post("/api/v1/lessons/start", json={"user_id": "user-1"}).json()
    assert "- Struggles with gender agreement (e.g., كبيرة → كبير)" in next_start["context_prompt"]
