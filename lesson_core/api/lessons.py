"""Lesson, quota, observation and learner profile endpoints."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from lesson_core.core.config import settings
from lesson_core.core.errors import NotFound, QuotaExceeded
from lesson_core.database import get_db
from lesson_core.schemas.lessons import (
    EndLessonRequest,
    EndLessonResponse,
    LearnerProfile,
    LessonOut,
    ObservationBatch,
    ObservationIds,
    ObservationOut,
    QuotaInfo,
    RecordTurnRequest,
    ResetResult,
    StartLessonRequest,
    StartLessonResponse,
    TierUpdateRequest,
    TurnResult,
)
from lesson_core.services import learner, lessons, observations, quota
from lesson_core.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


def _quota_exceeded(user_id: str, outcome: QuotaExceeded, db: Session) -> HTTPException:
    info = quota.get_quota_info(db, user_id)
    return HTTPException(
        status_code=429,
        detail={
            "error": "quota_exceeded",
            "reason": outcome.reason,
            "messages_remaining": info.messages_remaining,
            "next_reset_at": info.next_reset_at.isoformat(),
        },
    )


def _not_found(outcome: NotFound) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Unknown {outcome.kind}: {outcome.key}")


@router.post("/lessons/start", response_model=StartLessonResponse, status_code=201)
def start_lesson(request: StartLessonRequest, db: Session = Depends(get_db)):
    """Start a lesson after checking the user's weekly quota."""
    result = learner.start_lesson(
        db,
        request.user_id,
        surah_id=request.surah_id,
        learning_mode=request.learning_mode,
        lesson_id=request.lesson_id,
    )
    if isinstance(result, QuotaExceeded):
        raise _quota_exceeded(request.user_id, result, db)
    return result


@router.post("/lessons/{lesson_id}/turns", response_model=TurnResult)
def record_turn(lesson_id: str, request: RecordTurnRequest, db: Session = Depends(get_db)):
    """Bill one turn (or a late token-only report) to the lesson and the user's quota."""
    result = lessons.record_turn(db, lesson_id, request.token_delta, request.message_delta)
    if isinstance(result, NotFound):
        raise _not_found(result)
    if isinstance(result, QuotaExceeded):
        lesson = lessons.get_lesson(db, lesson_id)
        raise _quota_exceeded(lesson.user_id, result, db)
    return result


@router.post("/lessons/end", response_model=EndLessonResponse)
def end_lesson(request: EndLessonRequest, db: Session = Depends(get_db)):
    """End a lesson and fold its observations into the learner's facts."""
    result = learner.end_lesson(db, request.lesson_id, user_id=request.user_id)
    if isinstance(result, NotFound):
        raise _not_found(result)
    return result


@router.get("/lessons/active")
def active_lesson(user_id: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    """The user's active lesson (or null) with current quota info."""
    lesson = lessons.get_active(db, user_id)
    return {
        "lesson": LessonOut.model_validate(lesson) if lesson else None,
        "quota": quota.get_quota_info(db, user_id),
    }


@router.post("/observations", response_model=ObservationIds, status_code=201)
def append_observations(request: ObservationBatch, db: Session = Depends(get_db)):
    """Append a batch of observations; nothing is written if any item is invalid."""
    return ObservationIds(ids=observations.append(db, request.observations))


@router.get("/observations", response_model=List[ObservationOut])
def query_observations(
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    grammar_feature: Optional[str] = None,
    performance_level: Optional[str] = None,
    limit: int = Query(observations.DEFAULT_QUERY_LIMIT, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return observations.query(
        db,
        session_id=session_id,
        user_id=user_id,
        grammar_feature=grammar_feature,
        performance_level=performance_level,
        limit=limit,
    )


@router.get("/quota", response_model=QuotaInfo)
def get_quota(user_id: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    return quota.get_quota_info(db, user_id)


@router.put("/quota/{user_id}/tier", response_model=QuotaInfo)
def update_tier(user_id: str, request: TierUpdateRequest, db: Session = Depends(get_db)):
    return quota.update_subscription_tier(db, user_id, request.tier)


@router.get("/learner/profile", response_model=LearnerProfile)
def learner_profile(user_id: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    return learner.get_learner_profile(db, user_id)


@router.post("/cron/reset-quotas", response_model=ResetResult)
def reset_quotas(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    """
    Reset weekly quotas whose window has elapsed.
    Safe to call at any time and any frequency; protected by CRON_SECRET when set.
    """
    if settings.cron_secret and authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    now = utcnow()
    return ResetResult(users_reset=quota.reset_due_quotas(db, now), timestamp=now)
