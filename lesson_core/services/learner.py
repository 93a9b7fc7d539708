"""
Learner-facing orchestration: lesson start/end flows and the learner profile.

Combines the quota, lesson, observation and fact services; holds no state of
its own apart from the optional profile cache.
"""
import logging
from collections import Counter
from typing import Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from lesson_core.core.config import settings
from lesson_core.core.errors import NotFound, QuotaExceeded
from lesson_core.core.prompts import build_context_prompt, recommend_difficulty
from lesson_core.models.records import LearnerFact, Lesson, Observation
from lesson_core.schemas.lessons import (
    EndLessonResponse,
    FactView,
    FeatureAccuracy,
    FrequentMistake,
    LastLesson,
    LearnerContext,
    LearnerPatterns,
    LearnerProfile,
    LessonOut,
    StartLessonResponse,
)
from lesson_core.services import cache, extractor, lessons, observations, quota, reconciler
from lesson_core.utils.language import format_feature_name

logger = logging.getLogger(__name__)

PATTERN_MIN_OBSERVATIONS = 3
PATTERN_TOP_FEATURES = 3
PATTERN_TOP_MISTAKES = 5


def _profile_cache_key(user_id: str) -> str:
    return f"learner_profile:{user_id}"


def _percent(obs_list: List[Observation]) -> int:
    if not obs_list:
        return 0
    return round(100 * sum(1 for o in obs_list if extractor.is_success(o)) / len(obs_list))


def _patterns(db: Session, user_id: str) -> LearnerPatterns:
    grammar = observations.for_user(
        db, user_id, settings.translation_features, include=False, limit=settings.grammar_pattern_window
    )
    translation = observations.for_user(
        db, user_id, settings.translation_features, include=True, limit=settings.translation_pattern_window
    )

    by_feature: Dict[str, List[Observation]] = {}
    mistakes: Counter = Counter()
    for obs in grammar:
        by_feature.setdefault(obs.grammar_feature, []).append(obs)
        if not extractor.is_success(obs) and obs.student_attempt and obs.correct_form:
            mistakes[(obs.student_attempt, obs.correct_form)] += 1

    accuracies = sorted(
        (
            FeatureAccuracy(feature=format_feature_name(feature), accuracy=_percent(group), count=len(group))
            for feature, group in by_feature.items()
            if len(group) >= PATTERN_MIN_OBSERVATIONS
        ),
        key=lambda f: f.accuracy,
    )
    return LearnerPatterns(
        grammar_accuracy=_percent(grammar),
        translation_accuracy=_percent(translation),
        weakest_grammar_features=accuracies[:PATTERN_TOP_FEATURES],
        strongest_grammar_features=list(reversed(accuracies[-PATTERN_TOP_FEATURES:])),
        frequent_mistakes=[
            FrequentMistake(student=student, correct=correct, count=count)
            for (student, correct), count in mistakes.most_common(PATTERN_TOP_MISTAKES)
        ],
    )


def _last_lesson(db: Session, user_id: str) -> Optional[LastLesson]:
    lesson = db.execute(
        select(Lesson).where(Lesson.user_id == user_id).order_by(Lesson.started_at.desc()).limit(1)
    ).scalar_one_or_none()
    if lesson is None:
        return None
    return LastLesson(
        lesson_id=lesson.id,
        surah_id=lesson.surah_id,
        learning_mode=lesson.learning_mode,
        performance_summary=lesson.performance_summary,
        ended_at=lesson.ended_at,
    )


def load_learner_context(db: Session, user_id: str) -> LearnerContext:
    """Active facts, last lesson and aggregated observation patterns for one user."""
    facts = db.execute(
        select(LearnerFact)
        .where(LearnerFact.user_id == user_id, LearnerFact.active.is_(True))
        .order_by(LearnerFact.observation_count.desc(), LearnerFact.id.asc())
    ).scalars().all()
    views = [FactView.model_validate(f) for f in facts]
    return LearnerContext(
        user_id=user_id,
        struggles=[f for f in views if f.fact_type == "struggle"],
        strengths=[f for f in views if f.fact_type == "strength"],
        patterns=_patterns(db, user_id),
        last_lesson=_last_lesson(db, user_id),
    )


def get_learner_profile(db: Session, user_id: str) -> LearnerProfile:
    """Learner profile with context prompt and recommended difficulty (cached when enabled)."""
    cached = cache.get_json(_profile_cache_key(user_id))
    if cached:
        logger.debug(f"Learner profile cache hit for {user_id}")
        return LearnerProfile.model_validate(cached)

    context = load_learner_context(db, user_id)
    profile = LearnerProfile(
        user_id=user_id,
        context=context,
        recommended_difficulty=recommend_difficulty(context),
        has_history=bool(context.struggles or context.strengths or context.last_lesson),
        context_prompt=build_context_prompt(context),
    )
    cache.set_json(_profile_cache_key(user_id), profile.model_dump(mode="json"), settings.learner_profile_cache_ttl)
    return profile


def start_lesson(
    db: Session,
    user_id: str,
    surah_id: Optional[int] = None,
    learning_mode: str = "mix",
    lesson_id: Optional[str] = None,
) -> Union[StartLessonResponse, QuotaExceeded]:
    """Quota gate, create the lesson, and hand back the personalised context prompt."""
    lesson = lessons.create(db, user_id, surah_id=surah_id, learning_mode=learning_mode, lesson_id=lesson_id)
    if isinstance(lesson, QuotaExceeded):
        return lesson
    lesson_out = LessonOut.model_validate(lesson)
    context = load_learner_context(db, user_id)
    return StartLessonResponse(
        lesson=lesson_out,
        quota=quota.get_quota_info(db, user_id),
        context_prompt=build_context_prompt(context),
    )


def end_lesson(db: Session, lesson_id: str, user_id: Optional[str] = None) -> Union[EndLessonResponse, NotFound]:
    """
    End a lesson, analyse its observations and merge the resulting facts.

    Safe to call repeatedly: the lesson end is idempotent and the merge only
    consumes lessons it has not merged before.
    """
    counters = lessons.end(db, lesson_id)
    if isinstance(counters, NotFound):
        return counters

    analysis = extractor.analyze(db, lesson_id, fallback_user_id=user_id or counters.user_id)
    if analysis is None:
        lessons.set_performance_summary(db, lesson_id, "No observations recorded.")
        merge = reconciler.merge(db, counters.user_id)
        cache.delete(_profile_cache_key(counters.user_id))
        return EndLessonResponse(counters=counters, merge=merge)

    lessons.set_performance_summary(db, lesson_id, analysis.performance_summary)
    merge = None
    if analysis.user_id:
        merge = reconciler.merge(db, analysis.user_id)
        cache.delete(_profile_cache_key(analysis.user_id))
    return EndLessonResponse(counters=counters, analysis=analysis.summary(), merge=merge)
