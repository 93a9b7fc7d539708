"""Merge lesson candidates into a learner's long-lived fact set."""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from lesson_core.core.config import settings
from lesson_core.database import transaction
from lesson_core.models.records import LearnerFact, Lesson
from lesson_core.schemas.lessons import MergeResult
from lesson_core.services import observations
from lesson_core.services.extractor import LessonAnalysis, build_analysis
from lesson_core.utils.clock import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

FactKey = Tuple[str, str, str]  # (fact_type, category, grammar_feature)


def _active_facts(db: Session, user_id: str) -> Dict[FactKey, LearnerFact]:
    facts = db.execute(
        select(LearnerFact)
        .where(LearnerFact.user_id == user_id, LearnerFact.active.is_(True))
        .order_by(LearnerFact.observation_count.asc())
    ).scalars()
    # Highest observation_count wins when duplicates exist
    return {(f.fact_type, f.category, f.grammar_feature): f for f in facts}


def _merge_examples(existing: Optional[List[str]], new: List[str]) -> List[str]:
    merged = list(existing or [])
    for example in new:
        if example not in merged:
            merged.append(example)
    return merged[: settings.fact_examples_cap]


def _apply(db: Session, user_id: str, analysis: LessonAnalysis, now: datetime, result: MergeResult) -> None:
    facts = _active_facts(db, user_id)

    for candidate in analysis.extracted_facts:
        key = (candidate.fact_type, candidate.category, candidate.grammar_feature)
        existing = facts.get(key)
        if existing is not None:
            # In-database increment; another lesson may be merging concurrently
            existing.observation_count = LearnerFact.observation_count + 1
            existing.arabic_examples = _merge_examples(existing.arabic_examples, candidate.arabic_examples)
            existing.last_observed_at = now
            existing.source_lesson_id = analysis.lesson_id
            result.facts_strengthened += 1
            continue
        fact = LearnerFact(
            user_id=user_id,
            fact_type=candidate.fact_type,
            category=candidate.category,
            grammar_feature=candidate.grammar_feature,
            fact_text=candidate.fact_text,
            arabic_examples=list(candidate.arabic_examples),
            observation_count=1,
            active=True,
            source_lesson_id=analysis.lesson_id,
            first_observed_at=now,
            last_observed_at=now,
        )
        db.add(fact)
        facts[key] = fact
        result.facts_created += 1

    min_obs = settings.fact_min_observations
    regression = settings.strength_regression_threshold
    for stats in analysis.feature_stats:
        if stats.total < min_obs:
            continue
        if stats.accuracy >= settings.strength_accuracy_threshold:
            struggle = facts.get(("struggle", stats.category, stats.grammar_feature))
            if struggle is not None and struggle.active:
                struggle.active = False
                result.facts_deactivated += 1
                logger.info(f"Deactivated struggle '{struggle.fact_text}' for user {user_id}: learner improved")
        elif regression is not None and stats.accuracy < regression:
            strength = facts.get(("strength", stats.category, stats.grammar_feature))
            if strength is not None and strength.active:
                strength.active = False
                result.facts_deactivated += 1
                logger.info(f"Deactivated strength '{strength.fact_text}' for user {user_id}: regression")


def merge(db: Session, user_id: str, now: Optional[datetime] = None) -> MergeResult:
    """
    Fold every ended, not-yet-merged lesson of the user into their fact set, oldest first.

    Each lesson is claimed with a conditional UPDATE on facts_merged_at in the same
    transaction that applies its facts, so repeated or concurrent calls merge a
    lesson exactly once. A call with no newly ended lesson changes nothing.
    """
    now = to_naive_utc(now) if now is not None else utcnow()
    result = MergeResult()
    pending = db.execute(
        select(Lesson.id)
        .where(Lesson.user_id == user_id, Lesson.ended_at.is_not(None), Lesson.facts_merged_at.is_(None))
        .order_by(Lesson.ended_at.asc())
    ).scalars().all()

    for lesson_id in pending:
        analysis = build_analysis(lesson_id, user_id, observations.for_lesson(db, lesson_id))
        with transaction(db):
            claim = db.execute(
                update(Lesson)
                .where(Lesson.id == lesson_id, Lesson.facts_merged_at.is_(None))
                .values(facts_merged_at=now)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 0:
                logger.debug(f"Lesson {lesson_id} already merged elsewhere")
                continue
            _apply(db, user_id, analysis, now, result)
            result.lessons_merged += 1

    if result.lessons_merged:
        logger.info(
            f"Merged {result.lessons_merged} lesson(s) for user {user_id}: "
            f"{result.facts_created} created, {result.facts_strengthened} strengthened, "
            f"{result.facts_deactivated} deactivated"
        )
    return result
