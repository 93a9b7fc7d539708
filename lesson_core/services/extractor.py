"""
Lesson analysis: turns one lesson's observations into a performance summary
and candidate struggle/strength facts.

Everything here is deterministic for a given set of observations, so the
reconciler can re-derive the same candidates later without storing them.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from lesson_core.core.config import settings
from lesson_core.models.records import Observation
from lesson_core.schemas.lessons import AnalysisSummary, CandidateFact, FeatureStats
from lesson_core.services import lessons, observations
from lesson_core.utils.language import extract_arabic, format_feature_name, has_arabic_script

logger = logging.getLogger(__name__)


@dataclass
class LessonAnalysis:
    """Result of analysing one lesson. Not persisted."""
    lesson_id: str
    user_id: Optional[str]
    performance_summary: str
    extracted_facts: List[CandidateFact] = field(default_factory=list)
    grammar_observations: List[Observation] = field(default_factory=list)
    translation_observations: List[Observation] = field(default_factory=list)
    feature_stats: List[FeatureStats] = field(default_factory=list)

    def summary(self) -> AnalysisSummary:
        return AnalysisSummary(
            lesson_id=self.lesson_id,
            user_id=self.user_id,
            performance_summary=self.performance_summary,
            extracted_facts=self.extracted_facts,
            grammar_observation_count=len(self.grammar_observations),
            translation_observation_count=len(self.translation_observations),
        )


def is_success(obs: Observation) -> bool:
    return obs.performance_level == "mastered" or obs.context_type == "correction_accepted"


def is_translation(obs: Observation) -> bool:
    return obs.grammar_feature in settings.translation_features


def _percent(successes: int, total: int) -> int:
    return round(100 * successes / total) if total else 0


def _preferred_form(text: Optional[str]) -> Optional[str]:
    # Arabic runs only, when the tagger wrapped them in transliteration or English
    return extract_arabic(text) if has_arabic_script(text) else text


def _example(obs: Observation, fact_type: str) -> Optional[str]:
    attempt = _preferred_form(obs.student_attempt)
    correct = _preferred_form(obs.correct_form)
    if fact_type == "struggle" and attempt and correct and attempt != correct:
        return f"{attempt} → {correct}"
    return correct or attempt


def _sample_examples(group: List[Observation], fact_type: str) -> List[str]:
    # Prefer the observations that drove the classification (misses for a struggle)
    want_success = fact_type == "strength"
    ordered = [o for o in group if is_success(o) == want_success] + [o for o in group if is_success(o) != want_success]
    examples: List[str] = []
    for obs in ordered:
        example = _example(obs, fact_type)
        if example and example not in examples:
            examples.append(example)
        if len(examples) >= settings.fact_example_limit:
            break
    return examples


def _fact_text(fact_type: str, category: str, feature: str) -> str:
    name = format_feature_name(feature)
    if category == "translation":
        return f"Needs more {name} practice" if fact_type == "struggle" else f"Reliable with {name}"
    return f"Struggles with {name}" if fact_type == "struggle" else f"Strong understanding of {name}"


def classify(stats: FeatureStats) -> Optional[str]:
    """struggle / strength / None for one feature group."""
    if stats.total < settings.fact_min_observations:
        return None
    if stats.accuracy < settings.struggle_accuracy_threshold:
        return "struggle"
    if stats.accuracy >= settings.strength_accuracy_threshold:
        return "strength"
    return None


def _group(obs_list: List[Observation]) -> Dict[str, List[Observation]]:
    groups: Dict[str, List[Observation]] = {}
    for obs in obs_list:
        groups.setdefault(obs.grammar_feature, []).append(obs)
    return groups


def _summary(grammar: List[Observation], translation: List[Observation], facts: List[CandidateFact]) -> str:
    parts = []
    grammar_ok = sum(1 for o in grammar if is_success(o))
    translation_ok = sum(1 for o in translation if is_success(o))
    if grammar:
        parts.append(f"Grammar: {grammar_ok}/{len(grammar)} ({_percent(grammar_ok, len(grammar))}%)")
    if translation:
        parts.append(
            f"Translation: {translation_ok}/{len(translation)} ({_percent(translation_ok, len(translation))}%)"
        )
    if not parts:
        return "No observations recorded."
    total = len(grammar) + len(translation)
    parts.append(f"Overall: {_percent(grammar_ok + translation_ok, total)}%")

    weak = [format_feature_name(f.grammar_feature) for f in facts if f.fact_type == "struggle"]
    strong = [format_feature_name(f.grammar_feature) for f in facts if f.fact_type == "strength"]
    if weak:
        parts.append(f"Needs work: {', '.join(weak)}")
    if strong:
        parts.append(f"Strong: {', '.join(strong)}")
    return " | ".join(parts)


def build_analysis(lesson_id: str, user_id: Optional[str], obs_list: List[Observation]) -> LessonAnalysis:
    """Pure analysis of a lesson's observations (chronological order)."""
    grammar = [o for o in obs_list if not is_translation(o)]
    translation = [o for o in obs_list if is_translation(o)]

    facts: List[CandidateFact] = []
    stats_list: List[FeatureStats] = []
    for category, subset in (("grammar", grammar), ("translation", translation)):
        for feature, group in _group(subset).items():
            stats = FeatureStats(
                category=category,
                grammar_feature=feature,
                total=len(group),
                successes=sum(1 for o in group if is_success(o)),
            )
            stats_list.append(stats)
            fact_type = classify(stats)
            logger.debug(f"[{lesson_id}] {category}/{feature}: {stats.successes}/{stats.total} -> {fact_type}")
            if fact_type is None:
                continue
            facts.append(CandidateFact(
                fact_type=fact_type,
                category=category,
                grammar_feature=feature,
                fact_text=_fact_text(fact_type, category, feature),
                arabic_examples=_sample_examples(group, fact_type),
                observation_total=stats.total,
                accuracy=stats.accuracy,
            ))

    return LessonAnalysis(
        lesson_id=lesson_id,
        user_id=user_id,
        performance_summary=_summary(grammar, translation, facts),
        extracted_facts=facts,
        grammar_observations=grammar,
        translation_observations=translation,
        feature_stats=stats_list,
    )


def analyze(db: Session, lesson_id: str, fallback_user_id: Optional[str] = None) -> Optional[LessonAnalysis]:
    """
    Analyse a lesson's observations.

    Returns None when the lesson has no observations (nothing to learn from).
    The user is taken from the observations, then fallback_user_id, then the
    lesson row; when none resolves, analysis.user_id is None and callers must
    not reconcile facts for it.
    """
    obs_list = observations.for_lesson(db, lesson_id)
    if not obs_list:
        logger.info(f"No observations for lesson {lesson_id}; nothing to analyse")
        return None

    user_id = next((o.user_id for o in obs_list if o.user_id), None) or fallback_user_id
    if not user_id:
        lesson = lessons.get_lesson(db, lesson_id)
        user_id = lesson.user_id if lesson else None
    if not user_id:
        logger.warning(f"Could not determine user for lesson {lesson_id}; facts will not be persisted")

    analysis = build_analysis(lesson_id, user_id, obs_list)
    logger.info(
        f"Lesson {lesson_id} analysed: {len(analysis.grammar_observations)} grammar, "
        f"{len(analysis.translation_observations)} translation, {len(analysis.extracted_facts)} candidate fact(s)"
    )
    return analysis
