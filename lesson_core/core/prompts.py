"""Learner context rendering for the tutoring model's system prompt."""
from typing import List

from lesson_core.core.config import settings
from lesson_core.schemas.lessons import FactView, LearnerContext

NEW_LEARNER_PROMPT = "NEW LEARNER: No previous history. Start with basics and gauge their level."

# Average accuracy (percent) -> starting difficulty, checked top-down
DIFFICULTY_THRESHOLDS = [(80, 4), (60, 3), (40, 2)]


def _top(facts: List[FactView], limit: int) -> List[FactView]:
    # Stable sort keeps the loader's order among equal counts
    return sorted(facts, key=lambda f: f.observation_count, reverse=True)[:limit]


def _fact_line(fact: FactView, with_examples: bool) -> str:
    line = f"- {fact.fact_text}"
    if with_examples and fact.arabic_examples:
        line += f" (e.g., {', '.join(fact.arabic_examples[:2])})"
    return line


def build_context_prompt(context: LearnerContext) -> str:
    """
    Render the learner context as plain text for the tutoring model.

    Pure and deterministic: the same context always yields the same text. A
    learner with no history gets a fixed NEW LEARNER line.
    """
    sections = []

    last = context.last_lesson
    if last:
        summary = last.performance_summary or ("in progress" if last.ended_at is None else "no observations recorded")
        info = [f"Last lesson ({last.learning_mode}): {summary}"]
        if last.surah_id is not None:
            info.append(f"Surah: {last.surah_id}")
        sections.append("PREVIOUS SESSION:\n" + "\n".join(info))

    struggles = _top(context.struggles, settings.prompt_max_struggles)
    if struggles:
        lines = "\n".join(_fact_line(f, with_examples=True) for f in struggles)
        sections.append(f"LEARNER STRUGGLES (address carefully):\n{lines}")

    strengths = _top(context.strengths, settings.prompt_max_strengths)
    if strengths:
        lines = "\n".join(_fact_line(f, with_examples=False) for f in strengths)
        sections.append(f"LEARNER STRENGTHS (can build on):\n{lines}")

    patterns = context.patterns
    pattern_info = []
    if patterns.grammar_accuracy > 0:
        pattern_info.append(f"Grammar accuracy: {patterns.grammar_accuracy}%")
    if patterns.translation_accuracy > 0:
        pattern_info.append(f"Translation accuracy: {patterns.translation_accuracy}%")
    if patterns.weakest_grammar_features:
        weak = ", ".join(f"{f.feature} ({f.accuracy}%)" for f in patterns.weakest_grammar_features)
        pattern_info.append(f"Weak areas: {weak}")
    if patterns.frequent_mistakes:
        mistakes = ", ".join(f'"{m.student}" → "{m.correct}"' for m in patterns.frequent_mistakes[:3])
        pattern_info.append(f"Common confusions: {mistakes}")
    if pattern_info:
        sections.append("PERFORMANCE PATTERNS:\n" + "\n".join(pattern_info))

    if not sections:
        return NEW_LEARNER_PROMPT
    return "\n\n".join(sections)


def recommend_difficulty(context: LearnerContext) -> int:
    """Starting difficulty 1 (basic) .. 4 (advanced); one lower with 3+ active struggles."""
    average = (context.patterns.grammar_accuracy + context.patterns.translation_accuracy) / 2
    difficulty = 1
    for threshold, level in DIFFICULTY_THRESHOLDS:
        if average >= threshold:
            difficulty = level
            break
    if len(context.struggles) >= 3:
        difficulty = max(1, difficulty - 1)
    return difficulty
