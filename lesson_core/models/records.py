"""Database models for quotas, lessons, observations and learner facts."""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text, JSON, Index
from sqlalchemy.orm import declarative_base

from lesson_core.utils.clock import utcnow

Base = declarative_base()

TIERS = ("free", "plus", "pro")
LEARNING_MODES = ("grammar", "translation", "mix")
PERFORMANCE_LEVELS = ("mastered", "emerging", "struggling")
CONTEXT_TYPES = ("production", "correction_accepted", "correction_rejected", "identification")
FACT_TYPES = ("struggle", "strength")


class QuotaRecord(Base):
    """Weekly message/token budget per user. Mutated by the quota service only."""
    __tablename__ = "profiles"

    user_id = Column(String, primary_key=True, index=True)
    email = Column(String, nullable=True)
    tier = Column(String, default="free", nullable=False)
    weekly_message_quota = Column(Integer, nullable=False)
    weekly_messages_used = Column(Integer, default=0, nullable=False)
    weekly_token_quota = Column(Integer, nullable=False)
    weekly_tokens_used = Column(Integer, default=0, nullable=False)
    # Start of the current weekly window; next reset is due 7 days later
    reset_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Lesson(Base):
    """Tutoring session. Active while ended_at is null."""
    __tablename__ = "lessons"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    surah_id = Column(Integer, nullable=True)
    learning_mode = Column(String, default="mix", nullable=False)
    started_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    ended_at = Column(DateTime, nullable=True)
    # Analytics mirror of the quota counters (quota service is authoritative)
    messages_count = Column(Integer, default=0, nullable=False)
    tokens_used = Column(Integer, default=0, nullable=False)
    performance_summary = Column(Text, nullable=True)
    # Set once this lesson's candidate facts were merged into learner_facts
    facts_merged_at = Column(DateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


class Observation(Base):
    """One grammar/translation observation about a learner utterance. Append-only."""
    __tablename__ = "observations"

    id = Column(Integer, primary_key=True, index=True)
    # No FK: observations may arrive for lessons the store has not seen
    session_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    word_id = Column(Integer, nullable=True)
    grammar_feature = Column(String, nullable=False, index=True)
    grammar_value = Column(String, nullable=False)
    performance_level = Column(String, nullable=False)
    context_type = Column(String, nullable=False)
    student_attempt = Column(Text, nullable=True)
    correct_form = Column(Text, nullable=True)
    error_type = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class LearnerFact(Base):
    """Long-lived struggle/strength fact about a learner. Deactivated, never deleted."""
    __tablename__ = "learner_facts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    fact_type = Column(String, nullable=False)  # struggle | strength
    category = Column(String, nullable=False)  # grammar | translation
    grammar_feature = Column(String, nullable=False)
    fact_text = Column(Text, nullable=False)
    arabic_examples = Column(JSON, default=list, nullable=False)
    observation_count = Column(Integer, default=1, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    source_lesson_id = Column(String, nullable=True)
    first_observed_at = Column(DateTime, default=utcnow, nullable=False)
    last_observed_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_learner_facts_key", "user_id", "fact_type", "category", "grammar_feature", "active"),
    )
