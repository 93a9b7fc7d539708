"""Request, response and context schemas for the lesson core."""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Tier = Literal["free", "plus", "pro"]
LearningMode = Literal["grammar", "translation", "mix"]
PerformanceLevel = Literal["mastered", "emerging", "struggling"]
ContextType = Literal["production", "correction_accepted", "correction_rejected", "identification"]


class ObservationCreate(BaseModel):
    """One observation as produced by the tagging layer."""
    session_id: str = Field(..., min_length=1, description="Lesson the utterance belongs to")
    user_id: Optional[str] = None
    word_id: Optional[int] = None
    grammar_feature: str = Field(..., min_length=1)
    grammar_value: str = Field(..., min_length=1)
    performance_level: PerformanceLevel
    context_type: ContextType
    student_attempt: Optional[str] = None
    correct_form: Optional[str] = None
    error_type: Optional[str] = None


class ObservationOut(ObservationCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime


class ObservationBatch(BaseModel):
    """Request schema for appending observations (all-or-nothing)."""
    observations: List[dict] = Field(..., min_length=1)


class ObservationIds(BaseModel):
    ids: List[int]


class QuotaInfo(BaseModel):
    """Snapshot of a user's weekly budget."""
    user_id: str
    tier: Tier
    message_quota: int
    messages_used: int
    messages_remaining: int
    token_quota: int
    tokens_used: int
    tokens_remaining: int
    reset_at: datetime = Field(..., description="Start of the current weekly window")
    next_reset_at: datetime


class CanSendResult(BaseModel):
    can_send: bool
    reason: Optional[Literal["messages", "tokens"]] = None


class TierUpdateRequest(BaseModel):
    tier: Tier


class StartLessonRequest(BaseModel):
    """Request schema for starting a lesson."""
    user_id: str = Field(..., min_length=1, description="User identifier")
    lesson_id: Optional[str] = Field(None, description="Caller-generated lesson id; generated when omitted")
    surah_id: Optional[int] = Field(None, description="Topic selector")
    learning_mode: LearningMode = "mix"


class LessonOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    surah_id: Optional[int] = None
    learning_mode: LearningMode
    started_at: datetime
    ended_at: Optional[datetime] = None
    messages_count: int
    tokens_used: int
    performance_summary: Optional[str] = None


class StartLessonResponse(BaseModel):
    lesson: LessonOut
    quota: QuotaInfo
    context_prompt: str


class RecordTurnRequest(BaseModel):
    token_delta: int = Field(..., ge=0, description="Tokens billed for this turn")
    message_delta: int = Field(1, ge=0, le=1, description="0 for a late token-only report")


class TurnResult(BaseModel):
    lesson_id: str
    messages_count: int
    tokens_used: int
    messages_remaining: int
    tokens_remaining: int


class LessonCounters(BaseModel):
    lesson_id: str
    user_id: str
    ended_at: datetime
    messages_count: int
    tokens_used: int


class EndLessonRequest(BaseModel):
    lesson_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class CandidateFact(BaseModel):
    """A fact proposed by one lesson's analysis, before reconciliation."""
    fact_type: Literal["struggle", "strength"]
    category: Literal["grammar", "translation"]
    grammar_feature: str
    fact_text: str
    arabic_examples: List[str] = []
    observation_total: int
    accuracy: float


class FeatureStats(BaseModel):
    category: Literal["grammar", "translation"]
    grammar_feature: str
    total: int
    successes: int

    @property
    def accuracy(self) -> float:
        return self.successes / self.total if self.total else 0.0


class MergeResult(BaseModel):
    lessons_merged: int = 0
    facts_created: int = 0
    facts_strengthened: int = 0
    facts_deactivated: int = 0


class AnalysisSummary(BaseModel):
    lesson_id: str
    user_id: Optional[str] = None
    performance_summary: str
    extracted_facts: List[CandidateFact]
    grammar_observation_count: int
    translation_observation_count: int


class EndLessonResponse(BaseModel):
    counters: LessonCounters
    analysis: Optional[AnalysisSummary] = None
    merge: Optional[MergeResult] = None


class FactView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    fact_type: Literal["struggle", "strength"]
    category: str
    grammar_feature: str
    fact_text: str
    arabic_examples: List[str] = []
    observation_count: int
    last_observed_at: datetime


class FeatureAccuracy(BaseModel):
    feature: str
    accuracy: int  # percent
    count: int


class FrequentMistake(BaseModel):
    student: str
    correct: str
    count: int


class LearnerPatterns(BaseModel):
    grammar_accuracy: int = 0  # percent
    translation_accuracy: int = 0  # percent
    weakest_grammar_features: List[FeatureAccuracy] = []
    strongest_grammar_features: List[FeatureAccuracy] = []
    frequent_mistakes: List[FrequentMistake] = []


class LastLesson(BaseModel):
    lesson_id: str
    surah_id: Optional[int] = None
    learning_mode: LearningMode = "mix"
    performance_summary: Optional[str] = None
    ended_at: Optional[datetime] = None


class LearnerContext(BaseModel):
    """Everything the prompt compiler needs about a learner."""
    user_id: Optional[str] = None
    struggles: List[FactView] = []
    strengths: List[FactView] = []
    patterns: LearnerPatterns = Field(default_factory=LearnerPatterns)
    last_lesson: Optional[LastLesson] = None


class LearnerProfile(BaseModel):
    user_id: str
    context: LearnerContext
    recommended_difficulty: int = Field(..., ge=1, le=4)
    has_history: bool
    context_prompt: str


class ResetResult(BaseModel):
    users_reset: int
    timestamp: datetime
