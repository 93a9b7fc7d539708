"""Application configuration using Pydantic settings."""
import os
from pydantic import Field
from pydantic_settings import BaseSettings
from typing import List, Literal, Optional


def _default_cache_enabled() -> bool:
    """In prod default to True when CACHE_ENABLED not set; in dev default False."""
    if os.getenv("CACHE_ENABLED") is not None:
        return os.getenv("CACHE_ENABLED", "").lower() in ("1", "true")
    return os.getenv("APP_ENV", "dev").lower() == "prod"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: Literal["dev", "prod"] = Field(default="dev", description="APP_ENV: dev or prod")

    # Database
    database_url: str = "sqlite:///./data/lesson_core.db"

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Cache (learner profile payloads). Prod defaults True when CACHE_ENABLED not set.
    cache_enabled: bool = Field(default_factory=_default_cache_enabled, description="CACHE_ENABLED")
    learner_profile_cache_ttl: int = 300  # 5 minutes; invalidated on lesson end anyway

    # Application
    app_name: str = "Lesson Quota & Learner Facts Service"
    app_version: str = "1.0.0"
    debug: bool = False

    # Shared secret for POST /cron/reset-quotas (Bearer token). None disables the check.
    cron_secret: Optional[str] = None

    # Quotas
    default_tier: Literal["free", "plus", "pro"] = "free"

    # Fact extraction
    fact_min_observations: int = 3  # Fewer observations per group is not evidence
    struggle_accuracy_threshold: float = 0.5  # accuracy < this -> struggle
    strength_accuracy_threshold: float = 0.8  # accuracy >= this -> strength
    fact_example_limit: int = 3  # Examples sampled per candidate fact
    fact_examples_cap: int = 5  # Examples kept on a stored fact after merging
    # Strength decay policy hook: deactivate a strength when a lesson shows accuracy
    # below this over >= fact_min_observations. None keeps strengths until removed by hand.
    strength_regression_threshold: Optional[float] = None
    # grammar_feature values logged by the translation exercises (env: JSON list)
    translation_features: List[str] = ["translation", "vocabulary"]

    # Learner context
    grammar_pattern_window: int = 500  # Last N grammar observations for pattern analysis
    translation_pattern_window: int = 200
    prompt_max_struggles: int = 5
    prompt_max_strengths: int = 5

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore"  # Ignore extra environment variables
    }


settings = Settings()
