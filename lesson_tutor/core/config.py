"""
Configuration Management using Pydantic Settings
Loads configuration from environment variables with validation

Per-session numeric targets are resolved once into a frozen
SessionTargets value object and passed through the controller.
"""
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )
    
    # Application
    app_name: str = Field(default="Lesson Tutor", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Environment: development, staging, production")
    
    # API Settings
    api_v1_prefix: str = Field(default="/api/v1", description="API version 1 prefix")
    api_key: Optional[str] = Field(default=None, description="API Key for authentication")
    rate_limit_requests: int = Field(default=100, description="Max requests per window")
    rate_limit_window_seconds: int = Field(default=60, description="Rate limit window in seconds")
    message_rate_limit: str = Field(default="30/minute", description="Rate limit for learner message endpoint")
    cors_origins: list[str] = Field(default=["*"], description="CORS allowed origins")
    
    # Dialogue service (language model behind HTTP)
    dialogue_backend: str = Field(default="http", description="Dialogue backend: http or gemini")
    dialogue_base_url: str = Field(default="http://localhost:3000", description="Dialogue service base URL")
    dialogue_route: str = Field(default="/api/sonoma", description="Dialogue service route")
    dialogue_timeout_seconds: float = Field(default=45.0, description="Per-call timeout ceiling")
    dialogue_retry_delays: list[float] = Field(
        default=[0.9, 1.2],
        description="Backoff delays for 'route not ready' retries",
    )
    
    # Speech synthesis
    speech_url: Optional[str] = Field(default=None, description="Speech synthesis endpoint (None = caption-only)")
    speech_timeout_seconds: float = Field(default=20.0, description="Speech synthesis timeout")
    speech_cache_size: int = Field(default=10, description="Synthesized lines kept in the speech cache")
    
    # LLM Settings - Google Gemini (in-process dialogue backend)
    google_api_key: Optional[str] = Field(default=None, description="Google Gemini API key")
    google_model: str = Field(default="gemini-2.5-flash", description="Google Gemini model")
    llm_temperature: float = Field(default=0.7, description="Temperature for tutor replies")
    
    # Session defaults
    default_subject: str = Field(default="math", description="Subject that mixes every question category")
    comprehension_target: int = Field(default=3, description="Correct answers to finish comprehension")
    exercise_target: int = Field(default=5, description="Correct answers to finish exercise")
    worksheet_length: int = Field(default=10, description="Number of worksheet items")
    test_length: int = Field(default=10, description="Number of test items")
    review_strategy: str = Field(default="full", description="Test review strategy: full or per_item")
    
    # Pacing
    words_per_second: float = Field(default=3.6, description="Narration rate for unknown audio duration")
    caption_min_seconds: float = Field(default=0.6, description="Minimum caption dwell per sentence")
    awaiting_lock_seconds: float = Field(default=0.8, description="Window that suppresses stale replies after a skip")
    
    # Content
    lesson_content_dir: str = Field(default="lessons", description="Directory holding lesson JSON files")
    
    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")
    
    @property
    def dialogue_url(self) -> str:
        """Full dialogue endpoint URL."""
        return self.dialogue_base_url.rstrip("/") + "/" + self.dialogue_route.lstrip("/")
    
    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v
    
    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()
    
    @field_validator("review_strategy")
    @classmethod
    def validate_review_strategy(cls, v: str) -> str:
        allowed = ["full", "per_item"]
        if v not in allowed:
            raise ValueError(f"review_strategy must be one of {allowed}")
        return v
    
    @field_validator("dialogue_backend")
    @classmethod
    def validate_dialogue_backend(cls, v: str) -> str:
        allowed = ["http", "gemini"]
        if v not in allowed:
            raise ValueError(f"dialogue_backend must be one of {allowed}")
        return v
    
    @field_validator("comprehension_target", "exercise_target", "worksheet_length", "test_length")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("targets must be at least 1")
        return v
    
    @field_validator("dialogue_retry_delays")
    @classmethod
    def validate_retry_delays(cls, v: list[float]) -> list[float]:
        if not v or any(d < 0 for d in v):
            raise ValueError("dialogue_retry_delays must be a non-empty list of non-negative delays")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Export settings instance for convenience
settings = get_settings()


@dataclass(frozen=True)
class SessionTargets:
    """
    Numeric targets for one learner session.
    
    Resolved once at session start and shared by reference with every
    component that needs a count, so nothing reads targets from globals
    mid-session.
    """
    comprehension: int
    exercise: int
    worksheet: int
    test: int
    review_strategy: str = "full"
    
    @classmethod
    def resolve(
        cls,
        source: Optional[Settings] = None,
        comprehension: Optional[int] = None,
        exercise: Optional[int] = None,
        worksheet: Optional[int] = None,
        test: Optional[int] = None,
    ) -> "SessionTargets":
        """
        Build targets from settings plus optional per-learner overrides.
        
        Overrides below 1 are ignored.
        """
        cfg = source or settings
        base = cls(
            comprehension=cfg.comprehension_target,
            exercise=cfg.exercise_target,
            worksheet=cfg.worksheet_length,
            test=cfg.test_length,
            review_strategy=cfg.review_strategy,
        )
        overrides = {
            name: value
            for name, value in (
                ("comprehension", comprehension),
                ("exercise", exercise),
                ("worksheet", worksheet),
                ("test", test),
            )
            if value is not None and value >= 1
        }
        return replace(base, **overrides) if overrides else base
