"""
Pydantic settings for the knowledge service.

This module provides centralized configuration management with:
- Validation of tunables at startup (fail-fast)
- Type-safe access to all configuration values
- Sensible defaults for local development
- Singleton pattern for consistent access
"""

from typing import Optional

from pydantic import AliasChoices, Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Invalid thresholds or budgets raise ValidationError on first access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================
    # Database Configuration
    # ==========================================
    # Full URL wins over the postgres_* components when set.
    database_url_override: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "database_url_override"),
    )
    postgres_host: Optional[str] = None
    postgres_port: int = 5432
    postgres_db: str = "ravenloom"
    postgres_user: str = "ravenloom"
    postgres_password: str = ""

    # ==========================================
    # Remember Pipeline
    # ==========================================
    preview_ttl_seconds: int = 3600
    duplicate_similarity_threshold: float = 0.85
    update_overlap_threshold: float = 0.5
    min_extraction_confidence: float = 0.6

    # ==========================================
    # Ask / Escalation
    # ==========================================
    ask_fact_limit: int = 50
    ask_recent_fallback_limit: int = 20
    facts_used_limit: int = 5
    escalation_confidence_threshold: float = 0.5

    # ==========================================
    # Learning Objectives
    # ==========================================
    default_max_questions: int = 20
    initial_question_count: int = 3

    # ==========================================
    # Local LLM (Ollama)
    # ==========================================
    llm_model: str = "qwen3:8b"
    ollama_base_url: Optional[str] = None
    llm_temperature: float = 0.1
    llm_max_tokens: int = 2000
    llm_timeout_seconds: float = 30.0
    llm_max_retries: int = 1
    llm_transport_attempts: int = 2

    # ==========================================
    # Logging / HTTP
    # ==========================================
    log_level: str = "INFO"
    log_json: bool = True
    cors_allowed_origins: str = "*"

    # ==========================================
    # Validators
    # ==========================================
    @field_validator(
        "duplicate_similarity_threshold",
        "update_overlap_threshold",
        "min_extraction_confidence",
        "escalation_confidence_threshold",
    )
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Thresholds are ratios in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("threshold must be between 0 and 1")
        return v

    @field_validator(
        "preview_ttl_seconds",
        "default_max_questions",
        "ask_fact_limit",
        "ask_recent_fallback_limit",
        "facts_used_limit",
        "llm_transport_attempts",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("initial_question_count", "llm_max_retries")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    # ==========================================
    # Computed Properties
    # ==========================================
    @computed_field
    @property
    def database_url(self) -> str:
        """Resolve the SQLAlchemy URL: explicit URL, then Postgres, then SQLite."""
        if self.database_url_override:
            return self.database_url_override
        if self.postgres_host:
            return (
                f"postgresql://{self.postgres_user}:{self.postgres_password}"
                f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
            )
        return "sqlite:///./ravenloom.db"


# ==========================================
# Singleton Access
# ==========================================
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the singleton Settings instance.

    Returns:
        Settings: The application settings

    Raises:
        ValidationError: If settings are invalid
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """
    Reset the settings singleton (for testing purposes).
    """
    global _settings
    _settings = None
