"""
Configuration Module
====================

Application settings and configuration management using Pydantic.

Learning thresholds defined here are defaults; the YAML learning policy
(see learning.infrastructure.external.LearningConfigManager) overrides
them at runtime without a restart.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="kb-learning", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/tickets",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Learning Policy ==========
    learning_config_path: Path = Field(
        default=Path("learning_config.yaml"),
        description="Path to the learning policy YAML file (hot-reloaded)"
    )
    min_cluster_size: int = Field(default=2, description="Smallest pattern worth an article", ge=1)
    similarity_threshold: float = Field(
        default=0.8,
        description="Cosine similarity at which two tickets join a cluster",
        ge=0.0,
        le=1.0
    )
    publish_threshold: float = Field(
        default=0.75,
        description="Generated effectiveness estimate needed to auto-publish",
        ge=0.0,
        le=1.0
    )
    auto_publish_enabled: bool = Field(default=True, description="Publish confident articles without review")
    learning_lookback_days: int = Field(
        default=30,
        description="Resolved peers (days back) clustered together with queued tickets",
        ge=0
    )

    # ========== Auto-Response Gate ==========
    auto_response_high_threshold: float = Field(default=0.85, description="t_high: auto band", ge=0.0, le=1.0)
    auto_response_medium_threshold: float = Field(default=0.6, description="t_med: suggest band", ge=0.0, le=1.0)
    auto_response_enabled: bool = Field(default=False, description="Send auto-band responses automatically")

    # ========== Synthesis / Retry ==========
    synthesis_timeout_seconds: float = Field(default=30.0, description="Generation call timeout", gt=0)
    retry_max_attempts: int = Field(default=3, description="Attempts per generation call", ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, description="Backoff base delay", ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, description="Backoff delay cap", ge=0)
    retry_jitter: float = Field(default=0.5, description="Jitter fraction applied to backoff", ge=0, le=1)
    queue_retry_limit: int = Field(default=3, description="Queue attempts before terminal failure", ge=1)

    # ========== Worker / Scheduler ==========
    worker_enabled: bool = Field(default=True, description="Run the learning worker in-process")
    worker_interval_seconds: int = Field(default=60, description="Seconds between queue drains", ge=1)
    worker_batch_size: int = Field(default=20, description="Queue items claimed per drain", ge=1)
    worker_concurrency: int = Field(default=1, description="Parallel synthesis calls", ge=1)
    scoring_interval_seconds: int = Field(default=3600, description="Seconds between effectiveness runs", ge=1)

    # ========== Retrieval ==========
    search_similarity_floor: float = Field(default=0.3, description="Minimum similarity returned", ge=0.0, le=1.0)
    search_timeout_seconds: float = Field(default=5.0, description="Query embedding timeout", gt=0)
    search_default_limit: int = Field(default=5, description="Default number of search results", ge=1, le=50)

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for learning failure alerts"
    )
    slack_channel: str = Field(
        default="#kb-learning-alerts",
        description="Slack channel for learning alerts"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )

    # ========== LLM Providers ==========
    llm_provider: str = Field(default="zai", description="Generation provider: zai, openai or mock")
    zai_api_key: Optional[str] = Field(default=None, description="Z.AI API key for GLM 4.7")
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    mock_llm: bool = Field(
        default=False,
        description="Use mock LLM responses for testing (no API calls)"
    )
    llm_model: str = Field(default="glm-4.7", description="Model for article generation")
    embedding_model: str = Field(default="embedding-2", description="Embedding model")
    llm_temperature: float = Field(default=0.3, description="Default temperature for LLM", ge=0.0, le=1.0)
    llm_max_tokens: int = Field(default=2000, description="Max tokens for article generation", ge=1, le=8000)

    # ========== Zilliz Cloud (Managed Milvus) ==========
    zilliz_uri: str = Field(default="", description="Zilliz Cloud cluster URI")
    zilliz_api_key: str = Field(default="", description="Zilliz Cloud API key")
    milvus_collection_name: str = Field(default="knowledge_articles", description="Milvus collection name")
    embedding_dimension: int = Field(default=1024, description="Embedding vector dimension", ge=16)

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(default=None, description="Grafana OTLP gateway URL")
    grafana_api_key: Optional[str] = Field(default=None, description="Grafana API key for OTLP authentication")
    grafana_instance_id: Optional[str] = Field(default=None, description="Grafana instance ID for OTLP authentication")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("llm_provider")
    @classmethod
    def validate_llm_provider(cls, v: str) -> str:
        allowed = {"zai", "openai", "mock"}
        if v not in allowed:
            raise ValueError(f"llm_provider must be one of {allowed}")
        return v

    @model_validator(mode="after")
    def validate_gate_thresholds(self) -> "Settings":
        """t_med must not exceed t_high."""
        if self.auto_response_medium_threshold > self.auto_response_high_threshold:
            raise ValueError("auto_response_medium_threshold cannot exceed auto_response_high_threshold")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class QueueStatus(str):
    """Learning queue item statuses."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ArticleStatus(str):
    """Knowledge article lifecycle statuses."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class ArticleSource(str):
    """Where a knowledge article came from."""
    MANUAL = "manual"
    AI_GENERATED = "ai_generated"


class ConfidenceBand(str):
    """Auto-response confidence bands."""
    AUTO = "auto"
    SUGGEST = "suggest"
    NONE = "none"


class TicketStatus(str):
    """Ticket statuses the learning pipeline reads."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class FailureKind(str):
    """Synthesis failure kinds recorded for review."""
    MALFORMED_OUTPUT = "malformed_output"
    TRANSIENT_PROVIDER = "transient_provider"


# ========== Lists for validation ==========

VALID_QUEUE_STATUSES = [
    QueueStatus.PENDING, QueueStatus.PROCESSING,
    QueueStatus.COMPLETED, QueueStatus.FAILED
]
TERMINAL_QUEUE_STATUSES = [QueueStatus.COMPLETED, QueueStatus.FAILED]
ACTIVE_QUEUE_STATUSES = [QueueStatus.PENDING, QueueStatus.PROCESSING]
VALID_ARTICLE_STATUSES = [ArticleStatus.DRAFT, ArticleStatus.PUBLISHED, ArticleStatus.ARCHIVED]
VALID_ARTICLE_SOURCES = [ArticleSource.MANUAL, ArticleSource.AI_GENERATED]
VALID_CONFIDENCE_BANDS = [ConfidenceBand.AUTO, ConfidenceBand.SUGGEST, ConfidenceBand.NONE]
RESOLVED_TICKET_STATUSES = [TicketStatus.RESOLVED, TicketStatus.CLOSED]
