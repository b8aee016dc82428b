"""Application settings for the Villy retrieval and reranking core."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StructuredQuerySettings(BaseSettings):
    """Structured query generator (SQG) settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_SQG_",
        case_sensitive=False,
        extra="ignore",
    )

    model: str = "gpt-4o-mini"
    temperature: float = 0.1
    ttl_ms: int = Field(default=10 * 60 * 1000, ge=0)
    cache_max: int = Field(default=300, ge=1)


class CrossEncoderSettings(BaseSettings):
    """Local cross-encoder reranker settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_CROSS_ENCODER_",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    max_length: int = 512
    device: str = "cpu"

    high_conf: float = 0.85
    low_conf: float = 0.22
    max_candidates: int = Field(default=24, ge=1)
    min_sim: float = 0.15
    top_n: int = Field(default=8, ge=1)
    blend: float = Field(default=0.7, ge=0.0, le=1.0)
    snippet_max_len: int = 400

    ttl_ms: int = Field(default=10 * 60 * 1000, ge=0)
    cache_max: int = Field(default=500, ge=1)


class LLMRerankSettings(BaseSettings):
    """Remote LLM reranker settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_RERANK_",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
        protected_namespaces=(),
    )

    model: str = "gpt-4o-mini"
    model_strong: str = "gpt-4o"
    # Confidence below low_conf + strong_margin escalates to the strong model
    strong_margin: float = 0.1

    high_conf: float = 0.85
    # Older deployments set the floor through CHAT_CONF_THRESHOLD
    low_conf: float = Field(
        default=0.22, validation_alias=AliasChoices("CHAT_RERANK_LOW_CONF", "CHAT_CONF_THRESHOLD")
    )
    max_candidates: int = Field(default=24, ge=1)
    min_vec: float = 0.0
    min_lex: float = 0.0
    top_n: int = Field(default=8, ge=1)
    blend: float = Field(default=0.7, ge=0.0, le=1.0)
    snippet_max_len: int = 1200

    ttl_ms: int = Field(default=60 * 60 * 1000, ge=0)
    cache_max: int = Field(default=200, ge=1)


class Settings(BaseSettings):
    """Top-level settings; each stage reads its own env prefix."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False

    # Which reranking strategy the pipeline runs for legal questions
    reranker: Literal["cross_encoder", "llm", "none"] = "cross_encoder"
    performance_logging: bool = False
    normalize_questions: bool = True

    sqg: StructuredQuerySettings = Field(default_factory=StructuredQuerySettings)
    cross_encoder: CrossEncoderSettings = Field(default_factory=CrossEncoderSettings)
    llm_rerank: LLMRerankSettings = Field(default_factory=LLMRerankSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v):
        """Accept lowercase log levels from the environment."""
        return v.upper() if isinstance(v, str) else v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
