"""
Configuration module for knowledge-search.

Uses pydantic-settings for environment-based configuration. Field names map
to upper-cased environment variables (EMBEDDING_MODEL, SEARCH_CACHE_TTL_SECONDS,
HYBRID_SEMANTIC_WEIGHT, ...).
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Feature flags:
    - semantic_search_enabled: when false every search runs in keyword mode
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===========================================
    # SERVICE CONFIGURATION
    # ===========================================
    knowledge_search_port: int = Field(default=8081, description="Service port")
    item_db_path: str = Field(
        default="knowledge.db",
        description="SQLite database holding items, FTS index and embedding records",
    )

    # ===========================================
    # EMBEDDING PROVIDER
    # ===========================================
    embedding_provider_endpoint: str = Field(
        default="https://api.openai.com/v1/embeddings",
        description="OpenAI-compatible embeddings endpoint",
    )
    embedding_api_key: str | None = Field(default=None, description="Provider API key")
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model identifier",
    )
    embedding_dimensions: int = Field(default=1536, ge=1, description="Vector size")
    embedding_batch_size: int = Field(default=16, ge=1, description="Max texts per call")
    embedding_max_batch_tokens: int = Field(
        default=8000,
        ge=1,
        description="Max estimated tokens per call",
    )
    embedding_timeout_seconds: float = Field(default=30.0, gt=0)
    embedding_deadline_seconds: float | None = Field(
        default=120.0,
        gt=0,
        description="Overall limit for one embed call, retries included (None: no limit)",
    )
    embedding_rate_limit_base_delay: float = Field(default=0.5, gt=0)
    embedding_rate_limit_max_delay: float = Field(default=30.0, gt=0)
    embedding_rate_limit_max_retries: int = Field(default=5, ge=0)
    embedding_transient_max_retries: int = Field(default=3, ge=0)
    text_max_chars: int = Field(default=32_000, ge=1)

    # ===========================================
    # VECTOR STORE
    # ===========================================
    vector_backend: Literal["qdrant", "memory"] = Field(default="qdrant")
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant REST API URL",
    )
    qdrant_api_key: str | None = Field(default=None)
    qdrant_collection: str = Field(default="knowledge_items")

    # ===========================================
    # SEARCH
    # ===========================================
    semantic_search_enabled: bool = Field(
        default=True,
        description="Disable to force keyword-only search",
    )
    semantic_min_similarity: float = Field(default=0.5, ge=0.0, le=1.0)
    hybrid_semantic_weight: float = Field(default=0.6)
    hybrid_keyword_weight: float = Field(default=0.4)
    search_cache_ttl_seconds: float = Field(default=300.0, gt=0)
    search_cache_max_entries: int = Field(default=1000, ge=1)
    search_timeout_seconds: float = Field(default=10.0, gt=0)
    snippet_max_chars: int = Field(default=200, ge=20)

    # ===========================================
    # BACKFILL
    # ===========================================
    backfill_batch_size: int = Field(default=5, ge=1)
    backfill_inter_batch_delay_ms: int = Field(default=2000, ge=0)

    @field_validator("hybrid_semantic_weight", "hybrid_keyword_weight")
    @classmethod
    def validate_weight(cls, v: float) -> float:
        """Merge weights scale [0, 1] scores and must stay in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            msg = f"Hybrid weights must be within [0, 1], got {v}"
            raise ValueError(msg)
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
