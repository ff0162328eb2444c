"""Configuration management for the Insight Engine."""

from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")
    SUPABASE_TIMEOUT_SECONDS: int = Field(
        default=30, description="Timeout for PostgREST calls in seconds"
    )

    # OpenAI configuration (required)
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key")
    OPENAI_TIMEOUT_SECONDS: float = Field(default=60.0, description="OpenAI request timeout")
    OPENAI_MAX_RETRIES: int = Field(
        default=2, description="SDK retries for rate limits and 5xx responses"
    )

    # Environment
    INSIGHT_ENGINE_ENV: str = Field(
        default="dev", description="Environment: dev, staging, prod, test"
    )
    LOG_LEVEL: str | None = Field(
        default=None, description="Overrides the environment's default log level"
    )

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")

    # Chat model used for concept extraction, auto-tagging and topic generation
    CHAT_MODEL: str = Field(default="gpt-5-mini", description="Model for JSON chat calls")

    # Clustering configuration
    CLUSTER_UNIQUE_MATCH_THRESHOLD: float = Field(
        default=0.90, description="Min similarity to suggest merging into a unique insight"
    )
    CLUSTER_NEIGHBOR_THRESHOLD: float = Field(
        default=0.90, description="Min similarity for raw insights to share a cluster"
    )
    CLUSTER_MAX_MATCHES: int = Field(
        default=20, description="Max raw-insight neighbors considered per anchor"
    )
    CLUSTER_BATCH_SIZE: int = Field(default=500, description="Candidates per clustering run")
    UNIQUE_INSIGHT_SEARCH_MODE: Literal["scan", "rpc"] = Field(
        default="scan",
        description="scan: in-process cosine over all unique insights; rpc: indexed search",
    )

    # Deduplication model configuration
    DEDUP_MERGE_THRESHOLD: float = Field(
        default=0.90, description="Similarity fallback threshold when no model is active"
    )
    DEDUP_BATCH_SIZE: int = Field(default=10, description="Pairs per dedup sub-batch")
    DEDUP_BATCH_DELAY_SECONDS: float = Field(
        default=0.1, description="Pause between dedup sub-batches"
    )
    FINE_TUNE_BASE_MODEL: str = Field(
        default="gpt-4o-mini-2024-07-18", description="Base model for dedup fine-tuning jobs"
    )
    FINE_TUNE_MIN_EXAMPLES: int = Field(
        default=10, description="Positive and negative examples required before fine-tuning"
    )

    # Concept discovery configuration
    CONCEPT_SIMILARITY_THRESHOLD: float = Field(
        default=0.85, description="Similarity above which an existing concept is reused"
    )
    CONCEPT_DISCOVERY_BATCH_SIZE: int = Field(
        default=10, description="Insights per concept extraction call"
    )
    AUTOTAG_MAX_CONCEPTS: int = Field(
        default=15, description="Concepts offered to the model per insight"
    )

    # Prioritization configuration
    PRIORITIZATION_MAX_COUNT: int = Field(
        default=350, description="Insights sent to the LLM (tier 1 + tier 2)"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
