"""Application settings loaded from environment variables."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_postgres_uri_from_env() -> str:
    """Build Postgres URI from component env vars if POSTGRES_URI is not set.

    Keeps a single source of truth for DB name via .env variables
    (POSTGRES_USER/PASSWORD/HOST/PORT/DB). If POSTGRES_URI is provided, it
    will override this default.
    """
    user = os.getenv("POSTGRES_USER", "postgres")
    password = os.getenv("POSTGRES_PASSWORD", "postgres")
    host = os.getenv("POSTGRES_HOST", "postgres")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "livinglibrary")
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{db}"


_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"


class Settings(BaseSettings):
    """Runtime settings for the application."""

    service_name: str = Field(default="living-library-api")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Optional direct URI override (env: POSTGRES_URI). If not set, a default
    # is assembled from POSTGRES_USER/PASSWORD/HOST/PORT/DB.
    postgres_uri: str = Field(default_factory=_default_postgres_uri_from_env)
    milvus_uri: str = Field(default="")

    replicate_api_token: str = Field(default="")
    # Embeddings configuration
    embeddings_model: str = Field(default="openai/text-embedding-3-large")
    embedding_dim: int = Field(default=1536)
    embedding_max_chars: int = Field(default=8000)
    # Upper bound for any single call to an external model provider (seconds)
    provider_timeout: float = Field(default=30.0)

    classification_provider: str = Field(default="rules")
    classification_model: str = Field(default="openai/gpt-5-nano")
    prompts_path: Path = Field(default=_CONFIG_DIR / "prompts.yaml")

    search_vector_weight: float = Field(default=0.7)
    search_fulltext_weight: float = Field(default=0.3)

    link_semantic_threshold: float = Field(default=0.75)
    link_semantic_top_k: int = Field(default=12)
    link_time_window_days: int = Field(default=7)
    link_location_radius_m: float = Field(default=1000.0)

    recommendation_source: str = Field(default="live")
    recommendation_fixtures_path: Path = Field(
        default=_CONFIG_DIR / "recommendations.yaml"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        # Be lenient with env var names (e.g., POSTGRES_URI vs postgres_uri)
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Return application settings instance."""
    return Settings()


__all__ = ["Settings", "get_settings"]
