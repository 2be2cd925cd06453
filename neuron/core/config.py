"""Centralized application configuration."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NEURON_", env_file=".env", extra="ignore"
    )

    # Data storage path
    data_path: Path = Path("data")

    # Graph store backend selection
    store_backend: Literal["memory", "file", "sql"] = "sql"
    graph_file_name: str = "graph.json"
    database_file_name: str = "neuron.db"
    persist_interval_ms: int = 500  # 0 = write on every mutation
    persist_max_delay_ms: int = 5000

    # Provider configuration
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    use_mock_providers: bool = False

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 20
    embedding_cache_ttl: float = 86400.0  # seconds

    # Relationship inference
    relationship_model: str = "gpt-4o-mini"
    relationship_min_confidence: float = 0.7
    relationship_max_per_node: int = 10
    relationship_similarity_threshold: float = 0.75

    # Governance
    governance_enabled: bool = True
    auto_approve_enabled: bool = True
    auto_approve_min_confidence: float = 0.7

    # Provider call pacing and retry
    provider_rate_limit: int = 60  # requests per minute
    provider_max_retries: int = 3
    provider_retry_base_delay: float = 0.5  # seconds

    # Job configuration
    job_max_concurrent: int = 5

    @property
    def graph_file_path(self) -> Path:
        """Location of the file-backed graph snapshot."""
        return self.data_path / self.graph_file_name

    @property
    def database_path(self) -> Path:
        """Location of the relational store database file."""
        return self.data_path / self.database_file_name


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
