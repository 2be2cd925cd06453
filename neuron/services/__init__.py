"""
Service Container and Lifecycle Management.

Provides a centralized container for the graph store, analysis engines,
governance and ingestion with startup/shutdown lifecycle management for
FastAPI integration.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from neuron.analysis import (
    AnalysisPipeline,
    ClusteringEngine,
    EmbeddingsConfig,
    EmbeddingsService,
    GovernanceService,
    InferenceConfig,
    JobRegistry,
    RelationshipEngine,
    ScoringEngine,
)
from neuron.core.config import Settings, get_settings
from neuron.core.events import EventBus
from neuron.ingestion import (
    IngestionEngine,
    MemoryProvenanceStore,
    ProvenanceStore,
    SqlProvenanceStore,
)
from neuron.providers import (
    EmbeddingProvider,
    LLMProvider,
    MockEmbeddingProvider,
    MockLLMProvider,
    OpenAIEmbeddingProvider,
    OpenAILLMProvider,
)
from neuron.storage import Database
from neuron.store import FileBackedGraphStore, GraphStore, SqlGraphStore, create_graph_store

logger = logging.getLogger(__name__)

_NOT_INITIALIZED = "ServiceContainer not initialized - call startup() first"


class BackendUnsupportedError(RuntimeError):
    """Raised when a service needs the relational backend but another one is configured."""


class ServiceContainer:
    """
    Dependency injection container for all services.

    Analysis jobs, clustering and governance persist to relational tables
    and are only available with the ``sql`` store backend. Embeddings,
    relationship inference and ingestion work on every backend.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize container with empty service references."""
        self.settings = settings or get_settings()
        self._db: Database | None = None
        self._store: GraphStore | None = None
        self._embedding_provider: EmbeddingProvider | None = None
        self._llm_provider: LLMProvider | None = None
        self._embeddings: EmbeddingsService | None = None
        self._clustering: ClusteringEngine | None = None
        self._governance: GovernanceService | None = None
        self._relationships: RelationshipEngine | None = None
        self._registry: JobRegistry | None = None
        self._pipeline: AnalysisPipeline | None = None
        self._provenance: ProvenanceStore | None = None
        self._ingestion: IngestionEngine | None = None
        self._scoring: ScoringEngine | None = None
        self._events: EventBus | None = None
        self._started = False

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError(_NOT_INITIALIZED)

    def _require_sql(self, feature: str) -> None:
        self._require_started()
        if self.settings.store_backend != "sql":
            raise BackendUnsupportedError(
                f"{feature} requires the sql store backend "
                f"(configured: {self.settings.store_backend})"
            )

    @property
    def store(self) -> GraphStore:
        """Get graph store instance."""
        if self._store is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._store

    @property
    def database(self) -> Database:
        """Get shared database (sql backend only)."""
        self._require_sql("Database access")
        if self._db is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._db

    @property
    def embeddings(self) -> EmbeddingsService:
        """Get embeddings service instance."""
        if self._embeddings is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._embeddings

    @property
    def relationships(self) -> RelationshipEngine:
        """Get relationship inference engine."""
        if self._relationships is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._relationships

    @property
    def clustering(self) -> ClusteringEngine:
        """Get clustering engine (sql backend only)."""
        self._require_sql("Clustering")
        if self._clustering is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._clustering

    @property
    def governance(self) -> GovernanceService:
        """Get governance service (sql backend only)."""
        self._require_sql("Suggestion review")
        if self._governance is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._governance

    @property
    def pipeline(self) -> AnalysisPipeline:
        """Get analysis pipeline (sql backend only)."""
        self._require_sql("Analysis jobs")
        if self._pipeline is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._pipeline

    @property
    def registry(self) -> JobRegistry:
        """Get active-job registry."""
        if self._registry is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._registry

    @property
    def provenance(self) -> ProvenanceStore:
        """Get provenance store instance."""
        if self._provenance is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._provenance

    @property
    def ingestion(self) -> IngestionEngine:
        """Get ingestion engine instance."""
        if self._ingestion is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._ingestion

    @property
    def events(self) -> EventBus:
        """Get the in-process event bus."""
        if self._events is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._events

    @property
    def scoring(self) -> ScoringEngine:
        """Get relevance scoring engine."""
        if self._scoring is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._scoring

    def _build_providers(self) -> tuple[EmbeddingProvider, LLMProvider]:
        settings = self.settings
        if settings.use_mock_providers:
            logger.info("Using mock embedding and LLM providers")
            return (
                MockEmbeddingProvider(dimensions=settings.embedding_dimensions),
                MockLLMProvider(),
            )
        return (
            OpenAIEmbeddingProvider(
                api_key=settings.openai_api_key, base_url=settings.openai_base_url
            ),
            OpenAILLMProvider(api_key=settings.openai_api_key, base_url=settings.openai_base_url),
        )

    async def startup(self) -> None:
        """
        Initialize all services.

        Opens the database (sql backend), builds the graph store and
        providers, then wires the engines in dependency order.
        """
        settings = self.settings
        logger.info(f"Starting service container (store backend: {settings.store_backend})")

        if settings.store_backend == "sql":
            self._db = Database(settings.database_path)
            await self._db.initialize()

        self._store = create_graph_store(settings, self._db)
        self._events = EventBus()
        self._embedding_provider, self._llm_provider = self._build_providers()

        self._embeddings = EmbeddingsService(
            self._store,
            self._embedding_provider,
            EmbeddingsConfig(
                model=settings.embedding_model,
                dimensions=settings.embedding_dimensions,
                batch_size=settings.embedding_batch_size,
                rate_limit=settings.provider_rate_limit,
                cache_ttl=settings.embedding_cache_ttl,
                max_retries=settings.provider_max_retries,
                retry_base_delay=settings.provider_retry_base_delay,
            ),
        )

        if self._db is not None and isinstance(self._store, SqlGraphStore):
            self._governance = GovernanceService(
                self._db, self._store, default_source_model=settings.relationship_model
            )
            self._clustering = ClusteringEngine(self._db)

        self._relationships = RelationshipEngine(
            self._store,
            self._llm_provider,
            InferenceConfig(
                model=settings.relationship_model,
                min_confidence=settings.relationship_min_confidence,
                max_per_node=settings.relationship_max_per_node,
                similarity_threshold=settings.relationship_similarity_threshold,
                rate_limit=settings.provider_rate_limit,
                max_retries=settings.provider_max_retries,
                retry_base_delay=settings.provider_retry_base_delay,
                governance_enabled=settings.governance_enabled,
                auto_approve_enabled=settings.auto_approve_enabled,
                auto_approve_min_confidence=settings.auto_approve_min_confidence,
            ),
            governance=self._governance,
        )

        self._registry = JobRegistry()
        if self._db is not None and self._clustering is not None:
            self._pipeline = AnalysisPipeline(
                self._db,
                self._store,
                self._embeddings,
                self._clustering,
                self._relationships,
                registry=self._registry,
                max_concurrent_jobs=settings.job_max_concurrent,
                events=self._events,
            )

        self._provenance = (
            SqlProvenanceStore(self._db) if self._db is not None else MemoryProvenanceStore()
        )
        self._ingestion = IngestionEngine(self._store, self._provenance)
        self._scoring = ScoringEngine(self._store)

        self._started = True
        logger.info("Service container started")

    async def shutdown(self) -> None:
        """
        Gracefully shutdown all services.

        Cancels in-flight analysis jobs, flushes the file-backed store and
        closes the database before clearing service references.
        """
        logger.info("Shutting down service container")

        if self._pipeline:
            await self._pipeline.shutdown()

        if isinstance(self._store, FileBackedGraphStore):
            await self._store.close()

        if self._db:
            await self._db.close()

        self._db = None
        self._store = None
        self._embedding_provider = None
        self._llm_provider = None
        self._embeddings = None
        self._clustering = None
        self._governance = None
        self._relationships = None
        self._registry = None
        self._pipeline = None
        self._provenance = None
        self._ingestion = None
        self._scoring = None
        if self._events is not None:
            self._events.unsubscribe_all()
        self._events = None
        self._started = False

        logger.info("Service container shutdown complete")


# Global service container instance
_services: ServiceContainer | None = None


def get_services() -> ServiceContainer:
    """
    Get the global service container instance.

    Returns:
        Global ServiceContainer singleton

    Raises:
        RuntimeError: If container hasn't been initialized
    """
    if _services is None:
        raise RuntimeError("Services not initialized - ensure services_lifespan() is used")
    return _services


def set_services(container: ServiceContainer | None) -> None:
    """Install an already started container (used by tests and embedding apps)."""
    global _services
    _services = container


@asynccontextmanager
async def services_lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    FastAPI lifespan context manager for service initialization.

    Args:
        app: FastAPI application instance

    Yields:
        None (context manager pattern)
    """
    global _services

    _services = ServiceContainer()
    await _services.startup()
    logger.info("FastAPI services initialized")

    try:
        yield
    finally:
        if _services:
            await _services.shutdown()
        _services = None
        logger.info("FastAPI services cleaned up")


__all__ = [
    "BackendUnsupportedError",
    "ServiceContainer",
    "get_services",
    "set_services",
    "services_lifespan",
]
