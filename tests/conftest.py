"""
Pytest configuration and fixtures for neuron tests.
"""

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from neuron.analysis import (
    ClusteringEngine,
    EmbeddingsConfig,
    EmbeddingsService,
    GovernanceService,
    InferenceConfig,
    RelationshipEngine,
)
from neuron.core.config import Settings
from neuron.providers import MockEmbeddingProvider, MockLLMProvider
from neuron.services import ServiceContainer, set_services
from neuron.storage import Database
from neuron.store import FileBackedGraphStore, GraphStore, InMemoryGraphStore, SqlGraphStore

# Configure pytest-asyncio to use function-scoped event loops
pytest_plugins = ("pytest_asyncio",)


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[Database, None]:
    """Fresh in-memory database with the full schema applied."""
    database = Database(":memory:")
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def sql_store(db: Database) -> SqlGraphStore:
    """Relational graph store over the test database."""
    return SqlGraphStore(db)


@pytest_asyncio.fixture(params=["memory", "file", "sql"])
async def store(request: pytest.FixtureRequest, tmp_path: Path) -> AsyncGenerator[GraphStore, None]:
    """Every GraphStore backend; tests using it run once per backend."""
    if request.param == "memory":
        yield InMemoryGraphStore()
    elif request.param == "file":
        file_store = FileBackedGraphStore(tmp_path / "graph.json", persist_interval_ms=0)
        yield file_store
        await file_store.close()
    else:
        database = Database(":memory:")
        await database.initialize()
        yield SqlGraphStore(database)
        await database.close()


@pytest.fixture
def embedding_provider() -> MockEmbeddingProvider:
    """Deterministic 8-dimensional embedding provider."""
    return MockEmbeddingProvider(dimensions=8)


@pytest.fixture
def llm_provider() -> MockLLMProvider:
    """LLM provider that never finds a relationship unless scripted."""
    return MockLLMProvider()


@pytest.fixture
def embeddings_config() -> EmbeddingsConfig:
    """Embeddings config without pacing or backoff delays."""
    return EmbeddingsConfig(
        model="test-embedding",
        batch_size=2,
        rate_limit=0,
        max_retries=2,
        retry_base_delay=0,
    )


@pytest.fixture
def inference_config() -> InferenceConfig:
    """Inference config without pacing or backoff delays."""
    return InferenceConfig(
        model="test-llm",
        min_confidence=0.5,
        max_per_node=5,
        similarity_threshold=0.0,
        rate_limit=0,
        max_retries=2,
        retry_base_delay=0,
    )


@pytest_asyncio.fixture
async def governance(db: Database, sql_store: SqlGraphStore) -> GovernanceService:
    """Governance service over the relational store."""
    return GovernanceService(db, sql_store, default_source_model="test-llm")


@pytest_asyncio.fixture
async def embeddings(
    sql_store: SqlGraphStore,
    embedding_provider: MockEmbeddingProvider,
    embeddings_config: EmbeddingsConfig,
) -> EmbeddingsService:
    """Embeddings service over the relational store."""
    return EmbeddingsService(sql_store, embedding_provider, embeddings_config)


@pytest_asyncio.fixture
async def clustering(db: Database) -> ClusteringEngine:
    """Clustering engine over the test database."""
    return ClusteringEngine(db)


@pytest_asyncio.fixture
async def relationships(
    sql_store: SqlGraphStore,
    llm_provider: MockLLMProvider,
    inference_config: InferenceConfig,
    governance: GovernanceService,
) -> RelationshipEngine:
    """Relationship engine staging suggestions through governance."""
    return RelationshipEngine(sql_store, llm_provider, inference_config, governance)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings for an isolated sql-backed container with mock providers."""
    return Settings(
        data_path=tmp_path,
        store_backend="sql",
        use_mock_providers=True,
        embedding_dimensions=8,
        provider_rate_limit=0,
        provider_retry_base_delay=0,
        relationship_similarity_threshold=0.0,
    )


@pytest_asyncio.fixture
async def services(test_settings: Settings) -> AsyncGenerator[ServiceContainer, None]:
    """Started service container installed as the global container."""
    container = ServiceContainer(test_settings)
    await container.startup()
    set_services(container)
    yield container
    set_services(None)
    await container.shutdown()


@pytest_asyncio.fixture
async def async_client(services: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing FastAPI endpoints."""
    # Import here so the app is created after the container is installed
    from neuron.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
