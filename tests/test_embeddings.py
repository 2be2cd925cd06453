"""
Tests for EmbeddingsService.
"""

from __future__ import annotations

import pytest

from neuron.analysis import CancellationToken, EmbeddingsConfig, EmbeddingsService, JobCancelledError
from neuron.kg.models import NodeCreate
from neuron.models.jobs import ItemProgress
from neuron.providers import MockEmbeddingProvider, ProviderError, ProviderErrorCode
from neuron.store import GraphStore, InMemoryGraphStore


class FailingProvider(MockEmbeddingProvider):
    """Fails every call whose inputs contain ``poison``."""

    def __init__(self, poison: str, code: ProviderErrorCode = ProviderErrorCode.INVALID_REQUEST):
        super().__init__(dimensions=8)
        self.poison = poison
        self.code = code

    async def embed(self, model, input, dimensions=None):
        inputs = [input] if isinstance(input, str) else list(input)
        if any(self.poison in text for text in inputs):
            self.calls.append(inputs)
            raise ProviderError("rejected", self.code)
        return await super().embed(model, input, dimensions)


async def _seed(store: GraphStore, *labels: str) -> list[str]:
    nodes = await store.create_nodes([NodeCreate(label=label, summary=f"About {label}") for label in labels])
    return [node.id for node in nodes]


class TestEmbedNode:
    """Single-node embedding and the cache."""

    @pytest.mark.asyncio
    async def test_embed_and_cache(
        self, embeddings: EmbeddingsService, embedding_provider: MockEmbeddingProvider
    ) -> None:
        """Test a second call is served from the stored vector."""
        (node_id,) = await _seed(embeddings.store, "Neural Networks")

        first = await embeddings.embed_node(node_id)
        second = await embeddings.embed_node(node_id)

        assert first.cached is False
        assert len(first.embedding) == 8
        assert second.cached is True
        assert second.embedding == first.embedding
        assert len(embedding_provider.calls) == 1
        assert embedding_provider.calls[0] == ["Neural Networks\n\nAbout Neural Networks"]

    @pytest.mark.asyncio
    async def test_unknown_node(self, embeddings: EmbeddingsService) -> None:
        """Test embedding a missing node raises."""
        with pytest.raises(ValueError, match="Node not found"):
            await embeddings.embed_node("000000000000")

    @pytest.mark.asyncio
    async def test_model_change_invalidates_cache(self, embedding_provider: MockEmbeddingProvider) -> None:
        """Test a vector from another model is not reused."""
        store = InMemoryGraphStore()
        (node_id,) = await _seed(store, "Graphs")
        old = EmbeddingsService(store, embedding_provider, EmbeddingsConfig(model="old", rate_limit=0))
        new = EmbeddingsService(store, embedding_provider, EmbeddingsConfig(model="new", rate_limit=0))

        await old.embed_node(node_id)

        assert await new.get_cached_embedding(node_id) is None
        assert (await new.embed_node(node_id)).cached is False

    @pytest.mark.asyncio
    async def test_expired_cache(self, embedding_provider: MockEmbeddingProvider) -> None:
        """Test a vector older than the TTL is regenerated."""
        store = InMemoryGraphStore()
        (node_id,) = await _seed(store, "Graphs")
        service = EmbeddingsService(
            store, embedding_provider, EmbeddingsConfig(model="m", rate_limit=0, cache_ttl=0)
        )

        await service.embed_node(node_id)
        result = await service.embed_node(node_id)

        assert result.cached is False
        assert len(embedding_provider.calls) == 2

    @pytest.mark.asyncio
    async def test_invalidate_cache(self, embeddings: EmbeddingsService) -> None:
        """Test invalidation removes stored vectors."""
        ids = await _seed(embeddings.store, "A", "B")
        await embeddings.embed_nodes(ids)

        await embeddings.invalidate_cache([ids[0]])

        assert await embeddings.get_cached_embedding(ids[0]) is None
        assert await embeddings.get_cached_embedding(ids[1]) is not None


class TestEmbedBatch:
    """Chunked embedding with progress, errors and cancellation."""

    @pytest.mark.asyncio
    async def test_batches_and_progress(
        self, embeddings: EmbeddingsService, embedding_provider: MockEmbeddingProvider
    ) -> None:
        """Test nodes are embedded in chunks of batch_size with progress per chunk."""
        ids = await _seed(embeddings.store, "A", "B", "C", "D", "E")
        events: list[ItemProgress] = []

        result = await embeddings.embed_nodes_with_progress(ids, on_progress=events.append)

        assert [r.node_id for r in result.results] == ids
        assert result.errors == []
        assert [len(call) for call in embedding_provider.calls] == [2, 2, 1]
        assert [(e.processed, e.total) for e in events] == [(0, 5), (2, 5), (4, 5), (5, 5)]
        assert events[-1].current_item == ids[-1]

    @pytest.mark.asyncio
    async def test_async_progress_callback(self, embeddings: EmbeddingsService) -> None:
        """Test coroutine callbacks are awaited."""
        ids = await _seed(embeddings.store, "A")
        seen: list[int] = []

        async def on_progress(event: ItemProgress) -> None:
            seen.append(event.processed)

        await embeddings.embed_nodes_with_progress(ids, on_progress=on_progress)

        assert seen == [0, 1]

    @pytest.mark.asyncio
    async def test_failed_chunk_records_errors(
        self, sql_store: GraphStore, embeddings_config: EmbeddingsConfig
    ) -> None:
        """Test a failing chunk records one error per node and later chunks still run."""
        ids = await _seed(sql_store, "Poison", "A", "B", "C")
        service = EmbeddingsService(sql_store, FailingProvider("Poison"), embeddings_config)

        result = await service.embed_nodes_with_progress(ids)

        assert [e["node_id"] for e in result.errors] == ids[:2]
        assert all(e["error"] == "rejected" for e in result.errors)
        assert [r.node_id for r in result.results] == ids[2:]

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(
        self, sql_store: GraphStore, embeddings_config: EmbeddingsConfig
    ) -> None:
        """Test transient failures exhaust retries before being recorded."""
        ids = await _seed(sql_store, "Poison")
        provider = FailingProvider("Poison", ProviderErrorCode.TRANSIENT)
        service = EmbeddingsService(sql_store, provider, embeddings_config)

        result = await service.embed_nodes_with_progress(ids)

        assert len(provider.calls) == embeddings_config.max_retries + 1
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_cancelled_token_stops(self, embeddings: EmbeddingsService) -> None:
        """Test a cancelled token raises before the next chunk."""
        ids = await _seed(embeddings.store, "A", "B", "C")
        token = CancellationToken()
        token.cancel("stop")

        with pytest.raises(JobCancelledError, match="stop"):
            await embeddings.embed_nodes_with_progress(ids, token=token)

    @pytest.mark.asyncio
    async def test_provider_cancellation(
        self, sql_store: GraphStore, embeddings_config: EmbeddingsConfig
    ) -> None:
        """Test a provider-side cancel aborts the run instead of recording an error."""
        ids = await _seed(sql_store, "Poison")
        service = EmbeddingsService(
            sql_store, FailingProvider("Poison", ProviderErrorCode.CANCELED), embeddings_config
        )

        with pytest.raises(JobCancelledError):
            await service.embed_nodes_with_progress(ids)


class TestEstimates:
    """Token and cost estimates."""

    def test_estimate_cost(self, embedding_provider: MockEmbeddingProvider) -> None:
        """Test the per-node token estimate and model pricing."""
        service = EmbeddingsService(
            InMemoryGraphStore(), embedding_provider, EmbeddingsConfig(model="text-embedding-3-small")
        )

        estimate = service.estimate_cost(1000)

        assert estimate.tokens == 512_000
        assert estimate.cost == pytest.approx(512_000 / 1_000_000 * 0.02)

    def test_count_tokens(self) -> None:
        """Test the four-characters-per-token heuristic."""
        assert EmbeddingsService.count_tokens("abcd") == 1
        assert EmbeddingsService.count_tokens("abcde") == 2
