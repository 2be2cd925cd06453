"""
Embedding generation and caching for graph nodes.

Vectors are stored on the node itself (embedding + model + generated-at),
which doubles as the cache: a stored vector is reused only while its model
matches the configured one and it is younger than ``cache_ttl``.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from neuron.analysis.cancellation import CancellationToken, JobCancelledError
from neuron.analysis.retry import call_with_retry, pause_for_rate_limit
from neuron.models.jobs import ItemProgress, ItemProgressCallback, notify_progress
from neuron.providers.base import EmbeddingProvider
from neuron.providers.errors import ProviderError, ProviderErrorCode
from neuron.store.base import GraphStore, resolve_scope

logger = logging.getLogger(__name__)

# USD per million tokens
EMBEDDING_PRICES = {
    "text-embedding-3-large": 0.13,
    "text-embedding-3-small": 0.02,
    "text-embedding-ada-002": 0.10,
}
TOKENS_PER_NODE_ESTIMATE = 512


@dataclass
class EmbeddingsConfig:
    model: str = "text-embedding-3-small"
    dimensions: int | None = None
    batch_size: int = 20
    rate_limit: int = 60  # requests per minute
    cache_ttl: float = 86400.0  # seconds
    max_retries: int = 3
    retry_base_delay: float = 0.5


@dataclass
class EmbeddingResult:
    node_id: str
    embedding: list[float]
    model: str
    token_count: int
    cached: bool


@dataclass
class EmbeddingBatchResult:
    results: list[EmbeddingResult] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass
class CostEstimate:
    tokens: int
    cost: float


class EmbeddingsService:
    """
    Turns node text into vectors through an EmbeddingProvider.

    Works against any GraphStore backend.
    """

    def __init__(
        self,
        store: GraphStore,
        provider: EmbeddingProvider,
        config: EmbeddingsConfig | None = None,
        scope: str | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config or EmbeddingsConfig()
        self.scope = resolve_scope(scope)

    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        async def call() -> list[list[float]]:
            response = await self.provider.embed(
                self.config.model, texts, dimensions=self.config.dimensions
            )
            return response.embeddings

        embeddings = await call_with_retry(
            call, self.config.max_retries, self.config.retry_base_delay
        )
        if len(embeddings) != len(texts):
            raise ProviderError(
                f"Provider returned {len(embeddings)} embeddings for {len(texts)} inputs",
                code=ProviderErrorCode.INVALID_REQUEST,
            )
        return embeddings

    async def embed_query(self, text: str) -> list[float]:
        """Embed free text (a search query) with the configured model, uncached."""
        (embedding,) = await self._embed_texts([text])
        return embedding

    async def embed_node(self, node_id: str) -> EmbeddingResult:
        """
        Embed one node, reusing a valid cached vector.

        Raises:
            ValueError: If the node does not exist in scope
        """
        node = await self.store.get_node_by_id(node_id, self.scope)
        if node is None:
            raise ValueError(f"Node not found: {node_id}")

        text = node.embedding_text()
        cached = await self.get_cached_embedding(node_id)
        if cached is not None:
            return EmbeddingResult(
                node_id=node_id,
                embedding=cached,
                model=self.config.model,
                token_count=self.count_tokens(text),
                cached=True,
            )

        (embedding,) = await self._embed_texts([text])
        await self.cache_embedding(node_id, embedding, self.config.model)
        return EmbeddingResult(
            node_id=node_id,
            embedding=embedding,
            model=self.config.model,
            token_count=self.count_tokens(text),
            cached=False,
        )

    async def embed_nodes(self, node_ids: Sequence[str]) -> EmbeddingBatchResult:
        return await self.embed_nodes_with_progress(node_ids)

    async def embed_nodes_with_progress(
        self,
        node_ids: Sequence[str],
        token: CancellationToken | None = None,
        on_progress: ItemProgressCallback | None = None,
    ) -> EmbeddingBatchResult:
        """
        Embed nodes in chunks of ``batch_size``, one provider call per chunk.

        A failing chunk records an error for each of its node ids and the
        run continues with the next chunk. Ids not found in scope are
        skipped.

        Args:
            node_ids: Nodes to embed, in order
            token: Checked before every chunk
            on_progress: Called once up front and after every chunk

        Returns:
            Per-node results and errors

        Raises:
            JobCancelledError: If the token is cancelled
        """
        outcome = EmbeddingBatchResult()
        total = len(node_ids)
        processed = 0
        batch_size = max(1, self.config.batch_size)
        await notify_progress(on_progress, ItemProgress(processed=0, total=total))

        for start in range(0, total, batch_size):
            batch = list(node_ids[start : start + batch_size])
            if token is not None:
                token.raise_if_cancelled()

            try:
                nodes = []
                for node_id in batch:
                    node = await self.store.get_node_by_id(node_id, self.scope)
                    if node is not None:
                        nodes.append(node)

                if nodes:
                    texts = [node.embedding_text() for node in nodes]
                    embeddings = await self._embed_texts(texts)
                    for node, text, embedding in zip(nodes, texts, embeddings):
                        await self.cache_embedding(node.id, embedding, self.config.model)
                        outcome.results.append(
                            EmbeddingResult(
                                node_id=node.id,
                                embedding=embedding,
                                model=self.config.model,
                                token_count=self.count_tokens(text),
                                cached=False,
                            )
                        )
                    await pause_for_rate_limit(self.config.rate_limit)
            except JobCancelledError:
                raise
            except ProviderError as e:
                if e.code == ProviderErrorCode.CANCELED:
                    raise JobCancelledError(str(e)) from e
                logger.warning(f"Embedding batch failed ({e.code.value}): {e}")
                outcome.errors.extend({"node_id": node_id, "error": str(e)} for node_id in batch)
            except Exception as e:
                logger.warning(f"Embedding batch failed: {e}")
                outcome.errors.extend({"node_id": node_id, "error": str(e)} for node_id in batch)

            processed += len(batch)
            await notify_progress(
                on_progress,
                ItemProgress(processed=processed, total=total, current_item=batch[-1]),
            )

        logger.info(
            f"Embedded {len(outcome.results)}/{total} nodes "
            f"({len(outcome.errors)} errors) in scope {self.scope}"
        )
        return outcome

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # CACHE
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_cached_embedding(self, node_id: str) -> list[float] | None:
        """Stored vector if it was made by the configured model within ``cache_ttl``."""
        info = await self.store.get_node_embedding_info(node_id, self.scope)
        if info is None or not info.embedding:
            return None
        if info.embedding_model != self.config.model:
            return None
        if info.embedding_generated_at is None:
            return info.embedding

        generated = info.embedding_generated_at
        if generated.tzinfo is None:
            generated = generated.replace(tzinfo=timezone.utc)
        age = (datetime.now(timezone.utc) - generated).total_seconds()
        if age >= self.config.cache_ttl:
            return None
        return info.embedding

    async def cache_embedding(self, node_id: str, embedding: list[float], model: str) -> None:
        await self.store.set_node_embedding(node_id, embedding, model, self.scope)

    async def invalidate_cache(self, node_ids: Sequence[str] | None = None) -> None:
        """Clear stored vectors for ``node_ids`` (all nodes in scope when omitted)."""
        await self.store.clear_node_embeddings(node_ids, self.scope)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # ESTIMATES
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    @staticmethod
    def count_tokens(text: str) -> int:
        return math.ceil(len(text) / 4)

    def estimate_cost(self, node_count: int) -> CostEstimate:
        tokens = node_count * TOKENS_PER_NODE_ESTIMATE
        price = EMBEDDING_PRICES.get(self.config.model, EMBEDDING_PRICES["text-embedding-ada-002"])
        return CostEstimate(tokens=tokens, cost=tokens / 1_000_000 * price)
