"""
Relevance scoring and semantic search over embedded nodes.

A node's score blends its cosine similarity to a query (or to another
node) with how connected and how recently updated it is:

    score = similarity * 0.6 + connections * 0.2 + recency * 0.1 + domain_match * 0.1

Recency decays linearly from 1 (updated now) to 0 (30 days old). Cosine
similarity for many nodes at once is a single numpy matrix product.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

import numpy as np
from pydantic import BaseModel

from neuron.kg.models import Node, _utc_now
from neuron.kg.vectors import similarity_matrix
from neuron.store.base import GraphStore, resolve_scope

logger = logging.getLogger(__name__)

RECENCY_WINDOW = timedelta(days=30)


@dataclass
class ScoringConfig:
    similarity_weight: float = 0.6
    connection_weight: float = 0.2
    recency_weight: float = 0.1
    domain_boost: float = 0.1


class ScoreBreakdown(BaseModel):
    similarity: float
    connections: int
    recency: float
    domain_match: float


class ScoredNode(BaseModel):
    node: Node
    score: float
    breakdown: ScoreBreakdown

    def to_dict(self) -> dict:
        """JSON-ready form without the node's embedding vector."""
        return {
            "node": self.node.model_dump(mode="json", exclude={"embedding"}),
            "score": self.score,
            "breakdown": self.breakdown.model_dump(),
        }


class NodeImportance(BaseModel):
    node_id: str
    importance: float


def recency(updated_at: datetime | None, now: datetime) -> float:
    """1.0 for a node updated now, falling linearly to 0.0 at thirty days."""
    if updated_at is None:
        return 0.0
    return max(0.0, 1.0 - (now - updated_at) / RECENCY_WINDOW)


def rank_by_similarity(
    query: Sequence[float], nodes: Sequence[Node]
) -> list[tuple[Node, float]]:
    """
    Cosine similarity of ``query`` to every node with a same-length vector.

    Returns:
        ``(node, similarity)`` pairs, most similar first
    """
    comparable = [n for n in nodes if n.embedding and len(n.embedding) == len(query)]
    if not comparable or not query:
        return []
    scores = similarity_matrix([query], [n.embedding for n in comparable])[0]
    order = np.argsort(-scores, kind="stable")
    return [(comparable[i], float(scores[i])) for i in order]


class ScoringEngine:
    """
    Scores nodes for a query vector or a seed node within one scope.

    Args:
        store: Graph store holding nodes, edges and embeddings
        config: Score weights
        scope: Scope to score in (None -> default scope)
    """

    def __init__(
        self,
        store: GraphStore,
        config: ScoringConfig | None = None,
        scope: str | None = None,
    ) -> None:
        self.store = store
        self.config = config or ScoringConfig()
        self.scope = resolve_scope(scope)

    def with_scope(self, scope: str | None) -> ScoringEngine:
        """This engine, or a copy bound to another scope."""
        scope = resolve_scope(scope)
        if scope == self.scope:
            return self
        return ScoringEngine(self.store, self.config, scope)

    def apply_scoring(
        self, node: Node, similarity: float, now: datetime | None = None
    ) -> ScoredNode:
        breakdown = ScoreBreakdown(
            similarity=similarity,
            connections=node.connection_count,
            recency=recency(node.updated_at, now or _utc_now()),
            domain_match=0.0,
        )
        score = (
            breakdown.similarity * self.config.similarity_weight
            + breakdown.connections * self.config.connection_weight
            + breakdown.recency * self.config.recency_weight
            + breakdown.domain_match * self.config.domain_boost
        )
        return ScoredNode(node=node, score=score, breakdown=breakdown)

    async def score_for_query(
        self,
        query_embedding: Sequence[float],
        node_ids: Sequence[str] | None = None,
        *,
        node_types: Sequence[str] | None = None,
        domains: Sequence[str] | None = None,
        min_similarity: float = 0.0,
        limit: int | None = None,
    ) -> list[ScoredNode]:
        """
        Score nodes against a query vector.

        Nodes whose vector length differs from the query are skipped.
        Results are ordered by similarity, most similar first.

        Args:
            query_embedding: Query vector
            node_ids: Restrict scoring to these nodes
            node_types: Keep only these node types
            domains: Keep only these domains
            min_similarity: Drop nodes below this similarity
            limit: Maximum results (None or 0 for all)
        """
        nodes = await self.store.list_nodes(scope=self.scope)
        if node_ids:
            wanted = set(node_ids)
            nodes = [n for n in nodes if n.id in wanted]
        if node_types:
            nodes = [n for n in nodes if n.node_type in node_types]
        if domains:
            nodes = [n for n in nodes if n.domain in domains]

        now = _utc_now()
        scored = [
            self.apply_scoring(node, similarity, now)
            for node, similarity in rank_by_similarity(query_embedding, nodes)
            if similarity >= min_similarity
        ]
        return scored[:limit] if limit else scored

    async def connected_node_ids(self, node_id: str) -> set[str]:
        """Ids of nodes joined to ``node_id`` by an edge in either direction."""
        connected: set[str] = set()
        for edge in await self.store.list_edges(scope=self.scope):
            if edge.from_node_id == node_id:
                connected.add(edge.to_node_id)
            if edge.to_node_id == node_id:
                connected.add(edge.from_node_id)
        return connected

    async def find_similar(
        self,
        node_id: str,
        limit: int = 10,
        min_similarity: float = 0.0,
        exclude_connected: bool = False,
    ) -> list[ScoredNode]:
        """
        Nodes most similar to ``node_id``, optionally skipping its neighbours.

        When excluding neighbours, five times ``limit`` candidates are
        ranked first so the filtered list can still fill ``limit``.
        """
        candidates = await self.store.find_similar_node_ids(
            node_id,
            limit=limit * 5 if exclude_connected else limit,
            min_similarity=min_similarity,
            scope=self.scope,
        )
        if exclude_connected:
            connected = await self.connected_node_ids(node_id)
            candidates = [c for c in candidates if c.node_id not in connected]

        now = _utc_now()
        scored = []
        for candidate in candidates[:limit]:
            node = await self.store.get_node_by_id(candidate.node_id, self.scope)
            if node is not None:
                scored.append(self.apply_scoring(node, candidate.similarity, now))
        return scored

    async def score_relevance(
        self,
        source_node_id: str,
        candidate_node_ids: Sequence[str],
        context: str | None = None,
    ) -> list[ScoredNode]:
        """
        Score candidates by similarity to a source node.

        A non-empty ``context`` adds a small fixed boost to every score.
        Returns an empty list when the source has no embedding.
        """
        source = await self.store.get_node_by_id(source_node_id, self.scope)
        if source is None or not source.embedding:
            return []
        scored = await self.score_for_query(source.embedding, candidate_node_ids)
        if context:
            for item in scored:
                item.score += self.config.domain_boost * 0.1
        return scored

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # IMPORTANCE
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _importance_by_node(self) -> dict[str, float]:
        inbound: dict[str, float] = {}
        for edge in await self.store.list_edges(scope=self.scope):
            inbound[edge.to_node_id] = inbound.get(edge.to_node_id, 0.0) + edge.strength
        return {
            node.id: inbound.get(node.id, 0.0) + node.connection_count * 0.1
            for node in await self.store.list_nodes(scope=self.scope)
        }

    async def node_importance(self, node_id: str) -> float:
        """Sum of inbound edge strengths plus a tenth of the connection count."""
        return (await self._importance_by_node()).get(node_id, 0.0)

    async def rank_all_nodes(self) -> list[NodeImportance]:
        """Every node in scope, most important first."""
        importance = await self._importance_by_node()
        ranked = sorted(importance.items(), key=lambda item: item[1], reverse=True)
        logger.debug(f"Ranked {len(ranked)} nodes by importance in scope {self.scope}")
        return [NodeImportance(node_id=node_id, importance=value) for node_id, value in ranked]
