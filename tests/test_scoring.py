"""
Tests for relevance scoring, query search and node importance.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio

from neuron.analysis.scoring import ScoringConfig, ScoringEngine, rank_by_similarity, recency
from neuron.kg.models import EdgeCreate, NodeCreate
from neuron.store import InMemoryGraphStore


@pytest_asyncio.fixture
async def graph() -> tuple[InMemoryGraphStore, dict[str, str]]:
    """Four embedded nodes; Anchor -> Near is the only edge."""
    store = InMemoryGraphStore()
    nodes = await store.create_nodes(
        [
            NodeCreate(label="Anchor", node_type="concept", domain="science"),
            NodeCreate(label="Near", node_type="concept", domain="science"),
            NodeCreate(label="Middle", node_type="document", domain="science"),
            NodeCreate(label="Far", node_type="concept", domain="art"),
        ]
    )
    ids = {node.label: node.id for node in nodes}
    vectors = {
        "Anchor": [1.0, 0.0, 0.0],
        "Near": [0.95, 0.05, 0.0],
        "Middle": [0.7, 0.7, 0.0],
        "Far": [0.0, 0.0, 1.0],
    }
    for label, vector in vectors.items():
        await store.set_node_embedding(ids[label], vector, "test-embedding")
    await store.create_edges(
        [EdgeCreate(from_node_id=ids["Anchor"], to_node_id=ids["Near"], strength=0.8)]
    )
    return store, ids


class TestHelpers:
    """Module-level scoring helpers."""

    @pytest.mark.asyncio
    async def test_recency_decays_over_thirty_days(self) -> None:
        """Test recency is 1 now, 0.5 at fifteen days and 0 past thirty."""
        store = InMemoryGraphStore()
        (node,) = await store.create_nodes([NodeCreate(label="Fresh")])
        updated = node.updated_at

        assert recency(updated, updated) == pytest.approx(1.0)
        assert recency(updated, updated + timedelta(days=15)) == pytest.approx(0.5)
        assert recency(updated, updated + timedelta(days=45)) == 0.0
        assert recency(None, updated) == 0.0

    @pytest.mark.asyncio
    async def test_rank_skips_mismatched_dimensions(self, graph) -> None:
        """Test ranking orders by similarity and ignores other vector lengths."""
        store, ids = graph
        await store.set_node_embedding(ids["Middle"], [1.0, 0.0], "other-model")
        nodes = await store.list_nodes()

        ranked = rank_by_similarity([1.0, 0.0, 0.0], nodes)

        assert [node.label for node, _ in ranked] == ["Anchor", "Near", "Far"]
        assert ranked[0][1] == pytest.approx(1.0)
        assert rank_by_similarity([], nodes) == []


class TestScoringEngine:
    """Weighted scores, filters and neighbour lookups."""

    @pytest.mark.asyncio
    async def test_apply_scoring_weights(self, graph) -> None:
        """Test the score blends similarity, connections and recency."""
        store, ids = graph
        engine = ScoringEngine(store)
        near = await store.get_node_by_id(ids["Near"])

        scored = engine.apply_scoring(near, 0.5, now=near.updated_at)

        assert scored.breakdown.connections == 1
        assert scored.breakdown.recency == pytest.approx(1.0)
        assert scored.breakdown.domain_match == 0.0
        assert scored.score == pytest.approx(0.5 * 0.6 + 1 * 0.2 + 1.0 * 0.1)
        assert "embedding" not in scored.to_dict()["node"]

    @pytest.mark.asyncio
    async def test_custom_weights(self, graph) -> None:
        """Test a config with only similarity weight scores by similarity alone."""
        store, ids = graph
        engine = ScoringEngine(
            store,
            ScoringConfig(similarity_weight=1.0, connection_weight=0.0, recency_weight=0.0),
        )
        anchor = await store.get_node_by_id(ids["Anchor"])

        assert engine.apply_scoring(anchor, 0.25).score == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_score_for_query_filters_and_limit(self, graph) -> None:
        """Test type, domain, threshold and limit narrow the results."""
        store, _ = graph
        engine = ScoringEngine(store)
        query = [1.0, 0.0, 0.0]

        everything = await engine.score_for_query(query)
        concepts = await engine.score_for_query(query, node_types=["concept"])
        science = await engine.score_for_query(query, domains=["science"], limit=2)
        close = await engine.score_for_query(query, min_similarity=0.9)

        assert [s.node.label for s in everything] == ["Anchor", "Near", "Middle", "Far"]
        assert [s.node.label for s in concepts] == ["Anchor", "Near", "Far"]
        assert [s.node.label for s in science] == ["Anchor", "Near"]
        assert [s.node.label for s in close] == ["Anchor", "Near"]

    @pytest.mark.asyncio
    async def test_score_for_query_restricted_ids(self, graph) -> None:
        """Test node_ids limits scoring to the given nodes."""
        store, ids = graph
        engine = ScoringEngine(store)

        scored = await engine.score_for_query([1.0, 0.0, 0.0], [ids["Far"], ids["Middle"]])

        assert [s.node.label for s in scored] == ["Middle", "Far"]

    @pytest.mark.asyncio
    async def test_find_similar_excluding_neighbours(self, graph) -> None:
        """Test connected nodes are dropped only when asked."""
        store, ids = graph
        engine = ScoringEngine(store)

        similar = await engine.find_similar(ids["Anchor"], limit=2)
        unconnected = await engine.find_similar(ids["Anchor"], limit=2, exclude_connected=True)

        assert [s.node.label for s in similar] == ["Near", "Middle"]
        assert [s.node.label for s in unconnected] == ["Middle", "Far"]
        assert await engine.connected_node_ids(ids["Near"]) == {ids["Anchor"]}

    @pytest.mark.asyncio
    async def test_other_scope_is_empty(self, graph) -> None:
        """Test a scope-bound copy sees none of the default scope's nodes."""
        store, ids = graph
        engine = ScoringEngine(store)
        scoped = engine.with_scope("elsewhere")

        assert engine.with_scope(None) is engine
        assert scoped.scope == "elsewhere"
        assert await scoped.score_for_query([1.0, 0.0, 0.0]) == []
        assert await scoped.find_similar(ids["Anchor"]) == []

    @pytest.mark.asyncio
    async def test_score_relevance_context_boost(self, graph) -> None:
        """Test a context string adds a fixed boost to candidate scores."""
        store, ids = graph
        engine = ScoringEngine(store)
        candidates = [ids["Near"], ids["Far"]]

        plain = await engine.score_relevance(ids["Anchor"], candidates)
        boosted = await engine.score_relevance(ids["Anchor"], candidates, context="physics")

        assert [s.node.label for s in plain] == ["Near", "Far"]
        for before, after in zip(plain, boosted):
            assert after.score == pytest.approx(before.score + 0.01, abs=1e-6)

    @pytest.mark.asyncio
    async def test_score_relevance_without_embedding(self) -> None:
        """Test a source without a vector scores nothing."""
        store = InMemoryGraphStore()
        a, b = await store.create_nodes([NodeCreate(label="A"), NodeCreate(label="B")])

        assert await ScoringEngine(store).score_relevance(a.id, [b.id]) == []


class TestImportance:
    """Inbound strength ranking."""

    @pytest.mark.asyncio
    async def test_node_importance(self, graph) -> None:
        """Test importance adds inbound strength to a tenth of the degree."""
        store, ids = graph
        engine = ScoringEngine(store)

        assert await engine.node_importance(ids["Near"]) == pytest.approx(0.8 + 0.1)
        assert await engine.node_importance(ids["Anchor"]) == pytest.approx(0.1)
        assert await engine.node_importance(ids["Far"]) == 0.0
        assert await engine.node_importance("000000000000") == 0.0

    @pytest.mark.asyncio
    async def test_rank_all_nodes(self, graph) -> None:
        """Test every node is ranked, most important first."""
        store, ids = graph

        ranked = await ScoringEngine(store).rank_all_nodes()

        assert len(ranked) == 4
        assert ranked[0].node_id == ids["Near"]
        assert ranked[1].node_id == ids["Anchor"]
