"""
Tests for relationship inference and how inferences are persisted.
"""

from __future__ import annotations

import json

import pytest

from neuron.analysis import (
    CancellationToken,
    GovernanceService,
    InferenceConfig,
    JobCancelledError,
    RelationshipEngine,
)
from neuron.analysis.relationships import InferredRelationship, parse_inference
from neuron.kg.models import EdgeSource, NodeCreate, SuggestionStatus
from neuron.providers import MockLLMProvider, ProviderError, ProviderErrorCode
from neuron.store import InMemoryGraphStore, SqlGraphStore

VECTORS = {
    "Alpha": [1.0, 0.0],
    "Beta": [0.9, 0.1],
    "Gamma": [0.0, 1.0],
}


async def _embedded(store, vectors: dict[str, list[float]] = VECTORS) -> dict[str, str]:
    nodes = await store.create_nodes(
        [NodeCreate(label=label, summary=f"{label} summary") for label in vectors]
    )
    for node in nodes:
        await store.set_node_embedding(node.id, vectors[node.label], "test-embedding")
    return {node.label: node.id for node in nodes}


def _labels(prompt: str) -> tuple[str, str]:
    labels = [line.split(": ", 1)[1] for line in prompt.splitlines() if line.startswith("- Label: ")]
    return labels[0], labels[1]


def related(pairs: dict[tuple[str, str], dict]):
    """Responder that answers for specific (from, to) label pairs."""

    def responder(model: str, prompt: str):
        return pairs.get(_labels(prompt))

    return responder


class TestParseInference:
    """Parsing the model's JSON answer."""

    def test_full_answer(self) -> None:
        """Test all fields are carried over."""
        content = json.dumps(
            {
                "hasRelationship": True,
                "relationshipType": "supports",
                "confidence": 0.8,
                "reasoning": "because",
                "evidence": ["quote one", "quote two"],
            }
        )

        inference = parse_inference(content, "a", "b")

        assert inference is not None
        assert inference.relationship_type == "supports"
        assert inference.confidence == 0.8
        assert inference.reasoning == "because"
        assert [e.content for e in inference.evidence] == ["quote one", "quote two"]

    def test_no_relationship(self) -> None:
        """Test a negative answer yields nothing."""
        assert parse_inference('{"hasRelationship": false}', "a", "b") is None

    def test_unknown_type_and_clamped_confidence(self) -> None:
        """Test unknown types fall back to related_to and confidence is clamped."""
        inference = parse_inference(
            '{"hasRelationship": true, "relationshipType": "loves", "confidence": 7}', "a", "b"
        )

        assert inference is not None
        assert inference.relationship_type == "related_to"
        assert inference.confidence == 1.0

    @pytest.mark.parametrize("content", ["[1, 2]", '"text"'])
    def test_non_object_rejected(self, content: str) -> None:
        """Test non-object JSON is an error."""
        with pytest.raises(ValueError, match="not a JSON object"):
            parse_inference(content, "a", "b")

    def test_invalid_json(self) -> None:
        """Test malformed JSON is an error."""
        with pytest.raises(ValueError):
            parse_inference("{not json", "a", "b")


class TestInference:
    """Candidate selection and LLM calls."""

    @pytest.mark.asyncio
    async def test_candidates_ranked_by_similarity(
        self, relationships: RelationshipEngine, sql_store: SqlGraphStore
    ) -> None:
        """Test candidates exclude the node itself and respect the threshold."""
        ids = await _embedded(sql_store)

        all_candidates = await relationships.find_candidates(ids["Alpha"])
        strict = await relationships.with_overrides(similarity_threshold=0.5).find_candidates(
            ids["Alpha"]
        )

        assert [c.node_id for c in all_candidates] == [ids["Beta"], ids["Gamma"]]
        assert [c.node_id for c in strict] == [ids["Beta"]]

    @pytest.mark.asyncio
    async def test_infer_pair(self, sql_store: SqlGraphStore, inference_config: InferenceConfig) -> None:
        """Test an accepted answer becomes an inference from A to B."""
        ids = await _embedded(sql_store)
        provider = MockLLMProvider(
            related({("Alpha", "Beta"): {"hasRelationship": True, "relationshipType": "supports", "confidence": 0.9}})
        )
        engine = RelationshipEngine(sql_store, provider, inference_config)

        inference = await engine.infer_pair(ids["Alpha"], ids["Beta"])

        assert inference is not None
        assert (inference.from_node_id, inference.to_node_id) == (ids["Alpha"], ids["Beta"])
        assert "Alpha summary" in provider.prompts[0]
        assert await engine.infer_pair(ids["Alpha"], ids["Gamma"]) is None

    @pytest.mark.asyncio
    async def test_low_confidence_dropped(
        self, sql_store: SqlGraphStore, inference_config: InferenceConfig
    ) -> None:
        """Test answers below min_confidence are discarded."""
        ids = await _embedded(sql_store)
        provider = MockLLMProvider(default_json={"hasRelationship": True, "confidence": 0.2})
        engine = RelationshipEngine(sql_store, provider, inference_config)

        assert await engine.infer_pair(ids["Alpha"], ids["Beta"]) is None

    @pytest.mark.asyncio
    async def test_max_per_node(self, sql_store: SqlGraphStore, inference_config: InferenceConfig) -> None:
        """Test at most max_per_node candidates are sent to the model."""
        ids = await _embedded(sql_store)
        provider = MockLLMProvider(default_json={"hasRelationship": True, "confidence": 0.9})
        engine = RelationshipEngine(sql_store, provider, inference_config).with_overrides(max_per_node=1)

        inferred = await engine.infer_for_node(ids["Alpha"])

        assert len(provider.prompts) == 1
        assert [i.to_node_id for i in inferred] == [ids["Beta"]]

    @pytest.mark.asyncio
    async def test_batch_records_errors_and_progress(
        self, sql_store: SqlGraphStore, inference_config: InferenceConfig
    ) -> None:
        """Test a failing node is recorded and the others still processed."""
        ids = await _embedded(sql_store)

        def responder(model: str, prompt: str):
            a_label, _ = _labels(prompt)
            if a_label == "Gamma":
                raise ProviderError("bad prompt", ProviderErrorCode.INVALID_REQUEST)
            return {"hasRelationship": True, "confidence": 0.9}

        engine = RelationshipEngine(sql_store, MockLLMProvider(responder), inference_config)
        processed: list[int] = []

        result = await engine.infer_for_nodes_with_progress(
            [ids["Alpha"], ids["Gamma"]], on_progress=lambda e: processed.append(e.processed)
        )

        assert result.errors == [{"node_id": ids["Gamma"], "error": "bad prompt"}]
        assert {i.to_node_id for i in result.inferred} == {ids["Beta"], ids["Gamma"]}
        assert processed == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_cancellation(self, relationships: RelationshipEngine, sql_store: SqlGraphStore) -> None:
        """Test a cancelled token stops the batch."""
        ids = await _embedded(sql_store)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(JobCancelledError):
            await relationships.infer_for_nodes_with_progress(list(ids.values()), token=token)

    @pytest.mark.asyncio
    async def test_works_on_memory_store(self, inference_config: InferenceConfig) -> None:
        """Test inference needs no relational backend."""
        store = InMemoryGraphStore()
        ids = await _embedded(store)
        provider = MockLLMProvider(default_json={"hasRelationship": True, "confidence": 0.9})
        engine = RelationshipEngine(store, provider, inference_config)

        inferred = await engine.infer_all()
        result = await engine.persist_inferences(inferred)

        assert len(inferred) == 6
        assert result.edges_ensured == 6
        edges = await store.list_edges()
        assert all(e.source == EdgeSource.AI_INFERRED for e in edges)
        assert {e.from_node_id for e in edges} == set(ids.values())


class TestPersistence:
    """Staging inferences through governance."""

    def _inference(self, ids: dict[str, str], confidence: float) -> InferredRelationship:
        return InferredRelationship(
            from_node_id=ids["Alpha"],
            to_node_id=ids["Beta"],
            relationship_type="supports",
            confidence=confidence,
            reasoning="r",
        )

    @pytest.mark.asyncio
    async def test_auto_approve(
        self,
        relationships: RelationshipEngine,
        governance: GovernanceService,
        sql_store: SqlGraphStore,
    ) -> None:
        """Test confident inferences are approved and materialized."""
        ids = await _embedded(sql_store)

        result = await relationships.persist_inferences([self._inference(ids, 0.9)], "run1")

        assert (result.suggestions_upserted, result.suggestions_approved, result.edges_ensured) == (1, 1, 1)
        (suggestion,) = await governance.list_suggestions(status=SuggestionStatus.APPROVED)
        assert suggestion.analysis_run_id == "run1"
        assert suggestion.reviewed_by == "auto"
        (edge,) = await sql_store.list_edges()
        assert edge.id == suggestion.approved_edge_id

    @pytest.mark.asyncio
    async def test_below_auto_approve_stays_pending(
        self,
        relationships: RelationshipEngine,
        governance: GovernanceService,
        sql_store: SqlGraphStore,
    ) -> None:
        """Test less confident inferences wait for review."""
        ids = await _embedded(sql_store)

        result = await relationships.persist_inferences([self._inference(ids, 0.6)])

        assert (result.suggestions_upserted, result.suggestions_approved) == (1, 0)
        assert len(await governance.list_suggestions()) == 1
        assert await sql_store.list_edges() == []

    @pytest.mark.asyncio
    async def test_reviewed_suggestions_not_recounted(
        self,
        relationships: RelationshipEngine,
        governance: GovernanceService,
        sql_store: SqlGraphStore,
    ) -> None:
        """Test re-inferring a rejected pair neither reopens nor counts it."""
        ids = await _embedded(sql_store)
        await relationships.persist_inferences([self._inference(ids, 0.6)])
        (pending,) = await governance.list_suggestions()
        await governance.reject(pending.id)

        result = await relationships.persist_inferences([self._inference(ids, 0.95)])

        assert result.suggestions_upserted == 0
        assert await sql_store.list_edges() == []

    @pytest.mark.asyncio
    async def test_governance_disabled(
        self,
        sql_store: SqlGraphStore,
        governance: GovernanceService,
        inference_config: InferenceConfig,
    ) -> None:
        """Test edges are written directly when governance is off."""
        ids = await _embedded(sql_store)
        inference_config.governance_enabled = False
        engine = RelationshipEngine(sql_store, MockLLMProvider(), inference_config, governance)

        result = await engine.persist_inferences([self._inference(ids, 0.6)])

        assert result.edges_ensured == 1
        assert await governance.list_suggestions(status=None) == []
        (edge,) = await sql_store.list_edges()
        assert edge.source == EdgeSource.AI_INFERRED
        assert edge.source_model == "test-llm"

    @pytest.mark.asyncio
    async def test_deleted_endpoint_is_recorded_not_raised(
        self,
        relationships: RelationshipEngine,
        governance: GovernanceService,
        sql_store: SqlGraphStore,
    ) -> None:
        """Test a node deleted before persistence costs one error, not the batch."""
        ids = await _embedded(sql_store)
        stale = self._inference(ids, 0.9)
        fresh = InferredRelationship(
            from_node_id=ids["Alpha"],
            to_node_id=ids["Gamma"],
            relationship_type="supports",
            confidence=0.9,
            reasoning="r",
        )
        await sql_store.delete_node(ids["Beta"])

        result = await relationships.persist_inferences([stale, fresh])

        assert result.suggestions_approved == 1
        assert result.edges_ensured == 1
        assert len(result.errors) == 1
        assert result.errors[0]["node_id"] == ids["Alpha"]
        assert "endpoint node not found" in result.errors[0]["error"]
        (edge,) = await sql_store.list_edges()
        assert edge.to_node_id == ids["Gamma"]
