"""
LLM-backed relationship inference between similar nodes.

Candidates come from the store's similarity ranking; each candidate pair
is judged by the LLM through a fixed JSON prompt. Accepted inferences are
staged through the governance workflow, or written directly as
``ai_inferred`` edges when governance is off or unavailable.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from neuron.analysis.cancellation import CancellationToken, JobCancelledError
from neuron.analysis.governance import GovernanceService, SuggestionCreate
from neuron.analysis.retry import call_with_retry, pause_for_rate_limit
from neuron.kg.models import EdgeCreate, EdgeEvidence, EdgeSource, Node, SuggestionStatus
from neuron.models.jobs import ItemProgress, ItemProgressCallback, notify_progress
from neuron.providers.base import LLMProvider
from neuron.providers.errors import ProviderError, ProviderErrorCode
from neuron.store.base import GraphStore, SimilarityResult, resolve_scope

logger = logging.getLogger(__name__)

RELATIONSHIP_TYPES = (
    "related_to",
    "derives_from",
    "contradicts",
    "supports",
    "references",
    "part_of",
    "leads_to",
    "similar_to",
)

INFERENCE_PROMPT = """You are analyzing potential relationships between concepts in a knowledge graph.

Node A:
- Label: {a_label}
- Summary: {a_summary}
- Content: {a_content}

Node B:
- Label: {b_label}
- Summary: {b_summary}
- Content: {b_content}

Determine if there is a meaningful relationship between these nodes.

Respond in JSON:
{{
  "hasRelationship": boolean,
  "relationshipType": {types},
  "confidence": 0.0-1.0,
  "reasoning": "Brief explanation",
  "evidence": ["Specific quote or fact supporting this"]
}}
"""


@dataclass
class InferenceConfig:
    model: str = "gpt-4o-mini"
    min_confidence: float = 0.7
    max_per_node: int = 10
    similarity_threshold: float = 0.75
    rate_limit: int = 60  # requests per minute
    max_retries: int = 3
    retry_base_delay: float = 0.5
    governance_enabled: bool = True
    auto_approve_enabled: bool = True
    auto_approve_min_confidence: float = 0.7


@dataclass
class InferredRelationship:
    from_node_id: str
    to_node_id: str
    relationship_type: str
    confidence: float
    reasoning: str
    evidence: list[EdgeEvidence] = field(default_factory=list)


@dataclass
class InferenceBatchResult:
    inferred: list[InferredRelationship] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass
class PersistInferencesResult:
    suggestions_upserted: int = 0
    suggestions_approved: int = 0
    edges_ensured: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


def build_inference_prompt(node_a: Node, node_b: Node) -> str:
    return INFERENCE_PROMPT.format(
        a_label=node_a.label,
        a_summary=node_a.summary or "",
        a_content=node_a.content or "",
        b_label=node_b.label,
        b_summary=node_b.summary or "",
        b_content=node_b.content or "",
        types=" | ".join(f'"{t}"' for t in RELATIONSHIP_TYPES),
    )


def parse_inference(
    content: str, from_node_id: str, to_node_id: str
) -> InferredRelationship | None:
    """
    Parse the LLM's JSON answer.

    Raises:
        ValueError: If the content is not a JSON object
    """
    parsed: Any = json.loads(content)
    if not isinstance(parsed, dict):
        raise ValueError("Relationship inference response is not a JSON object")
    if not parsed.get("hasRelationship"):
        return None

    relationship_type = parsed.get("relationshipType") or "related_to"
    if relationship_type not in RELATIONSHIP_TYPES:
        relationship_type = "related_to"
    confidence = min(1.0, max(0.0, float(parsed.get("confidence") or 0.0)))
    evidence = [
        EdgeEvidence(type="text", content=str(text)) for text in parsed.get("evidence") or []
    ]
    return InferredRelationship(
        from_node_id=from_node_id,
        to_node_id=to_node_id,
        relationship_type=relationship_type,
        confidence=confidence,
        reasoning=str(parsed.get("reasoning") or ""),
        evidence=evidence,
    )


class RelationshipEngine:
    """Proposes, scores and stages new edges."""

    def __init__(
        self,
        store: GraphStore,
        provider: LLMProvider,
        config: InferenceConfig | None = None,
        governance: GovernanceService | None = None,
        scope: str | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config or InferenceConfig()
        self.governance = governance
        self.scope = resolve_scope(scope)

    def with_overrides(
        self,
        max_per_node: int | None = None,
        similarity_threshold: float | None = None,
    ) -> RelationshipEngine:
        """Copy of this engine with per-run candidate limits."""
        changes: dict[str, Any] = {}
        if max_per_node is not None:
            changes["max_per_node"] = max_per_node
        if similarity_threshold is not None:
            changes["similarity_threshold"] = similarity_threshold
        if not changes:
            return self
        return RelationshipEngine(
            self.store,
            self.provider,
            replace(self.config, **changes),
            self.governance,
            self.scope,
        )

    async def find_candidates(self, node_id: str) -> list[SimilarityResult]:
        """Up to ``3 * max_per_node`` nearest neighbours at or above the threshold."""
        return await self.store.find_similar_node_ids(
            node_id,
            limit=self.config.max_per_node * 3,
            min_similarity=self.config.similarity_threshold,
            scope=self.scope,
        )

    async def infer_pair(self, from_node_id: str, to_node_id: str) -> InferredRelationship | None:
        """
        Ask the LLM whether two nodes are related.

        Returns:
            The inference if the model found a relationship with confidence
            at or above ``min_confidence``, else None
        """
        node_a = await self.store.get_node_by_id(from_node_id, self.scope)
        node_b = await self.store.get_node_by_id(to_node_id, self.scope)
        if node_a is None or node_b is None:
            return None

        prompt = build_inference_prompt(node_a, node_b)

        async def call() -> str:
            response = await self.provider.generate(
                self.config.model, prompt, response_format="json"
            )
            return response.content

        content = await call_with_retry(
            call, self.config.max_retries, self.config.retry_base_delay
        )
        if not content:
            return None
        inference = parse_inference(content, from_node_id, to_node_id)
        if inference is None or inference.confidence < self.config.min_confidence:
            return None
        return inference

    async def infer_for_node(
        self, node_id: str, token: CancellationToken | None = None
    ) -> list[InferredRelationship]:
        """Infer relationships from one node to its best candidates."""
        candidates = await self.find_candidates(node_id)
        inferred = []
        for candidate in candidates[: self.config.max_per_node]:
            if token is not None:
                token.raise_if_cancelled()
            inference = await self.infer_pair(node_id, candidate.node_id)
            if inference is not None:
                inferred.append(inference)
            await pause_for_rate_limit(self.config.rate_limit)
        return inferred

    async def infer_for_nodes(self, node_ids: Sequence[str]) -> InferenceBatchResult:
        return await self.infer_for_nodes_with_progress(node_ids)

    async def infer_for_nodes_with_progress(
        self,
        node_ids: Sequence[str],
        token: CancellationToken | None = None,
        on_progress: ItemProgressCallback | None = None,
    ) -> InferenceBatchResult:
        """
        Infer relationships for many nodes, one node at a time.

        A node whose inference fails gets an error entry and processing
        continues with the next node.

        Raises:
            JobCancelledError: If the token is cancelled
        """
        outcome = InferenceBatchResult()
        total = len(node_ids)
        await notify_progress(on_progress, ItemProgress(processed=0, total=total))

        for index, node_id in enumerate(node_ids, start=1):
            if token is not None:
                token.raise_if_cancelled()
            try:
                outcome.inferred.extend(await self.infer_for_node(node_id, token))
            except JobCancelledError:
                raise
            except ProviderError as e:
                if e.code == ProviderErrorCode.CANCELED:
                    raise JobCancelledError(str(e)) from e
                logger.warning(f"Relationship inference failed for {node_id} ({e.code.value}): {e}")
                outcome.errors.append({"node_id": node_id, "error": str(e)})
            except Exception as e:
                logger.warning(f"Relationship inference failed for {node_id}: {e}")
                outcome.errors.append({"node_id": node_id, "error": str(e)})

            await notify_progress(
                on_progress,
                ItemProgress(processed=index, total=total, current_item=node_id),
            )

        logger.info(
            f"Inferred {len(outcome.inferred)} relationships for {total} nodes "
            f"({len(outcome.errors)} errors) in scope {self.scope}"
        )
        return outcome

    async def infer_all(self) -> list[InferredRelationship]:
        nodes = await self.store.list_nodes(scope=self.scope)
        return (await self.infer_for_nodes([node.id for node in nodes])).inferred

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # PERSISTENCE
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _active_governance(self) -> GovernanceService | None:
        if not self.config.governance_enabled or self.governance is None:
            return None
        if not await self.governance.db.table_exists("suggested_edges"):
            logger.warning("suggested_edges table missing; writing inferred edges directly")
            return None
        return self.governance

    async def persist_inferences(
        self,
        inferences: Sequence[InferredRelationship],
        analysis_run_id: str | None = None,
    ) -> PersistInferencesResult:
        """
        Stage inferences as suggestions, auto-approving confident ones.

        Falls back to writing ``ai_inferred`` edges directly when
        governance is disabled or its table is missing.
        """
        result = PersistInferencesResult()
        if not inferences:
            return result

        governance = await self._active_governance()
        if governance is None:
            created = await self.store.create_edges(
                [
                    EdgeCreate(
                        from_node_id=inf.from_node_id,
                        to_node_id=inf.to_node_id,
                        relationship_type=inf.relationship_type,
                        strength=inf.confidence,
                        confidence=inf.confidence,
                        evidence=inf.evidence,
                        source=EdgeSource.AI_INFERRED,
                        source_model=self.config.model,
                    )
                    for inf in inferences
                ],
                self.scope,
            )
            result.edges_ensured = len(created)
            return result

        for inference in inferences:
            try:
                await self._stage_inference(governance, inference, analysis_run_id, result)
            except ValueError as e:
                # Endpoints can disappear between inference and persistence
                logger.warning(
                    f"Could not persist inference {inference.from_node_id} -> "
                    f"{inference.to_node_id}: {e}"
                )
                result.errors.append({"node_id": inference.from_node_id, "error": str(e)})

        return result

    async def _stage_inference(
        self,
        governance: GovernanceService,
        inference: InferredRelationship,
        analysis_run_id: str | None,
        result: PersistInferencesResult,
    ) -> None:
        suggestion = await governance.repository.upsert(
            SuggestionCreate(
                from_node_id=inference.from_node_id,
                to_node_id=inference.to_node_id,
                relationship_type=inference.relationship_type,
                confidence=inference.confidence,
                strength=inference.confidence,
                reasoning=inference.reasoning,
                evidence=inference.evidence,
                source_model=self.config.model,
                analysis_run_id=analysis_run_id,
            )
        )
        if suggestion.status != SuggestionStatus.PENDING:
            return
        result.suggestions_upserted += 1

        if (
            self.config.auto_approve_enabled
            and inference.confidence >= self.config.auto_approve_min_confidence
        ):
            await governance.approve(suggestion.id, reviewed_by="auto", reason="auto-approved")
            result.suggestions_approved += 1
            result.edges_ensured += 1
