"""
Governance workflow for AI-inferred edges.

Inferred relationships are staged as ``SuggestedEdge`` rows. Re-inferring
the same (from, to, type) key overwrites a pending proposal but never
resurrects a reviewed one. Approval materializes a real ``ai_inferred``
edge exactly once; approving again returns the same edge id.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from neuron.kg.models import (
    EdgeCreate,
    EdgeEvidence,
    EdgeSource,
    SuggestedEdge,
    SuggestionStatus,
    _generate_id,
)
from neuron.storage.database import Database, dumps_json, loads_json, to_timestamp
from neuron.store.base import resolve_scope
from neuron.store.sql import SqlGraphStore

logger = logging.getLogger(__name__)

SUGGESTION_COLUMNS = (
    "id, scope, from_node_id, to_node_id, relationship_type, strength, confidence, "
    "reasoning, evidence, status, source_model, analysis_run_id, reviewed_by, "
    "reviewed_at, review_reason, approved_edge_id, created_at, updated_at"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def suggestion_from_row(row: dict[str, Any]) -> SuggestedEdge:
    data = dict(row)
    data["evidence"] = loads_json(data["evidence"], [])
    return SuggestedEdge.model_validate(data)


class SuggestionCreate(BaseModel):
    """Payload for staging an inferred relationship."""

    from_node_id: str
    to_node_id: str
    relationship_type: str
    confidence: float = Field(ge=0.0, le=1.0)
    strength: float | None = Field(default=None, ge=0.0, le=1.0)
    reasoning: str | None = None
    evidence: list[EdgeEvidence] = Field(default_factory=list)
    source_model: str | None = None
    analysis_run_id: str | None = None


@dataclass
class ApprovalResult:
    suggestion: SuggestedEdge
    edge_id: str


@dataclass
class BulkApproveResult:
    approved_ids: list[str] = field(default_factory=list)
    edge_ids: list[str] = field(default_factory=list)
    not_found_ids: list[str] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)


@dataclass
class BulkRejectResult:
    rejected_ids: list[str] = field(default_factory=list)
    not_found_ids: list[str] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)


class SuggestedEdgeRepository:
    """Scoped access to the ``suggested_edges`` table."""

    def __init__(self, db: Database, scope: str | None = None) -> None:
        self.db = db
        self.scope = resolve_scope(scope)

    async def get(self, suggestion_id: str) -> SuggestedEdge | None:
        row = await self.db.query_one(
            f"SELECT {SUGGESTION_COLUMNS} FROM suggested_edges WHERE id = ? AND scope = ?",
            (suggestion_id, self.scope),
        )
        return suggestion_from_row(row) if row else None

    async def get_by_key(
        self, from_node_id: str, to_node_id: str, relationship_type: str
    ) -> SuggestedEdge | None:
        row = await self.db.query_one(
            f"SELECT {SUGGESTION_COLUMNS} FROM suggested_edges WHERE scope = ? "
            "AND from_node_id = ? AND to_node_id = ? AND relationship_type = ?",
            (self.scope, from_node_id, to_node_id, relationship_type),
        )
        return suggestion_from_row(row) if row else None

    async def list_suggestions(
        self,
        status: SuggestionStatus | str | None = None,
        relationship_type: str | None = None,
        min_confidence: float | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SuggestedEdge]:
        """List suggestions newest first."""
        conditions = ["scope = ?"]
        params: list[Any] = [self.scope]
        if status:
            conditions.append("status = ?")
            params.append(SuggestionStatus(status).value)
        if relationship_type:
            conditions.append("relationship_type = ?")
            params.append(relationship_type)
        if min_confidence is not None:
            conditions.append("confidence >= ?")
            params.append(min_confidence)
        rows = await self.db.query(
            f"SELECT {SUGGESTION_COLUMNS} FROM suggested_edges "
            f"WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return [suggestion_from_row(row) for row in rows]

    async def upsert(self, payload: SuggestionCreate) -> SuggestedEdge:
        """
        Stage a suggestion.

        An existing pending row for the same key is overwritten; an
        approved or rejected row is left untouched and returned as is.
        """
        now = to_timestamp(_utc_now())
        await self.db.execute(
            f"INSERT INTO suggested_edges ({SUGGESTION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, NULL, NULL, NULL, NULL, ?, ?) "
            "ON CONFLICT(scope, from_node_id, to_node_id, relationship_type) DO UPDATE SET "
            "strength = excluded.strength, confidence = excluded.confidence, "
            "reasoning = excluded.reasoning, evidence = excluded.evidence, "
            "source_model = excluded.source_model, "
            "analysis_run_id = excluded.analysis_run_id, updated_at = excluded.updated_at "
            "WHERE suggested_edges.status = 'pending'",
            (
                _generate_id(),
                self.scope,
                payload.from_node_id,
                payload.to_node_id,
                payload.relationship_type,
                payload.strength,
                payload.confidence,
                payload.reasoning,
                dumps_json([e.model_dump(mode="json") for e in payload.evidence]),
                payload.source_model,
                payload.analysis_run_id,
                now,
                now,
            ),
        )
        suggestion = await self.get_by_key(
            payload.from_node_id, payload.to_node_id, payload.relationship_type
        )
        if suggestion is None:
            raise RuntimeError("Failed to upsert suggested edge")
        return suggestion

    async def mark_approved(
        self,
        suggestion_id: str,
        edge_id: str,
        reviewed_by: str | None = None,
        reason: str | None = None,
    ) -> SuggestedEdge | None:
        now = to_timestamp(_utc_now())
        await self.db.execute(
            "UPDATE suggested_edges SET status = 'approved', reviewed_by = ?, reviewed_at = ?, "
            "review_reason = ?, approved_edge_id = ?, updated_at = ? WHERE id = ? AND scope = ?",
            (reviewed_by, now, reason, edge_id, now, suggestion_id, self.scope),
        )
        return await self.get(suggestion_id)

    async def mark_rejected(
        self, suggestion_id: str, reviewed_by: str | None = None, reason: str | None = None
    ) -> SuggestedEdge | None:
        now = to_timestamp(_utc_now())
        await self.db.execute(
            "UPDATE suggested_edges SET status = 'rejected', reviewed_by = ?, reviewed_at = ?, "
            "review_reason = ?, updated_at = ? WHERE id = ? AND scope = ?",
            (reviewed_by, now, reason, now, suggestion_id, self.scope),
        )
        return await self.get(suggestion_id)


class GovernanceService:
    """Review decisions on staged suggestions."""

    def __init__(
        self,
        db: Database,
        store: SqlGraphStore,
        scope: str | None = None,
        default_source_model: str | None = None,
    ) -> None:
        self.db = db
        self.store = store
        self.scope = resolve_scope(scope)
        self.default_source_model = default_source_model
        self.repository = SuggestedEdgeRepository(db, self.scope)

    async def list_suggestions(
        self,
        status: SuggestionStatus | str | None = SuggestionStatus.PENDING,
        relationship_type: str | None = None,
        min_confidence: float | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SuggestedEdge]:
        return await self.repository.list_suggestions(
            status=status,
            relationship_type=relationship_type,
            min_confidence=min_confidence,
            limit=limit,
            offset=offset,
        )

    async def get_suggestion(self, suggestion_id: str) -> SuggestedEdge | None:
        return await self.repository.get(suggestion_id)

    async def ensure_edge(self, suggestion: SuggestedEdge) -> str:
        """
        Insert the suggestion's ``ai_inferred`` edge or fetch the existing one.

        Raises:
            ValueError: If an endpoint node no longer exists in scope
        """
        await self.store.create_edges(
            [
                EdgeCreate(
                    from_node_id=suggestion.from_node_id,
                    to_node_id=suggestion.to_node_id,
                    relationship_type=suggestion.relationship_type,
                    strength=(
                        suggestion.strength
                        if suggestion.strength is not None
                        else suggestion.confidence
                    ),
                    confidence=suggestion.confidence,
                    evidence=suggestion.evidence,
                    source=EdgeSource.AI_INFERRED,
                    source_model=suggestion.source_model or self.default_source_model,
                )
            ],
            self.scope,
        )
        row = await self.db.query_one(
            "SELECT id FROM edges WHERE scope = ? AND from_node_id = ? "
            "AND to_node_id = ? AND relationship_type = ?",
            (
                self.scope,
                suggestion.from_node_id,
                suggestion.to_node_id,
                suggestion.relationship_type,
            ),
        )
        if row is None:
            raise ValueError(
                f"Cannot materialize suggestion {suggestion.id}: endpoint node not found"
            )
        return row["id"]

    async def approve(
        self, suggestion_id: str, reviewed_by: str | None = None, reason: str | None = None
    ) -> ApprovalResult:
        """
        Approve a suggestion (idempotent).

        Raises:
            ValueError: If the suggestion is not found or was rejected
        """
        suggestion = await self.repository.get(suggestion_id)
        if suggestion is None:
            raise ValueError(f"Suggestion not found: {suggestion_id}")
        if suggestion.status == SuggestionStatus.REJECTED:
            raise ValueError(f"Suggestion {suggestion_id} was rejected and cannot be approved")
        if suggestion.status == SuggestionStatus.APPROVED and suggestion.approved_edge_id:
            return ApprovalResult(suggestion=suggestion, edge_id=suggestion.approved_edge_id)

        edge_id = await self.ensure_edge(suggestion)
        approved = await self.repository.mark_approved(suggestion_id, edge_id, reviewed_by, reason)
        logger.info(f"Approved suggestion {suggestion_id} -> edge {edge_id}")
        return ApprovalResult(suggestion=approved or suggestion, edge_id=edge_id)

    async def reject(
        self, suggestion_id: str, reviewed_by: str | None = None, reason: str | None = None
    ) -> SuggestedEdge:
        """
        Reject a pending suggestion.

        Rejecting an already rejected suggestion keeps the original review.

        Raises:
            ValueError: If the suggestion is not found or was approved
        """
        suggestion = await self.repository.get(suggestion_id)
        if suggestion is None:
            raise ValueError(f"Suggestion not found: {suggestion_id}")
        if suggestion.status == SuggestionStatus.REJECTED:
            return suggestion
        if suggestion.status == SuggestionStatus.APPROVED:
            raise ValueError(f"Suggestion {suggestion_id} was already approved")

        rejected = await self.repository.mark_rejected(suggestion_id, reviewed_by, reason)
        logger.info(f"Rejected suggestion {suggestion_id}")
        return rejected or suggestion

    async def bulk_approve(
        self, suggestion_ids: Sequence[str], reviewed_by: str | None = None
    ) -> BulkApproveResult:
        result = BulkApproveResult()
        for suggestion_id in suggestion_ids:
            suggestion = await self.repository.get(suggestion_id)
            if suggestion is None:
                result.not_found_ids.append(suggestion_id)
                continue
            if suggestion.status == SuggestionStatus.REJECTED:
                result.skipped_ids.append(suggestion_id)
                continue
            approval = await self.approve(suggestion_id, reviewed_by)
            result.approved_ids.append(suggestion_id)
            result.edge_ids.append(approval.edge_id)
        return result

    async def bulk_reject(
        self,
        suggestion_ids: Sequence[str],
        reviewed_by: str | None = None,
        reason: str | None = None,
    ) -> BulkRejectResult:
        result = BulkRejectResult()
        for suggestion_id in suggestion_ids:
            suggestion = await self.repository.get(suggestion_id)
            if suggestion is None:
                result.not_found_ids.append(suggestion_id)
                continue
            if suggestion.status == SuggestionStatus.APPROVED:
                result.skipped_ids.append(suggestion_id)
                continue
            await self.reject(suggestion_id, reviewed_by, reason)
            result.rejected_ids.append(suggestion_id)
        return result
