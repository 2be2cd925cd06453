"""
Knowledge graph data models: Node, Edge, Cluster, SuggestedEdge.

These store the ACTUAL graph data. Every entity carries a ``scope``
(tenant key); stores never return rows from a scope other than the one
a call resolved to.

Create/update payloads live next to the entities they build so that
every backend applies identical defaults.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

DEFAULT_SCOPE = "default"


def _generate_id() -> str:
    """Generate a 12-character hex ID from UUID4."""
    return uuid4().hex[:12]


def _utc_now() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class EdgeSource(str, Enum):
    """Where an edge came from."""

    MANUAL = "manual"
    AI_INFERRED = "ai_inferred"
    IMPORTED = "imported"


class AnalysisStatus(str, Enum):
    """Per-node enrichment status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class SuggestionStatus(str, Enum):
    """Review state of a staged AI-inferred edge."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EdgeEvidence(BaseModel):
    """
    A piece of supporting evidence for an edge.

    Attributes:
        type: Evidence kind ("text", "url", "citation", ...)
        content: The evidence payload (quote, URL, etc.)
        confidence: Optional confidence for this single piece
        source_id: Optional provenance reference
        metadata: Free-form extra data
    """

    type: str = "text"
    content: str
    confidence: float | None = None
    source_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# NODES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Node(BaseModel):
    """
    A vertex in the knowledge graph.

    Attributes:
        id: Unique identifier
        scope: Tenant key the node belongs to
        slug: Human-readable key, unique within scope, never updated
        label: Display name
        node_type: Category (e.g. "concept", "document", "article")
        domain: Grouping used for filtering (e.g. "general", "docs")
        tier: Optional hierarchy level
        summary: Short text used for embeddings and inference prompts
        description: Longer description
        content: Full body text
        metadata: Flexible key-value storage
        embedding: Vector representation (set/cleared with model + timestamp)
        embedding_model: Model that produced ``embedding``
        embedding_generated_at: When ``embedding`` was produced
        cluster_id: Primary cluster assignment
        cluster_similarity: Cosine similarity to the cluster centroid
        inbound_count: Cached inbound edge count
        outbound_count: Cached outbound edge count
        connection_count: inbound_count + outbound_count
        analysis_status: Enrichment status
    """

    id: str = Field(default_factory=_generate_id)
    scope: str = DEFAULT_SCOPE
    slug: str
    label: str
    node_type: str = "concept"
    domain: str = "general"
    tier: int | None = None
    summary: str | None = None
    description: str | None = None
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    embedding: list[float] | None = None
    embedding_model: str | None = None
    embedding_generated_at: datetime | None = None
    cluster_id: str | None = None
    cluster_similarity: float | None = None
    inbound_count: int = 0
    outbound_count: int = 0
    connection_count: int = 0
    analysis_status: AnalysisStatus = AnalysisStatus.PENDING
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def embedding_text(self) -> str:
        """Text fed to the embedding provider for this node."""
        parts = [self.label, self.summary, self.description, self.content]
        return "\n\n".join(part for part in parts if part)


class NodeCreate(BaseModel):
    """Payload for creating a node. ``slug`` defaults to slugify(label)."""

    label: str
    slug: str | None = None
    node_type: str = "concept"
    domain: str = "general"
    tier: int | None = None
    summary: str | None = None
    description: str | None = None
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class _Patch(BaseModel):
    non_nullable: ClassVar[frozenset[str]] = frozenset()

    def changes(self, mode: Literal["python", "json"] = "python") -> dict[str, Any]:
        """Explicitly set fields, minus nulls the stored entity cannot hold."""
        return {
            name: value
            for name, value in self.model_dump(exclude_unset=True, mode=mode).items()
            if value is not None or name not in self.non_nullable
        }


class NodeUpdate(_Patch):
    """
    Partial node update. Only explicitly set fields are applied.

    An explicit None clears nullable fields (summary, tier, ...) and is
    ignored for fields every node must have.
    """

    non_nullable: ClassVar[frozenset[str]] = frozenset(
        {"label", "node_type", "domain", "metadata", "analysis_status"}
    )

    label: str | None = None
    node_type: str | None = None
    domain: str | None = None
    tier: int | None = None
    summary: str | None = None
    description: str | None = None
    content: str | None = None
    metadata: dict[str, Any] | None = None
    analysis_status: AnalysisStatus | None = None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# EDGES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Edge(BaseModel):
    """
    A directed relationship between two nodes of the same scope.

    Unique on (scope, from_node_id, to_node_id, relationship_type).
    """

    id: str = Field(default_factory=_generate_id)
    scope: str = DEFAULT_SCOPE
    from_node_id: str
    to_node_id: str
    relationship_type: str = "related_to"
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    evidence: list[EdgeEvidence] = Field(default_factory=list)
    label: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    source: EdgeSource = EdgeSource.MANUAL
    source_model: str | None = None
    bidirectional: bool = False
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def key(self) -> tuple[str, str, str]:
        """Uniqueness key within a scope."""
        return (self.from_node_id, self.to_node_id, self.relationship_type)


class EdgeCreate(BaseModel):
    """Payload for creating an edge."""

    from_node_id: str
    to_node_id: str
    relationship_type: str = "related_to"
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    evidence: list[EdgeEvidence] = Field(default_factory=list)
    label: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    source: EdgeSource = EdgeSource.MANUAL
    source_model: str | None = None
    bidirectional: bool = False


class EdgeUpdate(_Patch):
    """Partial edge update. Endpoints and source are immutable."""

    non_nullable: ClassVar[frozenset[str]] = frozenset(
        {"relationship_type", "strength", "confidence", "evidence", "metadata"}
    )

    relationship_type: str | None = None
    strength: float | None = Field(default=None, ge=0.0, le=1.0)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    evidence: list[EdgeEvidence] | None = None
    label: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# CLUSTERS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Cluster(BaseModel):
    """A group of similar nodes, replaced wholesale on every clustering run."""

    id: str = Field(default_factory=_generate_id)
    scope: str = DEFAULT_SCOPE
    label: str
    centroid: list[float] = Field(default_factory=list)
    member_count: int = 0
    avg_similarity: float = 0.0
    cohesion: float = 0.0
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class ClusterMembership(BaseModel):
    """Node-to-cluster assignment row."""

    scope: str = DEFAULT_SCOPE
    node_id: str
    cluster_id: str
    similarity_score: float
    is_primary: bool = True
    assigned_at: datetime = Field(default_factory=_utc_now)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# GOVERNANCE
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SuggestedEdge(BaseModel):
    """
    A staged, human-reviewable AI-inferred edge proposal.

    Unique on (scope, from_node_id, to_node_id, relationship_type). Once a
    row leaves ``pending`` it is never overwritten by later inferences.
    """

    id: str = Field(default_factory=_generate_id)
    scope: str = DEFAULT_SCOPE
    from_node_id: str
    to_node_id: str
    relationship_type: str
    strength: float | None = None
    confidence: float
    reasoning: str | None = None
    evidence: list[EdgeEvidence] = Field(default_factory=list)
    status: SuggestionStatus = SuggestionStatus.PENDING
    source_model: str | None = None
    analysis_run_id: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_reason: str | None = None
    approved_edge_id: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
