"""
GraphStore contract shared by every backend.

Defines the ``GraphStore`` protocol, scope resolution, the result types
returned by graph queries, and small conversion helpers so that the
in-memory, file-backed and relational stores produce identical shapes.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from neuron.kg.models import (
    DEFAULT_SCOPE,
    Edge,
    EdgeCreate,
    EdgeUpdate,
    Node,
    NodeCreate,
    NodeUpdate,
)
from neuron.kg.settings import GraphSettings, GraphSettingsUpdate
from neuron.kg.slugs import slugify

PathAlgorithm = Literal["shortest", "all"]
ExpandDirection = Literal["outbound", "inbound", "both"]


def resolve_scope(scope: str | None) -> str:
    """Trim a scope value, falling back to the default scope when blank."""
    if scope is None:
        return DEFAULT_SCOPE
    trimmed = scope.strip()
    return trimmed or DEFAULT_SCOPE


def node_slug(payload: NodeCreate) -> str:
    """Slug to use for a create payload."""
    if payload.slug:
        return payload.slug
    return slugify(payload.label)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# RESULT TYPES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class DeleteNodeResult(BaseModel):
    deleted: bool
    edges_removed: int = 0


class EmbeddingInfo(BaseModel):
    """Embedding triple for a node; all three fields are set or None together."""

    embedding: list[float] | None = None
    embedding_model: str | None = None
    embedding_generated_at: datetime | None = None


class SimilarityResult(BaseModel):
    node_id: str
    similarity: float


class GraphQuery(BaseModel):
    """Filters for ``get_graph``. Empty lists mean "no filter"."""

    domains: list[str] = Field(default_factory=list)
    node_types: list[str] = Field(default_factory=list)
    cluster_ids: list[str] = Field(default_factory=list)
    node_ids: list[str] = Field(default_factory=list)
    relationship_types: list[str] = Field(default_factory=list)
    min_edge_strength: float | None = None
    max_nodes: int | None = Field(default=None, ge=1)


class VisualNode(BaseModel):
    id: str
    slug: str
    label: str
    domain: str
    node_type: str
    tier: int | None = None
    cluster_id: str | None = None
    connection_count: int = 0
    ref: str | None = None
    metadata: dict = Field(default_factory=dict)


class VisualEdge(BaseModel):
    """Edge as drawn by a viewer; endpoints are referenced by slug."""

    id: str
    from_slug: str
    to_slug: str
    relationship_type: str
    strength: float
    label: str | None = None


class GraphMeta(BaseModel):
    total_nodes: int
    total_edges: int
    truncated: bool
    query_time_ms: float


class GraphView(BaseModel):
    nodes: list[VisualNode]
    edges: list[VisualEdge]
    meta: GraphMeta | None = None


class GraphPath(BaseModel):
    """
    One directed path between two nodes.

    ``length`` counts nodes on the path, so a direct edge has length 2.
    """

    nodes: list[str]
    edges: list[str]
    length: int
    total_strength: float


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# PROTOCOL
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@runtime_checkable
class GraphStore(Protocol):
    """
    Scoped CRUD and graph-query contract.

    Every method accepts an optional ``scope``; None or blank resolves to
    ``DEFAULT_SCOPE``. Data written under one scope is invisible to every
    other scope.
    """

    kind: str

    # Nodes
    async def list_nodes(
        self, *, limit: int | None = None, offset: int = 0, scope: str | None = None
    ) -> list[Node]: ...

    async def get_node_by_id(self, node_id: str, scope: str | None = None) -> Node | None: ...

    async def get_node_by_slug(self, slug: str, scope: str | None = None) -> Node | None: ...

    async def create_nodes(
        self, nodes: Sequence[NodeCreate], scope: str | None = None
    ) -> list[Node]: ...

    async def update_node(
        self, node_id: str, patch: NodeUpdate, scope: str | None = None
    ) -> Node | None: ...

    async def delete_node(self, node_id: str, scope: str | None = None) -> DeleteNodeResult: ...

    # Edges
    async def list_edges(
        self, *, limit: int | None = None, offset: int = 0, scope: str | None = None
    ) -> list[Edge]: ...

    async def create_edges(
        self, edges: Sequence[EdgeCreate], scope: str | None = None
    ) -> list[Edge]: ...

    async def update_edge(
        self, edge_id: str, patch: EdgeUpdate, scope: str | None = None
    ) -> Edge | None: ...

    async def delete_edge(self, edge_id: str, scope: str | None = None) -> bool: ...

    # Settings
    async def get_settings(self, scope: str | None = None) -> GraphSettings: ...

    async def update_settings(
        self, update: GraphSettingsUpdate, scope: str | None = None
    ) -> GraphSettings: ...

    async def reset_settings(
        self, sections: list[str] | None = None, scope: str | None = None
    ) -> GraphSettings: ...

    # Graph queries
    async def get_graph(self, query: GraphQuery, scope: str | None = None) -> GraphView: ...

    async def expand_graph(
        self,
        from_node_ids: Sequence[str],
        *,
        depth: int = 1,
        direction: ExpandDirection = "both",
        max_nodes: int | None = None,
        scope: str | None = None,
    ) -> GraphView: ...

    async def find_paths(
        self,
        from_node_id: str,
        to_node_id: str,
        *,
        max_depth: int = 5,
        algorithm: PathAlgorithm = "shortest",
        scope: str | None = None,
    ) -> list[GraphPath]: ...

    # Embeddings + similarity
    async def get_node_embedding_info(
        self, node_id: str, scope: str | None = None
    ) -> EmbeddingInfo | None: ...

    async def set_node_embedding(
        self, node_id: str, embedding: list[float], model: str, scope: str | None = None
    ) -> None: ...

    async def clear_node_embeddings(
        self, node_ids: Sequence[str] | None = None, scope: str | None = None
    ) -> None: ...

    async def find_similar_node_ids(
        self,
        node_id: str,
        *,
        limit: int = 50,
        min_similarity: float = 0.0,
        scope: str | None = None,
    ) -> list[SimilarityResult]: ...


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SHARED HELPERS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def to_visual_node(node: Node) -> VisualNode:
    ref = node.metadata.get("ref")
    return VisualNode(
        id=node.id,
        slug=node.slug,
        label=node.label,
        domain=node.domain,
        node_type=node.node_type,
        tier=node.tier,
        cluster_id=node.cluster_id,
        connection_count=node.connection_count,
        ref=ref if isinstance(ref, str) else None,
        metadata=node.metadata,
    )


def to_visual_edges(edges: Iterable[Edge], nodes: Mapping[str, Node]) -> list[VisualEdge]:
    """Convert edges whose endpoints are both in ``nodes``; others are dropped."""
    visual: list[VisualEdge] = []
    for edge in edges:
        source = nodes.get(edge.from_node_id)
        target = nodes.get(edge.to_node_id)
        if source is None or target is None:
            continue
        visual.append(
            VisualEdge(
                id=edge.id,
                from_slug=source.slug,
                to_slug=target.slug,
                relationship_type=edge.relationship_type,
                strength=edge.strength,
                label=edge.label,
            )
        )
    return visual


def filter_graph_nodes(nodes: Iterable[Node], query: GraphQuery) -> list[Node]:
    """Apply the node filters of a GraphQuery (no truncation)."""
    selected = list(nodes)
    if query.domains:
        selected = [n for n in selected if n.domain in query.domains]
    if query.node_types:
        selected = [n for n in selected if n.node_type in query.node_types]
    if query.cluster_ids:
        selected = [n for n in selected if n.cluster_id in query.cluster_ids]
    if query.node_ids:
        selected = [n for n in selected if n.id in query.node_ids]
    return selected


def filter_graph_edges(edges: Iterable[Edge], query: GraphQuery) -> list[Edge]:
    """Apply the edge filters of a GraphQuery."""
    selected = list(edges)
    if query.relationship_types:
        selected = [e for e in selected if e.relationship_type in query.relationship_types]
    if query.min_edge_strength is not None:
        selected = [e for e in selected if e.strength >= query.min_edge_strength]
    return selected


def build_graph_view(
    nodes: Sequence[Node],
    edges: Iterable[Edge],
    query: GraphQuery,
    started: float,
) -> GraphView:
    """
    Assemble a GraphView from already scope-filtered, created_at-ordered rows.

    Args:
        nodes: Scope nodes in created_at order
        edges: Scope edges
        query: Filters to apply
        started: ``time.perf_counter()`` at query start
    """
    selected = filter_graph_nodes(nodes, query)
    truncated = query.max_nodes is not None and len(selected) > query.max_nodes
    if query.max_nodes is not None:
        selected = selected[: query.max_nodes]

    by_id = {node.id: node for node in selected}
    visual_edges = to_visual_edges(filter_graph_edges(edges, query), by_id)
    return GraphView(
        nodes=[to_visual_node(node) for node in selected],
        edges=visual_edges,
        meta=GraphMeta(
            total_nodes=len(selected),
            total_edges=len(visual_edges),
            truncated=truncated,
            query_time_ms=round((time.perf_counter() - started) * 1000, 3),
        ),
    )


def build_expansion_view(
    nodes: Sequence[Node],
    edges: Iterable[Edge],
    from_node_ids: Sequence[str],
    reached: set[str],
    max_nodes: int | None = None,
) -> GraphView:
    """
    Assemble the GraphView for a frontier expansion.

    Seed nodes are kept ahead of reached nodes when ``max_nodes`` truncates.
    """
    seeds = set(from_node_ids)
    selected = [n for n in nodes if n.id in seeds]
    selected += [n for n in nodes if n.id in reached and n.id not in seeds]
    truncated = max_nodes is not None and len(selected) > max_nodes
    if max_nodes is not None:
        selected = selected[:max_nodes]

    by_id = {node.id: node for node in selected}
    visual_edges = to_visual_edges(edges, by_id)
    return GraphView(
        nodes=[to_visual_node(node) for node in selected],
        edges=visual_edges,
        meta=GraphMeta(
            total_nodes=len(selected),
            total_edges=len(visual_edges),
            truncated=truncated,
            query_time_ms=0.0,
        ),
    )
