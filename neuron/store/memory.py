"""
In-memory GraphStore backend.

Holds every scope in plain dictionaries. Stored models are treated as
immutable: updates replace the stored instance with a modified copy.
Also serves as the working set of the file-backed store, which
snapshots it to disk.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from neuron.kg.models import (
    Edge,
    EdgeCreate,
    EdgeUpdate,
    Node,
    NodeCreate,
    NodeUpdate,
)
from neuron.kg.settings import (
    GraphSettings,
    GraphSettingsUpdate,
    apply_settings_update,
    default_settings,
    reset_settings_sections,
)
from neuron.kg.vectors import cosine_similarity
from neuron.store import traversal
from neuron.store.base import (
    DeleteNodeResult,
    EmbeddingInfo,
    ExpandDirection,
    GraphPath,
    GraphQuery,
    GraphView,
    PathAlgorithm,
    SimilarityResult,
    build_expansion_view,
    build_graph_view,
    node_slug,
    resolve_scope,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _page(items: list[Any], limit: int | None, offset: int) -> list[Any]:
    end = offset + limit if limit and limit > 0 else None
    return items[offset:end]


class InMemoryGraphStore:
    """GraphStore backed by process memory."""

    kind = "memory"

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._slugs: dict[tuple[str, str], str] = {}
        self._edges: dict[str, Edge] = {}
        self._settings: dict[str, GraphSettings] = {}

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # SNAPSHOTS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> InMemoryGraphStore:
        """
        Rebuild a store from ``snapshot()`` output.

        Args:
            data: Dictionary with "nodes", "edges" and "settings" keys

        Returns:
            Populated store with connection counts recomputed
        """
        store = cls()
        for raw in data.get("nodes", []):
            node = Node.model_validate(raw)
            store._nodes[node.id] = node
            store._slugs[(node.scope, node.slug)] = node.id
        for raw in data.get("edges", []):
            edge = Edge.model_validate(raw)
            store._edges[edge.id] = edge
        for scope, raw in data.get("settings", {}).items():
            store._settings[scope] = GraphSettings.model_validate(raw)
        store._recompute_connection_counts()
        return store

    def snapshot(self) -> dict[str, Any]:
        """JSON-compatible dump of every scope."""
        return {
            "nodes": [node.model_dump(mode="json") for node in self._nodes.values()],
            "edges": [edge.model_dump(mode="json") for edge in self._edges.values()],
            "settings": {
                scope: settings.model_dump(mode="json")
                for scope, settings in self._settings.items()
            },
        }

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # NODE OPERATIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def _scope_nodes(self, scope: str) -> list[Node]:
        nodes = [n for n in self._nodes.values() if n.scope == scope]
        return sorted(nodes, key=lambda n: n.created_at)

    def _scope_edges(self, scope: str) -> list[Edge]:
        edges = [e for e in self._edges.values() if e.scope == scope]
        return sorted(edges, key=lambda e: e.created_at)

    def _get_node(self, node_id: str, scope: str) -> Node | None:
        node = self._nodes.get(node_id)
        if node is None or node.scope != scope:
            return None
        return node

    async def list_nodes(
        self, *, limit: int | None = None, offset: int = 0, scope: str | None = None
    ) -> list[Node]:
        return _page(self._scope_nodes(resolve_scope(scope)), limit, offset)

    async def get_node_by_id(self, node_id: str, scope: str | None = None) -> Node | None:
        return self._get_node(node_id, resolve_scope(scope))

    async def get_node_by_slug(self, slug: str, scope: str | None = None) -> Node | None:
        node_id = self._slugs.get((resolve_scope(scope), slug))
        return self._nodes.get(node_id) if node_id else None

    async def create_nodes(
        self, nodes: Sequence[NodeCreate], scope: str | None = None
    ) -> list[Node]:
        """
        Create nodes, silently skipping slugs that already exist in scope.

        Duplicate slugs inside the same batch are also skipped after the
        first occurrence.
        """
        scope = resolve_scope(scope)
        created: list[Node] = []
        for payload in nodes:
            slug = node_slug(payload)
            if (scope, slug) in self._slugs:
                continue
            node = Node(
                scope=scope,
                slug=slug,
                **payload.model_dump(exclude={"slug"}),
            )
            self._nodes[node.id] = node
            self._slugs[(scope, slug)] = node.id
            created.append(node)
        return created

    async def update_node(
        self, node_id: str, patch: NodeUpdate, scope: str | None = None
    ) -> Node | None:
        node = self._get_node(node_id, resolve_scope(scope))
        if node is None:
            return None
        changes = patch.changes()
        updated = Node.model_validate({**node.model_dump(), **changes, "updated_at": _utc_now()})
        self._nodes[node_id] = updated
        return updated

    async def delete_node(self, node_id: str, scope: str | None = None) -> DeleteNodeResult:
        """Delete a node and every edge touching it in the same scope."""
        scope = resolve_scope(scope)
        node = self._get_node(node_id, scope)
        if node is None:
            return DeleteNodeResult(deleted=False, edges_removed=0)

        incident = [
            edge.id
            for edge in self._edges.values()
            if edge.scope == scope
            and (edge.from_node_id == node_id or edge.to_node_id == node_id)
        ]
        for edge_id in incident:
            del self._edges[edge_id]

        del self._nodes[node_id]
        self._slugs.pop((scope, node.slug), None)
        self._recompute_connection_counts()
        return DeleteNodeResult(deleted=True, edges_removed=len(incident))

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # EDGE OPERATIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def _find_edge_by_key(self, scope: str, key: tuple[str, str, str]) -> Edge | None:
        for edge in self._edges.values():
            if edge.scope == scope and edge.key == key:
                return edge
        return None

    async def list_edges(
        self, *, limit: int | None = None, offset: int = 0, scope: str | None = None
    ) -> list[Edge]:
        return _page(self._scope_edges(resolve_scope(scope)), limit, offset)

    async def create_edges(
        self, edges: Sequence[EdgeCreate], scope: str | None = None
    ) -> list[Edge]:
        """
        Create edges between nodes of the same scope.

        Edges with an endpoint outside the scope, or duplicating an existing
        (from, to, relationship_type) key, are skipped.
        """
        scope = resolve_scope(scope)
        created: list[Edge] = []
        for payload in edges:
            if (
                self._get_node(payload.from_node_id, scope) is None
                or self._get_node(payload.to_node_id, scope) is None
            ):
                continue
            key = (payload.from_node_id, payload.to_node_id, payload.relationship_type)
            if self._find_edge_by_key(scope, key) is not None:
                continue
            edge = Edge(scope=scope, **payload.model_dump())
            self._edges[edge.id] = edge
            created.append(edge)

        if created:
            self._recompute_connection_counts()
        return created

    async def update_edge(
        self, edge_id: str, patch: EdgeUpdate, scope: str | None = None
    ) -> Edge | None:
        """
        Patch an edge.

        Raises:
            ValueError: If the new relationship type collides with another edge
        """
        scope = resolve_scope(scope)
        edge = self._edges.get(edge_id)
        if edge is None or edge.scope != scope:
            return None

        changes = patch.changes()
        new_type = changes.get("relationship_type", edge.relationship_type)
        if new_type != edge.relationship_type:
            clash = self._find_edge_by_key(
                scope, (edge.from_node_id, edge.to_node_id, new_type)
            )
            if clash is not None:
                raise ValueError(
                    f"Edge {edge.from_node_id}->{edge.to_node_id} "
                    f"already has type '{new_type}'"
                )

        updated = Edge.model_validate({**edge.model_dump(), **changes, "updated_at": _utc_now()})
        self._edges[edge_id] = updated
        return updated

    async def delete_edge(self, edge_id: str, scope: str | None = None) -> bool:
        edge = self._edges.get(edge_id)
        if edge is None or edge.scope != resolve_scope(scope):
            return False
        del self._edges[edge_id]
        self._recompute_connection_counts()
        return True

    def _recompute_connection_counts(self) -> None:
        """Recount inbound/outbound edges for every node (bidirectional counts both ways)."""
        inbound: dict[str, int] = {}
        outbound: dict[str, int] = {}
        for edge in self._edges.values():
            source = self._nodes.get(edge.from_node_id)
            target = self._nodes.get(edge.to_node_id)
            if source is None or target is None:
                continue
            if source.scope != edge.scope or target.scope != edge.scope:
                continue
            outbound[edge.from_node_id] = outbound.get(edge.from_node_id, 0) + 1
            inbound[edge.to_node_id] = inbound.get(edge.to_node_id, 0) + 1
            if edge.bidirectional:
                outbound[edge.to_node_id] = outbound.get(edge.to_node_id, 0) + 1
                inbound[edge.from_node_id] = inbound.get(edge.from_node_id, 0) + 1

        for node_id, node in list(self._nodes.items()):
            in_count = inbound.get(node_id, 0)
            out_count = outbound.get(node_id, 0)
            if (node.inbound_count, node.outbound_count) == (in_count, out_count):
                continue
            self._nodes[node_id] = node.model_copy(
                update={
                    "inbound_count": in_count,
                    "outbound_count": out_count,
                    "connection_count": in_count + out_count,
                }
            )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # SETTINGS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_settings(self, scope: str | None = None) -> GraphSettings:
        return self._settings.get(resolve_scope(scope)) or default_settings()

    async def update_settings(
        self, update: GraphSettingsUpdate, scope: str | None = None
    ) -> GraphSettings:
        scope = resolve_scope(scope)
        updated = apply_settings_update(await self.get_settings(scope), update)
        self._settings[scope] = updated
        return updated

    async def reset_settings(
        self, sections: list[str] | None = None, scope: str | None = None
    ) -> GraphSettings:
        scope = resolve_scope(scope)
        updated = reset_settings_sections(await self.get_settings(scope), sections)
        self._settings[scope] = updated
        return updated

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # GRAPH QUERIES
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_graph(self, query: GraphQuery, scope: str | None = None) -> GraphView:
        started = time.perf_counter()
        scope = resolve_scope(scope)
        return build_graph_view(
            self._scope_nodes(scope), self._scope_edges(scope), query, started
        )

    async def expand_graph(
        self,
        from_node_ids: Sequence[str],
        *,
        depth: int = 1,
        direction: ExpandDirection = "both",
        max_nodes: int | None = None,
        scope: str | None = None,
    ) -> GraphView:
        scope = resolve_scope(scope)
        edges = self._scope_edges(scope)
        reached = traversal.expand_node_ids(edges, from_node_ids, depth, direction)
        return build_expansion_view(
            self._scope_nodes(scope), edges, from_node_ids, reached, max_nodes
        )

    async def find_paths(
        self,
        from_node_id: str,
        to_node_id: str,
        *,
        max_depth: int = 5,
        algorithm: PathAlgorithm = "shortest",
        scope: str | None = None,
    ) -> list[GraphPath]:
        scope = resolve_scope(scope)
        if self._get_node(from_node_id, scope) is None:
            return []
        return traversal.find_paths(
            self._scope_edges(scope), from_node_id, to_node_id, max_depth, algorithm
        )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # EMBEDDINGS + SIMILARITY
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_node_embedding_info(
        self, node_id: str, scope: str | None = None
    ) -> EmbeddingInfo | None:
        node = self._get_node(node_id, resolve_scope(scope))
        if node is None:
            return None
        return EmbeddingInfo(
            embedding=node.embedding,
            embedding_model=node.embedding_model,
            embedding_generated_at=node.embedding_generated_at,
        )

    async def set_node_embedding(
        self, node_id: str, embedding: list[float], model: str, scope: str | None = None
    ) -> None:
        node = self._get_node(node_id, resolve_scope(scope))
        if node is None:
            return
        now = _utc_now()
        self._nodes[node_id] = node.model_copy(
            update={
                "embedding": list(embedding),
                "embedding_model": model,
                "embedding_generated_at": now,
                "updated_at": now,
            }
        )

    async def clear_node_embeddings(
        self, node_ids: Sequence[str] | None = None, scope: str | None = None
    ) -> None:
        """Clear the embedding triple for the given nodes (all scope nodes when omitted)."""
        scope = resolve_scope(scope)
        targets = list(node_ids) if node_ids else list(self._nodes)
        now = _utc_now()
        for node_id in targets:
            node = self._get_node(node_id, scope)
            if node is None:
                continue
            self._nodes[node_id] = node.model_copy(
                update={
                    "embedding": None,
                    "embedding_model": None,
                    "embedding_generated_at": None,
                    "updated_at": now,
                }
            )

    async def find_similar_node_ids(
        self,
        node_id: str,
        *,
        limit: int = 50,
        min_similarity: float = 0.0,
        scope: str | None = None,
    ) -> list[SimilarityResult]:
        """
        Brute-force cosine ranking against every embedded node in scope.

        A ``limit`` of zero or less returns every match, as in ``list_nodes``.
        """
        scope = resolve_scope(scope)
        base = self._get_node(node_id, scope)
        if base is None or not base.embedding:
            return []

        dims = len(base.embedding)
        scored = [
            SimilarityResult(
                node_id=other.id,
                similarity=cosine_similarity(base.embedding, other.embedding),
            )
            for other in self._scope_nodes(scope)
            if other.id != node_id and other.embedding and len(other.embedding) == dims
        ]
        scored = [r for r in scored if r.similarity >= min_similarity]
        scored.sort(key=lambda r: r.similarity, reverse=True)
        return scored[:limit] if limit > 0 else scored
