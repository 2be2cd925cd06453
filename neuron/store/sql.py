"""
Relational GraphStore backed by the shared Database.

Nearest-neighbour ranking runs inside SQL through the connection's
``cosine_similarity`` function; path search and expansion load the
scope's edges and reuse the shared traversal helpers.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from neuron.kg.models import (
    Edge,
    EdgeCreate,
    EdgeEvidence,
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
from neuron.storage.database import Database, dumps_json, loads_json, to_timestamp
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

logger = logging.getLogger(__name__)

NODE_COLUMNS = (
    "id, scope, slug, label, node_type, domain, tier, summary, description, content, "
    "metadata, embedding, embedding_model, embedding_generated_at, cluster_id, "
    "cluster_similarity, inbound_count, outbound_count, connection_count, "
    "analysis_status, created_at, updated_at"
)

EDGE_COLUMNS = (
    "id, scope, from_node_id, to_node_id, relationship_type, strength, confidence, "
    "evidence, label, description, metadata, source, source_model, bidirectional, "
    "created_at, updated_at"
)

_NODE_JSON_FIELDS = ("metadata",)
_EDGE_PATCH_COLUMNS = (
    "relationship_type",
    "strength",
    "confidence",
    "evidence",
    "label",
    "description",
    "metadata",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def node_from_row(row: dict[str, Any]) -> Node:
    """Convert a ``nodes`` row into a Node."""
    data = dict(row)
    data["metadata"] = loads_json(data["metadata"], {})
    data["embedding"] = loads_json(data["embedding"])
    return Node.model_validate(data)


def edge_from_row(row: dict[str, Any]) -> Edge:
    """Convert an ``edges`` row into an Edge."""
    data = dict(row)
    data["evidence"] = loads_json(data["evidence"], [])
    data["metadata"] = loads_json(data["metadata"], {})
    data["bidirectional"] = bool(data["bidirectional"])
    return Edge.model_validate(data)


def _evidence_json(evidence: list[EdgeEvidence]) -> str:
    return dumps_json([item.model_dump(mode="json") for item in evidence])


def _limit_clause(limit: int | None, offset: int) -> tuple[str, list[Any]]:
    if limit and limit > 0:
        return " LIMIT ? OFFSET ?", [limit, offset]
    if offset:
        return " LIMIT -1 OFFSET ?", [offset]
    return "", []


class SqlGraphStore:
    """GraphStore implemented with parameterized SQL over ``Database``."""

    kind = "sql"

    def __init__(self, db: Database) -> None:
        """
        Initialize the store.

        Args:
            db: Initialized shared database
        """
        self.db = db

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # NODE OPERATIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _scope_nodes(self, scope: str) -> list[Node]:
        rows = await self.db.query(
            f"SELECT {NODE_COLUMNS} FROM nodes WHERE scope = ? ORDER BY created_at, rowid",
            (scope,),
        )
        return [node_from_row(row) for row in rows]

    async def _scope_edges(self, scope: str) -> list[Edge]:
        rows = await self.db.query(
            f"SELECT {EDGE_COLUMNS} FROM edges WHERE scope = ? ORDER BY created_at, rowid",
            (scope,),
        )
        return [edge_from_row(row) for row in rows]

    async def list_nodes(
        self, *, limit: int | None = None, offset: int = 0, scope: str | None = None
    ) -> list[Node]:
        clause, params = _limit_clause(limit, offset)
        rows = await self.db.query(
            f"SELECT {NODE_COLUMNS} FROM nodes WHERE scope = ? "
            f"ORDER BY created_at, rowid{clause}",
            (resolve_scope(scope), *params),
        )
        return [node_from_row(row) for row in rows]

    async def get_node_by_id(self, node_id: str, scope: str | None = None) -> Node | None:
        row = await self.db.query_one(
            f"SELECT {NODE_COLUMNS} FROM nodes WHERE id = ? AND scope = ?",
            (node_id, resolve_scope(scope)),
        )
        return node_from_row(row) if row else None

    async def get_node_by_slug(self, slug: str, scope: str | None = None) -> Node | None:
        row = await self.db.query_one(
            f"SELECT {NODE_COLUMNS} FROM nodes WHERE slug = ? AND scope = ?",
            (slug, resolve_scope(scope)),
        )
        return node_from_row(row) if row else None

    async def create_nodes(
        self, nodes: Sequence[NodeCreate], scope: str | None = None
    ) -> list[Node]:
        """Insert nodes; slugs already present in scope are skipped."""
        scope = resolve_scope(scope)
        created: list[Node] = []
        async with self.db.transaction() as tx:
            for payload in nodes:
                node = Node(
                    scope=scope,
                    slug=node_slug(payload),
                    **payload.model_dump(exclude={"slug"}),
                )
                inserted = await tx.execute(
                    "INSERT INTO nodes (id, scope, slug, label, node_type, domain, tier, "
                    "summary, description, content, metadata, analysis_status, "
                    "created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(scope, slug) DO NOTHING",
                    (
                        node.id,
                        scope,
                        node.slug,
                        node.label,
                        node.node_type,
                        node.domain,
                        node.tier,
                        node.summary,
                        node.description,
                        node.content,
                        dumps_json(node.metadata),
                        node.analysis_status.value,
                        to_timestamp(node.created_at),
                        to_timestamp(node.updated_at),
                    ),
                )
                if inserted:
                    created.append(node)
        return created

    async def update_node(
        self, node_id: str, patch: NodeUpdate, scope: str | None = None
    ) -> Node | None:
        scope = resolve_scope(scope)
        changes = patch.changes(mode="json")
        assignments = []
        params: list[Any] = []
        for column, value in changes.items():
            assignments.append(f"{column} = ?")
            params.append(dumps_json(value) if column in _NODE_JSON_FIELDS else value)
        assignments.append("updated_at = ?")
        params.append(to_timestamp(_utc_now()))

        updated = await self.db.execute(
            f"UPDATE nodes SET {', '.join(assignments)} WHERE id = ? AND scope = ?",
            (*params, node_id, scope),
        )
        if not updated:
            return None
        return await self.get_node_by_id(node_id, scope)

    async def delete_node(self, node_id: str, scope: str | None = None) -> DeleteNodeResult:
        scope = resolve_scope(scope)
        async with self.db.transaction() as tx:
            edges_removed = await tx.execute(
                "DELETE FROM edges WHERE scope = ? AND (from_node_id = ? OR to_node_id = ?)",
                (scope, node_id, node_id),
            )
            deleted = await tx.execute(
                "DELETE FROM nodes WHERE id = ? AND scope = ?", (node_id, scope)
            )
            if not deleted:
                return DeleteNodeResult(deleted=False, edges_removed=0)
            await tx.execute(
                "DELETE FROM cluster_memberships WHERE scope = ? AND node_id = ?",
                (scope, node_id),
            )
            await self._recompute_connection_counts(tx, scope)
        return DeleteNodeResult(deleted=True, edges_removed=edges_removed)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # EDGE OPERATIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def list_edges(
        self, *, limit: int | None = None, offset: int = 0, scope: str | None = None
    ) -> list[Edge]:
        clause, params = _limit_clause(limit, offset)
        rows = await self.db.query(
            f"SELECT {EDGE_COLUMNS} FROM edges WHERE scope = ? "
            f"ORDER BY created_at, rowid{clause}",
            (resolve_scope(scope), *params),
        )
        return [edge_from_row(row) for row in rows]

    async def get_edge_by_id(self, edge_id: str, scope: str | None = None) -> Edge | None:
        row = await self.db.query_one(
            f"SELECT {EDGE_COLUMNS} FROM edges WHERE id = ? AND scope = ?",
            (edge_id, resolve_scope(scope)),
        )
        return edge_from_row(row) if row else None

    async def create_edges(
        self, edges: Sequence[EdgeCreate], scope: str | None = None
    ) -> list[Edge]:
        """
        Insert edges whose endpoints both live in scope.

        Duplicate (from, to, relationship_type) keys are skipped.
        """
        scope = resolve_scope(scope)
        created: list[Edge] = []
        async with self.db.transaction() as tx:
            for payload in edges:
                endpoints = await tx.query_one(
                    "SELECT COUNT(*) AS n FROM nodes WHERE scope = ? AND id IN (?, ?)",
                    (scope, payload.from_node_id, payload.to_node_id),
                )
                expected = 1 if payload.from_node_id == payload.to_node_id else 2
                if endpoints is None or endpoints["n"] != expected:
                    continue

                edge = Edge(scope=scope, **payload.model_dump())
                inserted = await tx.execute(
                    f"INSERT INTO edges ({EDGE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(scope, from_node_id, to_node_id, relationship_type) "
                    "DO NOTHING",
                    (
                        edge.id,
                        scope,
                        edge.from_node_id,
                        edge.to_node_id,
                        edge.relationship_type,
                        edge.strength,
                        edge.confidence,
                        _evidence_json(edge.evidence),
                        edge.label,
                        edge.description,
                        dumps_json(edge.metadata),
                        edge.source.value,
                        edge.source_model,
                        int(edge.bidirectional),
                        to_timestamp(edge.created_at),
                        to_timestamp(edge.updated_at),
                    ),
                )
                if inserted:
                    created.append(edge)

            if created:
                await self._recompute_connection_counts(tx, scope)
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
        edge = await self.get_edge_by_id(edge_id, scope)
        if edge is None:
            return None

        changes = patch.changes(mode="json")
        new_type = changes.get("relationship_type", edge.relationship_type)
        if new_type != edge.relationship_type:
            clash = await self.db.query_one(
                "SELECT id FROM edges WHERE scope = ? AND from_node_id = ? "
                "AND to_node_id = ? AND relationship_type = ?",
                (scope, edge.from_node_id, edge.to_node_id, new_type),
            )
            if clash is not None:
                raise ValueError(
                    f"Edge {edge.from_node_id}->{edge.to_node_id} "
                    f"already has type '{new_type}'"
                )

        assignments = []
        params: list[Any] = []
        for column in _EDGE_PATCH_COLUMNS:
            if column not in changes:
                continue
            value = changes[column]
            if column in ("evidence", "metadata"):
                value = dumps_json(value)
            assignments.append(f"{column} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(to_timestamp(_utc_now()))

        await self.db.execute(
            f"UPDATE edges SET {', '.join(assignments)} WHERE id = ? AND scope = ?",
            (*params, edge_id, scope),
        )
        return await self.get_edge_by_id(edge_id, scope)

    async def delete_edge(self, edge_id: str, scope: str | None = None) -> bool:
        scope = resolve_scope(scope)
        async with self.db.transaction() as tx:
            deleted = await tx.execute(
                "DELETE FROM edges WHERE id = ? AND scope = ?", (edge_id, scope)
            )
            if deleted:
                await self._recompute_connection_counts(tx, scope)
        return bool(deleted)

    @staticmethod
    async def _recompute_connection_counts(tx: Any, scope: str) -> None:
        """Recount inbound/outbound edges for every node in scope."""
        await tx.execute(
            """
            UPDATE nodes SET
              outbound_count =
                (SELECT COUNT(*) FROM edges e
                  WHERE e.scope = nodes.scope AND e.from_node_id = nodes.id)
                + (SELECT COUNT(*) FROM edges e
                  WHERE e.scope = nodes.scope AND e.to_node_id = nodes.id
                  AND e.bidirectional = 1),
              inbound_count =
                (SELECT COUNT(*) FROM edges e
                  WHERE e.scope = nodes.scope AND e.to_node_id = nodes.id)
                + (SELECT COUNT(*) FROM edges e
                  WHERE e.scope = nodes.scope AND e.from_node_id = nodes.id
                  AND e.bidirectional = 1)
            WHERE scope = ?
            """,
            (scope,),
        )
        await tx.execute(
            "UPDATE nodes SET connection_count = inbound_count + outbound_count "
            "WHERE scope = ?",
            (scope,),
        )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # SETTINGS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_settings(self, scope: str | None = None) -> GraphSettings:
        row = await self.db.query_one(
            "SELECT data FROM settings WHERE scope = ?", (resolve_scope(scope),)
        )
        if row is None:
            return default_settings()
        return GraphSettings.model_validate(loads_json(row["data"]))

    async def _save_settings(self, scope: str, settings: GraphSettings) -> None:
        await self.db.execute(
            "INSERT INTO settings (scope, data, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(scope) DO UPDATE SET data = excluded.data, "
            "updated_at = excluded.updated_at",
            (scope, dumps_json(settings.model_dump(mode="json")), to_timestamp(_utc_now())),
        )

    async def update_settings(
        self, update: GraphSettingsUpdate, scope: str | None = None
    ) -> GraphSettings:
        scope = resolve_scope(scope)
        settings = apply_settings_update(await self.get_settings(scope), update)
        await self._save_settings(scope, settings)
        return settings

    async def reset_settings(
        self, sections: list[str] | None = None, scope: str | None = None
    ) -> GraphSettings:
        scope = resolve_scope(scope)
        settings = reset_settings_sections(await self.get_settings(scope), sections)
        await self._save_settings(scope, settings)
        return settings

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # GRAPH QUERIES
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_graph(self, query: GraphQuery, scope: str | None = None) -> GraphView:
        started = time.perf_counter()
        scope = resolve_scope(scope)
        nodes = await self._scope_nodes(scope)
        edges = await self._scope_edges(scope)
        return build_graph_view(nodes, edges, query, started)

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
        edges = await self._scope_edges(scope)
        reached = traversal.expand_node_ids(edges, from_node_ids, depth, direction)
        return build_expansion_view(
            await self._scope_nodes(scope), edges, from_node_ids, reached, max_nodes
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
        if await self.get_node_by_id(from_node_id, scope) is None:
            return []
        edges = await self._scope_edges(scope)
        return traversal.find_paths(edges, from_node_id, to_node_id, max_depth, algorithm)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # EMBEDDINGS + SIMILARITY
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_node_embedding_info(
        self, node_id: str, scope: str | None = None
    ) -> EmbeddingInfo | None:
        row = await self.db.query_one(
            "SELECT embedding, embedding_model, embedding_generated_at FROM nodes "
            "WHERE id = ? AND scope = ?",
            (node_id, resolve_scope(scope)),
        )
        if row is None:
            return None
        return EmbeddingInfo(
            embedding=loads_json(row["embedding"]),
            embedding_model=row["embedding_model"],
            embedding_generated_at=row["embedding_generated_at"],
        )

    async def set_node_embedding(
        self, node_id: str, embedding: list[float], model: str, scope: str | None = None
    ) -> None:
        now = to_timestamp(_utc_now())
        await self.db.execute(
            "UPDATE nodes SET embedding = ?, embedding_model = ?, "
            "embedding_generated_at = ?, updated_at = ? WHERE id = ? AND scope = ?",
            (dumps_json(list(embedding)), model, now, now, node_id, resolve_scope(scope)),
        )

    async def clear_node_embeddings(
        self, node_ids: Sequence[str] | None = None, scope: str | None = None
    ) -> None:
        scope = resolve_scope(scope)
        sql = (
            "UPDATE nodes SET embedding = NULL, embedding_model = NULL, "
            "embedding_generated_at = NULL, updated_at = ? WHERE scope = ?"
        )
        params: list[Any] = [to_timestamp(_utc_now()), scope]
        if node_ids:
            sql += f" AND id IN ({', '.join('?' for _ in node_ids)})"
            params.extend(node_ids)
        await self.db.execute(sql, params)

    async def find_similar_node_ids(
        self,
        node_id: str,
        *,
        limit: int = 50,
        min_similarity: float = 0.0,
        scope: str | None = None,
    ) -> list[SimilarityResult]:
        """Rank scope nodes by cosine similarity computed in SQL."""
        scope = resolve_scope(scope)
        base = await self.db.query_one(
            "SELECT embedding FROM nodes WHERE id = ? AND scope = ? AND embedding IS NOT NULL",
            (node_id, scope),
        )
        if base is None:
            return []

        rows = await self.db.query(
            """
            SELECT node_id, similarity FROM (
              SELECT id AS node_id,
                     cosine_similarity(embedding, ?) AS similarity,
                     created_at, rowid AS position
              FROM nodes
              WHERE scope = ? AND id != ? AND embedding IS NOT NULL
            )
            WHERE similarity IS NOT NULL AND similarity >= ?
            ORDER BY similarity DESC, created_at, position
            LIMIT ?
            """,
            (base["embedding"], scope, node_id, min_similarity, limit if limit > 0 else -1),
        )
        return [SimilarityResult(**row) for row in rows]
