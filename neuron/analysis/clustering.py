"""
Clustering of embedded nodes (k-means and DBSCAN over cosine similarity).

A clustering run is destructive: the scope's clusters and memberships are
deleted and the new set inserted in a single transaction, so readers
never see a half-replaced cluster set.
"""

from __future__ import annotations

import logging
import random
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import numpy as np

from neuron.kg.models import Cluster, ClusterMembership, _generate_id
from neuron.kg.vectors import average_vector, cosine_similarity, similarity_matrix
from neuron.models.jobs import ClusteringAlgorithm
from neuron.storage.database import Database, dumps_json, loads_json, to_timestamp
from neuron.store.base import resolve_scope

logger = logging.getLogger(__name__)

KMEANS_ITERATIONS = 10
DEFAULT_CLUSTER_COUNT = 3
DEFAULT_EPSILON = 0.75
DEFAULT_MIN_SAMPLES = 2


@dataclass
class ClusteringConfig:
    """
    Clustering parameters.

    ``similarity_threshold`` (or ``epsilon``) is the DBSCAN neighbourhood
    cutoff in cosine similarity. ``seed`` makes k-means initialization
    reproducible; None samples from the global random state.
    """

    algorithm: ClusteringAlgorithm = "kmeans"
    cluster_count: int | None = None
    similarity_threshold: float | None = None
    epsilon: float | None = None
    min_samples: int | None = None
    seed: int | None = None


@dataclass
class ClusteringResult:
    cluster_id: str
    label: str
    node_ids: list[str]
    centroid: list[float]
    avg_similarity: float
    cohesion: float


@dataclass
class ClusteringOutcome:
    clusters: list[ClusteringResult] = field(default_factory=list)
    unassigned: list[str] = field(default_factory=list)


@dataclass
class _EmbeddedNode:
    id: str
    label: str
    embedding: list[float]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _build_result(members: list[_EmbeddedNode], centroid: list[float]) -> ClusteringResult:
    similarities = [cosine_similarity(m.embedding, centroid) for m in members]
    avg_similarity = sum(similarities) / len(similarities)
    return ClusteringResult(
        cluster_id=_generate_id(),
        label=", ".join(m.label for m in members[:3]),
        node_ids=[m.id for m in members],
        centroid=centroid,
        avg_similarity=avg_similarity,
        cohesion=avg_similarity,
    )


def run_kmeans(
    nodes: list[_EmbeddedNode], cluster_count: int | None, seed: int | None = None
) -> list[ClusteringResult]:
    """
    k-means with cosine assignment and a fixed iteration count.

    Centroids start from a random sample of nodes; a centroid that loses
    all its members keeps its previous position.
    """
    k = max(1, cluster_count or DEFAULT_CLUSTER_COUNT)
    rng = random.Random(seed) if seed is not None else random
    initial = rng.sample(nodes, min(k, len(nodes)))
    centroids = np.asarray([n.embedding for n in initial], dtype=float)
    vectors = np.asarray([n.embedding for n in nodes], dtype=float)

    assignments = np.zeros(len(nodes), dtype=int)
    for _ in range(KMEANS_ITERATIONS):
        assignments = np.argmax(similarity_matrix(vectors, centroids), axis=1)
        for index in range(len(centroids)):
            mask = assignments == index
            if mask.any():
                centroids[index] = vectors[mask].mean(axis=0)

    results = []
    for index in range(len(centroids)):
        members = [node for node, a in zip(nodes, assignments) if a == index]
        if members:
            results.append(_build_result(members, centroids[index].tolist()))
    return results


def run_dbscan(
    nodes: list[_EmbeddedNode], epsilon: float, min_samples: int
) -> list[ClusteringResult]:
    """
    DBSCAN over cosine similarity (neighbours have similarity >= epsilon).

    Nodes that never reach ``min_samples`` neighbours stay unassigned.
    """
    if not nodes:
        return []
    sims = similarity_matrix([n.embedding for n in nodes], [n.embedding for n in nodes])
    np.fill_diagonal(sims, -np.inf)
    neighbours = [np.flatnonzero(row >= epsilon).tolist() for row in sims]

    visited: set[int] = set()
    results = []
    for index in range(len(nodes)):
        if index in visited:
            continue
        visited.add(index)
        if len(neighbours[index]) < min_samples:
            continue

        members = {index, *neighbours[index]}
        queue = deque(neighbours[index])
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            if len(neighbours[current]) >= min_samples:
                for candidate in neighbours[current]:
                    if candidate not in members:
                        members.add(candidate)
                        queue.append(candidate)

        cluster_nodes = [nodes[i] for i in sorted(members)]
        centroid = average_vector([n.embedding for n in cluster_nodes])
        results.append(_build_result(cluster_nodes, centroid))
    return results


class ClusteringEngine:
    """Clusters the scope's embedded nodes and maintains cluster rows."""

    def __init__(self, db: Database, scope: str | None = None) -> None:
        self.db = db
        self.scope = resolve_scope(scope)

    async def _embedded_nodes(self) -> list[_EmbeddedNode]:
        rows = await self.db.query(
            "SELECT id, label, embedding FROM nodes "
            "WHERE scope = ? AND embedding IS NOT NULL ORDER BY created_at, rowid",
            (self.scope,),
        )
        nodes = [
            _EmbeddedNode(id=row["id"], label=row["label"], embedding=loads_json(row["embedding"]))
            for row in rows
        ]
        nodes = [n for n in nodes if n.embedding]
        if not nodes:
            return []

        # Mixed models can leave vectors of different sizes; keep the dominant one
        dims, _ = Counter(len(n.embedding) for n in nodes).most_common(1)[0]
        kept = [n for n in nodes if len(n.embedding) == dims]
        if len(kept) != len(nodes):
            logger.warning(
                f"Skipping {len(nodes) - len(kept)} nodes whose embeddings are not {dims}-dimensional"
            )
        return kept

    async def cluster_nodes(self, config: ClusteringConfig | None = None) -> ClusteringOutcome:
        """
        Cluster every embedded node in scope and replace the stored clusters.

        Returns:
            The new clusters and the ids of embedded nodes left unassigned
        """
        config = config or ClusteringConfig()
        nodes = await self._embedded_nodes()
        if not nodes:
            return ClusteringOutcome()

        if config.algorithm == "dbscan":
            epsilon = config.epsilon or config.similarity_threshold or DEFAULT_EPSILON
            clusters = run_dbscan(nodes, epsilon, config.min_samples or DEFAULT_MIN_SAMPLES)
        else:
            clusters = run_kmeans(nodes, config.cluster_count, config.seed)

        await self._persist_clusters(clusters)

        assigned = {node_id for cluster in clusters for node_id in cluster.node_ids}
        unassigned = [n.id for n in nodes if n.id not in assigned]
        logger.info(
            f"Clustered {len(nodes)} nodes into {len(clusters)} clusters "
            f"({config.algorithm}, {len(unassigned)} unassigned) in scope {self.scope}"
        )
        return ClusteringOutcome(clusters=clusters, unassigned=unassigned)

    async def recluster(self, config: ClusteringConfig | None = None) -> list[ClusteringResult]:
        return (await self.cluster_nodes(config)).clusters

    async def _persist_clusters(self, clusters: list[ClusteringResult]) -> None:
        now = to_timestamp(_utc_now())
        async with self.db.transaction() as tx:
            await tx.execute("DELETE FROM cluster_memberships WHERE scope = ?", (self.scope,))
            await tx.execute("DELETE FROM clusters WHERE scope = ?", (self.scope,))
            await tx.execute(
                "UPDATE nodes SET cluster_id = NULL, cluster_similarity = NULL WHERE scope = ?",
                (self.scope,),
            )
            for cluster in clusters:
                await tx.execute(
                    "INSERT INTO clusters (id, scope, label, centroid, member_count, "
                    "avg_similarity, cohesion, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        cluster.cluster_id,
                        self.scope,
                        cluster.label,
                        dumps_json(cluster.centroid),
                        len(cluster.node_ids),
                        cluster.avg_similarity,
                        cluster.cohesion,
                        now,
                        now,
                    ),
                )
                for node_id in cluster.node_ids:
                    await tx.execute(
                        "INSERT OR REPLACE INTO cluster_memberships "
                        "(scope, node_id, cluster_id, similarity_score, is_primary, assigned_at) "
                        "VALUES (?, ?, ?, ?, 1, ?)",
                        (self.scope, node_id, cluster.cluster_id, cluster.avg_similarity, now),
                    )
                    await tx.execute(
                        "UPDATE nodes SET cluster_id = ?, cluster_similarity = ? "
                        "WHERE id = ? AND scope = ?",
                        (cluster.cluster_id, cluster.avg_similarity, node_id, self.scope),
                    )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # INCREMENTAL MAINTENANCE
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def list_clusters(self) -> list[Cluster]:
        rows = await self.db.query(
            "SELECT id, scope, label, centroid, member_count, avg_similarity, cohesion, "
            "created_at, updated_at FROM clusters WHERE scope = ? ORDER BY created_at, rowid",
            (self.scope,),
        )
        clusters = []
        for row in rows:
            data: dict[str, Any] = dict(row)
            data["centroid"] = loads_json(data["centroid"], [])
            clusters.append(Cluster.model_validate(data))
        return clusters

    async def list_memberships(self, cluster_id: str | None = None) -> list[ClusterMembership]:
        sql = (
            "SELECT scope, node_id, cluster_id, similarity_score, is_primary, assigned_at "
            "FROM cluster_memberships WHERE scope = ?"
        )
        params: list[Any] = [self.scope]
        if cluster_id:
            sql += " AND cluster_id = ?"
            params.append(cluster_id)
        rows = await self.db.query(sql + " ORDER BY rowid", params)
        return [ClusterMembership.model_validate(row) for row in rows]

    async def find_best_cluster(self, embedding: list[float]) -> tuple[str, float] | None:
        """
        Find the cluster whose centroid is most similar to ``embedding``.

        Returns:
            ``(cluster_id, similarity)`` or None when no comparable centroid exists
        """
        best: tuple[str, float] | None = None
        for cluster in await self.list_clusters():
            if not cluster.centroid or len(cluster.centroid) != len(embedding):
                continue
            similarity = cosine_similarity(cluster.centroid, embedding)
            if best is None or similarity > best[1]:
                best = (cluster.id, similarity)
        return best

    async def assign_to_cluster(self, node_id: str) -> ClusterMembership | None:
        """
        Attach one embedded node to its nearest existing cluster without reclustering.

        Any membership the node held in another cluster is dropped in the same
        transaction, and member counts of every touched cluster are refreshed.
        """
        row = await self.db.query_one(
            "SELECT embedding FROM nodes WHERE id = ? AND scope = ?", (node_id, self.scope)
        )
        embedding = loads_json(row["embedding"]) if row else None
        if not embedding:
            return None

        best = await self.find_best_cluster(embedding)
        if best is None:
            return None

        cluster_id, similarity = best
        membership = ClusterMembership(
            scope=self.scope, node_id=node_id, cluster_id=cluster_id, similarity_score=similarity
        )
        async with self.db.transaction() as tx:
            previous = await tx.query(
                "SELECT cluster_id FROM cluster_memberships "
                "WHERE scope = ? AND node_id = ? AND cluster_id != ?",
                (self.scope, node_id, cluster_id),
            )
            await tx.execute(
                "DELETE FROM cluster_memberships WHERE scope = ? AND node_id = ? AND cluster_id != ?",
                (self.scope, node_id, cluster_id),
            )
            await tx.execute(
                "INSERT INTO cluster_memberships "
                "(scope, node_id, cluster_id, similarity_score, is_primary, assigned_at) "
                "VALUES (?, ?, ?, ?, 1, ?) "
                "ON CONFLICT(scope, node_id, cluster_id) DO UPDATE SET "
                "similarity_score = excluded.similarity_score, is_primary = 1",
                (self.scope, node_id, cluster_id, similarity, to_timestamp(membership.assigned_at)),
            )
            await tx.execute(
                "UPDATE nodes SET cluster_id = ?, cluster_similarity = ? WHERE id = ? AND scope = ?",
                (cluster_id, similarity, node_id, self.scope),
            )
            for affected in {cluster_id, *(r["cluster_id"] for r in previous)}:
                await tx.execute(
                    "UPDATE clusters SET member_count = (SELECT COUNT(*) FROM cluster_memberships "
                    "WHERE scope = ? AND cluster_id = ?) WHERE id = ? AND scope = ?",
                    (self.scope, affected, affected, self.scope),
                )
        return membership

    async def _member_rows(self, cluster_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        sql = (
            "SELECT n.label, n.embedding FROM nodes n "
            "JOIN cluster_memberships cm ON n.id = cm.node_id AND n.scope = cm.scope "
            "WHERE cm.cluster_id = ? AND cm.scope = ? ORDER BY cm.rowid"
        )
        params: list[Any] = [cluster_id, self.scope]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return await self.db.query(sql, params)

    async def recompute_centroid(self, cluster_id: str) -> list[float] | None:
        """Reset a centroid to the mean of its embedded members (no-op without any)."""
        vectors = [
            vector
            for vector in (loads_json(r["embedding"]) for r in await self._member_rows(cluster_id))
            if vector
        ]
        if not vectors:
            return None
        dims, _ = Counter(len(v) for v in vectors).most_common(1)[0]
        centroid = average_vector([v for v in vectors if len(v) == dims])
        await self.db.execute(
            "UPDATE clusters SET centroid = ?, updated_at = ? WHERE id = ? AND scope = ?",
            (dumps_json(centroid), to_timestamp(_utc_now()), cluster_id, self.scope),
        )
        return centroid

    async def recompute_all_centroids(self) -> None:
        for cluster in await self.list_clusters():
            await self.recompute_centroid(cluster.id)

    async def generate_cluster_label(self, cluster_id: str) -> str:
        """Label a cluster with its first five member labels."""
        label = ", ".join(row["label"] for row in await self._member_rows(cluster_id, limit=5))
        await self.db.execute(
            "UPDATE clusters SET label = ?, updated_at = ? WHERE id = ? AND scope = ?",
            (label, to_timestamp(_utc_now()), cluster_id, self.scope),
        )
        return label

    async def generate_all_labels(self) -> None:
        for cluster in await self.list_clusters():
            await self.generate_cluster_label(cluster.id)

    @staticmethod
    def calculate_silhouette_score(clusters: list[ClusteringResult]) -> float:
        """Mean cohesion across clusters (0.0 for none)."""
        if not clusters:
            return 0.0
        return sum(c.cohesion for c in clusters) / len(clusters)
