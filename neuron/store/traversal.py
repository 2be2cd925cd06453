"""
Graph traversal shared by every GraphStore backend.

Backends hand over their scope-filtered edges; path search and frontier
expansion then run on a NetworkX multigraph so that all backends return
the same paths in the same order.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import networkx as nx  # type: ignore[import-untyped]

from neuron.kg.models import Edge
from neuron.store.base import ExpandDirection, GraphPath, PathAlgorithm


def build_multigraph(edges: Iterable[Edge]) -> nx.MultiDiGraph:
    """
    Build a directed multigraph keyed by edge id.

    Parallel edges (same endpoints, different relationship types) are kept
    as separate keyed edges.
    """
    graph = nx.MultiDiGraph()
    for edge in edges:
        graph.add_edge(
            edge.from_node_id,
            edge.to_node_id,
            key=edge.id,
            strength=edge.strength,
        )
    return graph


def find_paths(
    edges: Iterable[Edge],
    from_node_id: str,
    to_node_id: str,
    max_depth: int = 5,
    algorithm: PathAlgorithm = "shortest",
) -> list[GraphPath]:
    """
    Find cycle-free directed paths between two nodes.

    Paths follow edges in their stored direction and never revisit a node.
    Results are sorted by (node count ascending, total strength descending).

    Args:
        edges: Scope-filtered edges
        from_node_id: Start node
        to_node_id: End node
        max_depth: Maximum number of edges per path (values below 1 become 1)
        algorithm: "shortest" for the single best path, "all" for every path

    Returns:
        List of GraphPath (at most one for "shortest")
    """
    max_depth = max(1, max_depth)

    if from_node_id == to_node_id:
        paths = [GraphPath(nodes=[from_node_id], edges=[], length=1, total_strength=0.0)]
    else:
        graph = build_multigraph(edges)
        if from_node_id not in graph or to_node_id not in graph:
            return []

        paths = []
        for edge_path in nx.all_simple_edge_paths(
            graph, from_node_id, to_node_id, cutoff=max_depth
        ):
            node_ids = [from_node_id] + [target for _, target, _ in edge_path]
            paths.append(
                GraphPath(
                    nodes=node_ids,
                    edges=[key for _, _, key in edge_path],
                    length=len(node_ids),
                    total_strength=sum(
                        graph.edges[source, target, key]["strength"]
                        for source, target, key in edge_path
                    ),
                )
            )

    paths.sort(key=lambda p: (p.length, -p.total_strength))
    if algorithm == "shortest":
        return paths[:1]
    return paths


def expand_node_ids(
    edges: Iterable[Edge],
    from_node_ids: Sequence[str],
    depth: int = 1,
    direction: ExpandDirection = "both",
) -> set[str]:
    """
    Breadth-first frontier expansion.

    Args:
        edges: Scope-filtered edges
        from_node_ids: Seed nodes (always included in the result)
        depth: Number of hops (values below 1 become 1)
        direction: Follow outbound edges, inbound edges, or both

    Returns:
        Seed ids plus every node reached within ``depth`` hops
    """
    graph = build_multigraph(edges)
    visited = set(from_node_ids)
    frontier = set(from_node_ids)

    for _ in range(max(1, depth)):
        reached: set[str] = set()
        for node_id in frontier:
            if node_id not in graph:
                continue
            if direction in ("outbound", "both"):
                reached.update(graph.successors(node_id))
            if direction in ("inbound", "both"):
                reached.update(graph.predecessors(node_id))
        frontier = reached - visited
        if not frontier:
            break
        visited |= frontier

    return visited
