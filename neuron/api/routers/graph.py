"""
Graph router - read-only graph queries.

Every endpoint takes an optional ``scope`` query parameter; omitted or
blank scopes resolve to the default scope.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query

from neuron.api.deps import get_graph_store, validate_id
from neuron.models.errors import node_not_found_error
from neuron.models.requests import ExpandRequest
from neuron.store import GraphQuery, GraphStore

router = APIRouter(prefix="/graph", tags=["graph"])


@router.get("")
async def get_graph(
    scope: str | None = Query(None),
    domain: list[str] | None = Query(None),
    node_type: list[str] | None = Query(None),
    cluster_id: list[str] | None = Query(None),
    relationship_type: list[str] | None = Query(None),
    min_edge_strength: float | None = Query(None, ge=0.0, le=1.0),
    max_nodes: int | None = Query(None, ge=1),
    store: GraphStore = Depends(get_graph_store),
) -> dict[str, Any]:
    """Filtered visualization view of the graph."""
    view = await store.get_graph(
        GraphQuery(
            domains=domain or [],
            node_types=node_type or [],
            cluster_ids=cluster_id or [],
            relationship_types=relationship_type or [],
            min_edge_strength=min_edge_strength,
            max_nodes=max_nodes,
        ),
        scope,
    )
    return view.model_dump(mode="json")


@router.get("/nodes/{node_id}")
async def get_node(
    node_id: str,
    scope: str | None = Query(None),
    store: GraphStore = Depends(get_graph_store),
) -> dict[str, Any]:
    """Get a single node (embedding vector omitted)."""
    validate_id(node_id, "node ID")

    node = await store.get_node_by_id(node_id, scope)
    if node is None:
        raise HTTPException(status_code=404, detail=node_not_found_error(node_id).to_dict())
    return node.model_dump(mode="json", exclude={"embedding"})


@router.post("/expand")
async def expand_graph(
    request: ExpandRequest,
    scope: str | None = Query(None),
    store: GraphStore = Depends(get_graph_store),
) -> dict[str, Any]:
    """
    Expand the neighbourhood of the seed nodes.

    Args:
        request: Seeds, depth, direction and optional node cap
        scope: Graph scope
        store: Injected graph store

    Returns:
        Graph view with seeds listed first
    """
    view = await store.expand_graph(
        request.node_ids,
        depth=request.depth,
        direction=request.direction,
        max_nodes=request.max_nodes,
        scope=scope,
    )
    return view.model_dump(mode="json")


@router.get("/paths")
async def find_paths(
    from_node_id: str = Query(..., alias="from"),
    to_node_id: str = Query(..., alias="to"),
    max_depth: int = Query(5, ge=1, le=10),
    algorithm: Literal["shortest", "all"] = Query("shortest"),
    scope: str | None = Query(None),
    store: GraphStore = Depends(get_graph_store),
) -> dict[str, Any]:
    """Directed paths between two nodes, fewest hops then strongest first."""
    paths = await store.find_paths(
        from_node_id,
        to_node_id,
        max_depth=max_depth,
        algorithm=algorithm,
        scope=scope,
    )
    return {"paths": [path.model_dump(mode="json") for path in paths], "total": len(paths)}
