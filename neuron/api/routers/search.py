"""
Search router - semantic search and nearest-neighbour lookup.

Both endpoints take an optional ``scope`` query parameter; omitted or
blank scopes resolve to the default scope.
"""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from neuron.analysis import EmbeddingsService, ScoringEngine
from neuron.api.deps import get_embeddings, get_scoring
from neuron.api.errors import handle_endpoint_error
from neuron.models.errors import node_not_found_error
from neuron.models.requests import FindSimilarRequest, SemanticSearchRequest

router = APIRouter(prefix="/search", tags=["search"])


@router.post("")
async def semantic_search(
    request: SemanticSearchRequest,
    scope: str | None = Query(None),
    scoring: ScoringEngine = Depends(get_scoring),
    embeddings: EmbeddingsService = Depends(get_embeddings),
) -> dict[str, Any]:
    """
    Rank nodes by cosine similarity to an embedded free-text query.

    Args:
        request: Query text, filters and result limit
        scope: Graph scope
        scoring: Injected scoring engine
        embeddings: Injected embeddings service (embeds the query)

    Returns:
        Scored results, query time in milliseconds and, when asked for,
        the query vector
    """
    start = time.perf_counter()
    try:
        query_embedding = await embeddings.embed_query(request.query)
    except Exception as e:
        raise handle_endpoint_error(e, "Semantic search") from e

    results = await scoring.with_scope(scope).score_for_query(
        query_embedding,
        node_types=request.node_types,
        domains=request.domains,
        min_similarity=request.min_similarity,
        limit=request.limit,
    )
    response: dict[str, Any] = {
        "results": [
            {**item.to_dict(), "similarity": item.breakdown.similarity} for item in results
        ],
        "query_time_ms": round((time.perf_counter() - start) * 1000, 2),
    }
    if request.include_explanation:
        response["query_embedding"] = query_embedding
    return response


@router.post("/similar")
async def find_similar(
    request: FindSimilarRequest,
    scope: str | None = Query(None),
    scoring: ScoringEngine = Depends(get_scoring),
) -> dict[str, Any]:
    """Nodes most similar to ``request.node_id``, optionally excluding its neighbours."""
    engine = scoring.with_scope(scope)
    if await engine.store.get_node_by_id(request.node_id, engine.scope) is None:
        raise HTTPException(
            status_code=404, detail=node_not_found_error(request.node_id).to_dict()
        )

    results = await engine.find_similar(
        request.node_id,
        limit=request.limit,
        min_similarity=request.min_similarity,
        exclude_connected=request.exclude_connected,
    )
    return {
        "results": [
            {**item.to_dict(), "similarity": item.breakdown.similarity} for item in results
        ]
    }
