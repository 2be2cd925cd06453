"""
Suggestions router - review workflow for AI-inferred edges.

Pending suggestions become real ``ai_inferred`` edges only when approved.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from neuron.analysis import GovernanceService
from neuron.api.deps import get_governance, validate_id
from neuron.api.errors import handle_endpoint_error
from neuron.kg.models import SuggestionStatus
from neuron.models.errors import suggestion_not_found_error
from neuron.models.requests import BulkReviewRequest, ReviewRequest

router = APIRouter(prefix="/suggestions", tags=["suggestions"])


@router.get("")
async def list_suggestions(
    status: SuggestionStatus | None = Query(SuggestionStatus.PENDING),
    relationship_type: str | None = Query(None),
    min_confidence: float | None = Query(None, ge=0.0, le=1.0),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    governance: GovernanceService = Depends(get_governance),
) -> dict[str, Any]:
    """List suggestions (pending by default), newest first."""
    suggestions = await governance.list_suggestions(
        status=status,
        relationship_type=relationship_type,
        min_confidence=min_confidence,
        limit=limit,
        offset=offset,
    )
    return {
        "suggestions": [s.model_dump(mode="json") for s in suggestions],
        "total": len(suggestions),
    }


# Bulk routes must come before the parameterized routes
@router.post("/bulk-approve")
async def bulk_approve(
    request: BulkReviewRequest,
    governance: GovernanceService = Depends(get_governance),
) -> dict[str, Any]:
    """Approve many suggestions; rejected ones are skipped and unknown ids reported."""
    try:
        result = await governance.bulk_approve(request.ids, request.reviewed_by)
    except Exception as e:
        raise handle_endpoint_error(e, "Bulk approve suggestions") from e
    return asdict(result)


@router.post("/bulk-reject")
async def bulk_reject(
    request: BulkReviewRequest,
    governance: GovernanceService = Depends(get_governance),
) -> dict[str, Any]:
    """Reject many suggestions; approved ones are skipped and unknown ids reported."""
    try:
        result = await governance.bulk_reject(request.ids, request.reviewed_by, request.reason)
    except Exception as e:
        raise handle_endpoint_error(e, "Bulk reject suggestions") from e
    return asdict(result)


@router.get("/{suggestion_id}")
async def get_suggestion(
    suggestion_id: str,
    governance: GovernanceService = Depends(get_governance),
) -> dict[str, Any]:
    """Get a single suggestion."""
    validate_id(suggestion_id, "suggestion ID")

    suggestion = await governance.get_suggestion(suggestion_id)
    if suggestion is None:
        raise HTTPException(
            status_code=404, detail=suggestion_not_found_error(suggestion_id).to_dict()
        )
    return suggestion.model_dump(mode="json")


@router.post("/{suggestion_id}/approve")
async def approve_suggestion(
    suggestion_id: str,
    request: ReviewRequest | None = None,
    governance: GovernanceService = Depends(get_governance),
) -> dict[str, Any]:
    """
    Approve a suggestion and materialize its edge.

    Approving twice returns the same edge id.

    Args:
        suggestion_id: 12-character suggestion identifier
        request: Optional reviewer and reason
        governance: Injected governance service

    Returns:
        The approved suggestion and the edge id
    """
    validate_id(suggestion_id, "suggestion ID")
    review = request or ReviewRequest()

    try:
        result = await governance.approve(suggestion_id, review.reviewed_by, review.reason)
    except Exception as e:
        raise handle_endpoint_error(e, "Approve suggestion") from e
    return {
        "suggestion": result.suggestion.model_dump(mode="json"),
        "edge_id": result.edge_id,
    }


@router.post("/{suggestion_id}/reject")
async def reject_suggestion(
    suggestion_id: str,
    request: ReviewRequest | None = None,
    governance: GovernanceService = Depends(get_governance),
) -> dict[str, Any]:
    """Reject a pending suggestion."""
    validate_id(suggestion_id, "suggestion ID")
    review = request or ReviewRequest()

    try:
        suggestion = await governance.reject(suggestion_id, review.reviewed_by, review.reason)
    except Exception as e:
        raise handle_endpoint_error(e, "Reject suggestion") from e
    return {"suggestion": suggestion.model_dump(mode="json")}
