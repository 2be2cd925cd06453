"""
Dependency injection providers for API endpoints.

Provides FastAPI dependencies that inject service instances into route
handlers, enabling loose coupling and testability. Backend-specific
services raise inside the dependency, so routes wrap the call with
``handle_endpoint_error`` through ``resolve``.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import TypeVar

from fastapi import HTTPException

from neuron.analysis import AnalysisPipeline, EmbeddingsService, GovernanceService, ScoringEngine
from neuron.api.errors import handle_endpoint_error
from neuron.core.events import EventBus
from neuron.services import get_services
from neuron.store import GraphStore

T = TypeVar("T")

ID_PATTERN = re.compile(r"^[0-9a-f]{12}$")


def resolve(factory: Callable[[], T], context: str) -> T:
    """Call a service getter, converting container errors to HTTP errors."""
    try:
        return factory()
    except Exception as e:
        raise handle_endpoint_error(e, context) from e


def get_graph_store() -> GraphStore:
    """
    Dependency provider for the GraphStore.

    Returns:
        GraphStore instance from the global container
    """
    return resolve(lambda: get_services().store, "Graph store")


def get_embeddings() -> EmbeddingsService:
    """Dependency provider for the EmbeddingsService."""
    return resolve(lambda: get_services().embeddings, "Embeddings")


def get_events() -> EventBus:
    """Dependency provider for the EventBus."""
    return resolve(lambda: get_services().events, "Events")


def get_scoring() -> ScoringEngine:
    """Dependency provider for the ScoringEngine."""
    return resolve(lambda: get_services().scoring, "Scoring")


def get_pipeline() -> AnalysisPipeline:
    """
    Dependency provider for the AnalysisPipeline.

    Returns:
        AnalysisPipeline instance from the global container
    """
    return resolve(lambda: get_services().pipeline, "Analysis pipeline")


def get_governance() -> GovernanceService:
    """
    Dependency provider for the GovernanceService.

    Returns:
        GovernanceService instance from the global container
    """
    return resolve(lambda: get_services().governance, "Governance")


def validate_id(value: str, field_name: str = "ID") -> str:
    """
    Validate that a string is a generated entity ID (12 hex characters).

    Args:
        value: The string to validate
        field_name: Name of the field for error messages

    Returns:
        The validated value

    Raises:
        HTTPException: If the value is not a valid ID
    """
    if not ID_PATTERN.match(value):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {field_name} format (must be 12 hex characters)",
        )
    return value
