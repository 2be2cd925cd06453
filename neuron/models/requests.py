"""
Request models for API endpoints.

Defines Pydantic models for validating incoming HTTP requests for
analysis jobs, suggestion review and graph queries.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator

from neuron.models.jobs import ClusteringAlgorithm, PipelineOptions, RunType
from neuron.store.base import ExpandDirection

# Generated entity IDs are uuid4().hex[:12]
ENTITY_ID_PATTERN = re.compile(r"^[0-9a-f]{12}$")

MAX_BULK_IDS = 500


def _validate_ids(values: list[str] | None) -> list[str] | None:
    if values is None:
        return None
    invalid = [value for value in values if not ENTITY_ID_PATTERN.match(value)]
    if invalid:
        raise ValueError(f"Invalid ID format: {', '.join(invalid[:5])}")
    return values


class StartAnalysisRequest(BaseModel):
    """Start an analysis job. Option fields mirror ``PipelineOptions``."""

    run_type: RunType = RunType.FULL_ANALYSIS
    node_ids: list[str] | None = None
    force_recompute: bool = False
    skip_embeddings: bool = False
    skip_clustering: bool = False
    skip_relationships: bool = False
    cluster_count: int | None = Field(default=None, ge=1)
    clustering_algorithm: ClusteringAlgorithm = "kmeans"
    clustering_seed: int | None = None
    relationship_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    max_relationships_per_node: int | None = Field(default=None, ge=1)

    @field_validator("node_ids")
    @classmethod
    def validate_node_ids(cls, v: list[str] | None) -> list[str] | None:
        """Node IDs must be 12 hex characters."""
        return _validate_ids(v)

    def to_options(self) -> PipelineOptions:
        return PipelineOptions(
            node_ids=self.node_ids,
            force_recompute=self.force_recompute,
            skip_embeddings=self.skip_embeddings,
            skip_clustering=self.skip_clustering,
            skip_relationships=self.skip_relationships,
            cluster_count=self.cluster_count,
            clustering_algorithm=self.clustering_algorithm,
            clustering_seed=self.clustering_seed,
            relationship_threshold=self.relationship_threshold,
            max_relationships_per_node=self.max_relationships_per_node,
        )


class ReviewRequest(BaseModel):
    """Approve or reject a single suggestion."""

    reviewed_by: str | None = Field(default=None, max_length=200)
    reason: str | None = Field(default=None, max_length=2000)


class BulkReviewRequest(BaseModel):
    """Approve or reject several suggestions at once."""

    ids: list[str] = Field(min_length=1, max_length=MAX_BULK_IDS)
    reviewed_by: str | None = Field(default=None, max_length=200)
    reason: str | None = Field(default=None, max_length=2000)

    @field_validator("ids")
    @classmethod
    def validate_ids(cls, v: list[str]) -> list[str]:
        """Suggestion IDs must be 12 hex characters."""
        return _validate_ids(v) or []


class ExpandRequest(BaseModel):
    """Neighbourhood expansion from one or more seed nodes."""

    node_ids: list[str] = Field(min_length=1)
    depth: int = Field(default=1, ge=1, le=5)
    direction: ExpandDirection = "both"
    max_nodes: int | None = Field(default=None, ge=1)


class SemanticSearchRequest(BaseModel):
    """Free-text search over node embeddings."""

    query: str = Field(min_length=1, max_length=4000)
    node_types: list[str] | None = None
    domains: list[str] | None = None
    min_similarity: float = Field(default=0.0, ge=-1.0, le=1.0)
    limit: int = Field(default=10, ge=1, le=200)
    include_explanation: bool = False


class FindSimilarRequest(BaseModel):
    """Nearest neighbours of one embedded node."""

    node_id: str
    limit: int = Field(default=10, ge=1, le=200)
    min_similarity: float = Field(default=0.0, ge=-1.0, le=1.0)
    exclude_connected: bool = False

    @field_validator("node_id")
    @classmethod
    def validate_node_id(cls, v: str) -> str:
        """Node ID must be 12 hex characters."""
        _validate_ids([v])
        return v
