"""
Analysis job models and types.

Defines the data structures for analysis runs: run types, states, the
progress snapshot persisted on every stage callback, and the options a
pipeline run is started with.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal


class RunType(str, Enum):
    """Analysis run types."""

    EMBEDDING = "embedding"
    CLUSTERING = "clustering"
    RELATIONSHIP_INFERENCE = "relationship_inference"
    FULL_ANALYSIS = "full_analysis"


class RunStatus(str, Enum):
    """Analysis run status. Completed, failed and cancelled are terminal."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class PipelineStage(str, Enum):
    """Pipeline stages, in execution order."""

    EMBEDDINGS = "embeddings"
    CLUSTERING = "clustering"
    RELATIONSHIPS = "relationships"
    COMPLETE = "complete"


ClusteringAlgorithm = Literal["kmeans", "dbscan"]


def default_results() -> dict[str, Any]:
    """Empty results summary for a new run."""
    return {
        "nodes_processed": 0,
        "embeddings_generated": 0,
        "clusters_created": 0,
        "relationships_inferred": 0,
        "suggestions_upserted": 0,
        "suggestions_approved": 0,
        "errors": [],
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ItemProgress:
    """Per-batch progress reported by the embeddings and relationship stages."""

    processed: int
    total: int
    current_item: str | None = None


ItemProgressCallback = Callable[[ItemProgress], Awaitable[None] | None]


async def notify_progress(callback: Callable[[Any], Any] | None, event: Any) -> None:
    """Invoke a sync or async progress callback."""
    if callback is None:
        return
    result = callback(event)
    if inspect.isawaitable(result):
        await result


@dataclass
class PipelineProgress:
    """Progress snapshot for one stage of a run."""

    stage: PipelineStage
    progress: int  # 0-100 within the stage
    current_item: str
    items_processed: int
    total_items: int
    overall_progress: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "progress": self.progress,
            "current_item": self.current_item,
            "items_processed": self.items_processed,
            "total_items": self.total_items,
            "overall_progress": self.overall_progress,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineProgress:
        return cls(
            stage=PipelineStage(data["stage"]),
            progress=data.get("progress", 0),
            current_item=data.get("current_item", ""),
            items_processed=data.get("items_processed", 0),
            total_items=data.get("total_items", 0),
            overall_progress=data.get("overall_progress"),
        )


ProgressCallback = Callable[[PipelineProgress], Awaitable[None] | None]


@dataclass
class PipelineOptions:
    """
    Options for an analysis run.

    Skip flags only apply to ``full_analysis``; single-stage run types
    always execute their stage.
    """

    node_ids: list[str] | None = None
    force_recompute: bool = False
    skip_embeddings: bool = False
    skip_clustering: bool = False
    cluster_count: int | None = None
    clustering_algorithm: ClusteringAlgorithm = "kmeans"
    clustering_seed: int | None = None
    skip_relationships: bool = False
    relationship_threshold: float | None = None
    max_relationships_per_node: int | None = None
    on_progress: ProgressCallback | None = None

    def to_params(self) -> dict[str, Any]:
        """Serializable input params (the progress callback is dropped)."""
        return {
            "node_ids": self.node_ids,
            "force_recompute": self.force_recompute,
            "skip_embeddings": self.skip_embeddings,
            "skip_clustering": self.skip_clustering,
            "cluster_count": self.cluster_count,
            "clustering_algorithm": self.clustering_algorithm,
            "clustering_seed": self.clustering_seed,
            "skip_relationships": self.skip_relationships,
            "relationship_threshold": self.relationship_threshold,
            "max_relationships_per_node": self.max_relationships_per_node,
        }


@dataclass
class AnalysisRun:
    """
    Analysis run (job) representation with persistence support.

    Created when a run starts, mutated by progress callbacks and
    terminated exactly once (completed, failed or cancelled).
    """

    id: str
    scope: str
    run_type: RunType
    status: RunStatus
    created_at: datetime
    updated_at: datetime
    input_params: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=default_results)
    progress: int = 0  # 0-100 overall
    progress_snapshot: PipelineProgress | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    error_stack: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """
        Convert run to dictionary for API responses.

        Returns:
            Dictionary representation of run state
        """
        return {
            "id": self.id,
            "scope": self.scope,
            "run_type": self.run_type.value,
            "status": self.status.value,
            "input_params": self.input_params,
            "results": self.results,
            "progress": self.progress,
            "progress_snapshot": (
                self.progress_snapshot.to_dict() if self.progress_snapshot else None
            ),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisRun:
        """
        Create AnalysisRun instance from dictionary (for deserialization).

        Args:
            data: Dictionary representation of a run

        Returns:
            AnalysisRun instance
        """
        snapshot = data.get("progress_snapshot")
        return cls(
            id=data["id"],
            scope=data["scope"],
            run_type=RunType(data["run_type"]),
            status=RunStatus(data["status"]),
            input_params=data.get("input_params") or {},
            results={**default_results(), **(data.get("results") or {})},
            progress=data.get("progress") or 0,
            progress_snapshot=PipelineProgress.from_dict(snapshot) if snapshot else None,
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            duration_ms=data.get("duration_ms"),
            error_message=data.get("error_message"),
            error_stack=data.get("error_stack"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
