"""
Pipeline stages.

Each step runs one engine, reports progress through the context and
merges its counts into the run's results. Steps are executed in list
order by the pipeline.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from neuron.analysis.cancellation import CancellationToken
from neuron.analysis.clustering import ClusteringConfig, ClusteringEngine
from neuron.analysis.embeddings import EmbeddingsService
from neuron.analysis.relationships import RelationshipEngine
from neuron.models.jobs import (
    AnalysisRun,
    ItemProgress,
    PipelineOptions,
    PipelineProgress,
    PipelineStage,
)


@dataclass
class StepContext:
    """Everything a step needs from the pipeline for one run."""

    run: AnalysisRun
    options: PipelineOptions
    token: CancellationToken
    embeddings: EmbeddingsService
    clustering: ClusteringEngine
    relationships: RelationshipEngine
    report_progress: Callable[[PipelineProgress], Awaitable[None]]
    update_results: Callable[[dict[str, Any]], Awaitable[None]]
    resolve_node_ids: Callable[[list[str] | None, bool], Awaitable[list[str]]]
    resolve_embedded_node_ids: Callable[[list[str] | None], Awaitable[list[str]]]


class AnalysisStep(Protocol):
    id: str
    stage: PipelineStage

    def is_enabled(self, options: PipelineOptions) -> bool: ...

    async def run(self, context: StepContext) -> None: ...


def _item_reporter(
    context: StepContext, stage: PipelineStage
) -> Callable[[ItemProgress], Awaitable[None]]:
    async def report(item: ItemProgress) -> None:
        await context.report_progress(
            PipelineProgress(
                stage=stage,
                progress=round(item.processed / item.total * 100) if item.total else 100,
                current_item=item.current_item or f"{item.processed}/{item.total}",
                items_processed=item.processed,
                total_items=item.total,
            )
        )

    return report


async def _report_boundary(
    context: StepContext, stage: PipelineStage, done: bool, count: int
) -> None:
    await context.report_progress(
        PipelineProgress(
            stage=stage,
            progress=100 if done else 0,
            current_item="complete" if done else "starting",
            items_processed=count if done else 0,
            total_items=count,
        )
    )


class EmbeddingsStep:
    id = "embeddings"
    stage = PipelineStage.EMBEDDINGS

    def is_enabled(self, options: PipelineOptions) -> bool:
        return not options.skip_embeddings

    async def run(self, context: StepContext) -> None:
        options = context.options
        node_ids = await context.resolve_node_ids(options.node_ids, options.force_recompute)
        await _report_boundary(context, self.stage, False, len(node_ids))

        outcome = await context.embeddings.embed_nodes_with_progress(
            node_ids, context.token, _item_reporter(context, self.stage)
        )
        await context.update_results(
            {
                "nodes_processed": len(node_ids),
                "embeddings_generated": len(outcome.results),
                "errors": outcome.errors,
            }
        )
        await _report_boundary(context, self.stage, True, len(node_ids))


class ClusteringStep:
    id = "clustering"
    stage = PipelineStage.CLUSTERING

    def is_enabled(self, options: PipelineOptions) -> bool:
        return not options.skip_clustering

    async def run(self, context: StepContext) -> None:
        options = context.options
        await _report_boundary(context, self.stage, False, 0)
        context.token.raise_if_cancelled()

        outcome = await context.clustering.cluster_nodes(
            ClusteringConfig(
                algorithm=options.clustering_algorithm,
                cluster_count=options.cluster_count,
                similarity_threshold=options.relationship_threshold,
                seed=options.clustering_seed,
            )
        )
        await context.update_results({"clusters_created": len(outcome.clusters)})
        await _report_boundary(context, self.stage, True, len(outcome.clusters))


class RelationshipsStep:
    id = "relationships"
    stage = PipelineStage.RELATIONSHIPS

    def is_enabled(self, options: PipelineOptions) -> bool:
        return not options.skip_relationships

    async def run(self, context: StepContext) -> None:
        options = context.options
        engine = context.relationships.with_overrides(
            max_per_node=options.max_relationships_per_node,
            similarity_threshold=options.relationship_threshold,
        )
        node_ids = await context.resolve_embedded_node_ids(options.node_ids)
        await _report_boundary(context, self.stage, False, len(node_ids))

        outcome = await engine.infer_for_nodes_with_progress(
            node_ids, context.token, _item_reporter(context, self.stage)
        )
        persisted = await engine.persist_inferences(
            outcome.inferred, analysis_run_id=context.run.id
        )
        await context.update_results(
            {
                "relationships_inferred": len(outcome.inferred),
                "suggestions_upserted": persisted.suggestions_upserted,
                "suggestions_approved": persisted.suggestions_approved,
                "errors": [*outcome.errors, *persisted.errors],
            }
        )
        await _report_boundary(context, self.stage, True, len(node_ids))


def default_steps() -> list[AnalysisStep]:
    """Embeddings, clustering, relationships, in that order."""
    return [EmbeddingsStep(), ClusteringStep(), RelationshipsStep()]
