"""
Analysis pipeline - orchestrates embeddings, clustering and relationship
inference as cancellable background jobs.

Each job is one asyncio task. Its cancellation token lives in the shared
``JobRegistry`` for as long as the job is active; every terminal
transition removes it again. Progress snapshots are persisted on the run
row after every stage callback so pollers can resume from the last known
state.

When an ``EventBus`` is given, every run publishes ``analysis.job.started``,
``analysis.job.progress`` and exactly one terminal event (completed,
failed or cancelled) for the transition that actually closed the run.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any

from neuron.analysis.cancellation import CancellationToken, JobCancelledError, JobRegistry
from neuron.analysis.clustering import ClusteringEngine
from neuron.analysis.embeddings import EmbeddingsService
from neuron.analysis.relationships import RelationshipEngine
from neuron.analysis.runs import AnalysisRunRepository
from neuron.analysis.steps import AnalysisStep, StepContext, default_steps
from neuron.core.events import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROGRESS,
    JOB_STARTED,
    EventBus,
    EventSource,
    create_event,
)
from neuron.models.jobs import (
    AnalysisRun,
    PipelineOptions,
    PipelineProgress,
    PipelineStage,
    RunStatus,
    RunType,
    notify_progress,
)
from neuron.storage.database import Database
from neuron.store.base import GraphStore, resolve_scope

logger = logging.getLogger(__name__)

_STAGES_BY_RUN_TYPE: dict[RunType, list[PipelineStage]] = {
    RunType.EMBEDDING: [PipelineStage.EMBEDDINGS],
    RunType.CLUSTERING: [PipelineStage.CLUSTERING],
    RunType.RELATIONSHIP_INFERENCE: [PipelineStage.RELATIONSHIPS],
    RunType.FULL_ANALYSIS: [
        PipelineStage.EMBEDDINGS,
        PipelineStage.CLUSTERING,
        PipelineStage.RELATIONSHIPS,
    ],
}


def compute_overall_progress(run_type: RunType, progress: PipelineProgress) -> float:
    """Spread stage progress evenly over the stages of ``run_type`` (0-100)."""
    if progress.stage == PipelineStage.COMPLETE:
        return 100.0
    stage_progress = min(100, max(0, progress.progress))
    stages = _STAGES_BY_RUN_TYPE[run_type]
    if progress.stage not in stages:
        return float(stage_progress)
    span = 100 / len(stages)
    return min(100.0, stages.index(progress.stage) * span + stage_progress / 100 * span)


class AnalysisPipeline:
    """
    Job orchestrator for the analysis stages.

    Stages always run in the order embeddings -> clustering ->
    relationships. ``full_analysis`` honours the options' skip flags;
    single-stage run types ignore them.
    """

    def __init__(
        self,
        db: Database,
        store: GraphStore,
        embeddings: EmbeddingsService,
        clustering: ClusteringEngine,
        relationships: RelationshipEngine,
        registry: JobRegistry | None = None,
        steps: list[AnalysisStep] | None = None,
        scope: str | None = None,
        max_concurrent_jobs: int = 5,
        events: EventBus | None = None,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            db: Database holding the ``analysis_runs`` table
            store: Graph store used for node id resolution
            embeddings: Embeddings stage engine
            clustering: Clustering stage engine
            relationships: Relationship stage engine
            registry: Shared active-job registry (a private one if omitted)
            steps: Stage implementations (defaults to ``default_steps()``)
            scope: Scope every job runs in
            max_concurrent_jobs: Jobs beyond this limit wait in ``queued``
            events: Bus receiving job lifecycle events
        """
        self.store = store
        self.embeddings = embeddings
        self.clustering = clustering
        self.relationships = relationships
        self.registry = registry or JobRegistry()
        self.steps = steps if steps is not None else default_steps()
        self.scope = resolve_scope(scope)
        self.runs = AnalysisRunRepository(db, self.scope)
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_jobs))
        self._tasks: dict[str, asyncio.Task[AnalysisRun]] = {}
        self.events = events

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # JOB LIFECYCLE
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def start_job(
        self, run_type: RunType | str, options: PipelineOptions | None = None
    ) -> tuple[AnalysisRun, asyncio.Task[AnalysisRun]]:
        """
        Create a run and start it in the background.

        Returns:
            The created run and the task resolving to its final state
        """
        run_type = RunType(run_type)
        options = options or PipelineOptions()
        run = await self.runs.create(run_type, options.to_params())
        token = await self.registry.register(run.id)
        await self._publish(JOB_STARTED, run.id, run_type=run_type.value)

        await self._report(
            run,
            options,
            PipelineProgress(
                stage=_STAGES_BY_RUN_TYPE[run_type][0],
                progress=0,
                current_item="starting",
                items_processed=0,
                total_items=0,
            ),
        )

        task = asyncio.create_task(
            self._execute(run, options, token), name=f"analysis-{run.id}"
        )
        self._tasks[run.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.id, None))
        logger.info(f"Started {run_type.value} job: {run.id}")
        return run, task

    async def run_full(self, options: PipelineOptions | None = None) -> AnalysisRun:
        _, task = await self.start_job(RunType.FULL_ANALYSIS, options)
        return await task

    async def run_embeddings(self, options: PipelineOptions | None = None) -> AnalysisRun:
        _, task = await self.start_job(RunType.EMBEDDING, options)
        return await task

    async def run_clustering(self, options: PipelineOptions | None = None) -> AnalysisRun:
        _, task = await self.start_job(RunType.CLUSTERING, options)
        return await task

    async def run_relationships(self, options: PipelineOptions | None = None) -> AnalysisRun:
        _, task = await self.start_job(RunType.RELATIONSHIP_INFERENCE, options)
        return await task

    async def _execute(
        self, run: AnalysisRun, options: PipelineOptions, token: CancellationToken
    ) -> AnalysisRun:
        try:
            async with self._semaphore:
                if await self.runs.mark_running(run.id):
                    await self._run_steps(run, options, token)
                    if await self.runs.complete(run.id):
                        await self._publish(JOB_COMPLETED, run.id)
        except JobCancelledError:
            if await self.runs.cancel(run.id):
                await self._publish(JOB_CANCELLED, run.id)
            logger.info(f"Job cancelled: {run.id}")
        except asyncio.CancelledError:
            if await self.runs.cancel(run.id):
                await self._publish(JOB_CANCELLED, run.id)
            raise
        except Exception as e:
            logger.error(f"Job {run.id} failed: {e}", exc_info=True)
            if await self.runs.fail(run.id, str(e), traceback.format_exc()):
                await self._publish(JOB_FAILED, run.id, error=str(e))
        finally:
            await self.registry.remove(run.id)

        final = await self.runs.get(run.id)
        return final or run

    async def _run_steps(
        self, run: AnalysisRun, options: PipelineOptions, token: CancellationToken
    ) -> None:
        async def report(progress: PipelineProgress) -> None:
            await self._report(run, options, progress)

        async def update_results(updates: dict[str, Any]) -> None:
            await self.runs.merge_results(run.id, updates)

        context = StepContext(
            run=run,
            options=options,
            token=token,
            embeddings=self.embeddings,
            clustering=self.clustering,
            relationships=self.relationships,
            report_progress=report,
            update_results=update_results,
            resolve_node_ids=self.resolve_node_ids,
            resolve_embedded_node_ids=self.resolve_embedded_node_ids,
        )

        stages = _STAGES_BY_RUN_TYPE[run.run_type]
        respect_enabled = run.run_type == RunType.FULL_ANALYSIS
        for step in self.steps:
            if step.stage not in stages:
                continue
            if respect_enabled and not step.is_enabled(options):
                continue
            token.raise_if_cancelled()
            await step.run(context)

    async def _report(
        self, run: AnalysisRun, options: PipelineOptions, progress: PipelineProgress
    ) -> None:
        progress.overall_progress = compute_overall_progress(run.run_type, progress)
        await self.runs.save_progress(run.id, progress)
        await notify_progress(options.on_progress, progress)
        await self._publish(JOB_PROGRESS, run.id, **progress.to_dict())

    async def _publish(self, event_type: str, job_id: str, **payload: Any) -> None:
        if self.events is None:
            return
        await self.events.emit(
            create_event(
                event_type,
                {"job_id": job_id, "scope": self.scope, **payload},
                EventSource.ANALYSIS,
            )
        )

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel an active job.

        The run row is marked ``cancelled`` immediately; the job itself stops
        at its next chunk/pair boundary.

        Returns:
            False if the job is not active (unknown or already terminal)
        """
        if not await self.registry.cancel(job_id):
            return False
        if await self.runs.cancel(job_id):
            await self._publish(JOB_CANCELLED, job_id)
        return True

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # QUERIES
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_job(self, job_id: str) -> AnalysisRun | None:
        return await self.runs.get(job_id)

    async def list_jobs(
        self, status: RunStatus | str | None = None, limit: int | None = None
    ) -> list[AnalysisRun]:
        return await self.runs.list_runs(status=status, limit=limit)

    async def is_running(self) -> bool:
        return bool(await self.registry.active_ids())

    async def active_job_ids(self) -> list[str]:
        return await self.registry.active_ids()

    async def wait_for(self, job_id: str) -> AnalysisRun | None:
        """Await an in-process job's task (returns the stored run if none is running)."""
        task = self._tasks.get(job_id)
        if task is not None:
            return await task
        return await self.runs.get(job_id)

    async def shutdown(self) -> None:
        """Cancel and await every in-process job task."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # NODE RESOLUTION
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def resolve_node_ids(
        self, node_ids: list[str] | None = None, force_recompute: bool = False
    ) -> list[str]:
        """Explicit ids, else every node when forcing, else nodes without an embedding."""
        if node_ids:
            return list(node_ids)
        nodes = await self.store.list_nodes(scope=self.scope)
        if force_recompute:
            return [node.id for node in nodes]
        return [node.id for node in nodes if node.embedding is None]

    async def resolve_embedded_node_ids(self, node_ids: list[str] | None = None) -> list[str]:
        """Explicit ids, else every node that has an embedding."""
        if node_ids:
            return list(node_ids)
        nodes = await self.store.list_nodes(scope=self.scope)
        return [node.id for node in nodes if node.embedding is not None]
