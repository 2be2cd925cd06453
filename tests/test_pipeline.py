"""
Tests for the analysis pipeline: job lifecycle, stages, progress and
cancellation.
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from neuron.analysis import (
    AnalysisPipeline,
    ClusteringEngine,
    EmbeddingsService,
    GovernanceService,
    JobRegistry,
    RelationshipEngine,
)
from neuron.analysis.pipeline import compute_overall_progress
from neuron.analysis.steps import StepContext
from neuron.core.events import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROGRESS,
    JOB_STARTED,
    EventBus,
)
from neuron.kg.models import NodeCreate, SuggestionStatus
from neuron.models.jobs import PipelineOptions, PipelineProgress, PipelineStage, RunStatus, RunType
from neuron.providers import MockLLMProvider
from neuron.storage import Database
from neuron.store import SqlGraphStore


class GatedStep:
    """Embeddings-stage step that blocks until released or cancelled."""

    id = "gated"
    stage = PipelineStage.EMBEDDINGS

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    def is_enabled(self, options: PipelineOptions) -> bool:
        return True

    async def run(self, context: StepContext) -> None:
        self.started.set()
        cancelled = asyncio.create_task(context.token.wait())
        released = asyncio.create_task(self.gate.wait())
        try:
            await asyncio.wait({cancelled, released}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            released.cancel()
        context.token.raise_if_cancelled()


class FailingStep:
    id = "failing"
    stage = PipelineStage.EMBEDDINGS

    def is_enabled(self, options: PipelineOptions) -> bool:
        return True

    async def run(self, context: StepContext) -> None:
        raise RuntimeError("boom")


@pytest_asyncio.fixture
async def pipeline(
    db: Database,
    sql_store: SqlGraphStore,
    embeddings: EmbeddingsService,
    clustering: ClusteringEngine,
    relationships: RelationshipEngine,
) -> AnalysisPipeline:
    """Pipeline with the default stages over the test database."""
    return AnalysisPipeline(db, sql_store, embeddings, clustering, relationships)


def _custom(pipeline: AnalysisPipeline, steps, max_concurrent_jobs: int = 5) -> AnalysisPipeline:
    return AnalysisPipeline(
        pipeline.runs.db,
        pipeline.store,
        pipeline.embeddings,
        pipeline.clustering,
        pipeline.relationships,
        steps=steps,
        max_concurrent_jobs=max_concurrent_jobs,
    )


async def _seed(store: SqlGraphStore, count: int = 4) -> list[str]:
    nodes = await store.create_nodes(
        [NodeCreate(label=f"Topic {i}", summary=f"About topic {i}") for i in range(count)]
    )
    return [node.id for node in nodes]


class TestFullRun:
    """End-to-end runs over the default stages."""

    @pytest.mark.asyncio
    async def test_full_analysis_completes(
        self, pipeline: AnalysisPipeline, sql_store: SqlGraphStore
    ) -> None:
        """Test all three stages run and results are recorded."""
        ids = await _seed(sql_store)
        snapshots: list[PipelineProgress] = []

        run = await pipeline.run_full(PipelineOptions(clustering_seed=1, on_progress=snapshots.append))

        assert run.status == RunStatus.COMPLETED
        assert run.progress == 100
        assert run.results["nodes_processed"] == 4
        assert run.results["embeddings_generated"] == 4
        assert 1 <= run.results["clusters_created"] <= 3
        assert run.results["errors"] == []
        assert run.progress_snapshot is not None
        assert run.progress_snapshot.stage == PipelineStage.COMPLETE
        assert run.started_at is not None and run.completed_at is not None
        assert run.duration_ms is not None and run.duration_ms >= 0

        stages = [s.stage for s in snapshots]
        assert stages.index(PipelineStage.EMBEDDINGS) < stages.index(PipelineStage.CLUSTERING)
        assert stages.index(PipelineStage.CLUSTERING) < stages.index(PipelineStage.RELATIONSHIPS)
        overall = [s.overall_progress for s in snapshots]
        assert overall == sorted(overall)
        assert overall[-1] == pytest.approx(100.0)

        for node_id in ids:
            node = await sql_store.get_node_by_id(node_id)
            assert node is not None and node.embedding is not None
        assert await pipeline.is_running() is False

    @pytest.mark.asyncio
    async def test_async_progress_callback(
        self, pipeline: AnalysisPipeline, sql_store: SqlGraphStore
    ) -> None:
        """Test coroutine progress callbacks are awaited."""
        await _seed(sql_store, 1)
        seen: list[str] = []

        async def on_progress(progress: PipelineProgress) -> None:
            await asyncio.sleep(0)
            seen.append(progress.current_item)

        await pipeline.run_embeddings(PipelineOptions(on_progress=on_progress))

        assert seen[0] == "starting"
        assert seen[-1] == "complete"

    @pytest.mark.asyncio
    async def test_skip_flags(self, pipeline: AnalysisPipeline, sql_store: SqlGraphStore) -> None:
        """Test full analysis honours skip flags."""
        await _seed(sql_store)

        run = await pipeline.run_full(
            PipelineOptions(skip_clustering=True, skip_relationships=True)
        )

        assert run.status == RunStatus.COMPLETED
        assert run.results["embeddings_generated"] == 4
        assert run.results["clusters_created"] == 0
        assert await pipeline.clustering.list_clusters() == []

    @pytest.mark.asyncio
    async def test_single_stage_ignores_skip_flags(
        self, pipeline: AnalysisPipeline, sql_store: SqlGraphStore
    ) -> None:
        """Test a single-stage run always executes its stage."""
        await _seed(sql_store, 2)

        run = await pipeline.run_embeddings(PipelineOptions(skip_embeddings=True))

        assert run.results["embeddings_generated"] == 2
        assert run.input_params["skip_embeddings"] is True

    @pytest.mark.asyncio
    async def test_relationship_stage_stages_suggestions(
        self,
        db: Database,
        sql_store: SqlGraphStore,
        embeddings: EmbeddingsService,
        clustering: ClusteringEngine,
        governance: GovernanceService,
        relationships: RelationshipEngine,
    ) -> None:
        """Test inferred relationships are auto-approved and linked to the run."""
        a, b = await _seed(sql_store, 2)
        await sql_store.set_node_embedding(a, [1.0, 0.0], "test-embedding")
        await sql_store.set_node_embedding(b, [0.9, 0.1], "test-embedding")
        engine = RelationshipEngine(
            sql_store,
            MockLLMProvider(default_json={"hasRelationship": True, "relationshipType": "supports", "confidence": 0.9}),
            relationships.config,
            governance,
        )
        pipeline = AnalysisPipeline(db, sql_store, embeddings, clustering, engine)

        run = await pipeline.run_relationships()

        assert run.status == RunStatus.COMPLETED
        assert run.results["relationships_inferred"] == 2
        assert run.results["suggestions_upserted"] == 2
        assert run.results["suggestions_approved"] == 2
        approved = await governance.list_suggestions(status=SuggestionStatus.APPROVED)
        assert {s.analysis_run_id for s in approved} == {run.id}
        assert len(await sql_store.list_edges()) == 2

    @pytest.mark.asyncio
    async def test_node_deleted_mid_run_is_contained(
        self,
        db: Database,
        sql_store: SqlGraphStore,
        embeddings: EmbeddingsService,
        clustering: ClusteringEngine,
        governance: GovernanceService,
        relationships: RelationshipEngine,
    ) -> None:
        """Test a node removed during inference is recorded and the run still completes."""
        a, b = await _seed(sql_store, 2)
        await sql_store.set_node_embedding(a, [1.0, 0.0], "test-embedding")
        await sql_store.set_node_embedding(b, [0.9, 0.1], "test-embedding")

        async def responder(model: str, prompt: str):
            if "- Label: Topic 0" in prompt.split("Node B:")[0]:
                return {"hasRelationship": True, "relationshipType": "supports", "confidence": 0.9}
            await sql_store.delete_node(b)
            return None

        engine = RelationshipEngine(sql_store, MockLLMProvider(responder), relationships.config, governance)
        pipeline = AnalysisPipeline(db, sql_store, embeddings, clustering, engine)

        run = await pipeline.run_relationships()

        assert run.status == RunStatus.COMPLETED
        assert run.results["relationships_inferred"] == 1
        assert run.results["suggestions_approved"] == 0
        assert len(run.results["errors"]) == 1
        assert run.results["errors"][0]["node_id"] == a
        assert await sql_store.list_edges() == []

    @pytest.mark.asyncio
    async def test_embedding_errors_recorded(
        self, pipeline: AnalysisPipeline, sql_store: SqlGraphStore
    ) -> None:
        """Test per-node failures are kept on the run without failing it."""
        await _seed(sql_store, 1)

        async def broken(model, input, dimensions=None):
            raise ValueError("provider down")

        pipeline.embeddings.provider.embed = broken

        run = await pipeline.run_embeddings()

        assert run.status == RunStatus.COMPLETED
        assert run.results["embeddings_generated"] == 0
        assert run.results["errors"][0]["error"] == "provider down"


class TestLifecycle:
    """Cancellation, failure and concurrency limits."""

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, pipeline: AnalysisPipeline) -> None:
        """Test cancelling marks the run immediately and the job stops."""
        step = GatedStep()
        gated = _custom(pipeline, [step])
        run, task = await gated.start_job(RunType.EMBEDDING)
        await asyncio.wait_for(step.started.wait(), 5)

        assert await gated.is_running() is True
        assert await gated.cancel_job(run.id) is True
        stored = await gated.get_job(run.id)
        assert stored is not None and stored.status == RunStatus.CANCELLED

        final = await asyncio.wait_for(task, 5)

        assert final.status == RunStatus.CANCELLED
        assert final.completed_at is not None
        assert await gated.active_job_ids() == []
        assert await gated.cancel_job(run.id) is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, pipeline: AnalysisPipeline) -> None:
        """Test cancelling an id that was never started is refused."""
        assert await pipeline.cancel_job("000000000000") is False

    @pytest.mark.asyncio
    async def test_failure_marks_run_failed(self, pipeline: AnalysisPipeline) -> None:
        """Test an exception in a stage fails the run with its stack."""
        failing = _custom(pipeline, [FailingStep()])

        run = await failing.run_embeddings()

        assert run.status == RunStatus.FAILED
        assert run.error_message == "boom"
        assert run.error_stack is not None and "RuntimeError" in run.error_stack
        assert await failing.is_running() is False

    @pytest.mark.asyncio
    async def test_queue_limit(self, pipeline: AnalysisPipeline) -> None:
        """Test jobs over the concurrency limit wait in queued state."""
        step = GatedStep()
        limited = _custom(pipeline, [step], max_concurrent_jobs=1)

        first, first_task = await limited.start_job(RunType.EMBEDDING)
        second, second_task = await limited.start_job(RunType.EMBEDDING)
        await asyncio.wait_for(step.started.wait(), 5)
        await asyncio.sleep(0)

        queued = await limited.get_job(second.id)
        assert queued is not None and queued.status == RunStatus.QUEUED
        assert set(await limited.active_job_ids()) == {first.id, second.id}

        step.gate.set()
        results = await asyncio.wait_for(asyncio.gather(first_task, second_task), 5)

        assert [r.status for r in results] == [RunStatus.COMPLETED, RunStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, pipeline: AnalysisPipeline) -> None:
        """Test a queued job cancelled before it starts never runs."""
        step = GatedStep()
        limited = _custom(pipeline, [step], max_concurrent_jobs=1)
        first, first_task = await limited.start_job(RunType.EMBEDDING)
        second, second_task = await limited.start_job(RunType.EMBEDDING)
        await asyncio.wait_for(step.started.wait(), 5)

        assert await limited.cancel_job(second.id) is True
        step.gate.set()
        first_run, second_run = await asyncio.wait_for(asyncio.gather(first_task, second_task), 5)

        assert first_run.status == RunStatus.COMPLETED
        assert second_run.status == RunStatus.CANCELLED
        assert second_run.started_at is None

    @pytest.mark.asyncio
    async def test_shutdown_cancels_tasks(self, pipeline: AnalysisPipeline) -> None:
        """Test shutdown stops in-flight jobs and marks them cancelled."""
        step = GatedStep()
        gated = _custom(pipeline, [step])
        run, _ = await gated.start_job(RunType.EMBEDDING)
        await asyncio.wait_for(step.started.wait(), 5)

        await gated.shutdown()

        stored = await gated.get_job(run.id)
        assert stored is not None and stored.status == RunStatus.CANCELLED
        assert await gated.active_job_ids() == []

    @pytest.mark.asyncio
    async def test_list_and_wait(self, pipeline: AnalysisPipeline, sql_store: SqlGraphStore) -> None:
        """Test jobs are listed newest first and can be awaited by id."""
        await _seed(sql_store, 1)
        first = await pipeline.run_embeddings()
        second, _ = await pipeline.start_job(RunType.CLUSTERING)

        final = await pipeline.wait_for(second.id)

        assert final is not None and final.status == RunStatus.COMPLETED
        assert [r.id for r in await pipeline.list_jobs()] == [second.id, first.id]
        assert [r.id for r in await pipeline.list_jobs(status="completed", limit=1)] == [second.id]
        assert (await pipeline.wait_for(first.id)).id == first.id


class TestNodeResolution:
    """Which nodes a stage works on."""

    @pytest.mark.asyncio
    async def test_resolve_node_ids(self, pipeline: AnalysisPipeline, sql_store: SqlGraphStore) -> None:
        """Test explicit ids win, then forced, then unembedded nodes only."""
        a, b = await _seed(sql_store, 2)
        await sql_store.set_node_embedding(a, [1.0], "m")

        assert await pipeline.resolve_node_ids() == [b]
        assert await pipeline.resolve_node_ids(force_recompute=True) == [a, b]
        assert await pipeline.resolve_node_ids([a]) == [a]
        assert await pipeline.resolve_embedded_node_ids() == [a]
        assert await pipeline.resolve_embedded_node_ids([b]) == [b]


class TestProgressMath:
    """Overall progress across stages."""

    @pytest.mark.parametrize(
        ("run_type", "stage", "progress", "expected"),
        [
            (RunType.FULL_ANALYSIS, PipelineStage.EMBEDDINGS, 50, 50 / 3),
            (RunType.FULL_ANALYSIS, PipelineStage.CLUSTERING, 0, 100 / 3),
            (RunType.FULL_ANALYSIS, PipelineStage.RELATIONSHIPS, 100, 100.0),
            (RunType.EMBEDDING, PipelineStage.EMBEDDINGS, 40, 40.0),
            (RunType.CLUSTERING, PipelineStage.COMPLETE, 0, 100.0),
        ],
    )
    def test_overall_progress(
        self, run_type: RunType, stage: PipelineStage, progress: int, expected: float
    ) -> None:
        """Test stage progress is spread evenly over the run's stages."""
        snapshot = PipelineProgress(
            stage=stage, progress=progress, current_item="", items_processed=0, total_items=0
        )

        assert compute_overall_progress(run_type, snapshot) == pytest.approx(expected)


class TestJobRegistry:
    """Active job bookkeeping."""

    @pytest.mark.asyncio
    async def test_register_and_cancel(self) -> None:
        """Test tokens are handed out once and cancelled through the registry."""
        registry = JobRegistry()
        token = await registry.register("job1")

        with pytest.raises(ValueError, match="already active"):
            await registry.register("job1")

        assert await registry.cancel("job1", "stop") is True
        assert token.is_cancelled
        assert token.reason == "stop"
        assert await registry.get("job1") is token

        await registry.remove("job1")

        assert await registry.is_active("job1") is False
        assert await registry.cancel("job1") is False


class TestLifecycleEvents:
    """Job events published on the event bus."""

    @pytest.mark.asyncio
    async def test_completed_run_events(
        self, pipeline: AnalysisPipeline, sql_store: SqlGraphStore
    ) -> None:
        """Test a run publishes started, progress and a single completed event."""
        await _seed(sql_store, 2)
        bus = EventBus()
        pipeline.events = bus

        run = await pipeline.run_embeddings()

        types = [e.type for e in bus.history()]
        assert types[0] == JOB_STARTED
        assert types[-1] == JOB_COMPLETED
        assert types.count(JOB_COMPLETED) == 1
        assert JOB_PROGRESS in types
        assert {e.payload["job_id"] for e in bus.history()} == {run.id}
        assert bus.history()[0].payload["run_type"] == RunType.EMBEDDING.value
        assert bus.history()[0].payload["scope"] == pipeline.scope

    @pytest.mark.asyncio
    async def test_cancelled_run_publishes_once(self, pipeline: AnalysisPipeline) -> None:
        """Test cancelling publishes one cancelled event and no completion."""
        bus = EventBus()
        step = GatedStep()
        gated = _custom(pipeline, [step])
        gated.events = bus
        run, task = await gated.start_job(RunType.EMBEDDING)
        await asyncio.wait_for(step.started.wait(), 5)

        await gated.cancel_job(run.id)
        await asyncio.wait_for(task, 5)

        types = [e.type for e in bus.history()]
        assert types.count(JOB_CANCELLED) == 1
        assert JOB_COMPLETED not in types

    @pytest.mark.asyncio
    async def test_failed_run_event_carries_error(self, pipeline: AnalysisPipeline) -> None:
        """Test a failing stage publishes a failed event with the message."""
        bus = EventBus()
        failing = _custom(pipeline, [FailingStep()])
        failing.events = bus

        await failing.run_embeddings()

        (failed,) = [e for e in bus.history() if e.type == JOB_FAILED]
        assert failed.payload["error"] == "boom"
