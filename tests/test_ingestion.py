"""
Tests for IngestionEngine: idempotent sync runs, change detection,
deletions, link edges and sync-run bookkeeping.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from neuron.ingestion import (
    IngestionEngine,
    IngestionRecord,
    IngestionSourceRef,
    IngestOptions,
    MemoryProvenanceStore,
    ProvenanceStore,
    SqlProvenanceStore,
    SyncRunStatus,
)
from neuron.ingestion.hashing import hash_ingestion_record, stable_stringify
from neuron.kg.models import EdgeSource
from neuron.storage import Database
from neuron.store import GraphStore, InMemoryGraphStore, SqlGraphStore

SOURCE = IngestionSourceRef(type="markdown", name="notes", config={"path": "/notes"})


@dataclass
class Backend:
    store: GraphStore
    provenance: ProvenanceStore

    def engine(self) -> IngestionEngine:
        return IngestionEngine(self.store, self.provenance)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def backend(request: pytest.FixtureRequest, db: Database) -> Backend:
    """Graph store plus provenance store, once per backend."""
    if request.param == "memory":
        return Backend(InMemoryGraphStore(), MemoryProvenanceStore())
    return Backend(SqlGraphStore(db), SqlProvenanceStore(db))


def _record(external_id: str, **overrides) -> IngestionRecord:
    data = {
        "external_id": external_id,
        "title": f"Note {external_id}",
        "content": f"Body of {external_id}",
    }
    data.update(overrides)
    return IngestionRecord(**data)


def _options(**overrides) -> IngestOptions:
    return IngestOptions(source=SOURCE, **overrides)


class TestSyncRuns:
    """Create, update and skip classification across runs."""

    @pytest.mark.asyncio
    async def test_first_run_creates_nodes(self, backend: Backend) -> None:
        """Test every new record becomes a node with a source-aware slug."""
        result = await backend.engine().ingest([_record("a"), _record("b")], _options())

        assert result.status == SyncRunStatus.SUCCESS
        assert (result.stats.total, result.stats.created) == (2, 2)
        nodes = await backend.store.list_nodes()
        assert sorted(n.label for n in nodes) == ["Note a", "Note b"]
        assert all(n.slug.startswith("note-") for n in nodes)
        assert result.source_id is not None
        assert result.sync_run_id is not None

    @pytest.mark.asyncio
    async def test_rerun_is_stable(self, backend: Backend) -> None:
        """Test re-ingesting unchanged records skips them and creates nothing."""
        engine = backend.engine()
        records = [_record("a"), _record("b")]
        first = await engine.ingest(records, _options())

        second = await engine.ingest(records, _options())

        assert second.stats.skipped == 2
        assert second.stats.created == 0
        assert second.source_id == first.source_id
        assert second.sync_run_id != first.sync_run_id
        assert len(await backend.store.list_nodes()) == 2

    @pytest.mark.asyncio
    async def test_changed_record_updates_node(self, backend: Backend) -> None:
        """Test a changed hash updates the existing node in place."""
        engine = backend.engine()
        await engine.ingest([_record("a")], _options())
        (before,) = await backend.store.list_nodes()

        result = await engine.ingest([_record("a", content="Rewritten")], _options())

        assert result.stats.updated == 1
        (after,) = await backend.store.list_nodes()
        assert after.id == before.id
        assert after.content == "Rewritten"

    @pytest.mark.asyncio
    async def test_same_title_different_sources(self, backend: Backend) -> None:
        """Test equal titles from two sources never collide."""
        engine = backend.engine()
        other = IngestionSourceRef(type="rss", name="feed")

        await engine.ingest([_record("a", title="Shared")], _options())
        await engine.ingest([_record("a", title="Shared")], IngestOptions(source=other))

        nodes = await backend.store.list_nodes()
        assert len(nodes) == 2
        assert len({n.slug for n in nodes}) == 2

    @pytest.mark.asyncio
    async def test_bad_records_make_run_partial(self, backend: Backend) -> None:
        """Test invalid records are itemized and the rest still ingested."""
        records: list = [_record(str(i)) for i in range(9)]
        records.insert(4, {"external_id": "broken", "content": "no title"})

        result = await backend.engine().ingest(records, _options())

        assert result.status == SyncRunStatus.PARTIAL
        assert (result.stats.total, result.stats.created, result.stats.errors) == (10, 9, 1)
        (error,) = result.errors
        assert error.external_id == "broken"
        assert "title" in error.error

    @pytest.mark.asyncio
    async def test_record_without_id(self, backend: Backend) -> None:
        """Test records lacking an id are reported under a placeholder."""
        result = await backend.engine().ingest(
            [{"title": "Orphan", "content": "x"}, _record("ok")], _options()
        )

        assert [e.external_id for e in result.errors] == ["(invalid)"]
        assert result.stats.created == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, backend: Backend) -> None:
        """Test a dry run classifies records without touching any store."""
        result = await backend.engine().ingest([_record("a"), _record("b")], _options(dry_run=True))

        assert result.stats.created == 2
        assert result.sync_run_id is None
        assert result.source_id is None
        assert await backend.store.list_nodes() == []
        assert await backend.provenance.list_sources() == []

    @pytest.mark.asyncio
    async def test_dry_run_after_sync(self, backend: Backend) -> None:
        """Test a dry run reports what a real run would change."""
        engine = backend.engine()
        await engine.ingest([_record("a"), _record("b")], _options())

        result = await engine.ingest(
            [_record("a"), _record("b", content="changed"), _record("c")], _options(dry_run=True)
        )

        assert (result.stats.skipped, result.stats.updated, result.stats.created) == (1, 1, 1)
        assert len(await backend.store.list_nodes()) == 2
        assert len(await backend.provenance.list_sync_runs()) == 1


class TestDeletions:
    """Soft and hard handling of records missing from a run."""

    @pytest.mark.asyncio
    async def test_soft_delete(self, backend: Backend) -> None:
        """Test soft deletion marks provenance but keeps the node."""
        engine = backend.engine()
        first = await engine.ingest([_record("a"), _record("b")], _options())

        result = await engine.ingest([_record("a")], _options(delete_mode="soft"))

        assert result.stats.deleted == 1
        assert len(await backend.store.list_nodes()) == 2
        assert first.source_id is not None
        item = await backend.provenance.find_source_item(first.source_id, "b")
        assert item is not None and item.deleted_at is not None

    @pytest.mark.asyncio
    async def test_soft_deleted_item_revived(self, backend: Backend) -> None:
        """Test a record that reappears is no longer marked deleted."""
        engine = backend.engine()
        first = await engine.ingest([_record("a"), _record("b")], _options())
        await engine.ingest([_record("a")], _options(delete_mode="soft"))

        await engine.ingest([_record("a"), _record("b")], _options(delete_mode="soft"))

        assert first.source_id is not None
        item = await backend.provenance.find_source_item(first.source_id, "b")
        assert item is not None and item.deleted_at is None

    @pytest.mark.asyncio
    async def test_hard_delete(self, backend: Backend) -> None:
        """Test hard deletion removes the node and its provenance."""
        engine = backend.engine()
        first = await engine.ingest(
            [_record("a"), _record("b", references=["a"])], _options()
        )

        result = await engine.ingest([_record("a")], _options(delete_mode="hard"))

        assert result.stats.deleted == 1
        assert [n.label for n in await backend.store.list_nodes()] == ["Note a"]
        assert await backend.store.list_edges() == []
        assert first.source_id is not None
        assert await backend.provenance.find_source_item(first.source_id, "b") is None

    @pytest.mark.asyncio
    async def test_delete_mode_none(self, backend: Backend) -> None:
        """Test missing records are ignored by default."""
        engine = backend.engine()
        await engine.ingest([_record("a"), _record("b")], _options())

        result = await engine.ingest([_record("a")], _options())

        assert result.stats.deleted == 0
        assert len(await backend.store.list_nodes()) == 2


class TestLinks:
    """Edges derived from references and parents."""

    @pytest.mark.asyncio
    async def test_reference_and_parent_edges(self, backend: Backend) -> None:
        """Test references and part_of edges between records of one run."""
        result = await backend.engine().ingest(
            [
                _record("guide"),
                _record("chapter", parent_external_id="guide", references=["intro", "missing"]),
                _record("intro"),
            ],
            _options(),
        )

        assert result.status == SyncRunStatus.SUCCESS
        nodes = {n.label: n.id for n in await backend.store.list_nodes()}
        edges = {
            (e.from_node_id, e.to_node_id, e.relationship_type): e
            for e in await backend.store.list_edges()
        }
        assert set(edges) == {
            (nodes["Note chapter"], nodes["Note guide"], "part_of"),
            (nodes["Note chapter"], nodes["Note intro"], "references"),
        }
        for edge in edges.values():
            assert edge.source == EdgeSource.IMPORTED
            assert edge.metadata == {"source": "markdown:notes"}

    @pytest.mark.asyncio
    async def test_edges_not_duplicated(self, backend: Backend) -> None:
        """Test re-running keeps a single edge per link."""
        engine = backend.engine()
        records = [_record("a", references=["b"]), _record("b")]

        await engine.ingest(records, _options())
        await engine.ingest(records, _options())

        assert len(await backend.store.list_edges()) == 1


class TestProvenance:
    """Sync-run and source bookkeeping."""

    @pytest.mark.asyncio
    async def test_sync_run_persisted(self, backend: Backend) -> None:
        """Test the run is completed with its stats and first errors."""
        result = await backend.engine().ingest(
            [_record("a"), {"external_id": "bad", "content": "x"}], _options()
        )

        assert result.sync_run_id is not None
        run = await backend.provenance.get_sync_run(result.sync_run_id)
        assert run is not None
        assert run.status == SyncRunStatus.PARTIAL
        assert run.completed_at is not None
        assert run.stats["created"] == 1
        assert run.stats["errors"] == 1
        assert run.error is not None
        assert json.loads(run.error)[0]["external_id"] == "bad"

    @pytest.mark.asyncio
    async def test_persisted_errors_are_capped(self, backend: Backend) -> None:
        """Test only the first fifty errors are stored on the run."""
        records = [{"external_id": f"bad{i}", "content": "x"} for i in range(60)]

        result = await backend.engine().ingest(records, _options())

        assert len(result.errors) == 60
        assert result.sync_run_id is not None
        run = await backend.provenance.get_sync_run(result.sync_run_id)
        assert run is not None and run.error is not None
        assert len(json.loads(run.error)) == 50

    @pytest.mark.asyncio
    async def test_source_upserted(self, backend: Backend) -> None:
        """Test a source is identified by type and name and its config refreshed."""
        engine = backend.engine()
        await engine.ingest([_record("a")], _options())
        refreshed = IngestionSourceRef(type="markdown", name="notes", config={"path": "/new"})

        await engine.ingest([_record("a")], IngestOptions(source=refreshed))

        (source,) = await backend.provenance.list_sources()
        assert source.config == {"path": "/new"}
        assert len(await backend.provenance.list_sync_runs(source.id)) == 2

    @pytest.mark.asyncio
    async def test_node_mapping(self, backend: Backend) -> None:
        """Test each source item maps to the node it produced."""
        result = await backend.engine().ingest([_record("a")], _options())
        (node,) = await backend.store.list_nodes()

        assert result.source_id is not None
        item = await backend.provenance.find_source_item(result.source_id, "a")
        assert item is not None
        assert await backend.provenance.list_node_ids_for_source_item(item.id) == [node.id]

    @pytest.mark.asyncio
    async def test_outer_failure_marks_run_failed(self, backend: Backend) -> None:
        """Test a failure outside the record loop fails the run and propagates."""
        engine = backend.engine()

        async def broken_edges(*args, **kwargs):
            raise RuntimeError("edge write failed")

        engine._apply_edges = broken_edges

        with pytest.raises(RuntimeError, match="edge write failed"):
            await engine.ingest([_record("a")], _options())

        (run,) = await backend.provenance.list_sync_runs()
        assert run.status == SyncRunStatus.FAILED
        assert run.error == "edge write failed"

    @pytest.mark.asyncio
    async def test_run_start_times_strictly_increase(
        self, backend: Backend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test back-to-back runs under a frozen clock start one millisecond apart."""
        frozen = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        monkeypatch.setattr("neuron.ingestion.engine._utc_now", lambda: frozen)
        engine = backend.engine()

        first = await engine.ingest([_record("a")], _options())
        second = await engine.ingest([_record("a")], _options())

        first_run = await backend.provenance.get_sync_run(first.sync_run_id)
        second_run = await backend.provenance.get_sync_run(second.sync_run_id)
        assert first_run.started_at == frozen
        assert second_run.started_at == first_run.started_at + timedelta(milliseconds=1)

    @pytest.mark.asyncio
    async def test_rerun_under_frozen_clock_keeps_items(
        self, backend: Backend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a same-instant rerun still counts its records as seen."""
        frozen = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        monkeypatch.setattr("neuron.ingestion.engine._utc_now", lambda: frozen)
        engine = backend.engine()

        await engine.ingest([_record("a")], _options())
        second = await engine.ingest([_record("a")], _options(delete_mode="soft"))

        assert second.stats.deleted == 0
        assert len(await backend.store.list_nodes()) == 1


class TestWithoutProvenance:
    """Slug-only idempotence when no provenance store is configured."""

    @pytest.mark.asyncio
    async def test_rerun_updates_in_place(self) -> None:
        """Test records resolve to the same nodes by slug."""
        store = InMemoryGraphStore()
        engine = IngestionEngine(store)

        first = await engine.ingest([_record("a")], _options())
        second = await engine.ingest([_record("a")], _options())

        assert first.stats.created == 1
        assert second.stats.created == 0
        assert second.sync_run_id is None
        assert len(await store.list_nodes()) == 1


class TestHashing:
    """Content fingerprints."""

    def test_hash_ignores_sync_fields(self) -> None:
        """Test updated_at does not change the digest but content does."""
        base = _record("a")
        later = _record("a", updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc))

        assert hash_ingestion_record(base) == hash_ingestion_record(later)
        assert hash_ingestion_record(base) != hash_ingestion_record(_record("a", content="other"))

    def test_stable_stringify(self) -> None:
        """Test keys are sorted and output is compact."""
        assert stable_stringify({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
        assert (
            stable_stringify({"at": datetime(2024, 1, 1, tzinfo=timezone.utc)})
            == '{"at":"2024-01-01T00:00:00+00:00"}'
        )
