"""Tests for the JSON-file graph store: persistence, debouncing and backup recovery."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import pytest

from neuron.kg.models import EdgeCreate, NodeCreate
from neuron.store import FileBackedGraphStore


class TestPersistence:
    """Snapshots survive a new store instance."""

    @pytest.mark.asyncio
    async def test_round_trip_through_new_instance(self, tmp_path: Path) -> None:
        """Test nodes, edges and embeddings reload from disk."""
        path = tmp_path / "graph.json"
        store = FileBackedGraphStore(path, persist_interval_ms=0)
        a, b = await store.create_nodes([NodeCreate(label="A"), NodeCreate(label="B")], "lab")
        await store.create_edges([EdgeCreate(from_node_id=a.id, to_node_id=b.id)], "lab")
        await store.set_node_embedding(a.id, [1.0, 0.0], "m", "lab")
        await store.close()

        reloaded = FileBackedGraphStore(path)
        nodes = await reloaded.list_nodes(scope="lab")
        edges = await reloaded.list_edges(scope="lab")

        assert [n.slug for n in nodes] == ["a", "b"]
        assert len(edges) == 1
        assert nodes[0].embedding == [1.0, 0.0]
        assert nodes[1].inbound_count == 1

    @pytest.mark.asyncio
    async def test_snapshot_format(self, tmp_path: Path) -> None:
        """Test the on-disk document carries a version and entity lists."""
        path = tmp_path / "graph.json"
        store = FileBackedGraphStore(path, persist_interval_ms=0)
        await store.create_nodes([NodeCreate(label="A")])

        data = json.loads(path.read_text(encoding="utf-8"))

        assert data["version"] == 1
        assert len(data["nodes"]) == 1
        assert data["edges"] == []
        assert "updated_at" in data

    @pytest.mark.asyncio
    async def test_debounced_writes_flush_on_close(self, tmp_path: Path) -> None:
        """Test that a long debounce window defers the write until flush."""
        path = tmp_path / "graph.json"
        store = FileBackedGraphStore(path, persist_interval_ms=60_000)
        await store.create_nodes([NodeCreate(label="A")])

        assert not path.exists()

        await store.close()
        assert path.exists()
        assert len(json.loads(path.read_text(encoding="utf-8"))["nodes"]) == 1

    @pytest.mark.asyncio
    async def test_no_write_without_changes(self, tmp_path: Path) -> None:
        """Test that reads and skipped creates do not touch the disk."""
        path = tmp_path / "graph.json"
        store = FileBackedGraphStore(path, persist_interval_ms=0)

        await store.list_nodes()
        await store.create_edges([EdgeCreate(from_node_id="missing0001", to_node_id="missing0002")])

        assert not path.exists()


    @pytest.mark.asyncio
    async def test_steady_writes_cannot_starve_snapshot(self, tmp_path: Path) -> None:
        """Test a write stream faster than the debounce still snapshots by the deadline."""
        path = tmp_path / "graph.json"
        store = FileBackedGraphStore(path, persist_interval_ms=200, max_persist_delay_ms=300)

        for i in range(16):
            await store.create_nodes([NodeCreate(label=f"N{i}")])
            await asyncio.sleep(0.05)

        assert path.exists()
        await store.close()
        assert len(json.loads(path.read_text(encoding="utf-8"))["nodes"]) == 16

    @pytest.mark.asyncio
    async def test_background_write_failure_is_logged(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test a failed debounced write is logged and retried by the next flush."""
        path = tmp_path / "graph.json"
        store = FileBackedGraphStore(path, persist_interval_ms=1)

        def fail(*args: object) -> None:
            raise OSError("disk full")

        monkeypatch.setattr("neuron.store.file._atomic_write", fail)
        with caplog.at_level(logging.ERROR, logger="neuron.store.file"):
            await store.create_nodes([NodeCreate(label="A")])
            await asyncio.sleep(0.1)

        assert "disk full" in caplog.text
        assert not path.exists()

        monkeypatch.undo()
        await store.flush()
        assert len(json.loads(path.read_text(encoding="utf-8"))["nodes"]) == 1

class TestRecovery:
    """Corrupt snapshots fall back to the rotated backup."""

    @pytest.mark.asyncio
    async def test_backup_is_rotated(self, tmp_path: Path) -> None:
        """Test that the previous snapshot is kept as .bak."""
        path = tmp_path / "graph.json"
        store = FileBackedGraphStore(path, persist_interval_ms=0)
        await store.create_nodes([NodeCreate(label="A")])
        await store.create_nodes([NodeCreate(label="B")])

        backup = path.with_name("graph.json.bak")
        assert backup.exists()
        assert len(json.loads(backup.read_text(encoding="utf-8"))["nodes"]) == 1

    @pytest.mark.asyncio
    async def test_corrupt_main_file_loads_backup(self, tmp_path: Path) -> None:
        """Test that an unreadable main file is replaced by the backup on load."""
        path = tmp_path / "graph.json"
        store = FileBackedGraphStore(path, persist_interval_ms=0)
        await store.create_nodes([NodeCreate(label="A")])
        await store.create_nodes([NodeCreate(label="B")])
        path.write_text("{not json", encoding="utf-8")

        reloaded = FileBackedGraphStore(path)
        nodes = await reloaded.list_nodes()

        assert [n.slug for n in nodes] == ["a"]

    @pytest.mark.asyncio
    async def test_corrupt_without_backup_raises(self, tmp_path: Path) -> None:
        """Test that a corrupt file with no backup is an error, not an empty graph."""
        path = tmp_path / "graph.json"
        path.write_text(json.dumps({"version": 99}), encoding="utf-8")

        store = FileBackedGraphStore(path)

        with pytest.raises(ValueError, match="Unsupported graph file version"):
            await store.list_nodes()
