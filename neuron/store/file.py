"""
File-backed GraphStore: an in-memory store snapshotted to one JSON file.

File format (version 1):
    {
        "version": 1,
        "updated_at": "<iso timestamp>",
        "nodes": [...],
        "edges": [...],
        "settings": {"<scope>": {...}}
    }

Design Decisions:
- Writes are debounced: mutations schedule a snapshot after
  ``persist_interval_ms`` (0 = write before the mutating call returns).
  A steady stream of writes cannot postpone the snapshot past
  ``max_persist_delay_ms`` from the first unsaved change
- Atomic writes using tempfile + os.replace, rotating the previous file to
  ``<file>.bak`` first
- On load, a corrupt main file falls back to the ``.bak`` copy
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from neuron.kg.models import Edge, EdgeCreate, EdgeUpdate, Node, NodeCreate, NodeUpdate
from neuron.kg.settings import GraphSettings, GraphSettingsUpdate
from neuron.store.base import (
    DeleteNodeResult,
    EmbeddingInfo,
    ExpandDirection,
    GraphPath,
    GraphQuery,
    GraphView,
    PathAlgorithm,
    SimilarityResult,
)
from neuron.store.memory import InMemoryGraphStore

logger = logging.getLogger(__name__)

FILE_FORMAT_VERSION = 1


def _atomic_write(path: Path, content: str, backup: bool) -> None:
    """
    Atomically replace ``path`` with ``content``.

    Args:
        path: Target file path
        content: String content to write
        backup: Move the current file to ``<path>.bak`` before replacing it

    Raises:
        OSError: If write or rename fails
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    # Temp file in same directory to ensure same filesystem for atomic rename
    fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        if backup and path.exists():
            os.replace(path, path.with_name(path.name + ".bak"))
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def _parse_snapshot(text: str) -> dict[str, Any]:
    """
    Validate file contents.

    Raises:
        ValueError: If the content is not a supported snapshot
    """
    raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError("Invalid graph file format (expected object)")
    version = raw.get("version")
    if version != FILE_FORMAT_VERSION:
        raise ValueError(f"Unsupported graph file version: {version}")
    return raw


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


class FileBackedGraphStore:
    """
    GraphStore persisted to a single JSON file.

    The file is loaded lazily on first use. Call ``flush()`` (or
    ``close()``) to force pending writes to disk.
    """

    kind = "file"

    def __init__(
        self,
        file_path: Path,
        persist_interval_ms: int = 500,
        enable_backup: bool = True,
        max_persist_delay_ms: int | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            file_path: JSON snapshot location
            persist_interval_ms: Debounce window for writes (0 = immediate)
            enable_backup: Keep the previous snapshot as ``<file>.bak``
            max_persist_delay_ms: Longest a change may wait for a snapshot
                (default: ten debounce windows)
        """
        self.file_path = Path(file_path)
        self.backup_path = self.file_path.with_name(self.file_path.name + ".bak")
        self._persist_interval = max(0, persist_interval_ms) / 1000
        if max_persist_delay_ms is None:
            self._max_persist_delay = self._persist_interval * 10
        else:
            self._max_persist_delay = max(self._persist_interval, max_persist_delay_ms / 1000)
        self._enable_backup = enable_backup

        self._store = InMemoryGraphStore()
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._persist_requested = False
        self._persist_timer: asyncio.Task[None] | None = None
        self._pending_since: float | None = None

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # LOAD / PERSIST
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _ready(self) -> InMemoryGraphStore:
        if not self._loaded:
            async with self._load_lock:
                if not self._loaded:
                    data = await asyncio.to_thread(self._load_from_disk)
                    if data is not None:
                        self._store = InMemoryGraphStore.from_snapshot(data)
                    self._loaded = True
        return self._store

    def _load_from_disk(self) -> dict[str, Any] | None:
        """
        Read the snapshot, falling back to the backup when the main file is bad.

        Raises:
            ValueError: If the main file is unreadable and no usable backup exists
        """
        text = _read_text(self.file_path)
        if text is not None:
            try:
                return _parse_snapshot(text)
            except ValueError as primary_error:
                backup = _read_text(self.backup_path)
                if backup is not None:
                    try:
                        data = _parse_snapshot(backup)
                    except ValueError:
                        raise primary_error from None
                    logger.warning(
                        f"Graph file {self.file_path} unreadable ({primary_error}), "
                        f"loaded backup instead"
                    )
                    return data
                raise

        backup = _read_text(self.backup_path)
        if backup is not None:
            return _parse_snapshot(backup)
        return None

    async def _persist(self) -> None:
        async with self._persist_lock:
            payload = {
                "version": FILE_FORMAT_VERSION,
                "updated_at": datetime.now(timezone.utc).isoformat(),
                **self._store.snapshot(),
            }
            content = json.dumps(payload, indent=2)
            await asyncio.to_thread(
                _atomic_write, self.file_path, content, self._enable_backup
            )
        logger.debug(f"Persisted graph snapshot to {self.file_path}")

    async def _delayed_persist(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._persist_timer = None
        if self._persist_requested:
            self._persist_requested = False
            self._pending_since = None
            await self._persist()

    def _on_persist_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            # Keep the changes pending so the next flush retries them
            self._persist_requested = True
            logger.error(f"Background snapshot of {self.file_path} failed: {error}")

    async def _schedule_persist(self) -> None:
        if self._persist_interval <= 0:
            self._persist_requested = False
            await self._persist()
            return

        now = asyncio.get_running_loop().time()
        if self._pending_since is None:
            self._pending_since = now
        deadline = self._pending_since + self._max_persist_delay
        delay = max(0.0, min(self._persist_interval, deadline - now))

        self._persist_requested = True
        if self._persist_timer is not None:
            self._persist_timer.cancel()
        self._persist_timer = asyncio.create_task(self._delayed_persist(delay))
        self._persist_timer.add_done_callback(self._on_persist_done)

    async def flush(self) -> None:
        """Write any pending changes to disk now."""
        await self._ready()
        if self._persist_timer is not None:
            self._persist_timer.cancel()
            self._persist_timer = None
        if self._persist_requested:
            self._persist_requested = False
            self._pending_since = None
            await self._persist()

    async def close(self) -> None:
        """Flush pending writes; the store stays usable afterwards."""
        await self.flush()

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # NODE OPERATIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def list_nodes(
        self, *, limit: int | None = None, offset: int = 0, scope: str | None = None
    ) -> list[Node]:
        store = await self._ready()
        return await store.list_nodes(limit=limit, offset=offset, scope=scope)

    async def get_node_by_id(self, node_id: str, scope: str | None = None) -> Node | None:
        return await (await self._ready()).get_node_by_id(node_id, scope)

    async def get_node_by_slug(self, slug: str, scope: str | None = None) -> Node | None:
        return await (await self._ready()).get_node_by_slug(slug, scope)

    async def create_nodes(
        self, nodes: Sequence[NodeCreate], scope: str | None = None
    ) -> list[Node]:
        created = await (await self._ready()).create_nodes(nodes, scope)
        if created:
            await self._schedule_persist()
        return created

    async def update_node(
        self, node_id: str, patch: NodeUpdate, scope: str | None = None
    ) -> Node | None:
        updated = await (await self._ready()).update_node(node_id, patch, scope)
        if updated is not None:
            await self._schedule_persist()
        return updated

    async def delete_node(self, node_id: str, scope: str | None = None) -> DeleteNodeResult:
        result = await (await self._ready()).delete_node(node_id, scope)
        if result.deleted:
            await self._schedule_persist()
        return result

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # EDGE OPERATIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def list_edges(
        self, *, limit: int | None = None, offset: int = 0, scope: str | None = None
    ) -> list[Edge]:
        store = await self._ready()
        return await store.list_edges(limit=limit, offset=offset, scope=scope)

    async def create_edges(
        self, edges: Sequence[EdgeCreate], scope: str | None = None
    ) -> list[Edge]:
        created = await (await self._ready()).create_edges(edges, scope)
        if created:
            await self._schedule_persist()
        return created

    async def update_edge(
        self, edge_id: str, patch: EdgeUpdate, scope: str | None = None
    ) -> Edge | None:
        updated = await (await self._ready()).update_edge(edge_id, patch, scope)
        if updated is not None:
            await self._schedule_persist()
        return updated

    async def delete_edge(self, edge_id: str, scope: str | None = None) -> bool:
        deleted = await (await self._ready()).delete_edge(edge_id, scope)
        if deleted:
            await self._schedule_persist()
        return deleted

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # SETTINGS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_settings(self, scope: str | None = None) -> GraphSettings:
        return await (await self._ready()).get_settings(scope)

    async def update_settings(
        self, update: GraphSettingsUpdate, scope: str | None = None
    ) -> GraphSettings:
        settings = await (await self._ready()).update_settings(update, scope)
        await self._schedule_persist()
        return settings

    async def reset_settings(
        self, sections: list[str] | None = None, scope: str | None = None
    ) -> GraphSettings:
        settings = await (await self._ready()).reset_settings(sections, scope)
        await self._schedule_persist()
        return settings

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # GRAPH QUERIES
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_graph(self, query: GraphQuery, scope: str | None = None) -> GraphView:
        return await (await self._ready()).get_graph(query, scope)

    async def expand_graph(
        self,
        from_node_ids: Sequence[str],
        *,
        depth: int = 1,
        direction: ExpandDirection = "both",
        max_nodes: int | None = None,
        scope: str | None = None,
    ) -> GraphView:
        store = await self._ready()
        return await store.expand_graph(
            from_node_ids,
            depth=depth,
            direction=direction,
            max_nodes=max_nodes,
            scope=scope,
        )

    async def find_paths(
        self,
        from_node_id: str,
        to_node_id: str,
        *,
        max_depth: int = 5,
        algorithm: PathAlgorithm = "shortest",
        scope: str | None = None,
    ) -> list[GraphPath]:
        store = await self._ready()
        return await store.find_paths(
            from_node_id,
            to_node_id,
            max_depth=max_depth,
            algorithm=algorithm,
            scope=scope,
        )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # EMBEDDINGS + SIMILARITY
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_node_embedding_info(
        self, node_id: str, scope: str | None = None
    ) -> EmbeddingInfo | None:
        return await (await self._ready()).get_node_embedding_info(node_id, scope)

    async def set_node_embedding(
        self, node_id: str, embedding: list[float], model: str, scope: str | None = None
    ) -> None:
        await (await self._ready()).set_node_embedding(node_id, embedding, model, scope)
        await self._schedule_persist()

    async def clear_node_embeddings(
        self, node_ids: Sequence[str] | None = None, scope: str | None = None
    ) -> None:
        await (await self._ready()).clear_node_embeddings(node_ids, scope)
        await self._schedule_persist()

    async def find_similar_node_ids(
        self,
        node_id: str,
        *,
        limit: int = 50,
        min_similarity: float = 0.0,
        scope: str | None = None,
    ) -> list[SimilarityResult]:
        store = await self._ready()
        return await store.find_similar_node_ids(
            node_id, limit=limit, min_similarity=min_similarity, scope=scope
        )
