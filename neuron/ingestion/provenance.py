"""
Provenance bookkeeping: sources, source items, item->node mappings and
sync runs.

Two implementations share the ``ProvenanceStore`` protocol: an in-memory
one for tests and the memory/file graph backends, and a relational one
over the shared ``Database``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from neuron.ingestion.types import (
    IngestionSource,
    IngestionSourceRef,
    ItemChange,
    SourceItem,
    SourceItemUpsert,
    SyncRun,
    SyncRunStatus,
)
from neuron.kg.models import _generate_id, _utc_now
from neuron.storage.database import Database, dumps_json, loads_json, to_timestamp
from neuron.store.base import resolve_scope

logger = logging.getLogger(__name__)


@runtime_checkable
class ProvenanceStore(Protocol):
    kind: str

    async def find_source(self, type: str, name: str) -> IngestionSource | None: ...

    async def upsert_source(self, source: IngestionSourceRef) -> IngestionSource: ...

    async def list_sources(self) -> list[IngestionSource]: ...

    async def find_source_item(self, source_id: str, external_id: str) -> SourceItem | None: ...

    async def upsert_source_item(self, params: SourceItemUpsert) -> tuple[SourceItem, ItemChange]: ...

    async def add_source_item_node_mapping(self, source_item_id: str, node_id: str) -> None: ...

    async def list_node_ids_for_source_item(self, source_item_id: str) -> list[str]: ...

    async def list_missing_source_items(self, source_id: str, before: datetime) -> list[SourceItem]: ...

    async def soft_delete_source_items(
        self, source_item_ids: Sequence[str], deleted_at: datetime
    ) -> int: ...

    async def delete_source_items(self, source_item_ids: Sequence[str]) -> int: ...

    async def create_sync_run(self, source_id: str, started_at: datetime) -> SyncRun: ...

    async def complete_sync_run(
        self,
        run_id: str,
        completed_at: datetime,
        status: SyncRunStatus,
        stats: dict[str, Any],
        error: str | None = None,
    ) -> SyncRun: ...

    async def get_sync_run(self, run_id: str) -> SyncRun | None: ...

    async def list_sync_runs(
        self, source_id: str | None = None, limit: int | None = None
    ) -> list[SyncRun]: ...


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# IN-MEMORY
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class MemoryProvenanceStore:
    """Dict-backed ProvenanceStore for a single scope."""

    kind = "memory"

    def __init__(self, scope: str | None = None) -> None:
        self.scope = resolve_scope(scope)
        self._sources: dict[tuple[str, str], IngestionSource] = {}
        self._items: dict[tuple[str, str], SourceItem] = {}
        self._mappings: dict[str, list[str]] = {}
        self._runs: dict[str, SyncRun] = {}
        self._lock = asyncio.Lock()

    async def find_source(self, type: str, name: str) -> IngestionSource | None:
        return self._sources.get((type, name))

    async def upsert_source(self, source: IngestionSourceRef) -> IngestionSource:
        async with self._lock:
            key = (source.type, source.name)
            existing = self._sources.get(key)
            if existing is not None:
                updated = existing.model_copy(
                    update={"config": source.config, "updated_at": _utc_now()}
                )
            else:
                updated = IngestionSource(
                    scope=self.scope, type=source.type, name=source.name, config=source.config
                )
            self._sources[key] = updated
            return updated

    async def list_sources(self) -> list[IngestionSource]:
        return list(self._sources.values())

    async def find_source_item(self, source_id: str, external_id: str) -> SourceItem | None:
        return self._items.get((source_id, external_id))

    async def upsert_source_item(self, params: SourceItemUpsert) -> tuple[SourceItem, ItemChange]:
        async with self._lock:
            key = (params.source_id, params.external_id)
            existing = self._items.get(key)
            if existing is None:
                item = SourceItem(
                    source_id=params.source_id,
                    external_id=params.external_id,
                    content_hash=params.content_hash,
                    url=params.url,
                    metadata=params.metadata,
                    last_seen_at=params.seen_at,
                )
                self._items[key] = item
                return item, "created"

            change: ItemChange = (
                "unchanged" if existing.content_hash == params.content_hash else "updated"
            )
            item = existing.model_copy(
                update={
                    "content_hash": params.content_hash,
                    "url": params.url,
                    "metadata": params.metadata,
                    "last_seen_at": params.seen_at,
                    "deleted_at": None,
                    "updated_at": _utc_now(),
                }
            )
            self._items[key] = item
            return item, change

    async def add_source_item_node_mapping(self, source_item_id: str, node_id: str) -> None:
        node_ids = self._mappings.setdefault(source_item_id, [])
        if node_id not in node_ids:
            node_ids.append(node_id)

    async def list_node_ids_for_source_item(self, source_item_id: str) -> list[str]:
        return list(self._mappings.get(source_item_id, []))

    async def list_missing_source_items(self, source_id: str, before: datetime) -> list[SourceItem]:
        return [
            item
            for item in self._items.values()
            if item.source_id == source_id and item.deleted_at is None and item.last_seen_at < before
        ]

    async def soft_delete_source_items(
        self, source_item_ids: Sequence[str], deleted_at: datetime
    ) -> int:
        ids = set(source_item_ids)
        count = 0
        async with self._lock:
            for key, item in self._items.items():
                if item.id in ids:
                    self._items[key] = item.model_copy(
                        update={"deleted_at": deleted_at, "updated_at": _utc_now()}
                    )
                    count += 1
        return count

    async def delete_source_items(self, source_item_ids: Sequence[str]) -> int:
        ids = set(source_item_ids)
        async with self._lock:
            doomed = [key for key, item in self._items.items() if item.id in ids]
            for key in doomed:
                item = self._items.pop(key)
                self._mappings.pop(item.id, None)
        return len(doomed)

    async def create_sync_run(self, source_id: str, started_at: datetime) -> SyncRun:
        run = SyncRun(source_id=source_id, started_at=started_at)
        self._runs[run.id] = run
        return run

    async def complete_sync_run(
        self,
        run_id: str,
        completed_at: datetime,
        status: SyncRunStatus,
        stats: dict[str, Any],
        error: str | None = None,
    ) -> SyncRun:
        existing = self._runs.get(run_id)
        if existing is None:
            raise ValueError(f"Sync run not found: {run_id}")
        run = existing.model_copy(
            update={"completed_at": completed_at, "status": status, "stats": stats, "error": error}
        )
        self._runs[run_id] = run
        return run

    async def get_sync_run(self, run_id: str) -> SyncRun | None:
        return self._runs.get(run_id)

    async def list_sync_runs(
        self, source_id: str | None = None, limit: int | None = None
    ) -> list[SyncRun]:
        runs = [r for r in self._runs.values() if source_id is None or r.source_id == source_id]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit] if limit else runs


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# RELATIONAL
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


SOURCE_COLUMNS = "id, scope, type, name, config, created_at, updated_at"
ITEM_COLUMNS = (
    "id, source_id, external_id, content_hash, url, metadata, last_seen_at, deleted_at, "
    "created_at, updated_at"
)
RUN_COLUMNS = "id, source_id, started_at, completed_at, status, stats, error"


def _source_from_row(row: dict[str, Any]) -> IngestionSource:
    data = dict(row)
    data["config"] = loads_json(data["config"], {})
    return IngestionSource.model_validate(data)


def _item_from_row(row: dict[str, Any]) -> SourceItem:
    data = dict(row)
    data["metadata"] = loads_json(data["metadata"], {})
    return SourceItem.model_validate(data)


def _run_from_row(row: dict[str, Any]) -> SyncRun:
    data = dict(row)
    data["stats"] = loads_json(data["stats"], {})
    return SyncRun.model_validate(data)


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class SqlProvenanceStore:
    """ProvenanceStore over the shared Database, scoped through ``ingestion_sources``."""

    kind = "sql"

    def __init__(self, db: Database, scope: str | None = None) -> None:
        self.db = db
        self.scope = resolve_scope(scope)

    async def find_source(self, type: str, name: str) -> IngestionSource | None:
        row = await self.db.query_one(
            f"SELECT {SOURCE_COLUMNS} FROM ingestion_sources "
            "WHERE scope = ? AND type = ? AND name = ?",
            (self.scope, type, name),
        )
        return _source_from_row(row) if row else None

    async def upsert_source(self, source: IngestionSourceRef) -> IngestionSource:
        now = to_timestamp(_utc_now())
        await self.db.execute(
            f"INSERT INTO ingestion_sources ({SOURCE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(scope, type, name) DO UPDATE SET "
            "config = excluded.config, updated_at = excluded.updated_at",
            (_generate_id(), self.scope, source.type, source.name, dumps_json(source.config), now, now),
        )
        found = await self.find_source(source.type, source.name)
        if found is None:
            raise RuntimeError(f"Failed to upsert source {source.key}")
        return found

    async def list_sources(self) -> list[IngestionSource]:
        rows = await self.db.query(
            f"SELECT {SOURCE_COLUMNS} FROM ingestion_sources WHERE scope = ? ORDER BY created_at",
            (self.scope,),
        )
        return [_source_from_row(row) for row in rows]

    async def find_source_item(self, source_id: str, external_id: str) -> SourceItem | None:
        row = await self.db.query_one(
            f"SELECT {ITEM_COLUMNS} FROM source_items WHERE source_id = ? AND external_id = ?",
            (source_id, external_id),
        )
        return _item_from_row(row) if row else None

    async def upsert_source_item(self, params: SourceItemUpsert) -> tuple[SourceItem, ItemChange]:
        now = to_timestamp(_utc_now())
        seen = to_timestamp(params.seen_at)
        async with self.db.transaction() as tx:
            row = await tx.query_one(
                "SELECT content_hash FROM source_items WHERE source_id = ? AND external_id = ?",
                (params.source_id, params.external_id),
            )
            if row is None:
                change: ItemChange = "created"
                await tx.execute(
                    f"INSERT INTO source_items ({ITEM_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)",
                    (
                        _generate_id(),
                        params.source_id,
                        params.external_id,
                        params.content_hash,
                        params.url,
                        dumps_json(params.metadata),
                        seen,
                        now,
                        now,
                    ),
                )
            else:
                change = "unchanged" if row["content_hash"] == params.content_hash else "updated"
                await tx.execute(
                    "UPDATE source_items SET content_hash = ?, url = ?, metadata = ?, "
                    "last_seen_at = ?, deleted_at = NULL, updated_at = ? "
                    "WHERE source_id = ? AND external_id = ?",
                    (
                        params.content_hash,
                        params.url,
                        dumps_json(params.metadata),
                        seen,
                        now,
                        params.source_id,
                        params.external_id,
                    ),
                )
        item = await self.find_source_item(params.source_id, params.external_id)
        if item is None:
            raise RuntimeError(f"Failed to upsert source item {params.external_id}")
        return item, change

    async def add_source_item_node_mapping(self, source_item_id: str, node_id: str) -> None:
        await self.db.execute(
            "INSERT INTO source_item_nodes (source_item_id, node_id, scope, created_at) "
            "VALUES (?, ?, ?, ?) ON CONFLICT(source_item_id, node_id) DO NOTHING",
            (source_item_id, node_id, self.scope, to_timestamp(_utc_now())),
        )

    async def list_node_ids_for_source_item(self, source_item_id: str) -> list[str]:
        rows = await self.db.query(
            "SELECT node_id FROM source_item_nodes WHERE source_item_id = ? AND scope = ? "
            "ORDER BY rowid",
            (source_item_id, self.scope),
        )
        return [row["node_id"] for row in rows]

    async def list_missing_source_items(self, source_id: str, before: datetime) -> list[SourceItem]:
        rows = await self.db.query(
            f"SELECT {ITEM_COLUMNS} FROM source_items "
            "WHERE source_id = ? AND deleted_at IS NULL AND last_seen_at < ? ORDER BY rowid",
            (source_id, to_timestamp(before)),
        )
        return [_item_from_row(row) for row in rows]

    async def soft_delete_source_items(
        self, source_item_ids: Sequence[str], deleted_at: datetime
    ) -> int:
        if not source_item_ids:
            return 0
        return await self.db.execute(
            "UPDATE source_items SET deleted_at = ?, updated_at = ? "
            f"WHERE id IN ({_placeholders(source_item_ids)})",
            (to_timestamp(deleted_at), to_timestamp(_utc_now()), *source_item_ids),
        )

    async def delete_source_items(self, source_item_ids: Sequence[str]) -> int:
        if not source_item_ids:
            return 0
        async with self.db.transaction() as tx:
            await tx.execute(
                f"DELETE FROM source_item_nodes WHERE source_item_id IN ({_placeholders(source_item_ids)})",
                tuple(source_item_ids),
            )
            return await tx.execute(
                f"DELETE FROM source_items WHERE id IN ({_placeholders(source_item_ids)})",
                tuple(source_item_ids),
            )

    async def create_sync_run(self, source_id: str, started_at: datetime) -> SyncRun:
        run = SyncRun(source_id=source_id, started_at=started_at)
        await self.db.execute(
            f"INSERT INTO sync_runs ({RUN_COLUMNS}) VALUES (?, ?, ?, NULL, NULL, '{{}}', NULL)",
            (run.id, source_id, to_timestamp(started_at)),
        )
        return run

    async def complete_sync_run(
        self,
        run_id: str,
        completed_at: datetime,
        status: SyncRunStatus,
        stats: dict[str, Any],
        error: str | None = None,
    ) -> SyncRun:
        updated = await self.db.execute(
            "UPDATE sync_runs SET completed_at = ?, status = ?, stats = ?, error = ? WHERE id = ?",
            (to_timestamp(completed_at), status.value, dumps_json(stats), error, run_id),
        )
        if not updated:
            raise ValueError(f"Sync run not found: {run_id}")
        run = await self.get_sync_run(run_id)
        if run is None:
            raise ValueError(f"Sync run not found: {run_id}")
        return run

    async def get_sync_run(self, run_id: str) -> SyncRun | None:
        row = await self.db.query_one(
            f"SELECT {RUN_COLUMNS} FROM sync_runs WHERE id = ?", (run_id,)
        )
        return _run_from_row(row) if row else None

    async def list_sync_runs(
        self, source_id: str | None = None, limit: int | None = None
    ) -> list[SyncRun]:
        sql = (
            "SELECT r.id, r.source_id, r.started_at, r.completed_at, r.status, r.stats, r.error "
            "FROM sync_runs r JOIN ingestion_sources s ON s.id = r.source_id WHERE s.scope = ?"
        )
        params: list[Any] = [self.scope]
        if source_id:
            sql += " AND r.source_id = ?"
            params.append(source_id)
        sql += " ORDER BY r.started_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self.db.query(sql, params)
        return [_run_from_row(row) for row in rows]
