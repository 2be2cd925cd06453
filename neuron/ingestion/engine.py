"""
Ingestion engine: turns external records into graph nodes and edges.

Each call to ``ingest`` is one sync run against one source. Records are
fingerprinted, classified against the provenance store, materialized as
nodes under source-aware slugs, and linked with ``references``/``part_of``
edges when both endpoints resolved in the same run.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from neuron.ingestion.hashing import hash_ingestion_record, stable_stringify
from neuron.ingestion.provenance import ProvenanceStore
from neuron.ingestion.types import (
    MAX_PERSISTED_ERRORS,
    Connector,
    IngestionRecord,
    IngestionSource,
    IngestItemError,
    IngestOptions,
    IngestResult,
    IngestStats,
    ItemChange,
    SourceItem,
    SourceItemUpsert,
    SyncRun,
    SyncRunStatus,
)
from neuron.kg.models import EdgeCreate, EdgeSource, Node, NodeCreate, NodeUpdate, _utc_now
from neuron.kg.slugs import build_source_aware_slug
from neuron.store.base import GraphStore, resolve_scope

logger = logging.getLogger(__name__)

DELETE_MISSING_ID = "(delete-missing)"
INVALID_RECORD_ID = "(invalid)"


def _record_label(record: IngestionRecord | Mapping[str, Any]) -> str:
    if isinstance(record, IngestionRecord):
        return record.external_id
    value = record.get("external_id")
    return str(value) if value else INVALID_RECORD_ID


def _error_message(error: Exception) -> str:
    if isinstance(error, ValidationError):
        return "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in error.errors()
        )
    return str(error) or type(error).__name__


class IngestionEngine:
    """
    Idempotent record intake for one scope.

    Args:
        store: Graph store receiving nodes and edges
        provenance: Optional provenance store. Without one every record is
            classified by slug lookup alone and deletions are not tracked.
        scope: Scope for nodes and edges (None -> default scope)
    """

    def __init__(
        self,
        store: GraphStore,
        provenance: ProvenanceStore | None = None,
        scope: str | None = None,
    ) -> None:
        self.store = store
        self.provenance = provenance
        self.scope = resolve_scope(scope)
        self._last_started_at: datetime | None = None

    def _next_started_at(self) -> datetime:
        """Run start time, strictly after the previous run of this engine."""
        started_at = _utc_now()
        if self._last_started_at is not None and started_at <= self._last_started_at:
            started_at = self._last_started_at + timedelta(milliseconds=1)
        self._last_started_at = started_at
        return started_at

    async def ingest_from_connector(
        self, connector: Connector, options: IngestOptions
    ) -> IngestResult:
        """List records from ``connector`` (honoring limit/since) and ingest them."""
        records = await connector.list_records(limit=options.limit, since=options.since)
        logger.info(
            f"Connector {connector.type} returned {len(records)} records for {options.source.key}"
        )
        return await self.ingest(records, options)

    async def ingest(
        self,
        records: Sequence[IngestionRecord | Mapping[str, Any]],
        options: IngestOptions,
    ) -> IngestResult:
        """
        Run one sync of ``records`` against ``options.source``.

        Per-record failures (including records that fail validation) are
        collected into ``errors`` and turn the status into ``partial``.
        Failures outside the record loop mark the sync run ``failed`` and
        propagate.

        Args:
            records: IngestionRecord instances or plain mappings
            options: Source identity, delete mode, dry-run flag

        Returns:
            IngestResult with per-outcome counts and itemized errors
        """
        started_at = self._next_started_at()
        source_key = options.source.key
        dry_run = options.dry_run

        stats = IngestStats()
        errors: list[IngestItemError] = []
        status = SyncRunStatus.SUCCESS

        source: IngestionSource | None = None
        if self.provenance is not None:
            if dry_run:
                source = await self.provenance.find_source(options.source.type, options.source.name)
            else:
                source = await self.provenance.upsert_source(options.source)

        run: SyncRun | None = None
        if self.provenance is not None and source is not None and not dry_run:
            run = await self.provenance.create_sync_run(source.id, started_at)

        logger.info(
            f"Ingesting {len(records)} records from {source_key} "
            f"(scope={self.scope}, dry_run={dry_run}, delete_mode={options.delete_mode})"
        )

        try:
            resolved: dict[str, str] = {}
            accepted: list[IngestionRecord] = []

            for raw in records:
                stats.total += 1
                try:
                    record = (
                        raw
                        if isinstance(raw, IngestionRecord)
                        else IngestionRecord.model_validate(raw)
                    )
                    node_id = await self._ingest_record(
                        record, source, source_key, started_at, dry_run, stats
                    )
                    if node_id is not None:
                        resolved[record.external_id] = node_id
                    accepted.append(record)
                except Exception as e:
                    status = SyncRunStatus.PARTIAL
                    stats.errors += 1
                    errors.append(
                        IngestItemError(external_id=_record_label(raw), error=_error_message(e))
                    )
                    logger.warning(f"Failed to ingest record {_record_label(raw)}: {e}")

            if not dry_run:
                await self._apply_edges(accepted, resolved, source_key)

            if not dry_run and self.provenance is not None and source is not None:
                if options.delete_mode != "none":
                    try:
                        stats.deleted += await self._delete_missing(
                            self.provenance, source.id, started_at, options.delete_mode
                        )
                    except Exception as e:
                        status = SyncRunStatus.PARTIAL
                        stats.errors += 1
                        errors.append(
                            IngestItemError(external_id=DELETE_MISSING_ID, error=_error_message(e))
                        )
                        logger.warning(f"Failed to process missing items for {source_key}: {e}")
        except Exception as e:
            if self.provenance is not None and run is not None:
                await self.provenance.complete_sync_run(
                    run.id, _utc_now(), SyncRunStatus.FAILED, stats.model_dump(), str(e)
                )
            logger.error(f"Ingestion from {source_key} failed: {e}")
            raise

        if self.provenance is not None and run is not None:
            await self.provenance.complete_sync_run(
                run.id,
                _utc_now(),
                status,
                stats.model_dump(),
                stable_stringify([err.model_dump() for err in errors[:MAX_PERSISTED_ERRORS]])
                if errors
                else None,
            )

        logger.info(
            f"Ingestion from {source_key} finished with status {status.value}: "
            f"{stats.created} created, {stats.updated} updated, {stats.skipped} skipped, "
            f"{stats.deleted} deleted, {stats.errors} errors"
        )
        return IngestResult(
            source_id=source.id if source else None,
            sync_run_id=run.id if run else None,
            status=status,
            stats=stats,
            errors=errors,
        )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # RECORDS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _ingest_record(
        self,
        record: IngestionRecord,
        source: IngestionSource | None,
        source_key: str,
        started_at: datetime,
        dry_run: bool,
        stats: IngestStats,
    ) -> str | None:
        """Classify and materialize one record. Returns the node id it resolved to."""
        content_hash = hash_ingestion_record(record)

        existing_item: SourceItem | None = None
        if self.provenance is not None and source is not None:
            existing_item = await self.provenance.find_source_item(source.id, record.external_id)

        change: ItemChange
        if existing_item is None:
            change = "created"
        elif existing_item.content_hash == content_hash:
            change = "unchanged"
        else:
            change = "updated"

        slug = build_source_aware_slug(record.title, source_key, record.external_id)

        if dry_run:
            existing_node = await self.store.get_node_by_slug(slug, self.scope)
            if existing_node is None:
                stats.created += 1
                return None
            if change == "unchanged":
                stats.skipped += 1
            else:
                stats.updated += 1
            return existing_node.id

        item: SourceItem | None = None
        if self.provenance is not None and source is not None:
            item, change = await self.provenance.upsert_source_item(
                SourceItemUpsert(
                    source_id=source.id,
                    external_id=record.external_id,
                    content_hash=content_hash,
                    seen_at=started_at,
                    url=record.url,
                    metadata=record.metadata,
                )
            )

        node, node_change = await self._upsert_node(record, slug, change)
        if node_change == "created":
            stats.created += 1
        elif node_change == "updated":
            stats.updated += 1
        else:
            stats.skipped += 1

        if self.provenance is not None and item is not None:
            await self.provenance.add_source_item_node_mapping(item.id, node.id)
        return node.id

    async def _upsert_node(
        self, record: IngestionRecord, slug: str, item_change: ItemChange
    ) -> tuple[Node, ItemChange]:
        existing = await self.store.get_node_by_slug(slug, self.scope)
        if existing is None:
            created = await self.store.create_nodes(
                [
                    NodeCreate(
                        slug=slug,
                        label=record.title,
                        node_type=record.node_type or "concept",
                        domain=record.domain or "general",
                        content=record.content,
                        metadata=record.metadata,
                    )
                ],
                self.scope,
            )
            if not created:
                raise RuntimeError(f"Node create returned nothing for slug {slug}")
            return created[0], "created"

        if item_change == "unchanged":
            return existing, "unchanged"

        updated = await self.store.update_node(
            existing.id,
            NodeUpdate(
                label=record.title,
                content=record.content,
                metadata=record.metadata,
                domain=record.domain or existing.domain,
            ),
            self.scope,
        )
        return updated or existing, "updated"

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # EDGES + DELETIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _apply_edges(
        self, records: Sequence[IngestionRecord], resolved: Mapping[str, str], source_key: str
    ) -> int:
        """Create references/part_of edges whose endpoints both resolved in this run."""
        existing = await self.store.list_edges(scope=self.scope)
        seen = {edge.key for edge in existing}
        to_create: list[EdgeCreate] = []

        def queue(from_id: str, to_id: str, relationship_type: str) -> None:
            key = (from_id, to_id, relationship_type)
            if key in seen:
                return
            seen.add(key)
            to_create.append(
                EdgeCreate(
                    from_node_id=from_id,
                    to_node_id=to_id,
                    relationship_type=relationship_type,
                    source=EdgeSource.IMPORTED,
                    metadata={"source": source_key},
                )
            )

        for record in records:
            from_id = resolved.get(record.external_id)
            if from_id is None:
                continue
            for reference in record.references:
                to_id = resolved.get(reference)
                if to_id is not None:
                    queue(from_id, to_id, "references")
            if record.parent_external_id:
                parent_id = resolved.get(record.parent_external_id)
                if parent_id is not None:
                    queue(from_id, parent_id, "part_of")

        if not to_create:
            return 0
        created = await self.store.create_edges(to_create, self.scope)
        logger.debug(f"Created {len(created)} edges from {source_key}")
        return len(created)

    async def _delete_missing(
        self, provenance: ProvenanceStore, source_id: str, started_at: datetime, mode: str
    ) -> int:
        """Soft- or hard-delete items of ``source_id`` not seen since ``started_at``."""
        missing = await provenance.list_missing_source_items(source_id, started_at)
        if not missing:
            return 0

        item_ids = [item.id for item in missing]
        if mode == "soft":
            return await provenance.soft_delete_source_items(item_ids, _utc_now())

        for item in missing:
            for node_id in await provenance.list_node_ids_for_source_item(item.id):
                await self.store.delete_node(node_id, self.scope)
        return await provenance.delete_source_items(item_ids)
