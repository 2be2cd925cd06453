"""
Ingestion data models: records, options, results and provenance rows.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from neuron.kg.models import DEFAULT_SCOPE, _generate_id, _utc_now

DeleteMode = Literal["none", "soft", "hard"]
ItemChange = Literal["created", "updated", "unchanged"]

MAX_PERSISTED_ERRORS = 50


class SyncRunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class IngestionRecord(BaseModel):
    """One record pulled from an external source."""

    external_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str
    url: str | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    node_type: str | None = None
    domain: str | None = None
    references: list[str] = Field(default_factory=list)
    parent_external_id: str | None = None


class IngestionSourceRef(BaseModel):
    """Identity of a source: (type, name) within a scope, plus its config."""

    type: str
    name: str
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.type}:{self.name}"


class IngestOptions(BaseModel):
    source: IngestionSourceRef
    delete_mode: DeleteMode = "none"
    dry_run: bool = False
    limit: int | None = Field(default=None, ge=1)
    since: datetime | None = None


class IngestStats(BaseModel):
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: int = 0


class IngestItemError(BaseModel):
    external_id: str
    error: str


class IngestResult(BaseModel):
    source_id: str | None = None
    sync_run_id: str | None = None
    status: SyncRunStatus = SyncRunStatus.SUCCESS
    stats: IngestStats = Field(default_factory=IngestStats)
    errors: list[IngestItemError] = Field(default_factory=list)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# PROVENANCE ROWS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class IngestionSource(BaseModel):
    id: str = Field(default_factory=_generate_id)
    scope: str = DEFAULT_SCOPE
    type: str
    name: str
    config: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class SourceItem(BaseModel):
    """Provenance of one external record within a source."""

    id: str = Field(default_factory=_generate_id)
    source_id: str
    external_id: str
    content_hash: str
    url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_seen_at: datetime
    deleted_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class SourceItemUpsert(BaseModel):
    source_id: str
    external_id: str
    content_hash: str
    seen_at: datetime
    url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SyncRun(BaseModel):
    id: str = Field(default_factory=_generate_id)
    source_id: str
    started_at: datetime
    completed_at: datetime | None = None
    status: SyncRunStatus | None = None
    stats: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# CONNECTORS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@runtime_checkable
class Connector(Protocol):
    """Source of ingestion records."""

    type: str

    async def list_records(
        self, limit: int | None = None, since: datetime | None = None
    ) -> list[IngestionRecord]: ...
