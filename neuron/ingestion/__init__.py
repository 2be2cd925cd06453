"""External record intake with change detection and provenance tracking."""

from neuron.ingestion.engine import IngestionEngine
from neuron.ingestion.provenance import (
    MemoryProvenanceStore,
    ProvenanceStore,
    SqlProvenanceStore,
)
from neuron.ingestion.types import (
    Connector,
    IngestionRecord,
    IngestionSourceRef,
    IngestOptions,
    IngestResult,
    IngestStats,
    SyncRunStatus,
)

__all__ = [
    "Connector",
    "IngestionEngine",
    "IngestionRecord",
    "IngestionSourceRef",
    "IngestOptions",
    "IngestResult",
    "IngestStats",
    "MemoryProvenanceStore",
    "ProvenanceStore",
    "SqlProvenanceStore",
    "SyncRunStatus",
]
