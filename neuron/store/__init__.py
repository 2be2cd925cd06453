"""
GraphStore backends.

Three interchangeable implementations of the ``GraphStore`` protocol:
in-memory, file-backed (JSON snapshot) and relational (sqlite).
"""

from __future__ import annotations

from neuron.core.config import Settings
from neuron.storage.database import Database
from neuron.store.base import (
    DeleteNodeResult,
    EmbeddingInfo,
    GraphPath,
    GraphQuery,
    GraphStore,
    GraphView,
    SimilarityResult,
    resolve_scope,
)
from neuron.store.file import FileBackedGraphStore
from neuron.store.memory import InMemoryGraphStore
from neuron.store.sql import SqlGraphStore


def create_graph_store(settings: Settings, db: Database | None = None) -> GraphStore:
    """
    Build the configured GraphStore backend.

    Args:
        settings: Application settings (``store_backend`` selects the backend)
        db: Shared database, required for the "sql" backend

    Returns:
        GraphStore instance

    Raises:
        ValueError: If "sql" is selected without a database
    """
    if settings.store_backend == "memory":
        return InMemoryGraphStore()
    if settings.store_backend == "file":
        return FileBackedGraphStore(
            settings.graph_file_path,
            persist_interval_ms=settings.persist_interval_ms,
            max_persist_delay_ms=settings.persist_max_delay_ms,
        )
    if db is None:
        raise ValueError("The sql store backend requires a database")
    return SqlGraphStore(db)


__all__ = [
    "GraphStore",
    "InMemoryGraphStore",
    "FileBackedGraphStore",
    "SqlGraphStore",
    "create_graph_store",
    "resolve_scope",
    "DeleteNodeResult",
    "EmbeddingInfo",
    "GraphPath",
    "GraphQuery",
    "GraphView",
    "SimilarityResult",
]
