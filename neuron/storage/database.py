"""
Async facade over a sqlite3 connection.

Provides parameterized ``query``/``query_one``/``execute`` plus an
all-or-nothing ``transaction`` context. Statements run in a worker
thread via ``asyncio.to_thread`` and are serialized through an
``asyncio.Lock`` so a single connection can be shared by every service.

The connection registers a ``cosine_similarity(a, b)`` SQL function over
JSON-encoded vectors, which the relational graph store uses to rank
nearest neighbours inside the query.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from neuron.kg.vectors import cosine_similarity
from neuron.storage.schema import SCHEMA

logger = logging.getLogger(__name__)

Params = Sequence[Any]


def dumps_json(value: Any) -> str:
    """Serialize a JSON column value."""
    return json.dumps(value, separators=(",", ":"), default=str)


def loads_json(text: str | None, default: Any = None) -> Any:
    """Deserialize a JSON column value, returning ``default`` for NULL."""
    if text is None:
        return default
    return json.loads(text)


def to_timestamp(value: datetime | None) -> str | None:
    """Format a datetime for storage (fixed-width so strings sort correctly)."""
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _sql_cosine_similarity(left: str | None, right: str | None) -> float | None:
    """SQL function body: NULL for missing or dimension-mismatched vectors."""
    if left is None or right is None:
        return None
    a = json.loads(left)
    b = json.loads(right)
    if not a or len(a) != len(b):
        return None
    return cosine_similarity(a, b)


class _Executor:
    """Blocking statement helpers shared by Database and Transaction."""

    _conn: sqlite3.Connection

    def _query(self, sql: str, params: Params) -> list[dict[str, Any]]:
        cursor = self._conn.execute(sql, tuple(params))
        try:
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def _execute(self, sql: str, params: Params) -> int:
        cursor = self._conn.execute(sql, tuple(params))
        try:
            return cursor.rowcount
        finally:
            cursor.close()


class Transaction(_Executor):
    """
    Statement handle valid only inside ``Database.transaction()``.

    The owning Database holds its lock for the whole transaction, so these
    methods do not lock again.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def query(self, sql: str, params: Params = ()) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._query, sql, params)

    async def query_one(self, sql: str, params: Params = ()) -> dict[str, Any] | None:
        rows = await self.query(sql, params)
        return rows[0] if rows else None

    async def execute(self, sql: str, params: Params = ()) -> int:
        return await asyncio.to_thread(self._execute, sql, params)


class Database(_Executor):
    """
    Shared relational storage.

    Use ``await db.initialize()`` once before issuing statements.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        """
        Open the connection.

        Args:
            path: sqlite database file, or ":memory:" for a private in-memory db
        """
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode; transaction() issues BEGIN/COMMIT explicitly
        self._conn = sqlite3.connect(
            self.path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.create_function(
            "cosine_similarity", 2, _sql_cosine_similarity, deterministic=True
        )
        self._lock = asyncio.Lock()
        self._closed = False

    async def initialize(self) -> None:
        """Create all tables (idempotent)."""
        async with self._lock:
            if self.path != ":memory:":
                await asyncio.to_thread(self._conn.execute, "PRAGMA journal_mode=WAL")
            await asyncio.to_thread(self._conn.executescript, SCHEMA)
        logger.info(f"Database initialized at {self.path}")

    async def query(self, sql: str, params: Params = ()) -> list[dict[str, Any]]:
        """Run a SELECT and return rows as dictionaries."""
        async with self._lock:
            return await asyncio.to_thread(self._query, sql, params)

    async def query_one(self, sql: str, params: Params = ()) -> dict[str, Any] | None:
        """Run a SELECT and return the first row, or None."""
        rows = await self.query(sql, params)
        return rows[0] if rows else None

    async def execute(self, sql: str, params: Params = ()) -> int:
        """Run a single write statement and return the affected row count."""
        async with self._lock:
            return await asyncio.to_thread(self._execute, sql, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """
        Run several statements atomically.

        Any exception raised inside the block (including cancellation)
        rolls back every statement issued through the yielded handle.

        Example:
            async with db.transaction() as tx:
                await tx.execute("DELETE FROM clusters WHERE scope = ?", (scope,))
                await tx.execute("INSERT INTO clusters ...", (...))

        Yields:
            Transaction handle
        """
        async with self._lock:
            await asyncio.to_thread(self._conn.execute, "BEGIN")
            try:
                yield Transaction(self._conn)
            except BaseException:
                await asyncio.to_thread(self._conn.execute, "ROLLBACK")
                raise
            await asyncio.to_thread(self._conn.execute, "COMMIT")

    async def table_exists(self, name: str) -> bool:
        """Check whether a table is present in the schema."""
        row = await self.query_one(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        )
        return row is not None

    async def close(self) -> None:
        """Close the underlying connection (idempotent)."""
        if self._closed:
            return
        async with self._lock:
            await asyncio.to_thread(self._conn.close)
            self._closed = True
