"""
Persistence for analysis runs (the ``analysis_runs`` table).

Every status change goes through a guarded UPDATE that only matches
non-terminal rows, so a run is terminated exactly once even when a
cancellation request races the job's own completion.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from neuron.kg.models import _generate_id
from neuron.models.jobs import (
    AnalysisRun,
    PipelineProgress,
    PipelineStage,
    RunStatus,
    RunType,
    default_results,
)
from neuron.storage.database import Database, dumps_json, loads_json, to_timestamp
from neuron.store.base import resolve_scope

logger = logging.getLogger(__name__)

_ACTIVE = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)

RUN_COLUMNS = (
    "id, scope, run_type, input_params, results, status, progress, progress_snapshot, "
    "started_at, completed_at, duration_ms, error_message, error_stack, "
    "created_at, updated_at"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def run_from_row(row: dict[str, Any]) -> AnalysisRun:
    """Convert an ``analysis_runs`` row into an AnalysisRun."""
    data = dict(row)
    data["input_params"] = loads_json(data["input_params"], {})
    data["results"] = loads_json(data["results"], default_results())
    data["progress_snapshot"] = loads_json(data["progress_snapshot"])
    return AnalysisRun.from_dict(data)


class AnalysisRunRepository:
    """Scoped CRUD and state transitions for analysis runs."""

    def __init__(self, db: Database, scope: str | None = None) -> None:
        self.db = db
        self.scope = resolve_scope(scope)

    async def create(self, run_type: RunType, input_params: dict[str, Any]) -> AnalysisRun:
        """Insert a new run in ``queued`` state."""
        now = _utc_now()
        run = AnalysisRun(
            id=_generate_id(),
            scope=self.scope,
            run_type=run_type,
            status=RunStatus.QUEUED,
            input_params=input_params,
            created_at=now,
            updated_at=now,
        )
        await self.db.execute(
            f"INSERT INTO analysis_runs ({RUN_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                run.id,
                run.scope,
                run.run_type.value,
                dumps_json(run.input_params),
                dumps_json(run.results),
                run.status.value,
                run.progress,
                None,
                to_timestamp(run.started_at),
                None,
                None,
                None,
                None,
                to_timestamp(run.created_at),
                to_timestamp(run.updated_at),
            ),
        )
        logger.info(f"Created analysis run {run.id} ({run_type.value}) in scope {self.scope}")
        return run

    async def get(self, run_id: str) -> AnalysisRun | None:
        row = await self.db.query_one(
            f"SELECT {RUN_COLUMNS} FROM analysis_runs WHERE id = ? AND scope = ?",
            (run_id, self.scope),
        )
        return run_from_row(row) if row else None

    async def list_runs(
        self, status: RunStatus | str | None = None, limit: int | None = None
    ) -> list[AnalysisRun]:
        """List runs newest first, optionally filtered by status."""
        sql = f"SELECT {RUN_COLUMNS} FROM analysis_runs WHERE scope = ?"
        params: list[Any] = [self.scope]
        if status:
            sql += " AND status = ?"
            params.append(RunStatus(status).value)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self.db.query(sql, params)
        return [run_from_row(row) for row in rows]

    async def mark_running(self, run_id: str) -> bool:
        """Move a queued run to ``running``. Returns False if it is no longer queued."""
        now = to_timestamp(_utc_now())
        updated = await self.db.execute(
            "UPDATE analysis_runs SET status = ?, started_at = ?, updated_at = ? "
            "WHERE id = ? AND scope = ? AND status = ?",
            (RunStatus.RUNNING.value, now, now, run_id, self.scope, RunStatus.QUEUED.value),
        )
        return bool(updated)

    async def save_progress(self, run_id: str, snapshot: PipelineProgress) -> None:
        """Persist the latest progress snapshot on an active run."""
        overall = snapshot.overall_progress or 0
        await self.db.execute(
            "UPDATE analysis_runs SET progress = ?, progress_snapshot = ?, updated_at = ? "
            f"WHERE id = ? AND scope = ? AND status IN ({', '.join('?' for _ in _ACTIVE)})",
            (
                round(overall),
                dumps_json(snapshot.to_dict()),
                to_timestamp(_utc_now()),
                run_id,
                self.scope,
                *_ACTIVE,
            ),
        )

    async def merge_results(self, run_id: str, updates: dict[str, Any]) -> None:
        """Shallow-merge ``updates`` into the run's results; ``errors`` lists are appended."""
        async with self.db.transaction() as tx:
            row = await tx.query_one(
                "SELECT results FROM analysis_runs WHERE id = ? AND scope = ?",
                (run_id, self.scope),
            )
            if row is None:
                return
            results = {**default_results(), **loads_json(row["results"], {})}
            for key, value in updates.items():
                if key == "errors":
                    results["errors"] = [*results.get("errors", []), *value]
                else:
                    results[key] = value
            await tx.execute(
                "UPDATE analysis_runs SET results = ?, updated_at = ? WHERE id = ? AND scope = ?",
                (dumps_json(results), to_timestamp(_utc_now()), run_id, self.scope),
            )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # TERMINAL TRANSITIONS
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def complete(self, run_id: str) -> bool:
        snapshot = PipelineProgress(
            stage=PipelineStage.COMPLETE,
            progress=100,
            current_item="complete",
            items_processed=0,
            total_items=0,
            overall_progress=100,
        )
        return await self._terminate(run_id, RunStatus.COMPLETED, snapshot, progress=100)

    async def fail(self, run_id: str, message: str, stack: str | None = None) -> bool:
        return await self._terminate(
            run_id,
            RunStatus.FAILED,
            self._closing_snapshot("failed"),
            error_message=message,
            error_stack=stack,
        )

    async def cancel(self, run_id: str) -> bool:
        return await self._terminate(
            run_id, RunStatus.CANCELLED, self._closing_snapshot("cancelled")
        )

    @staticmethod
    def _closing_snapshot(label: str) -> PipelineProgress:
        return PipelineProgress(
            stage=PipelineStage.COMPLETE,
            progress=0,
            current_item=label,
            items_processed=0,
            total_items=0,
        )

    async def _terminate(
        self,
        run_id: str,
        status: RunStatus,
        snapshot: PipelineProgress,
        progress: int | None = None,
        error_message: str | None = None,
        error_stack: str | None = None,
    ) -> bool:
        """
        Move an active run to a terminal status.

        Returns:
            True if this call performed the transition, False if the run was
            unknown or already terminal
        """
        now = _utc_now()
        async with self.db.transaction() as tx:
            row = await tx.query_one(
                "SELECT started_at, progress FROM analysis_runs "
                f"WHERE id = ? AND scope = ? AND status IN ({', '.join('?' for _ in _ACTIVE)})",
                (run_id, self.scope, *_ACTIVE),
            )
            if row is None:
                return False

            started = datetime.fromisoformat(row["started_at"]) if row["started_at"] else now
            final_progress = row["progress"] if progress is None else progress
            if snapshot.overall_progress is None:
                snapshot.overall_progress = final_progress
            await tx.execute(
                "UPDATE analysis_runs SET status = ?, progress = ?, progress_snapshot = ?, "
                "completed_at = ?, duration_ms = ?, error_message = ?, error_stack = ?, "
                "updated_at = ? WHERE id = ? AND scope = ?",
                (
                    status.value,
                    final_progress,
                    dumps_json(snapshot.to_dict()),
                    to_timestamp(now),
                    int((now - started).total_seconds() * 1000),
                    error_message,
                    error_stack,
                    to_timestamp(now),
                    run_id,
                    self.scope,
                ),
            )
        logger.info(f"Analysis run {run_id} -> {status.value}")
        return True
