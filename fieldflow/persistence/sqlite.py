"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from .codec import (
    EXECUTION_COLUMNS,
    STEP_COLUMNS,
    dump_json,
    execution_from_row,
    step_from_row,
)
from .models import ExecutionStep, WorkflowExecution, utcnow
from .repository import ExecutionRepository, StepMutator


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite.

    One connection is shared by all calls; a thread lock serializes access
    and ``BEGIN IMMEDIATE`` keeps read-modify-write cycles atomic across
    processes sharing the database file.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    work_item_id TEXT NOT NULL,
                    template_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    execution_data TEXT NOT NULL,
                    current_step_id TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS executions_one_in_progress
                ON executions (organization_id, work_item_id)
                WHERE status = 'in_progress'
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS execution_steps (
                    id TEXT PRIMARY KEY,
                    execution_id TEXT NOT NULL
                        REFERENCES executions (id) ON DELETE CASCADE,
                    organization_id TEXT NOT NULL,
                    work_item_id TEXT NOT NULL,
                    step_index INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL,
                    notes TEXT,
                    evidence TEXT NOT NULL,
                    completed_at TEXT,
                    completed_by TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            else:
                cur.execute("COMMIT")

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_execution(
        self, execution: WorkflowExecution, steps: list[ExecutionStep]
    ) -> None:
        with self._transaction() as cur:
            cur.execute(
                f"INSERT INTO executions ({EXECUTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    execution.id,
                    execution.organization_id,
                    execution.work_item_id,
                    execution.template_id,
                    execution.status.value,
                    dump_json(execution.execution_data),
                    execution.current_step_id,
                    _ts(execution.started_at),
                    _ts(execution.completed_at),
                    _ts(execution.updated_at),
                ),
            )
            cur.executemany(
                f"INSERT INTO execution_steps ({STEP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [self._step_params(step) for step in steps],
            )

    def _step_params(self, step: ExecutionStep) -> tuple[Any, ...]:
        return (
            step.id,
            step.execution_id,
            step.organization_id,
            step.work_item_id,
            step.step_index,
            step.title,
            step.description,
            step.status.value,
            step.notes,
            dump_json(step.evidence.to_record()),
            _ts(step.completed_at),
            step.completed_by,
            _ts(step.updated_at),
        )

    def _complete(
        self, execution_id: str, organization_id: str, completed_at: datetime
    ) -> sqlite3.Row | None:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE executions SET status = 'completed', completed_at = ?, updated_at = ?
                WHERE id = ? AND organization_id = ? AND status = 'in_progress'
                """,
                (_ts(completed_at), _ts(completed_at), execution_id, organization_id),
            )
            if cur.rowcount == 0:
                return None
            cur.execute(
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = ?", (execution_id,)
            )
            return cur.fetchone()

    def _update_data(
        self,
        execution_id: str,
        organization_id: str,
        current_step_id: Optional[str],
        execution_data: Optional[dict[str, Any]],
    ) -> sqlite3.Row | None:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE executions
                SET current_step_id = COALESCE(?, current_step_id),
                    execution_data = COALESCE(?, execution_data),
                    updated_at = ?
                WHERE id = ? AND organization_id = ?
                """,
                (
                    current_step_id,
                    dump_json(execution_data) if execution_data is not None else None,
                    _ts(utcnow()),
                    execution_id,
                    organization_id,
                ),
            )
            cur.execute(
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = ? AND organization_id = ?",
                (execution_id, organization_id),
            )
            return cur.fetchone()

    def _delete(self, work_item_id: str, organization_id: str) -> int:
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM executions WHERE work_item_id = ? AND organization_id = ?",
                (work_item_id, organization_id),
            )
            return cur.rowcount

    def _update_step(
        self, step_id: str, organization_id: str, mutate: StepMutator
    ) -> ExecutionStep | None:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {STEP_COLUMNS} FROM execution_steps WHERE id = ? AND organization_id = ?",
                (step_id, organization_id),
            )
            row = cur.fetchone()
            if row is None:
                return None
            step = step_from_row(row)
            mutate(step)
            cur.execute(
                """
                UPDATE execution_steps
                SET status = ?, notes = ?, evidence = ?, completed_at = ?,
                    completed_by = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    step.status.value,
                    step.notes,
                    dump_json(step.evidence.to_record()),
                    _ts(step.completed_at),
                    step.completed_by,
                    _ts(step.updated_at),
                    step_id,
                ),
            )
            return step

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(
        self, execution: WorkflowExecution, steps: list[ExecutionStep]
    ) -> tuple[WorkflowExecution, bool]:
        try:
            await asyncio.to_thread(self._insert_execution, execution, steps)
        except sqlite3.IntegrityError:
            existing = await self.find_in_progress(
                execution.work_item_id, execution.organization_id
            )
            if existing is None:
                raise
            return existing, False
        return execution, True

    async def get_execution(
        self, execution_id: str, organization_id: str
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = ? AND organization_id = ?",
            execution_id,
            organization_id,
        )
        return execution_from_row(row) if row else None

    async def find_in_progress(
        self, work_item_id: str, organization_id: str
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {EXECUTION_COLUMNS} FROM executions "
            "WHERE work_item_id = ? AND organization_id = ? AND status = 'in_progress'",
            work_item_id,
            organization_id,
        )
        return execution_from_row(row) if row else None

    async def list_executions(
        self, organization_id: str, work_item_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        if work_item_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE organization_id = ? "
                "ORDER BY started_at DESC",
                organization_id,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {EXECUTION_COLUMNS} FROM executions "
                "WHERE organization_id = ? AND work_item_id = ? ORDER BY started_at DESC",
                organization_id,
                work_item_id,
            )
        return [execution_from_row(r) for r in rows]

    async def update_execution_data(
        self,
        execution_id: str,
        organization_id: str,
        current_step_id: Optional[str],
        execution_data: Optional[dict[str, Any]],
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._update_data, execution_id, organization_id, current_step_id, execution_data
        )
        return execution_from_row(row) if row else None

    async def mark_execution_completed(
        self, execution_id: str, organization_id: str, completed_at: datetime
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._complete, execution_id, organization_id, completed_at
        )
        return execution_from_row(row) if row else None

    async def delete_executions(self, work_item_id: str, organization_id: str) -> int:
        return await asyncio.to_thread(self._delete, work_item_id, organization_id)

    async def get_step(self, step_id: str, organization_id: str) -> ExecutionStep | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {STEP_COLUMNS} FROM execution_steps WHERE id = ? AND organization_id = ?",
            step_id,
            organization_id,
        )
        return step_from_row(row) if row else None

    async def list_steps(
        self, execution_id: str, organization_id: str
    ) -> list[ExecutionStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {STEP_COLUMNS} FROM execution_steps "
            "WHERE execution_id = ? AND organization_id = ? ORDER BY step_index",
            execution_id,
            organization_id,
        )
        return [step_from_row(r) for r in rows]

    async def list_work_item_steps(
        self, work_item_id: str, organization_id: str
    ) -> list[ExecutionStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {STEP_COLUMNS} FROM execution_steps "
            "WHERE work_item_id = ? AND organization_id = ? ORDER BY step_index",
            work_item_id,
            organization_id,
        )
        return [step_from_row(r) for r in rows]

    async def update_step(
        self, step_id: str, organization_id: str, mutate: StepMutator
    ) -> ExecutionStep | None:
        return await asyncio.to_thread(self._update_step, step_id, organization_id, mutate)
