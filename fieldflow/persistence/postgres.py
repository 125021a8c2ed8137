"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from .codec import (
    EXECUTION_COLUMNS,
    STEP_COLUMNS,
    dump_json,
    execution_from_row,
    step_from_row,
)
from .models import ExecutionStep, WorkflowExecution, utcnow
from .repository import ExecutionRepository, StepMutator


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                work_item_id TEXT NOT NULL,
                template_id TEXT NOT NULL,
                status TEXT NOT NULL,
                execution_data JSONB NOT NULL,
                current_step_id TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS executions_one_in_progress
            ON executions (organization_id, work_item_id)
            WHERE status = 'in_progress'
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_steps (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES executions (id) ON DELETE CASCADE,
                organization_id TEXT NOT NULL,
                work_item_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL,
                notes TEXT,
                evidence JSONB NOT NULL,
                completed_at TIMESTAMPTZ,
                completed_by TEXT,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_execution(
        self, execution: WorkflowExecution, steps: list[ExecutionStep]
    ) -> tuple[WorkflowExecution, bool]:
        conn = await self._connect()
        try:
            try:
                async with conn.transaction():
                    await conn.execute(
                        f"INSERT INTO executions ({EXECUTION_COLUMNS}) "
                        "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                        execution.id,
                        execution.organization_id,
                        execution.work_item_id,
                        execution.template_id,
                        execution.status.value,
                        dump_json(execution.execution_data),
                        execution.current_step_id,
                        execution.started_at,
                        execution.completed_at,
                        execution.updated_at,
                    )
                    await conn.executemany(
                        f"INSERT INTO execution_steps ({STEP_COLUMNS}) "
                        "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
                        [
                            (
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
                                step.completed_at,
                                step.completed_by,
                                step.updated_at,
                            )
                            for step in steps
                        ],
                    )
            except asyncpg.UniqueViolationError:
                row = await conn.fetchrow(
                    f"SELECT {EXECUTION_COLUMNS} FROM executions "
                    "WHERE work_item_id = $1 AND organization_id = $2 AND status = 'in_progress'",
                    execution.work_item_id,
                    execution.organization_id,
                )
                if row is None:
                    raise
                return execution_from_row(row), False
        finally:
            await conn.close()
        return execution, True

    async def get_execution(
        self, execution_id: str, organization_id: str
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = $1 AND organization_id = $2",
                execution_id,
                organization_id,
            )
        finally:
            await conn.close()
        return execution_from_row(row) if row else None

    async def find_in_progress(
        self, work_item_id: str, organization_id: str
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {EXECUTION_COLUMNS} FROM executions "
                "WHERE work_item_id = $1 AND organization_id = $2 AND status = 'in_progress'",
                work_item_id,
                organization_id,
            )
        finally:
            await conn.close()
        return execution_from_row(row) if row else None

    async def list_executions(
        self, organization_id: str, work_item_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {EXECUTION_COLUMNS} FROM executions "
                "WHERE organization_id = $1 AND ($2::TEXT IS NULL OR work_item_id = $2) "
                "ORDER BY started_at DESC",
                organization_id,
                work_item_id,
            )
        finally:
            await conn.close()
        return [execution_from_row(r) for r in rows]

    async def update_execution_data(
        self,
        execution_id: str,
        organization_id: str,
        current_step_id: Optional[str],
        execution_data: Optional[dict[str, Any]],
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE executions
                SET current_step_id = COALESCE($1, current_step_id),
                    execution_data = COALESCE($2::JSONB, execution_data),
                    updated_at = $3
                WHERE id = $4 AND organization_id = $5
                RETURNING {EXECUTION_COLUMNS}
                """,
                current_step_id,
                dump_json(execution_data) if execution_data is not None else None,
                utcnow(),
                execution_id,
                organization_id,
            )
        finally:
            await conn.close()
        return execution_from_row(row) if row else None

    async def mark_execution_completed(
        self, execution_id: str, organization_id: str, completed_at: datetime
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE executions
                SET status = 'completed', completed_at = $1, updated_at = $1
                WHERE id = $2 AND organization_id = $3 AND status = 'in_progress'
                RETURNING {EXECUTION_COLUMNS}
                """,
                completed_at,
                execution_id,
                organization_id,
            )
        finally:
            await conn.close()
        return execution_from_row(row) if row else None

    async def delete_executions(self, work_item_id: str, organization_id: str) -> int:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "DELETE FROM executions WHERE work_item_id = $1 AND organization_id = $2",
                work_item_id,
                organization_id,
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "DELETE 2"
        return int(result.split()[-1])

    async def get_step(self, step_id: str, organization_id: str) -> ExecutionStep | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {STEP_COLUMNS} FROM execution_steps WHERE id = $1 AND organization_id = $2",
                step_id,
                organization_id,
            )
        finally:
            await conn.close()
        return step_from_row(row) if row else None

    async def list_steps(
        self, execution_id: str, organization_id: str
    ) -> list[ExecutionStep]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {STEP_COLUMNS} FROM execution_steps "
                "WHERE execution_id = $1 AND organization_id = $2 ORDER BY step_index",
                execution_id,
                organization_id,
            )
        finally:
            await conn.close()
        return [step_from_row(r) for r in rows]

    async def list_work_item_steps(
        self, work_item_id: str, organization_id: str
    ) -> list[ExecutionStep]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {STEP_COLUMNS} FROM execution_steps "
                "WHERE work_item_id = $1 AND organization_id = $2 ORDER BY step_index",
                work_item_id,
                organization_id,
            )
        finally:
            await conn.close()
        return [step_from_row(r) for r in rows]

    async def update_step(
        self, step_id: str, organization_id: str, mutate: StepMutator
    ) -> ExecutionStep | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {STEP_COLUMNS} FROM execution_steps "
                    "WHERE id = $1 AND organization_id = $2 FOR UPDATE",
                    step_id,
                    organization_id,
                )
                if row is None:
                    return None
                step = step_from_row(row)
                mutate(step)
                await conn.execute(
                    """
                    UPDATE execution_steps
                    SET status = $1, notes = $2, evidence = $3, completed_at = $4,
                        completed_by = $5, updated_at = $6
                    WHERE id = $7
                    """,
                    step.status.value,
                    step.notes,
                    dump_json(step.evidence.to_record()),
                    step.completed_at,
                    step.completed_by,
                    step.updated_at,
                    step_id,
                )
        finally:
            await conn.close()
        return step
