"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg

from .models import RunRecord, StepRecord
from .repository import RunRepository


def _loads(value):
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


class PostgresRunRepository(RunRepository):
    """Persist run audit records using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                input JSONB,
                status TEXT NOT NULL,
                error TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                item_id TEXT,
                status TEXT,
                output JSONB,
                recorded_at TIMESTAMPTZ
            )
            """
        )

    async def _insert_record(
        self,
        run_id: str,
        step_name: str,
        item_id: str | None,
        status: str | None,
        output: dict,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_records (run_id, step_name, item_id, status, output, recorded_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                run_id,
                step_name,
                item_id,
                status,
                json.dumps(output, default=str),
                datetime.now(timezone.utc),
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_run(
        self, run_id: str, workflow_name: str, run_input: dict | None = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO runs (run_id, workflow_name, input, status) VALUES ($1, $2, $3, $4)",
                run_id,
                workflow_name,
                json.dumps(run_input or {}, default=str),
                "running",
            )
        finally:
            await conn.close()

    async def record_step_output(
        self, run_id: str, step_name: str, status: str, output: dict | None = None
    ) -> None:
        await self._insert_record(run_id, step_name, None, status, output or {})

    async def record_batch_item(
        self, run_id: str, step_name: str, item_id: str, result: dict
    ) -> None:
        await self._insert_record(
            run_id, step_name, item_id, result.get("status"), result
        )

    async def mark_run_finished(
        self, run_id: str, status: str, error: str | None = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE runs SET status = $1, error = $2 WHERE run_id = $3",
                status,
                error,
                run_id,
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> RunRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT run_id, workflow_name, input, status, error FROM runs WHERE run_id = $1",
                run_id,
            )
            if not row:
                return None
            step_rows = await conn.fetch(
                """
                SELECT id, run_id, step_name, item_id, status, output, recorded_at
                FROM step_records WHERE run_id = $1 ORDER BY id
                """,
                run_id,
            )
        finally:
            await conn.close()
        steps = [
            StepRecord(
                id=r["id"],
                run_id=r["run_id"],
                step_name=r["step_name"],
                item_id=r["item_id"],
                status=r["status"],
                output=_loads(r["output"]),
                recorded_at=r["recorded_at"],
            )
            for r in step_rows
        ]
        return RunRecord(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            input=_loads(row["input"]),
            status=row["status"],
            error=row["error"],
            steps=steps,
        )

    async def list_runs(self) -> list[RunRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT run_id, workflow_name, input, status, error FROM runs"
            )
        finally:
            await conn.close()
        return [
            RunRecord(
                run_id=r["run_id"],
                workflow_name=r["workflow_name"],
                input=_loads(r["input"]),
                status=r["status"],
                error=r["error"],
            )
            for r in rows
        ]
