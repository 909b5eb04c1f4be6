"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import RunRecord, StepRecord
from .repository import RunRepository


class SQLiteRunRepository(RunRepository):
    """Persist run audit records using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                input TEXT,
                status TEXT NOT NULL,
                error TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                item_id TEXT,
                status TEXT,
                output TEXT,
                recorded_at TEXT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _run_from_row(row: sqlite3.Row, steps: list[StepRecord]) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            input=json.loads(row["input"]) if row["input"] else None,
            status=row["status"],
            error=row["error"],
            steps=steps,
        )

    async def _insert_record(
        self,
        run_id: str,
        step_name: str,
        item_id: str | None,
        status: str | None,
        output: dict,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_records (run_id, step_name, item_id, status, output, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            run_id,
            step_name,
            item_id,
            status,
            json.dumps(output, default=str),
            datetime.now(timezone.utc).isoformat(),
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(
        self, run_id: str, workflow_name: str, run_input: dict | None = None
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO runs (run_id, workflow_name, input, status) VALUES (?, ?, ?, ?)",
            run_id,
            workflow_name,
            json.dumps(run_input or {}, default=str),
            "running",
        )

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
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET status = ?, error = ? WHERE run_id = ?",
            status,
            error,
            run_id,
        )

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT run_id, workflow_name, input, status, error FROM runs WHERE run_id = ?",
            run_id,
        )
        if not row:
            return None
        step_rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT id, run_id, step_name, item_id, status, output, recorded_at
            FROM step_records WHERE run_id = ? ORDER BY id
            """,
            run_id,
        )
        steps = [
            StepRecord(
                id=r["id"],
                run_id=r["run_id"],
                step_name=r["step_name"],
                item_id=r["item_id"],
                status=r["status"],
                output=json.loads(r["output"]) if r["output"] else None,
                recorded_at=datetime.fromisoformat(r["recorded_at"])
                if r["recorded_at"]
                else None,
            )
            for r in step_rows
        ]
        return self._run_from_row(row, steps)

    async def list_runs(self) -> list[RunRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT run_id, workflow_name, input, status, error FROM runs",
        )
        return [self._run_from_row(row, []) for row in rows]
