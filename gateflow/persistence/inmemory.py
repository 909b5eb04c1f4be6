"""In-memory implementation of the run repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict

from .models import RunRecord, StepRecord
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Keep audit records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._record_id = 0

    # ------------------------------------------------------------------
    def _append(self, run_id: str, record: StepRecord) -> None:
        run = self._runs.get(run_id)
        if run is None:
            return
        self._record_id += 1
        record.id = self._record_id
        record.recorded_at = datetime.now(timezone.utc)
        run.steps.append(record)

    async def create_run(
        self, run_id: str, workflow_name: str, run_input: dict | None = None
    ) -> None:
        self._runs[run_id] = RunRecord(
            run_id=run_id,
            workflow_name=workflow_name,
            input=run_input or {},
            status="running",
        )

    async def record_step_output(
        self, run_id: str, step_name: str, status: str, output: dict | None = None
    ) -> None:
        self._append(
            run_id,
            StepRecord(
                run_id=run_id, step_name=step_name, status=status, output=output or {}
            ),
        )

    async def record_batch_item(
        self, run_id: str, step_name: str, item_id: str, result: dict
    ) -> None:
        self._append(
            run_id,
            StepRecord(
                run_id=run_id,
                step_name=step_name,
                item_id=item_id,
                status=result.get("status"),
                output=result,
            ),
        )

    async def mark_run_finished(
        self, run_id: str, status: str, error: str | None = None
    ) -> None:
        run = self._runs.get(run_id)
        if run:
            run.status = status
            run.error = error

    async def get_run(self, run_id: str) -> RunRecord | None:
        return self._runs.get(run_id)

    async def list_runs(self) -> list[RunRecord]:
        return list(self._runs.values())
