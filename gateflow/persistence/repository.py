"""Repository abstraction for run audit records."""

from __future__ import annotations

from typing import Protocol

from .models import RunRecord


class RunRepository(Protocol):
    """Protocol for audit sinks the run controller reports to.

    The engine never depends on these calls succeeding; failures are
    logged by the caller and do not change a run's outcome.
    """

    async def create_run(
        self, run_id: str, workflow_name: str, run_input: dict | None = None
    ) -> None:
        """Record the start of a run."""

    async def record_step_output(
        self, run_id: str, step_name: str, status: str, output: dict | None = None
    ) -> None:
        """Record the settled output of a step."""

    async def record_batch_item(
        self, run_id: str, step_name: str, item_id: str, result: dict
    ) -> None:
        """Record the outcome of one item of a batch step."""

    async def mark_run_finished(
        self, run_id: str, status: str, error: str | None = None
    ) -> None:
        """Record the terminal status of a run."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve a run by id."""

    async def list_runs(self) -> list[RunRecord]:
        """Return all recorded runs."""
