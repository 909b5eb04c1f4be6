"""Data models for audit records of runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class StepRecord(BaseModel):
    """Audit record of one step output or one batch item outcome."""

    id: Optional[int] = None
    run_id: str
    step_name: str
    item_id: Optional[str] = None
    status: Optional[str] = None
    output: Optional[dict[str, Any]] = None
    recorded_at: Optional[datetime] = None


class RunRecord(BaseModel):
    """Persisted summary of a run."""

    run_id: str
    workflow_name: str
    input: dict[str, Any] | None = None
    status: str = "running"
    error: Optional[str] = None
    steps: list[StepRecord] = Field(default_factory=list)
