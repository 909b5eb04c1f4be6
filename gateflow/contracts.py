"""Core data contracts for the gateflow engine."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic_core import to_jsonable_python

from .errors import IllegalTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def jsonable(value: Any) -> Any:
    """Convert step outputs (models, datetimes, ...) into JSON-ready data."""
    return to_jsonable_python(value, fallback=str)


class EventType(str, Enum):
    LOG = "log"
    APPROVAL_REQUIRED = "approval_required"
    RESULT = "result"
    ERROR = "error"
    COMPLETED = "completed"


TERMINAL_EVENTS = frozenset({EventType.ERROR, EventType.COMPLETED})


class StreamEvent(BaseModel):
    """One unit of progress pushed to a run's subscriber."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_wire(self) -> Dict[str, Any]:
        """Return the JSON-ready ``{type, data, timestamp}`` envelope."""
        return self.model_dump(mode="json")


class AuthContext(BaseModel):
    """Opaque caller identity carried alongside a run."""

    user_id: Optional[str] = None
    token: Optional[str] = Field(default=None, repr=False)

    @classmethod
    def from_header(
        cls, authorization: Optional[str], user_id: Optional[str] = None
    ) -> "AuthContext":
        """Build a context from an ``Authorization`` header value."""
        token = None
        if authorization:
            token = re.sub(r"^Bearer\s+", "", authorization, flags=re.IGNORECASE).strip()
        return cls(user_id=user_id, token=token or None)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalRequest(BaseModel):
    """A pending human decision gating one step."""

    id: str
    run_id: str
    step_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: Optional[datetime] = None
    auth_context: Optional[AuthContext] = Field(default=None, exclude=True)

    @property
    def is_pending(self) -> bool:
        return self.status is ApprovalStatus.PENDING


class Decision(BaseModel):
    """Final outcome handed back to the waiter of an approval."""

    approval_id: str
    status: ApprovalStatus
    arguments: Dict[str, Any] = Field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.status is ApprovalStatus.APPROVED


class SegmentTask(BaseModel):
    """One unit of work in a fan-out batch."""

    item_id: str
    input: Any = None


class SegmentStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class SegmentResult(BaseModel):
    item_id: str
    status: SegmentStatus
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is SegmentStatus.SUCCESS


class BatchResult(BaseModel):
    """Aggregate outcome of a fan-out step."""

    step_name: str
    total: int
    success_count: int
    failure_count: int
    results: List[SegmentResult] = Field(default_factory=list)
    is_retry: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def overall_success(self) -> bool:
        return self.failure_count == 0

    @model_validator(mode="after")
    def _check_counts(self) -> "BatchResult":
        if self.success_count + self.failure_count != self.total:
            raise ValueError("success_count + failure_count must equal total")
        if len(self.results) != self.total:
            raise ValueError("results must contain one entry per task")
        return self

    @classmethod
    def from_results(
        cls, step_name: str, results: List[SegmentResult], is_retry: bool = False
    ) -> "BatchResult":
        success = sum(1 for r in results if r.ok)
        return cls(
            step_name=step_name,
            total=len(results),
            success_count=success,
            failure_count=len(results) - success,
            results=results,
            is_retry=is_retry,
        )

    def failed_item_ids(self) -> List[str]:
        return [r.item_id for r in self.results if not r.ok]

    @property
    def message(self) -> str:
        label = "retry " if self.is_retry else ""
        return (
            f"{self.step_name} {label}completed: "
            f"{self.success_count} success, {self.failure_count} failed"
        )


class RunStatus(str, Enum):
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    ABORTED = "aborted"


TERMINAL_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.REJECTED, RunStatus.ABORTED}
)

ALLOWED_TRANSITIONS: Dict[RunStatus, set[RunStatus]] = {
    RunStatus.RUNNING: {
        RunStatus.AWAITING_APPROVAL,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.ABORTED,
    },
    RunStatus.AWAITING_APPROVAL: {
        RunStatus.RUNNING,
        RunStatus.REJECTED,
        RunStatus.FAILED,
        RunStatus.ABORTED,
    },
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
    RunStatus.REJECTED: set(),
    RunStatus.ABORTED: set(),
}


class RunState(BaseModel):
    """One execution of a workflow definition."""

    run_id: str
    workflow_name: str
    step_outputs: Dict[str, Any] = Field(default_factory=dict)
    current_step: int = 0
    status: RunStatus = RunStatus.RUNNING
    approval_id: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, to: RunStatus) -> None:
        """Move to ``to``, enforcing the run state machine."""
        if to not in ALLOWED_TRANSITIONS[self.status]:
            raise IllegalTransitionError(
                f"Illegal transition: {self.status.value} -> {to.value}"
            )
        self.status = to
        if to in TERMINAL_STATUSES:
            self.finished_at = utcnow()

    def record_output(self, step_name: str, output: Any) -> None:
        if step_name in self.step_outputs:
            raise ValueError(f"Output for step {step_name} already recorded")
        self.step_outputs[step_name] = output
