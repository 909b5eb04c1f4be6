"""Gateflow: approval-gated streaming workflow engine."""

from .approvals import ApprovalGate
from .contracts import (
    ApprovalRequest,
    ApprovalStatus,
    AuthContext,
    BatchResult,
    EventType,
    RunState,
    RunStatus,
    SegmentResult,
    SegmentTask,
    StreamEvent,
)
from .controller import RunController, RunHandle
from .engine import WorkflowEngine
from .fanout import FanoutExecutor
from .operations import HttpOperation
from .persistence import get_repository
from .steps import BatchItem, BatchSpec, StepContext, StepDefinition, StepRegistry
from .streaming import encode_sse, open_stream
from .workflow import RunPolicy, WorkflowDefinition, WorkflowStep, load_workflow

__version__ = "0.1.0"
__all__ = [
    "ApprovalGate",
    "ApprovalRequest",
    "ApprovalStatus",
    "AuthContext",
    "BatchItem",
    "BatchResult",
    "BatchSpec",
    "EventType",
    "FanoutExecutor",
    "HttpOperation",
    "RunController",
    "RunHandle",
    "RunPolicy",
    "RunState",
    "RunStatus",
    "SegmentResult",
    "SegmentTask",
    "StepContext",
    "StepDefinition",
    "StepRegistry",
    "StreamEvent",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowStep",
    "encode_sse",
    "get_repository",
    "load_workflow",
    "open_stream",
]
