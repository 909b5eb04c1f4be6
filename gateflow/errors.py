"""Exception hierarchy for gateflow."""

from __future__ import annotations


class GateflowError(Exception):
    """Base class for all gateflow errors."""


class WorkflowValidationError(GateflowError):
    """A workflow definition or step input is malformed."""


class UnknownStepError(WorkflowValidationError):
    """A workflow references a step that is not registered."""


class StepArgumentsError(WorkflowValidationError):
    """Step arguments failed validation against the step's contract."""


class MissingOutputFieldError(WorkflowValidationError):
    """A step binding points at a field that a prior output does not have."""


class ApprovalProtocolError(GateflowError):
    """An approval decision could not be applied."""


class ApprovalNotFoundError(ApprovalProtocolError):
    def __init__(self, approval_id: str) -> None:
        super().__init__(f"Approval request not found: {approval_id}")
        self.approval_id = approval_id


class ApprovalAlreadyDecidedError(ApprovalProtocolError):
    def __init__(self, approval_id: str, status: str) -> None:
        super().__init__(f"Approval request {approval_id} already {status}")
        self.approval_id = approval_id
        self.status = status


class DuplicateApprovalError(ApprovalProtocolError):
    """A pending approval already exists for the same run and step."""


class ApprovalTimeoutError(GateflowError):
    """No decision arrived within the configured wait."""

    def __init__(self, approval_id: str, timeout: float) -> None:
        super().__init__(
            f"No decision for approval {approval_id} within {timeout:g}s"
        )
        self.approval_id = approval_id
        self.timeout = timeout


class StepExecutionError(GateflowError):
    """The operation behind a step failed; fatal to the run."""

    def __init__(self, step_name: str, message: str) -> None:
        super().__init__(f"Step {step_name} failed: {message}")
        self.step_name = step_name
        self.message = message


class StreamClosedError(GateflowError):
    """An event was published after the stream terminated."""


class IllegalTransitionError(GateflowError, ValueError):
    pass
