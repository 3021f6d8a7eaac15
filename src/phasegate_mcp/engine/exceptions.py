"""Workflow engine exceptions with machine-readable reason codes.

Every exception raised by the state machine, state store, resource pool and
scheduler derives from PhaseGateError and carries a ReasonCode. The engine
facade converts these into ControlResult failures so that callers (MCP tools,
tests, scheduled retries) can assert on the exact failure reason rather than
parsing messages.
"""

from __future__ import annotations

from enum import Enum


class ReasonCode(str, Enum):
    """Machine-readable failure reasons returned by the control surface."""

    NO_ACTIVE_WORKFLOW = "no_active_workflow"
    UNKNOWN_WORKFLOW_TYPE = "unknown_workflow_type"
    APPROVAL_PENDING = "approval_pending"
    GATE_NOT_PENDING = "gate_not_pending"
    RESUME_BLOCKED = "resume_blocked"
    WORKFLOW_COMPLETE = "workflow_complete"
    CHECKPOINT_NOT_FOUND = "checkpoint_not_found"
    CHECKPOINT_ARCHIVE_UNREADABLE = "checkpoint_archive_unreadable"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    RESOURCE_TIMEOUT = "resource_timeout"
    INVALID_PLAN = "invalid_plan"
    DEPENDENCY_DEADLOCK = "dependency_deadlock"
    PHASE_FAILED = "phase_failed"
    STATE_SAVE_FAILED = "state_save_failed"
    STATE_CORRUPTED = "state_corrupted"


class PhaseGateError(Exception):
    """Base class for all engine errors.

    Attributes:
        reason: Machine-readable reason code
        message: Human-readable description
    """

    reason: ReasonCode = ReasonCode.PHASE_FAILED

    def __init__(self, message: str, reason: ReasonCode | None = None):
        if reason is not None:
            self.reason = reason
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(reason={self.reason.value!r}, message={self.message!r})"


class NoActiveWorkflowError(PhaseGateError):
    """Raised when a transition is attempted before any workflow is initialized."""

    reason = ReasonCode.NO_ACTIVE_WORKFLOW

    def __init__(self) -> None:
        super().__init__("No active workflow. Initialize a workflow first.")


class UnknownWorkflowTypeError(PhaseGateError):
    """Raised when a workflow type is not registered."""

    reason = ReasonCode.UNKNOWN_WORKFLOW_TYPE

    def __init__(self, workflow_type: str, available: list[str]):
        self.workflow_type = workflow_type
        self.available = available
        super().__init__(
            f"Unknown workflow type: {workflow_type}. "
            f"Valid types are: {', '.join(available) or '(none)'}"
        )


class ApprovalPendingError(PhaseGateError):
    """Raised when a phase is completed while an approval gate is outstanding."""

    reason = ReasonCode.APPROVAL_PENDING

    def __init__(self, gate: str):
        self.gate = gate
        super().__init__(f"Workflow is awaiting approval at gate: {gate}")


class GateNotPendingError(PhaseGateError):
    """Raised when approving a gate that is not the pending one."""

    reason = ReasonCode.GATE_NOT_PENDING

    def __init__(self, gate: str, pending: str | None):
        self.gate = gate
        self.pending = pending
        suffix = f" (pending gate: {pending})" if pending else ""
        super().__init__(f"No approval pending for gate: {gate}{suffix}")


class ResumeBlockedError(PhaseGateError):
    """Raised by resume() while an approval gate is outstanding."""

    reason = ReasonCode.RESUME_BLOCKED

    def __init__(self, gate: str):
        self.gate = gate
        super().__init__(
            f"Workflow is awaiting approval at gate: {gate}; approve it before resuming"
        )


class WorkflowCompleteError(PhaseGateError):
    """Raised when a transition is attempted on a finished workflow."""

    reason = ReasonCode.WORKFLOW_COMPLETE

    def __init__(self, workflow_id: str | None):
        self.workflow_id = workflow_id
        label = f"Workflow '{workflow_id}'" if workflow_id else "Workflow"
        super().__init__(f"{label} is already complete")


class CheckpointNotFoundError(PhaseGateError):
    """Raised when a checkpoint id does not exist (or the archive is empty)."""

    reason = ReasonCode.CHECKPOINT_NOT_FOUND

    def __init__(self, checkpoint_id: str | None):
        self.checkpoint_id = checkpoint_id
        if checkpoint_id is None:
            super().__init__("No checkpoints available")
        else:
            super().__init__(f"Checkpoint not found: {checkpoint_id}")


class CheckpointArchiveError(PhaseGateError):
    """The checkpoint archive itself cannot be read or written.

    Fatal: recovery depends on the archive, so this is never retried.
    """

    reason = ReasonCode.CHECKPOINT_ARCHIVE_UNREADABLE


class StateCorruptedError(PhaseGateError):
    """A state document could not be repaired into a valid model.

    Raised instead of overwriting the document with defaults.
    """

    reason = ReasonCode.STATE_CORRUPTED

    def __init__(self, tier: str, detail: str):
        self.tier = tier
        super().__init__(f"{tier} state is corrupted and could not be repaired: {detail}")


class ResourceAllocationError(PhaseGateError):
    """Raised when allocate() is called for a requirement the pool cannot grant."""

    reason = ReasonCode.RESOURCE_UNAVAILABLE


class ResourceTimeoutError(PhaseGateError):
    """Raised when resources never became available within the configured attempts."""

    reason = ReasonCode.RESOURCE_TIMEOUT

    def __init__(self, execution_id: str, attempts: int):
        self.execution_id = execution_id
        self.attempts = attempts
        super().__init__(
            f"Resource allocation timeout for {execution_id} after {attempts} attempts"
        )


class DependencyDeadlockError(PhaseGateError):
    """Raised by the planner when no phase is schedulable and forcing is disabled."""

    reason = ReasonCode.DEPENDENCY_DEADLOCK

    def __init__(self, remaining: list[str]):
        self.remaining = remaining
        super().__init__(
            "Cyclic or unsatisfiable dependencies among phases: " + ", ".join(sorted(remaining))
        )


class InvalidPlanError(PhaseGateError):
    """Raised when a plan references phases without definitions."""

    reason = ReasonCode.INVALID_PLAN


__all__ = [
    "ReasonCode",
    "PhaseGateError",
    "NoActiveWorkflowError",
    "UnknownWorkflowTypeError",
    "ApprovalPendingError",
    "GateNotPendingError",
    "ResumeBlockedError",
    "WorkflowCompleteError",
    "CheckpointNotFoundError",
    "CheckpointArchiveError",
    "StateCorruptedError",
    "ResourceAllocationError",
    "ResourceTimeoutError",
    "DependencyDeadlockError",
    "InvalidPlanError",
]
