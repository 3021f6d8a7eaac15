"""Closed enums shared by the scheduler, state machine and recovery manager."""

from enum import Enum


class StateTier(str, Enum):
    """The three persisted state documents."""

    RUNTIME = "runtime"
    """Current workflow (reset when a new workflow is initialized)."""

    PERSISTENT = "persistent"
    """Historical logs and metrics (append/increment only)."""

    CONFIGURATION = "configuration"
    """User preferences (read-only to the engine)."""


class ErrorType(str, Enum):
    """Error classification used to pick a recovery strategy."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RESOURCE = "resource"
    STATE = "state"
    PERMISSION = "permission"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class RecoveryAction(str, Enum):
    """Strategies available after a failed phase attempt."""

    RETRY = "retry"
    SKIP = "skip"
    SAFE_MODE = "safe_mode"
    RESTORE = "restore"
    REPAIR = "repair"
    ABORT = "abort"


class PhaseStatus(str, Enum):
    """Settled status of a single phase execution inside a scheduled wave."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SaveTrigger(str, Enum):
    """Named events that request an auto-save."""

    DOCUMENT_CREATION = "document_creation"
    SECTION_APPROVAL = "section_approval"
    PHASE_TRANSITION = "phase_transition"
    DECISION_RECORDING = "decision_recording"
    ERROR_OCCURRENCE = "error_occurrence"
    CHECKPOINT_CREATION = "checkpoint_creation"
    PROGRESS_UPDATE = "progress_update"
    TIME_INTERVAL = "time_interval"


__all__ = ["StateTier", "ErrorType", "RecoveryAction", "PhaseStatus", "SaveTrigger"]
