"""Result monads for the loader layer and the control surface.

LoadResult is used by the workflow-type loader and registry for file I/O and
schema validation. ControlResult is what every control-surface operation of
WorkflowEngine returns: an explicit success flag, and on failure a
machine-readable ReasonCode next to a human message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from .exceptions import PhaseGateError, ReasonCode

T = TypeVar("T")


class LoadStatus(str, Enum):
    """Status of a loading/validation operation."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class LoadResult(Generic[T]):  # noqa: UP046
    """Outcome of loading a workflow type definition or a directory of them.

    Usage:
        result = load_workflow_type_from_file(path)
        if result.is_success:
            workflow_type = result.value
        else:
            logger.error(result.error)
    """

    status: LoadStatus
    value: T | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status == LoadStatus.SUCCESS and self.value is None:
            raise ValueError("Success result must have a value")
        if self.status == LoadStatus.FAILED and not self.error:
            raise ValueError("Failed result must have an error message")

    @property
    def is_success(self) -> bool:
        return self.status == LoadStatus.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.status == LoadStatus.FAILED

    @classmethod
    def success(cls, value: T, metadata: dict[str, Any] | None = None) -> LoadResult[T]:
        return cls(status=LoadStatus.SUCCESS, value=value, metadata=metadata or {})

    @classmethod
    def failure(cls, error: str, metadata: dict[str, Any] | None = None) -> LoadResult[T]:
        return cls(status=LoadStatus.FAILED, error=error, metadata=metadata or {})

    def __bool__(self) -> bool:
        return self.is_success

    def unwrap(self) -> T:
        """Get value or raise ValueError if the load failed."""
        if not self.is_success or self.value is None:
            raise ValueError(f"Cannot unwrap failed result: {self.error}")
        return self.value


@dataclass
class ControlResult:
    """Structured result of a control-surface call.

    Invariants (checked at construction):
    - success results carry no reason code
    - failure results carry both a reason code and a message

    Attributes:
        success: Whether the operation succeeded
        message: Human-readable summary (always present)
        reason: Machine-readable failure reason (None on success)
        data: Operation-specific payload (status fields, checkpoint id, ...)
    """

    success: bool
    message: str
    reason: ReasonCode | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.success and self.reason is not None:
            raise ValueError("Successful control result cannot carry a reason code")
        if not self.success and (self.reason is None or not self.message):
            raise ValueError("Failed control result must have a reason code and a message")

    @classmethod
    def ok(cls, message: str, **data: Any) -> ControlResult:
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, reason: ReasonCode, message: str, **data: Any) -> ControlResult:
        return cls(success=False, message=message, reason=reason, data=data)

    @classmethod
    def from_error(cls, error: PhaseGateError, **data: Any) -> ControlResult:
        """Convert an engine exception into a failed result."""
        return cls(success=False, message=error.message, reason=error.reason, data=data)

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> dict[str, Any]:
        """Serialize for MCP tool responses."""
        payload: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.reason is not None:
            payload["reason"] = self.reason.value
        payload.update(self.data)
        return payload


__all__ = ["LoadStatus", "LoadResult", "ControlResult"]
