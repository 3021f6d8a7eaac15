"""Pydantic models for workflow state, phase definitions, plans and outcomes.

State tiers:
- WorkflowState: runtime document, reset whenever a workflow is initialized
- PersistentState: historical document, only appended to or incremented
- Configuration: see configuration.py

Scheduling:
- PhaseDefinition: immutable input to one scheduling pass
- ExecutionPlan / Wave: output of DependencyScheduler.plan()
- PhaseOutcome / ExecutionReport: output of DependencyScheduler.execute()

Recovery:
- ErrorRecord: one failed attempt
- PhaseRunResult: outcome of ErrorRecoveryManager.run_protected()
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import ReasonCode
from .phase_status import ErrorType, PhaseStatus, RecoveryAction

DEFAULT_DURATION_MINUTES = 60.0

_RANGE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*-\s*(\d+(?:\.\d+)?)\s*(minutes?|hours?|days?)")
_SINGLE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(minutes?|hours?|days?)")
_UNIT_MINUTES = {"minute": 1.0, "hour": 60.0, "day": 8 * 60.0}


def parse_time_estimate(value: str | float | int | None) -> float:
    """Convert a duration estimate into minutes.

    Accepts plain numbers (already minutes), ranges such as "2-3 hours"
    (the midpoint is used) and single values such as "30 minutes". A working
    day counts as eight hours. Anything unparseable ("Ongoing") is one hour.

    Examples:
        >>> parse_time_estimate("2-3 hours")
        150.0
        >>> parse_time_estimate("Ongoing")
        60.0
    """
    if value is None:
        return DEFAULT_DURATION_MINUTES
    if isinstance(value, int | float):
        return float(value)

    text = value.strip().lower()
    match = _RANGE_PATTERN.search(text)
    if match:
        low, high, unit = match.groups()
        return (float(low) + float(high)) / 2 * _UNIT_MINUTES[unit.rstrip("s")]

    match = _SINGLE_PATTERN.search(text)
    if match:
        amount, unit = match.groups()
        return float(amount) * _UNIT_MINUTES[unit.rstrip("s")]

    try:
        return float(text)
    except ValueError:
        return DEFAULT_DURATION_MINUTES


# =============================================================================
# Runtime state
# =============================================================================


class ApprovalGateState(BaseModel):
    """Approval record for one gate of the active workflow."""

    after: str
    before: str | None = None
    approved: bool = False
    approved_at: datetime | None = None
    approval_requested_at: datetime | None = None
    timeout_minutes: int = 30
    metadata: dict[str, Any] = Field(default_factory=dict)


class PhaseProgress(BaseModel):
    """Progress of the current phase."""

    progress_percentage: int = Field(default=0, ge=0, le=100)
    documents_created: int = Field(default=0, ge=0)
    documents_total: int = Field(default=0, ge=0)
    started_at: datetime | None = None


class AutoSaveInfo(BaseModel):
    """Metadata written by the auto-save coordinator on every flush."""

    last_save: datetime
    save_count: int = 0
    triggers: list[dict[str, Any]] = Field(default_factory=list)


class WorkflowState(BaseModel):
    """Runtime state of the active workflow.

    Invariant: a pending approval gate blocks resumption
    (awaiting_approval_gate is not None implies can_resume is False).
    """

    version: str = "1.0"
    workflow_id: str | None = None
    active_workflow_type: str | None = None
    current_phase: str | None = None
    phase_index: int = Field(default=0, ge=0)
    phases_completed: list[str] = Field(default_factory=list)
    awaiting_approval_gate: str | None = None
    can_resume: bool = False
    completed: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_updated: datetime = Field(default_factory=datetime.now)
    approval_gates: dict[str, ApprovalGateState] = Field(default_factory=dict)
    phase_progress: PhaseProgress = Field(default_factory=PhaseProgress)
    phase_checkpoints: dict[str, datetime] = Field(default_factory=dict)
    options: dict[str, Any] = Field(default_factory=dict)
    auto_save: AutoSaveInfo | None = None

    @field_validator("phases_completed")
    @classmethod
    def _ordered_unique(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _gate_blocks_resume(self) -> WorkflowState:
        if self.awaiting_approval_gate is not None and self.can_resume:
            raise ValueError(
                f"can_resume must be false while awaiting approval gate "
                f"'{self.awaiting_approval_gate}'"
            )
        return self

    @property
    def is_active(self) -> bool:
        return self.workflow_id is not None


# =============================================================================
# Persistent state
# =============================================================================


class ProjectInfo(BaseModel):
    name: str | None = None
    type: str | None = None
    created: datetime | None = None


class DecisionRecord(BaseModel):
    id: str
    decision: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    workflow_type: str | None = None
    phase: str | None = None


class CheckpointIndexEntry(BaseModel):
    checkpoint_id: str
    name: str
    timestamp: datetime


class PhaseCompletionRecord(BaseModel):
    workflow_id: str
    workflow_type: str
    phase: str
    completed_at: datetime
    duration_minutes: float | None = None


class ApprovalRecord(BaseModel):
    workflow_id: str
    gate: str
    approved_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class RestoreRecord(BaseModel):
    checkpoint_id: str
    restored_at: datetime


class Metrics(BaseModel):
    """Monotonic counters (all non-negative)."""

    total_documents: int = Field(default=0, ge=0)
    total_decisions: int = Field(default=0, ge=0)
    total_approvals: int = Field(default=0, ge=0)
    total_phases: int = Field(default=0, ge=0)
    total_checkpoints: int = Field(default=0, ge=0)
    total_restores: int = Field(default=0, ge=0)
    total_workflows: int = Field(default=0, ge=0)


class Velocity(BaseModel):
    """Running average of phase durations."""

    average_phase_minutes: float = Field(default=0.0, ge=0)
    samples: int = Field(default=0, ge=0)

    def add_sample(self, minutes: float) -> None:
        total = self.average_phase_minutes * self.samples + minutes
        self.samples += 1
        self.average_phase_minutes = total / self.samples


class PersistentState(BaseModel):
    """Historical state that survives workflow resets.

    Never replaced wholesale by the engine: logs are appended to and
    counters incremented.
    """

    version: str = "1.0"
    project: ProjectInfo = Field(default_factory=ProjectInfo)
    decisions: list[DecisionRecord] = Field(default_factory=list)
    checkpoints: list[CheckpointIndexEntry] = Field(default_factory=list)
    phases_completed: list[PhaseCompletionRecord] = Field(default_factory=list)
    approvals: list[ApprovalRecord] = Field(default_factory=list)
    restores: list[RestoreRecord] = Field(default_factory=list)
    documents_created: int = Field(default=0, ge=0)
    metrics: Metrics = Field(default_factory=Metrics)
    velocity: Velocity = Field(default_factory=Velocity)


# =============================================================================
# Phase definitions and execution plans
# =============================================================================


class ResourceRequirements(BaseModel):
    """Per-execution resource demand across every pool dimension."""

    model_config = ConfigDict(frozen=True)

    memory: float = Field(default=50.0, ge=0)
    cpu: float = Field(default=10.0, ge=0)
    file_handles: float = Field(default=5.0, ge=0)

    def as_dict(self) -> dict[str, float]:
        return {"memory": self.memory, "cpu": self.cpu, "file_handles": self.file_handles}


class PhaseDefinition(BaseModel):
    """Caller-supplied phase description, immutable for one scheduling pass."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str | None = None
    category: str | None = None
    dependencies: tuple[str, ...] = ()
    estimated_duration: float = Field(default=DEFAULT_DURATION_MINUTES, ge=0)
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    approval_gate_after: str | None = None

    @field_validator("estimated_duration", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_time_estimate(value)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalize_dependencies(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        return tuple(dict.fromkeys(value))

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Wave(BaseModel):
    """Phases with no dependency among them, scheduled concurrently."""

    index: int
    phase_ids: list[str]
    forced: bool = False
    estimated_duration: float = 0.0


class ExecutionPlan(BaseModel):
    """Ordered waves plus sequential/parallel time estimates (minutes)."""

    waves: list[Wave] = Field(default_factory=list)
    definitions: dict[str, PhaseDefinition] = Field(default_factory=dict)
    sequential_time_estimate: float = 0.0
    parallel_time_estimate: float = 0.0
    reduction_percent: int = 0

    @property
    def forced(self) -> bool:
        """True if any wave was forced to break a dependency deadlock."""
        return any(wave.forced for wave in self.waves)

    @property
    def phase_ids(self) -> list[str]:
        return [phase_id for wave in self.waves for phase_id in wave.phase_ids]

    def wave_index_of(self, phase_id: str) -> int:
        for wave in self.waves:
            if phase_id in wave.phase_ids:
                return wave.index
        raise KeyError(phase_id)


class PhaseOutcome(BaseModel):
    """Settled result of one phase inside a wave."""

    phase_id: str
    wave_index: int
    status: PhaseStatus
    execution_id: str | None = None
    result: Any = None
    error: str | None = None
    error_type: ErrorType | None = None
    reason: ReasonCode | None = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == PhaseStatus.COMPLETED


class ExecutionReport(BaseModel):
    """Partition of a plan's phases into successful and failed."""

    successful: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    per_wave_results: list[list[PhaseOutcome]] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def outcome(self, phase_id: str) -> PhaseOutcome:
        for wave in self.per_wave_results:
            for outcome in wave:
                if outcome.phase_id == phase_id:
                    return outcome
        raise KeyError(phase_id)


# =============================================================================
# Errors and recovery
# =============================================================================


class ErrorRecord(BaseModel):
    """One failed attempt of a phase."""

    phase_id: str
    attempt: int
    classified_type: ErrorType
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)


class RecoveryOption(BaseModel):
    action: RecoveryAction
    description: str


class PhaseRunResult(BaseModel):
    """Outcome of a protected phase execution."""

    success: bool
    phase_id: str
    attempts: int
    result: Any = None
    skipped: bool = False
    safe_mode: bool = False
    error: str | None = None
    error_type: ErrorType | None = None
    history: list[ErrorRecord] = Field(default_factory=list)
    recovery_options: list[RecoveryOption] = Field(default_factory=list)


__all__ = [
    "parse_time_estimate",
    "ApprovalGateState",
    "PhaseProgress",
    "AutoSaveInfo",
    "WorkflowState",
    "ProjectInfo",
    "DecisionRecord",
    "CheckpointIndexEntry",
    "PhaseCompletionRecord",
    "ApprovalRecord",
    "RestoreRecord",
    "Metrics",
    "Velocity",
    "PersistentState",
    "ResourceRequirements",
    "PhaseDefinition",
    "Wave",
    "ExecutionPlan",
    "PhaseOutcome",
    "ExecutionReport",
    "ErrorRecord",
    "RecoveryOption",
    "PhaseRunResult",
]
