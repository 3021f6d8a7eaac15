"""Validation and repair of raw state documents.

Validation runs in three passes, each only when the previous one found
nothing:

1. Shape: required fields exist, have the right JSON type, and counters are
   non-negative integers. The runtime invariant that a pending approval
   gate blocks resumption is checked here too.
2. Entries: every entry of the log collections (decisions, approvals,
   approval gates, ...) is checked against its record model. A bad entry
   is dropped on repair instead of resetting the whole collection.
3. Model: the document is validated by its pydantic model and every error
   location is mapped to the nearest field path that has a default.

A document that validates is therefore always accepted by its model, so
loading it never falls back to defaults.

Repair is pure and idempotent. Each field path maps to a FieldSpec carrying
the accepted JSON types and a constructor for a type-correct default. An
issue is only fixed if it still applies to the document being repaired, so
repairing an already repaired document is a no-op.

Example:
    report = validate_state(raw, StateTier.PERSISTENT)
    if not report.valid:
        raw = repair_state(report.issues, raw)
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from .configuration import Configuration
from .models import (
    ApprovalGateState,
    ApprovalRecord,
    CheckpointIndexEntry,
    DecisionRecord,
    PersistentState,
    PhaseCompletionRecord,
    RestoreRecord,
    WorkflowState,
)
from .phase_status import StateTier

_MISSING = object()


class IssueType(str, Enum):
    INVALID_DOCUMENT = "invalid_document"
    MISSING_FIELD = "missing_field"
    INVALID_STRUCTURE = "invalid_structure"
    INVALID_DATA = "invalid_data"
    INVALID_ENTRY = "invalid_entry"
    INVALID_VALUE = "invalid_value"
    INCONSISTENT_STATE = "inconsistent_state"


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class FieldSpec:
    """Accepted JSON types and default constructor for one field path."""

    types: tuple[type, ...]
    default: Callable[[], Any]
    optional: bool = False
    non_negative: bool = False


@dataclass(frozen=True)
class ValidationIssue:
    tier: StateTier
    type: IssueType
    severity: Severity
    field: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "type": self.type.value,
            "severity": self.severity.value,
            "field": self.field,
            "message": self.message,
        }


@dataclass
class ValidationReport:
    tier: StateTier
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues


_NUMBER = (int, float)


def _text(value: str) -> FieldSpec:
    return FieldSpec((str,), lambda: value)


def _counter(types: tuple[type, ...] = (int,)) -> FieldSpec:
    return FieldSpec(types, lambda: 0, non_negative=True)


def _listing() -> FieldSpec:
    return FieldSpec((list,), list)


def _mapping(factory: Callable[[], dict[str, Any]] = dict) -> FieldSpec:
    return FieldSpec((dict,), factory)


def _now() -> str:
    return datetime.now().isoformat()


def _metric_fields() -> dict[str, FieldSpec]:
    return {f"metrics.{name}": _counter() for name in PersistentState().metrics.model_dump()}


# Parents must precede their children: a rebuilt parent container makes the
# child issues stale, and stale issues are skipped during repair.
FIELD_SPECS: dict[StateTier, dict[str, FieldSpec]] = {
    StateTier.RUNTIME: {
        "version": _text("1.0"),
        "workflow_id": FieldSpec((str,), lambda: None, optional=True),
        "active_workflow_type": FieldSpec((str,), lambda: None, optional=True),
        "current_phase": FieldSpec((str,), lambda: None, optional=True),
        "phase_index": _counter(),
        "phases_completed": _listing(),
        "awaiting_approval_gate": FieldSpec((str,), lambda: None, optional=True),
        "can_resume": FieldSpec((bool,), lambda: False),
        "completed": FieldSpec((bool,), lambda: False),
        "last_updated": FieldSpec((str,), _now),
        "approval_gates": _mapping(),
        "phase_progress": _mapping(lambda: WorkflowState().phase_progress.model_dump(mode="json")),
        "phase_checkpoints": _mapping(),
        "options": _mapping(),
    },
    StateTier.PERSISTENT: {
        "version": _text("1.0"),
        "project": _mapping(lambda: PersistentState().project.model_dump(mode="json")),
        "decisions": _listing(),
        "checkpoints": _listing(),
        "phases_completed": _listing(),
        "approvals": _listing(),
        "restores": _listing(),
        "documents_created": _counter(),
        "metrics": _mapping(lambda: PersistentState().metrics.model_dump(mode="json")),
        **_metric_fields(),
        "velocity": _mapping(lambda: PersistentState().velocity.model_dump(mode="json")),
        "velocity.average_phase_minutes": _counter(_NUMBER),
        "velocity.samples": _counter(),
    },
    StateTier.CONFIGURATION: {
        "version": _text("1.0"),
        **{
            name: _mapping(lambda name=name: Configuration().model_dump(mode="json")[name])
            for name in (
                "preferences", "auto_save", "retry", "checkpoint", "resources", "scheduler"
            )
        },
    },
}

# Collections checked entry by entry (lists by index, mappings by key)
ENTRY_TYPES: dict[StateTier, dict[str, TypeAdapter[Any]]] = {
    StateTier.RUNTIME: {
        "phases_completed": TypeAdapter(str),
        "approval_gates": TypeAdapter(ApprovalGateState),
        "phase_checkpoints": TypeAdapter(datetime),
    },
    StateTier.PERSISTENT: {
        "decisions": TypeAdapter(DecisionRecord),
        "checkpoints": TypeAdapter(CheckpointIndexEntry),
        "phases_completed": TypeAdapter(PhaseCompletionRecord),
        "approvals": TypeAdapter(ApprovalRecord),
        "restores": TypeAdapter(RestoreRecord),
    },
    StateTier.CONFIGURATION: {},
}

_MODELS: dict[StateTier, type[BaseModel]] = {
    StateTier.RUNTIME: WorkflowState,
    StateTier.PERSISTENT: PersistentState,
    StateTier.CONFIGURATION: Configuration,
}


def default_document(tier: StateTier) -> dict[str, Any]:
    """Fresh default document for a tier, as plain JSON data."""
    return _MODELS[tier]().model_dump(mode="json")


def _get_path(document: dict[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set_path(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _parent_broken(document: dict[str, Any], path: str) -> bool:
    if "." not in path:
        return False
    parent = path.rsplit(".", 1)[0]
    return not isinstance(_get_path(document, parent), dict)


def _check_field(
    tier: StateTier, document: dict[str, Any], path: str, spec: FieldSpec
) -> ValidationIssue | None:
    value = _get_path(document, path)

    if value is _MISSING:
        if spec.optional:
            return None
        return ValidationIssue(
            tier, IssueType.MISSING_FIELD, Severity.ERROR, path, f"Missing required field: {path}"
        )

    if value is None and spec.optional:
        return None

    # bool is an int subclass; only accept it where bool is declared
    wrong_type = not isinstance(value, spec.types) or (
        isinstance(value, bool) and bool not in spec.types
    )
    if wrong_type:
        if spec.non_negative:
            expected = "an integer" if float not in spec.types else "a number"
            return ValidationIssue(
                tier, IssueType.INVALID_DATA, Severity.WARNING, path, f"{path} must be {expected}"
            )
        expected = " or ".join(t.__name__ for t in spec.types)
        return ValidationIssue(
            tier,
            IssueType.INVALID_STRUCTURE,
            Severity.ERROR,
            path,
            f"{path} must be {expected}, got {type(value).__name__}",
        )

    if spec.non_negative and value < 0:
        return ValidationIssue(
            tier, IssueType.INVALID_DATA, Severity.WARNING, path, f"{path} must be non-negative"
        )
    return None


def _gate_blocks_resume(document: dict[str, Any]) -> bool:
    return bool(document.get("awaiting_approval_gate")) and document.get("can_resume") is True


def _entries(collection: Any) -> list[tuple[Any, Any]]:
    if isinstance(collection, dict):
        return list(collection.items())
    if isinstance(collection, list):
        return list(enumerate(collection))
    return []


def _entry_valid(adapter: TypeAdapter[Any], entry: Any) -> bool:
    try:
        adapter.validate_python(entry)
    except ValidationError:
        return False
    return True


def _entry_issues(tier: StateTier, document: dict[str, Any]) -> list[ValidationIssue]:
    issues = []
    for name, adapter in ENTRY_TYPES[tier].items():
        entries = _entries(document.get(name))
        bad = [key for key, entry in entries if not _entry_valid(adapter, entry)]
        if bad:
            issues.append(
                ValidationIssue(
                    tier,
                    IssueType.INVALID_ENTRY,
                    Severity.WARNING,
                    name,
                    f"{name} has {len(bad)} invalid entr{'y' if len(bad) == 1 else 'ies'}: "
                    f"{', '.join(str(key) for key in bad)}",
                )
            )
    return issues


def _resettable_path(tier: StateTier, loc: tuple[Any, ...]) -> str | None:
    """Nearest prefix of an error location that exists in the default document."""
    defaults = default_document(tier)
    parts = [str(part) for part in loc]
    while parts:
        path = ".".join(parts)
        if _get_path(defaults, path) is not _MISSING:
            return path
        parts.pop()
    return None


def _model_errors(tier: StateTier, document: dict[str, Any]) -> dict[str, str]:
    """Field path -> first pydantic error message for that path."""
    try:
        _MODELS[tier].model_validate(document)
    except ValidationError as e:
        errors: dict[str, str] = {}
        for error in e.errors():
            path = _resettable_path(tier, tuple(error["loc"]))
            if path is not None:
                errors.setdefault(path, error["msg"])
        return errors
    return {}


def validate_state(state: Any, tier: StateTier) -> ValidationReport:
    """Check a raw state document.

    Args:
        state: Decoded JSON document (any value; non-dicts are reported)
        tier: Which state tier the document belongs to

    Returns:
        ValidationReport listing every issue found (empty when valid)
    """
    report = ValidationReport(tier=tier)

    if not isinstance(state, dict):
        report.issues.append(
            ValidationIssue(
                tier,
                IssueType.INVALID_DOCUMENT,
                Severity.CRITICAL,
                None,
                f"State document must be an object, got {type(state).__name__}",
            )
        )
        return report

    for path, spec in FIELD_SPECS[tier].items():
        if _parent_broken(state, path):
            continue
        issue = _check_field(tier, state, path, spec)
        if issue is not None:
            report.issues.append(issue)

    if tier == StateTier.RUNTIME and _gate_blocks_resume(state):
        report.issues.append(
            ValidationIssue(
                tier,
                IssueType.INCONSISTENT_STATE,
                Severity.ERROR,
                "can_resume",
                "can_resume is true while an approval gate is pending",
            )
        )
    if report.issues:
        return report

    report.issues.extend(_entry_issues(tier, state))
    if report.issues:
        return report

    for path, message in _model_errors(tier, state).items():
        report.issues.append(
            ValidationIssue(
                tier, IssueType.INVALID_VALUE, Severity.WARNING, path, f"{path}: {message}"
            )
        )
    return report


def _drop_invalid_entries(tier: StateTier, document: dict[str, Any], name: str) -> None:
    adapter = ENTRY_TYPES[tier].get(name)
    collection = document.get(name)
    if adapter is None:
        return
    if isinstance(collection, dict):
        document[name] = {k: v for k, v in collection.items() if _entry_valid(adapter, v)}
    elif isinstance(collection, list):
        document[name] = [entry for entry in collection if _entry_valid(adapter, entry)]


def _reset_to_default(tier: StateTier, document: dict[str, Any], path: str) -> None:
    spec = FIELD_SPECS[tier].get(path)
    if spec is not None:
        value = spec.default()
    else:
        value = copy.deepcopy(_get_path(default_document(tier), path))
        if value is _MISSING:
            return
    _set_path(document, path, value)


def repair_state(issues: list[ValidationIssue], state: Any) -> Any:
    """Return a repaired copy of state; the input is never mutated.

    Missing fields and wrongly shaped fields are replaced by their default
    (nested containers are rebuilt whole), invalid counters are reset to
    zero, invalid log entries are dropped, values the model rejects are
    reset to the model default, and an inconsistent gate/resume pair is
    resolved by blocking resumption. Issues that no longer apply are
    skipped, which makes the operation idempotent.
    """
    if not issues:
        return copy.deepcopy(state)

    document_issue = next((i for i in issues if i.type == IssueType.INVALID_DOCUMENT), None)
    if document_issue is not None and not isinstance(state, dict):
        return default_document(document_issue.tier)
    if not isinstance(state, dict):
        return copy.deepcopy(state)

    repaired = copy.deepcopy(state)
    model_errors: dict[str, str] | None = None

    for issue in issues:
        if issue.type == IssueType.INCONSISTENT_STATE:
            if _gate_blocks_resume(repaired):
                repaired["can_resume"] = False
            continue

        if issue.field is None:
            continue

        if issue.type == IssueType.INVALID_ENTRY:
            _drop_invalid_entries(issue.tier, repaired, issue.field)
            continue

        if issue.type == IssueType.INVALID_VALUE:
            if model_errors is None:
                model_errors = _model_errors(issue.tier, repaired)
            if issue.field in model_errors and not _parent_broken(repaired, issue.field):
                _reset_to_default(issue.tier, repaired, issue.field)
            continue

        spec = FIELD_SPECS[issue.tier].get(issue.field)
        if spec is None or _parent_broken(repaired, issue.field):
            continue
        if _check_field(issue.tier, repaired, issue.field, spec) is None:
            continue

        if issue.type == IssueType.INVALID_DATA:
            _set_path(repaired, issue.field, 0)
        else:
            _set_path(repaired, issue.field, spec.default())

    return repaired


def repair_until_valid(
    state: Any, tier: StateTier, report: ValidationReport | None = None, max_rounds: int = 3
) -> tuple[Any, list[ValidationIssue]]:
    """Repair a document until it validates, one validation pass per round.

    Returns:
        (repaired document, every issue that was repaired)
    """
    report = report or validate_state(state, tier)
    repaired = state
    applied: list[ValidationIssue] = []
    for _ in range(max_rounds):
        if report.valid:
            break
        repaired = repair_state(report.issues, repaired)
        applied.extend(report.issues)
        report = validate_state(repaired, tier)
    return repaired, applied


__all__ = [
    "IssueType",
    "Severity",
    "FieldSpec",
    "ValidationIssue",
    "ValidationReport",
    "FIELD_SPECS",
    "ENTRY_TYPES",
    "default_document",
    "validate_state",
    "repair_state",
    "repair_until_valid",
]
