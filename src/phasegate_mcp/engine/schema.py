"""
YAML workflow-type schema with Pydantic v2 models.

A workflow type is an ordered list of phases with dependency metadata and
approval gates placed between phases. The schema validates:
- Required fields and types
- Unique phase and gate ids
- Dependency validity (known phases, no cycles)
- Gate placement (gates reference known phases, "before" follows "after")
"""

from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .dag import DAGResolver
from .models import PhaseDefinition, ResourceRequirements, parse_time_estimate
from .results import LoadResult

_ID_PATTERN = r"^[a-z0-9]+(-[a-z0-9]+)*$"


class PhaseSpec(BaseModel):
    """
    One phase of a workflow type.

    Attributes:
        id: Phase identifier (kebab-case)
        name: Display name
        description: What the phase produces
        category: Free-form grouping (e.g. "research", "delivery")
        estimated_duration: Minutes, or a range such as "2-3 hours"
        dependencies: Phase ids that must run before this one
        resources: Resource requirement of one execution
    """

    id: str = Field(pattern=_ID_PATTERN, min_length=1, max_length=100)
    name: str | None = None
    description: str | None = None
    category: str | None = None
    estimated_duration: str | float = "Ongoing"
    dependencies: list[str] = Field(default_factory=list)
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)

    model_config = {"extra": "forbid"}

    @property
    def estimated_minutes(self) -> float:
        return parse_time_estimate(self.estimated_duration)


class ApprovalGateSpec(BaseModel):
    """
    Approval gate between two phases.

    Attributes:
        id: Gate identifier (e.g. "post-research")
        after: Phase whose completion opens the gate
        before: Phase that starts once the gate is approved (informational)
        timeout_minutes: Minutes before a pending approval counts as timed out
        description: Shown to the approver
    """

    id: str = Field(pattern=_ID_PATTERN, min_length=1, max_length=100)
    after: str
    before: str | None = None
    timeout_minutes: int = Field(default=30, ge=1)
    description: str | None = None

    model_config = {"extra": "forbid"}


class WorkflowTypeSchema(BaseModel):
    """
    Complete workflow-type definition loaded from YAML.

    Example YAML:
        name: new-project
        description: Greenfield project from discovery to first sprint
        phases:
          - id: discovery
            estimated_duration: "2-3 hours"
          - id: research
            estimated_duration: "4-6 hours"
            dependencies: [discovery]
        approval_gates:
          - id: post-research
            after: research
            timeout_minutes: 30
    """

    name: str = Field(pattern=_ID_PATTERN, min_length=1, max_length=100)
    description: str = Field(min_length=1)
    version: str = Field(default="1.0", pattern=r"^\d+\.\d+(\.\d+)?$")
    tags: list[str] = Field(default_factory=list)
    phases: list[PhaseSpec] = Field(min_length=1)
    approval_gates: list[ApprovalGateSpec] = Field(default_factory=list)

    model_config = {"extra": "forbid"}

    @property
    def phase_ids(self) -> list[str]:
        return [phase.id for phase in self.phases]

    def phase(self, phase_id: str) -> PhaseSpec:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise KeyError(f"Phase '{phase_id}' not found in workflow type '{self.name}'")

    def gate(self, gate_id: str) -> ApprovalGateSpec | None:
        return next((gate for gate in self.approval_gates if gate.id == gate_id), None)

    def gate_after(self, phase_id: str) -> ApprovalGateSpec | None:
        """The gate opened by completing a phase, if any."""
        return next((gate for gate in self.approval_gates if gate.after == phase_id), None)

    def phase_definitions(self) -> dict[str, PhaseDefinition]:
        """Scheduler input for every phase, in declaration order."""
        definitions = {}
        for spec in self.phases:
            gate = self.gate_after(spec.id)
            definitions[spec.id] = PhaseDefinition(
                id=spec.id,
                name=spec.name,
                category=spec.category,
                dependencies=spec.dependencies,
                estimated_duration=spec.estimated_duration,
                resources=spec.resources,
                approval_gate_after=gate.id if gate else None,
            )
        return definitions

    def remaining_minutes(self, from_index: int) -> float:
        """Sum of estimated durations of phases from from_index onward."""
        return sum(phase.estimated_minutes for phase in self.phases[from_index:])

    @field_validator("phases")
    @classmethod
    def validate_unique_phase_ids(cls, v: list[PhaseSpec]) -> list[PhaseSpec]:
        """Ensure all phase IDs are unique."""
        phase_ids = [phase.id for phase in v]
        if len(phase_ids) != len(set(phase_ids)):
            duplicates = sorted({pid for pid in phase_ids if phase_ids.count(pid) > 1})
            raise ValueError(f"Duplicate phase IDs found: {duplicates}")
        return v

    @field_validator("approval_gates")
    @classmethod
    def validate_unique_gate_ids(cls, v: list[ApprovalGateSpec]) -> list[ApprovalGateSpec]:
        gate_ids = [gate.id for gate in v]
        if len(gate_ids) != len(set(gate_ids)):
            duplicates = sorted({gid for gid in gate_ids if gate_ids.count(gid) > 1})
            raise ValueError(f"Duplicate approval gate IDs found: {duplicates}")
        return v

    @model_validator(mode="after")
    def validate_dependencies(self) -> "WorkflowTypeSchema":
        """Validate that dependencies reference existing phases and form a DAG."""
        resolver = DAGResolver(
            self.phase_ids, {phase.id: phase.dependencies for phase in self.phases}
        )
        result = resolver.topological_sort()
        if result.is_failure:
            raise ValueError(f"Invalid phase dependencies: {result.error}")
        return self

    @model_validator(mode="after")
    def validate_gate_placement(self) -> "WorkflowTypeSchema":
        """Validate that gates sit between known phases, at most one per phase."""
        order = {phase_id: index for index, phase_id in enumerate(self.phase_ids)}
        seen_after: set[str] = set()

        for gate in self.approval_gates:
            if gate.after not in order:
                raise ValueError(f"Gate '{gate.id}' follows unknown phase '{gate.after}'")
            if gate.after in seen_after:
                raise ValueError(f"Phase '{gate.after}' has more than one approval gate")
            seen_after.add(gate.after)

            if gate.before is not None:
                if gate.before not in order:
                    raise ValueError(f"Gate '{gate.id}' precedes unknown phase '{gate.before}'")
                if order[gate.before] <= order[gate.after]:
                    raise ValueError(
                        f"Gate '{gate.id}': phase '{gate.before}' must come after '{gate.after}'"
                    )

        return self

    @staticmethod
    def validate_yaml_dict(data: dict[str, Any]) -> LoadResult["WorkflowTypeSchema"]:
        """
        Validate YAML dictionary against schema with detailed error messages.

        Returns:
            LoadResult.success(WorkflowTypeSchema) if valid
            LoadResult.failure(error_message) with validation errors
        """
        try:
            return LoadResult.success(WorkflowTypeSchema(**data))
        except ValidationError as e:
            return LoadResult.failure(f"Workflow type validation failed:\n{e}")
        except TypeError as e:
            return LoadResult.failure(f"Workflow type validation failed: {e}")


__all__ = ["PhaseSpec", "ApprovalGateSpec", "WorkflowTypeSchema"]
