"""Workflow orchestration and recovery engine.

Key Components:

- StateStore: Three-tier state persistence, checkpoints, validation and repair
- CheckpointArchive: Storage backend for immutable checkpoints (file or memory)
- ResourcePool: Multi-dimensional capacity tracker with all-or-nothing allocation
- DAGResolver: Dependency resolution via Kahn's algorithm (waves)
- DependencyScheduler: Wave planning and concurrent execution with resource gating
- PhaseStateMachine: Phase transitions and approval gates of the active workflow
- ErrorRecoveryManager: Error classification, retry, restore and safe mode
- AutoSaveCoordinator: Debounced, rate-limited persistence
- WorkflowTypeRegistry: Workflow-type definitions loaded from YAML
- WorkflowEngine: Facade exposing the control surface (ControlResult)

Architecture:
- No module-level state: every component is constructed with its collaborators
- PhaseGateError subclasses carry a ReasonCode; the facade converts them
- Pydantic v2 models for every persisted document
"""

from .autosave import AutoSaveCoordinator
from .checkpoint import Checkpoint
from .checkpoint_store import CheckpointArchive, FileCheckpointArchive, InMemoryCheckpointArchive
from .configuration import Configuration
from .dag import DAGResolver
from .exceptions import PhaseGateError, ReasonCode
from .models import (
    ExecutionPlan,
    ExecutionReport,
    PersistentState,
    PhaseDefinition,
    PhaseRunResult,
    ResourceRequirements,
    WorkflowState,
)
from .phase_status import ErrorType, PhaseStatus, RecoveryAction, SaveTrigger, StateTier
from .recovery import ErrorRecoveryManager, classify_error, determine_strategy
from .registry import BUILTIN_TEMPLATES_DIR, WorkflowTypeRegistry
from .resource_pool import ResourcePool
from .results import ControlResult, LoadResult
from .scheduler import DependencyScheduler
from .schema import WorkflowTypeSchema
from .state_config import StateConfig
from .state_machine import PhaseStateMachine
from .state_store import StateStore
from .validation import repair_state, validate_state
from .workflow_engine import WorkflowEngine

__all__ = [
    "AutoSaveCoordinator",
    "BUILTIN_TEMPLATES_DIR",
    "Checkpoint",
    "CheckpointArchive",
    "Configuration",
    "ControlResult",
    "DAGResolver",
    "DependencyScheduler",
    "ErrorRecoveryManager",
    "ErrorType",
    "ExecutionPlan",
    "ExecutionReport",
    "FileCheckpointArchive",
    "InMemoryCheckpointArchive",
    "LoadResult",
    "PersistentState",
    "PhaseDefinition",
    "PhaseGateError",
    "PhaseRunResult",
    "PhaseStateMachine",
    "PhaseStatus",
    "ReasonCode",
    "RecoveryAction",
    "ResourcePool",
    "ResourceRequirements",
    "SaveTrigger",
    "StateConfig",
    "StateStore",
    "StateTier",
    "WorkflowEngine",
    "WorkflowState",
    "WorkflowTypeRegistry",
    "WorkflowTypeSchema",
    "classify_error",
    "determine_strategy",
    "repair_state",
    "validate_state",
]
