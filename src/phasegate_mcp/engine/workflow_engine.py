"""
Workflow engine facade.

Wires the state store, resource pool, scheduler, phase state machine, error
recovery manager and auto-save coordinator into one explicitly constructed
object, and exposes the control surface. Every control operation returns a
ControlResult; engine exceptions (PhaseGateError) never escape it, with the
single exception of an unreadable checkpoint archive during phase execution,
which is surfaced as a failed result with reason
checkpoint_archive_unreadable and no retry.

Architecture:
    WorkflowEngine
      ├─ StateStore            (runtime / persistent / configuration, checkpoints)
      ├─ PhaseStateMachine     (transitions, gates)      ─┐
      ├─ AutoSaveCoordinator   (debounced saves)          ├─ share the store
      ├─ ErrorRecoveryManager  (retry, restore, safe mode)┘
      └─ DependencyScheduler   (waves) ── ResourcePool

Example:
    engine = await WorkflowEngine.open(StateConfig.for_cwd(), registry)
    await engine.initialize_workflow("new-project")
    result = await engine.run_current_phase(my_executor)
    if result.success:
        await engine.complete_phase(result.data["result"])
    await engine.close()
"""

from __future__ import annotations

import logging
from typing import Any

from .autosave import AutoSaveCoordinator
from .configuration import Configuration
from .exceptions import (
    CheckpointArchiveError,
    NoActiveWorkflowError,
    PhaseGateError,
    ReasonCode,
    WorkflowCompleteError,
)
from .models import ErrorRecord, ExecutionPlan, PhaseDefinition
from .phase_executor import PhaseExecutor
from .phase_status import PhaseStatus, SaveTrigger, StateTier
from .recovery import ErrorRecoveryManager
from .registry import WorkflowTypeRegistry
from .resource_pool import ResourcePool
from .results import ControlResult
from .scheduler import DependencyScheduler
from .state_config import StateConfig
from .state_machine import PhaseStateMachine
from .state_store import StateStore

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Control surface over one project's workflow state.

    Use WorkflowEngine.open() to build an engine from a state directory;
    the constructor accepts already-built collaborators for tests.
    """

    def __init__(
        self,
        store: StateStore,
        registry: WorkflowTypeRegistry,
        configuration: Configuration | None = None,
        pool: ResourcePool | None = None,
    ):
        self.store = store
        self.registry = registry
        self.configuration = configuration or Configuration()
        cfg = self.configuration
        store.max_checkpoints = cfg.checkpoint.max_checkpoints

        self.pool = pool or ResourcePool.from_settings(cfg.resources)
        self.scheduler = DependencyScheduler(
            self.pool,
            resources=cfg.resources,
            settings=cfg.scheduler,
            max_concurrency=cfg.preferences.parallel_agents,
        )
        self.machine = PhaseStateMachine(store, registry)
        self.autosave = AutoSaveCoordinator(store, self.machine.persist_snapshot, cfg.auto_save)
        self.machine.autosave = self.autosave
        self.recovery = ErrorRecoveryManager(
            store,
            cfg.retry,
            on_error=self._on_phase_error,
            restore=self.machine.restore_checkpoint,
        )

    @classmethod
    async def open(
        cls,
        config: StateConfig,
        registry: WorkflowTypeRegistry,
        max_retries: int | None = None,
        max_checkpoints: int | None = None,
    ) -> WorkflowEngine:
        """Initialize the state directory, load configuration and start auto-save.

        Args:
            config: State directory layout
            registry: Workflow types
            max_retries: Override of configuration retry.max_retries
            max_checkpoints: Override of configuration checkpoint.max_checkpoints
        """
        store = StateStore(config)
        await store.init()
        configuration = await store.load_configuration()

        if max_retries is not None:
            configuration.retry.max_retries = max_retries
        if max_checkpoints is not None:
            configuration.checkpoint.max_checkpoints = max_checkpoints

        engine = cls(store, registry, configuration)
        await engine.start()
        return engine

    async def start(self) -> None:
        await self.machine.reload()
        await self.autosave.start()
        logger.info(f"WorkflowEngine started (state root: {self.store.config.root})")

    async def close(self) -> None:
        """Stop auto-save; queued triggers are flushed first."""
        await self.autosave.stop()
        logger.info("WorkflowEngine closed")

    # =========================================================================
    # Control surface
    # =========================================================================

    async def status(self) -> ControlResult:
        status = await self.machine.status()
        if not status["active"]:
            return ControlResult.ok("No active workflow", **status)
        return ControlResult.ok(
            f"Workflow {status['workflow_id']} at phase {status['current_phase']}", **status
        )

    async def initialize_workflow(
        self, workflow_type: str, options: dict[str, Any] | None = None
    ) -> ControlResult:
        try:
            state = await self.machine.initialize_workflow(workflow_type, options)
        except PhaseGateError as e:
            return ControlResult.from_error(e)
        return ControlResult.ok(
            f"Initialized {workflow_type} workflow at phase {state.current_phase}",
            workflow_id=state.workflow_id,
            current_phase=state.current_phase,
        )

    async def resume(self) -> ControlResult:
        try:
            state = await self.machine.resume()
        except PhaseGateError as e:
            return ControlResult.from_error(e)
        return ControlResult.ok(
            f"Resumed at phase {state.current_phase}",
            current_phase=state.current_phase,
            phase_index=state.phase_index,
        )

    async def approve_gate(
        self, gate: str, metadata: dict[str, Any] | None = None
    ) -> ControlResult:
        try:
            state = await self.machine.approve_gate(gate, metadata)
        except PhaseGateError as e:
            return ControlResult.from_error(e)
        message = (
            f"Gate {gate} approved; workflow completed"
            if state.completed
            else f"Gate {gate} approved; now at phase {state.current_phase}"
        )
        return ControlResult.ok(
            message, gate=gate, current_phase=state.current_phase, completed=state.completed
        )

    async def complete_phase(self, result: dict[str, Any] | None = None) -> ControlResult:
        try:
            before = await self.machine.snapshot()
            state = await self.machine.complete_phase(result)
        except PhaseGateError as e:
            return ControlResult.from_error(e)

        data = {
            "completed_phase": before.current_phase,
            "current_phase": state.current_phase,
            "awaiting_approval_gate": state.awaiting_approval_gate,
            "can_resume": state.can_resume,
            "completed": state.completed,
        }
        if state.awaiting_approval_gate:
            message = (
                f"Phase {before.current_phase} completed; "
                f"approval required at gate {state.awaiting_approval_gate}"
            )
        elif state.completed:
            message = f"Phase {before.current_phase} completed; workflow completed"
        else:
            message = f"Phase {before.current_phase} completed; now at phase {state.current_phase}"
        return ControlResult.ok(message, **data)

    async def create_checkpoint(self, name: str | None = None) -> ControlResult:
        """Flush pending auto-saves, then snapshot every tier."""
        try:
            await self.autosave.flush()
            checkpoint_id = await self.store.create_checkpoint(name)
        except PhaseGateError as e:
            return ControlResult.from_error(e)
        self.autosave.register_trigger(
            SaveTrigger.CHECKPOINT_CREATION, {"checkpoint_id": checkpoint_id}
        )
        return ControlResult.ok(f"Checkpoint created: {checkpoint_id}", checkpoint_id=checkpoint_id)

    async def restore_checkpoint(self, checkpoint_id: str | None = None) -> ControlResult:
        """Restore the runtime tier from a checkpoint (latest if no id)."""
        try:
            await self.autosave.flush()
            checkpoint = await self.machine.restore_checkpoint(checkpoint_id)
        except PhaseGateError as e:
            return ControlResult.from_error(e)
        state = await self.machine.snapshot()
        return ControlResult.ok(
            f"Restored checkpoint {checkpoint.checkpoint_id} ({checkpoint.name})",
            checkpoint_id=checkpoint.checkpoint_id,
            name=checkpoint.name,
            current_phase=state.current_phase,
        )

    async def list_checkpoints(self) -> ControlResult:
        try:
            checkpoints = await self.store.list_checkpoints()
        except PhaseGateError as e:
            return ControlResult.from_error(e)
        return ControlResult.ok(
            f"{len(checkpoints)} checkpoint(s)",
            checkpoints=[
                {
                    "checkpoint_id": cp.checkpoint_id,
                    "name": cp.name,
                    "timestamp": cp.timestamp.isoformat(),
                }
                for cp in reversed(checkpoints)
            ],
        )

    async def get_error_stats(self) -> ControlResult:
        stats = self.recovery.get_error_stats()
        return ControlResult.ok(f"{stats['total']} error(s) recorded", **stats)

    async def update_phase_progress(
        self,
        documents_created: int | None = None,
        documents_total: int | None = None,
        progress_percentage: int | None = None,
    ) -> ControlResult:
        try:
            progress = await self.machine.update_phase_progress(
                documents_created, documents_total, progress_percentage
            )
        except PhaseGateError as e:
            return ControlResult.from_error(e)
        return ControlResult.ok(
            f"Phase progress {progress.progress_percentage}%",
            **progress.model_dump(mode="json"),
        )

    async def record_decision(
        self, decision: str, metadata: dict[str, Any] | None = None
    ) -> ControlResult:
        record = await self.machine.record_decision(decision, metadata)
        return ControlResult.ok(
            f"Decision recorded: {record.id}", **record.model_dump(mode="json")
        )

    async def check_approval_timeout(self) -> ControlResult:
        info = await self.machine.check_approval_timeout()
        if not info["awaiting_approval"]:
            return ControlResult.ok("No approval pending", **info)
        state = "timed out" if info["timed_out"] else f"{info['remaining_minutes']} minute(s) left"
        return ControlResult.ok(f"Gate {info['gate']}: {state}", **info)

    async def verify_integrity(self) -> ControlResult:
        """Compare every state document against its recorded checksum."""
        reports = [await self.store.verify_integrity(tier) for tier in StateTier]
        if all(report["valid"] for report in reports):
            return ControlResult.ok("All state documents match their checksums", tiers=reports)
        mismatched = [report["tier"] for report in reports if not report["valid"]]
        return ControlResult.ok(
            f"Checksum mismatch or missing checksum: {', '.join(mismatched)}", tiers=reports
        )

    # =========================================================================
    # Execution
    # =========================================================================

    async def plan_phases(
        self,
        phase_ids: list[str] | None = None,
        definitions: dict[str, PhaseDefinition] | None = None,
    ) -> ControlResult:
        """Plan waves for phases of the active workflow type (default: all)."""
        try:
            plan = await self._plan(phase_ids, definitions)
        except PhaseGateError as e:
            return ControlResult.from_error(e)
        return ControlResult.ok(
            f"{len(plan.phase_ids)} phase(s) in {len(plan.waves)} wave(s)",
            plan=plan.model_dump(mode="json", exclude={"definitions"}),
        )

    async def run_phases(
        self,
        phase_ids: list[str],
        executor: PhaseExecutor,
        context: dict[str, Any] | None = None,
        definitions: dict[str, PhaseDefinition] | None = None,
    ) -> ControlResult:
        """Plan and execute phases wave by wave under error recovery.

        The result's data holds the ExecutionReport partition. A failed
        result is returned only for planning errors and for an unreadable
        checkpoint archive; phase failures are reported in data["failed"].
        """
        try:
            plan = await self._plan(phase_ids, definitions)
            report = await self.scheduler.execute(
                plan, executor, context, runner=self.recovery.run_protected
            )
        except CheckpointArchiveError as e:
            logger.error(f"Checkpoint archive unusable, aborting execution: {e.message}")
            return ControlResult.from_error(e)
        except PhaseGateError as e:
            return ControlResult.from_error(e)

        return ControlResult.ok(
            f"{len(report.successful)} phase(s) succeeded, {len(report.failed)} failed",
            successful=report.successful,
            failed=report.failed,
            skipped=[
                outcome.phase_id
                for wave in report.per_wave_results
                for outcome in wave
                if outcome.status == PhaseStatus.SKIPPED
            ],
            results={
                outcome.phase_id: outcome.result
                for wave in report.per_wave_results
                for outcome in wave
                if outcome.success
            },
            waves=[
                [outcome.model_dump(mode="json", exclude={"result"}) for outcome in wave]
                for wave in report.per_wave_results
            ],
            duration_seconds=report.duration_seconds,
        )

    async def run_current_phase(
        self, executor: PhaseExecutor, context: dict[str, Any] | None = None
    ) -> ControlResult:
        """Execute the current phase of the active workflow under error recovery.

        The phase is not completed automatically; call complete_phase() with
        the returned result once it has been reviewed.
        """
        state = await self.machine.snapshot()
        try:
            if not state.is_active:
                raise NoActiveWorkflowError()
            if state.completed or state.current_phase is None:
                raise WorkflowCompleteError(state.workflow_id)
            definition = self.registry.get(state.active_workflow_type or "").phase_definitions()[
                state.current_phase
            ]
            outcome = await self.recovery.run_protected(executor, definition, context)
        except PhaseGateError as e:
            return ControlResult.from_error(e)

        data = outcome.model_dump(mode="json", exclude={"result"})
        data["result"] = outcome.result
        if outcome.success:
            return ControlResult.ok(f"Phase {definition.display_name} succeeded", **data)
        return ControlResult.fail(
            ReasonCode.PHASE_FAILED,
            f"Phase {definition.display_name} failed after {outcome.attempts} attempt(s): "
            f"{outcome.error}",
            **data,
        )

    async def _plan(
        self,
        phase_ids: list[str] | None,
        definitions: dict[str, PhaseDefinition] | None,
    ) -> ExecutionPlan:
        if definitions is None:
            state = await self.machine.snapshot()
            if not state.is_active:
                raise NoActiveWorkflowError()
            definitions = self.registry.get(state.active_workflow_type or "").phase_definitions()
        if phase_ids is None:
            phase_ids = list(definitions)
        return self.scheduler.plan(phase_ids, definitions)

    # =========================================================================
    # Callbacks
    # =========================================================================

    async def _on_phase_error(self, record: ErrorRecord) -> None:
        self.autosave.register_trigger(
            SaveTrigger.ERROR_OCCURRENCE,
            {"phase": record.phase_id, "type": record.classified_type.value},
        )


__all__ = ["WorkflowEngine"]
