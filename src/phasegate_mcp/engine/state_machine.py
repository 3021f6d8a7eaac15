"""Phase state machine for the active workflow.

States are the declared phases of the active workflow type, plus an
orthogonal "awaiting approval" sub-state. Transitions:

    initialize_workflow(type)   -> first phase, can_resume = True
    complete_phase(result)      -> next phase, or awaiting the gate that
                                   follows the phase (current phase kept)
    approve_gate(gate)          -> only when that gate is pending; clears it,
                                   can_resume = True, advances past the gate
    resume()                    -> rejected while a gate is pending

Completing the final phase marks the workflow completed. Illegal transitions
raise a PhaseGateError subclass carrying a ReasonCode. Every transition is
written through the StateStore before it becomes visible; if the write fails
the in-memory state is left unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .checkpoint import Checkpoint
from .exceptions import (
    ApprovalPendingError,
    GateNotPendingError,
    NoActiveWorkflowError,
    PhaseGateError,
    ReasonCode,
    ResumeBlockedError,
    WorkflowCompleteError,
)
from .models import (
    ApprovalGateState,
    ApprovalRecord,
    AutoSaveInfo,
    DecisionRecord,
    PersistentState,
    PhaseCompletionRecord,
    PhaseProgress,
    WorkflowState,
)
from .phase_status import SaveTrigger, StateTier
from .registry import WorkflowTypeRegistry
from .schema import WorkflowTypeSchema
from .state_store import StateStore

if TYPE_CHECKING:
    from .autosave import AutoSaveCoordinator

logger = logging.getLogger(__name__)


class PhaseStateMachine:
    """Owns the canonical WorkflowState and enforces legal transitions.

    Args:
        store: Where transitions are persisted
        registry: Resolves workflow types
        autosave: Receives save triggers for non-transition mutations
            (progress, decisions); without it those are saved immediately

    Example:
        machine = PhaseStateMachine(store, registry)
        await machine.initialize_workflow("new-project")
        await machine.complete_phase()              # discovery done
        await machine.complete_phase()              # research done, gate opens
        await machine.approve_gate("post-research") # now in analysis
    """

    def __init__(
        self,
        store: StateStore,
        registry: WorkflowTypeRegistry,
        autosave: AutoSaveCoordinator | None = None,
    ):
        self.store = store
        self.registry = registry
        self.autosave = autosave
        self._state: WorkflowState | None = None
        self._lock = asyncio.Lock()

    # =========================================================================
    # Loading
    # =========================================================================

    async def reload(self) -> WorkflowState:
        """Re-read the runtime tier from the store (e.g. after a restore)."""
        async with self._lock:
            self._state = await self.store.load_workflow_state()
            return self._state.model_copy(deep=True)

    async def restore_checkpoint(self, checkpoint_id: str | None = None) -> Checkpoint:
        """Restore the runtime tier from a checkpoint and adopt it as current.

        The state lock is held from the write until the reload, so no
        concurrent save can put the replaced state back on disk.

        Raises:
            CheckpointNotFoundError: Unknown id, or the archive is empty
        """
        async with self._lock:
            checkpoint = await self.store.restore_checkpoint(checkpoint_id)
            self._state = await self.store.load_workflow_state()
        return checkpoint

    async def snapshot(self) -> WorkflowState:
        """Deep copy of the current state."""
        async with self._lock:
            return (await self._current()).model_copy(deep=True)

    async def _current(self) -> WorkflowState:
        if self._state is None:
            self._state = await self.store.load_workflow_state()
        return self._state

    # =========================================================================
    # Transitions
    # =========================================================================

    async def initialize_workflow(
        self, workflow_type: str, options: dict[str, Any] | None = None
    ) -> WorkflowState:
        """Reset runtime state and start a workflow at its first phase.

        Raises:
            UnknownWorkflowTypeError: workflow_type is not registered
        """
        definition = self.registry.get(workflow_type)
        now = datetime.now()
        options = dict(options or {})

        state = WorkflowState(
            workflow_id=f"{workflow_type}-{now:%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6]}",
            active_workflow_type=workflow_type,
            current_phase=definition.phases[0].id,
            phase_index=0,
            can_resume=True,
            started_at=now,
            approval_gates={
                gate.id: ApprovalGateState(
                    after=gate.after,
                    before=gate.before,
                    timeout_minutes=gate.timeout_minutes,
                )
                for gate in definition.approval_gates
            },
            phase_progress=PhaseProgress(started_at=now),
            options=options,
        )

        async with self._lock:
            await self._commit(state)

        def _record(persistent: PersistentState) -> None:
            if persistent.project.created is None:
                persistent.project.created = now
                persistent.project.type = workflow_type
                persistent.project.name = options.get("project_name")
            persistent.metrics.total_workflows += 1

        await self.store.update_persistent(_record)

        logger.info(f"Initialized workflow {state.workflow_id} at phase {state.current_phase}")
        return state.model_copy(deep=True)

    async def complete_phase(self, result: dict[str, Any] | None = None) -> WorkflowState:
        """Mark the current phase complete and advance or open its gate.

        Args:
            result: Optional phase result; an integer "documents_created"
                entry is added to the persistent document count

        Raises:
            NoActiveWorkflowError, WorkflowCompleteError, ApprovalPendingError
        """
        now = datetime.now()
        async with self._lock:
            state = self._editable(await self._current())
            definition = self.registry.get(state.active_workflow_type or "")
            phase = state.current_phase or definition.phase_ids[state.phase_index]

            if phase not in state.phases_completed:
                state.phases_completed.append(phase)
            state.phase_checkpoints[phase] = now
            started = state.phase_progress.started_at
            duration = (now - started).total_seconds() / 60 if started else None

            gate = definition.gate_after(phase)
            gate_state = state.approval_gates.get(gate.id) if gate else None
            if gate is not None and gate_state is not None and not gate_state.approved:
                state.awaiting_approval_gate = gate.id
                state.can_resume = False
                gate_state.approval_requested_at = now
                logger.info(f"Phase {phase} completed; awaiting approval at gate {gate.id}")
            else:
                self._advance(state, definition, now)
                logger.info(f"Phase {phase} completed; now at {state.current_phase}")

            await self._commit(state)
            workflow_id = state.workflow_id or ""
            workflow_type = state.active_workflow_type or ""

        documents = (result or {}).get("documents_created")

        def _record(persistent: PersistentState) -> None:
            persistent.phases_completed.append(
                PhaseCompletionRecord(
                    workflow_id=workflow_id,
                    workflow_type=workflow_type,
                    phase=phase,
                    completed_at=now,
                    duration_minutes=duration,
                )
            )
            persistent.metrics.total_phases += 1
            if duration is not None:
                persistent.velocity.add_sample(duration)
            if isinstance(documents, int) and documents > 0:
                persistent.documents_created += documents
                persistent.metrics.total_documents += documents

        await self.store.update_persistent(_record)
        return state.model_copy(deep=True)

    async def approve_gate(
        self, gate: str, metadata: dict[str, Any] | None = None
    ) -> WorkflowState:
        """Approve the pending gate and advance to the phase after it.

        Raises:
            NoActiveWorkflowError
            GateNotPendingError: gate is not the pending one (or none is pending)
        """
        now = datetime.now()
        async with self._lock:
            current = await self._current()
            if not current.is_active:
                raise NoActiveWorkflowError()
            if current.awaiting_approval_gate != gate:
                raise GateNotPendingError(gate, current.awaiting_approval_gate)

            state = current.model_copy(deep=True)
            definition = self.registry.get(state.active_workflow_type or "")
            gate_state = state.approval_gates.setdefault(
                gate, ApprovalGateState(after=state.current_phase or "")
            )
            gate_state.approved = True
            gate_state.approved_at = now
            gate_state.metadata = dict(metadata or {})
            state.awaiting_approval_gate = None
            state.can_resume = True
            self._advance(state, definition, now)

            await self._commit(state)
            workflow_id = state.workflow_id or ""

        def _record(persistent: PersistentState) -> None:
            persistent.approvals.append(
                ApprovalRecord(
                    workflow_id=workflow_id,
                    gate=gate,
                    approved_at=now,
                    metadata=dict(metadata or {}),
                )
            )
            persistent.metrics.total_approvals += 1

        await self.store.update_persistent(_record)
        if self.autosave is not None:
            self.autosave.register_trigger(SaveTrigger.SECTION_APPROVAL, {"gate": gate})

        logger.info(f"Gate {gate} approved; now at {state.current_phase}")
        return state.model_copy(deep=True)

    async def resume(self) -> WorkflowState:
        """Confirm the workflow may continue from its current phase.

        Raises:
            NoActiveWorkflowError
            ResumeBlockedError: an approval gate is pending
            WorkflowCompleteError: the workflow already finished
        """
        async with self._lock:
            current = await self._current()
            if not current.is_active:
                raise NoActiveWorkflowError()
            if current.awaiting_approval_gate is not None:
                raise ResumeBlockedError(current.awaiting_approval_gate)
            if current.completed:
                raise WorkflowCompleteError(current.workflow_id)

            if not current.can_resume:
                state = current.model_copy(deep=True)
                state.can_resume = True
                await self._commit(state)
                current = state

            logger.info(f"Resuming workflow {current.workflow_id} at {current.current_phase}")
            return current.model_copy(deep=True)

    # =========================================================================
    # Non-transition mutations (persisted through auto-save)
    # =========================================================================

    async def update_phase_progress(
        self,
        documents_created: int | None = None,
        documents_total: int | None = None,
        progress_percentage: int | None = None,
    ) -> PhaseProgress:
        """Update progress of the current phase.

        When documents_total is positive and no explicit percentage is
        given, the percentage is derived from the document counts.
        """
        async with self._lock:
            state = self._editable(await self._current())
            progress = state.phase_progress
            previous_documents = progress.documents_created

            if documents_created is not None:
                progress.documents_created = max(documents_created, 0)
            if documents_total is not None:
                progress.documents_total = max(documents_total, 0)
            if progress_percentage is not None:
                progress.progress_percentage = min(max(progress_percentage, 0), 100)
            elif progress.documents_total > 0:
                progress.progress_percentage = min(
                    100, round(progress.documents_created / progress.documents_total * 100)
                )

            state.last_updated = datetime.now()
            self._state = state
            created_delta = progress.documents_created - previous_documents

        trigger = (
            SaveTrigger.DOCUMENT_CREATION if created_delta > 0 else SaveTrigger.PROGRESS_UPDATE
        )
        await self._request_save(trigger, {"phase": state.current_phase})
        return progress.model_copy()

    async def record_decision(
        self, decision: str, metadata: dict[str, Any] | None = None
    ) -> DecisionRecord:
        """Append a decision to the persistent decision log."""
        state = await self.snapshot()
        record = DecisionRecord(
            id=f"decision_{uuid.uuid4().hex[:12]}",
            decision=decision,
            metadata=dict(metadata or {}),
            workflow_type=state.active_workflow_type,
            phase=state.current_phase,
        )

        def _append(persistent: PersistentState) -> None:
            persistent.decisions.append(record)
            persistent.metrics.total_decisions += 1

        await self.store.update_persistent(_append)
        await self._request_save(SaveTrigger.DECISION_RECORDING, {"decision_id": record.id})
        logger.info(f"Decision recorded: {record.id}")
        return record

    async def persist_snapshot(self, info: AutoSaveInfo) -> bool:
        """Write the in-memory state with auto-save metadata (auto-save callback)."""
        async with self._lock:
            current = await self._current()
            state = current.model_copy(deep=True)
            state.auto_save = info
            if not await self.store.save(StateTier.RUNTIME, state):
                return False
            self._state = state
            return True

    # =========================================================================
    # Queries
    # =========================================================================

    async def status(self) -> dict[str, Any]:
        """Current phase, progress, pending gate and time estimate."""
        state = await self.snapshot()
        if not state.is_active:
            return {"active": False}

        definition = self.registry.get(state.active_workflow_type or "")
        total = len(definition.phases)
        completed_count = len(state.phases_completed)

        if state.completed:
            remaining = 0.0
        else:
            offset = 1 if state.awaiting_approval_gate else 0
            remaining = definition.remaining_minutes(state.phase_index + offset)
        current = definition.phase(state.current_phase) if state.current_phase else None

        return {
            "active": True,
            "workflow_id": state.workflow_id,
            "workflow_type": state.active_workflow_type,
            "current_phase": state.current_phase,
            "current_phase_name": current.name if current else None,
            "phase_index": state.phase_index,
            "total_phases": total,
            "phases_completed": list(state.phases_completed),
            "overall_progress": round(completed_count / total * 100) if total else 0,
            "phase_progress": state.phase_progress.model_dump(mode="json"),
            "awaiting_approval_gate": state.awaiting_approval_gate,
            "can_resume": state.can_resume,
            "completed": state.completed,
            "started_at": state.started_at.isoformat() if state.started_at else None,
            "last_updated": state.last_updated.isoformat(),
            "estimated_remaining_minutes": remaining,
            "estimated_completion": (datetime.now() + timedelta(minutes=remaining)).isoformat(),
        }

    async def check_approval_timeout(self) -> dict[str, Any]:
        """Elapsed and remaining minutes of the pending approval, if any."""
        state = await self.snapshot()
        gate = state.awaiting_approval_gate
        if gate is None:
            return {"awaiting_approval": False}

        gate_state = state.approval_gates.get(gate)
        timeout = gate_state.timeout_minutes if gate_state else 30
        requested = gate_state.approval_requested_at if gate_state else None
        elapsed = (datetime.now() - requested).total_seconds() / 60 if requested else 0.0

        return {
            "awaiting_approval": True,
            "gate": gate,
            "timeout_minutes": timeout,
            "elapsed_minutes": round(elapsed, 1),
            "remaining_minutes": round(max(timeout - elapsed, 0.0), 1),
            "timed_out": elapsed >= timeout,
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _editable(self, current: WorkflowState) -> WorkflowState:
        """Copy of an active, unfinished, unblocked state for mutation."""
        if not current.is_active:
            raise NoActiveWorkflowError()
        if current.completed:
            raise WorkflowCompleteError(current.workflow_id)
        if current.awaiting_approval_gate is not None:
            raise ApprovalPendingError(current.awaiting_approval_gate)
        return current.model_copy(deep=True)

    @staticmethod
    def _advance(state: WorkflowState, definition: WorkflowTypeSchema, now: datetime) -> None:
        next_index = state.phase_index + 1
        if next_index >= len(definition.phases):
            state.completed = True
            state.completed_at = now
            state.can_resume = False
            return

        state.phase_index = next_index
        state.current_phase = definition.phases[next_index].id
        state.phase_progress = PhaseProgress(started_at=now)
        state.can_resume = True

    async def _commit(self, state: WorkflowState) -> None:
        """Persist a new state, then make it current. Caller must hold the lock."""
        state.last_updated = datetime.now()
        if not await self.store.save(StateTier.RUNTIME, state):
            raise PhaseGateError("Failed to persist workflow state", ReasonCode.STATE_SAVE_FAILED)
        self._state = state

    async def _request_save(self, trigger: SaveTrigger, data: dict[str, Any]) -> None:
        if self.autosave is not None:
            self.autosave.register_trigger(trigger, data)
            return
        async with self._lock:
            await self.store.save(StateTier.RUNTIME, await self._current())


__all__ = ["PhaseStateMachine"]
