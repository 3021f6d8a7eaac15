"""Tests for PhaseStateMachine transitions and approval gates."""

from datetime import datetime, timedelta

import pytest

from phasegate_mcp.engine import PhaseStateMachine, ReasonCode, StateStore, StateTier
from phasegate_mcp.engine.exceptions import (
    ApprovalPendingError,
    GateNotPendingError,
    NoActiveWorkflowError,
    ResumeBlockedError,
    UnknownWorkflowTypeError,
    WorkflowCompleteError,
)


@pytest.fixture
def machine(store: StateStore, registry) -> PhaseStateMachine:
    return PhaseStateMachine(store, registry)


async def _advance_to(machine: PhaseStateMachine, phase_id: str) -> None:
    """Complete phases (approving gates) until phase_id is current."""
    for _ in range(20):
        state = await machine.snapshot()
        if state.current_phase == phase_id and state.awaiting_approval_gate is None:
            return
        if state.awaiting_approval_gate:
            await machine.approve_gate(state.awaiting_approval_gate)
        else:
            await machine.complete_phase()
    raise AssertionError(f"never reached {phase_id}")


class TestInitialization:
    async def test_initialize_starts_at_first_phase(self, machine, store):
        state = await machine.initialize_workflow("new-project", {"project_name": "demo"})

        assert state.workflow_id.startswith("new-project-")
        assert state.current_phase == "discovery"
        assert state.phase_index == 0
        assert state.can_resume
        assert set(state.approval_gates) == {
            "post-research",
            "post-requirements",
            "pre-implementation",
        }
        assert await store.load_workflow_state() == state

        persistent = await store.load_persistent_state()
        assert persistent.project.name == "demo"
        assert persistent.project.type == "new-project"
        assert persistent.metrics.total_workflows == 1

    async def test_unknown_workflow_type(self, machine):
        with pytest.raises(UnknownWorkflowTypeError) as exc_info:
            await machine.initialize_workflow("nope")
        assert exc_info.value.reason == ReasonCode.UNKNOWN_WORKFLOW_TYPE

    async def test_transitions_require_active_workflow(self, machine):
        with pytest.raises(NoActiveWorkflowError):
            await machine.complete_phase()
        with pytest.raises(NoActiveWorkflowError):
            await machine.resume()

    async def test_reload_reads_persisted_state(self, store, registry):
        first = PhaseStateMachine(store, registry)
        await first.initialize_workflow("new-project")
        await first.complete_phase()

        second = PhaseStateMachine(store, registry)
        state = await second.reload()
        assert state.current_phase == "research"
        assert state.phases_completed == ["discovery"]


class TestApprovalGates:
    async def test_completing_gated_phase_awaits_approval(self, machine):
        await machine.initialize_workflow("new-project")
        await _advance_to(machine, "research")

        state = await machine.complete_phase()

        assert state.awaiting_approval_gate == "post-research"
        assert state.current_phase == "research"
        assert state.can_resume is False
        assert state.approval_gates["post-research"].approval_requested_at is not None

    async def test_approving_wrong_gate_fails(self, machine):
        await machine.initialize_workflow("new-project")
        await _advance_to(machine, "research")
        await machine.complete_phase()

        with pytest.raises(GateNotPendingError) as exc_info:
            await machine.approve_gate("post-requirements")

        assert exc_info.value.reason == ReasonCode.GATE_NOT_PENDING
        assert "No approval pending for gate: post-requirements" in exc_info.value.message
        assert (await machine.snapshot()).awaiting_approval_gate == "post-research"

    async def test_approving_without_pending_gate_fails(self, machine):
        await machine.initialize_workflow("new-project")
        with pytest.raises(GateNotPendingError):
            await machine.approve_gate("post-research")

    async def test_approval_advances_and_is_recorded(self, machine, store):
        await machine.initialize_workflow("new-project")
        await _advance_to(machine, "research")
        await machine.complete_phase()

        state = await machine.approve_gate("post-research", {"approver": "lead"})

        assert state.awaiting_approval_gate is None
        assert state.can_resume
        assert state.current_phase == "analysis"
        assert state.approval_gates["post-research"].approved
        assert state.approval_gates["post-research"].metadata == {"approver": "lead"}

        persistent = await store.load_persistent_state()
        assert [a.gate for a in persistent.approvals] == ["post-research"]
        assert persistent.metrics.total_approvals == 1

    async def test_completion_blocked_while_gate_pending(self, machine):
        await machine.initialize_workflow("new-project")
        await _advance_to(machine, "research")
        await machine.complete_phase()

        with pytest.raises(ApprovalPendingError) as exc_info:
            await machine.complete_phase()
        assert exc_info.value.reason == ReasonCode.APPROVAL_PENDING


class TestResume:
    async def test_resume_fails_whenever_gate_pending(self, machine):
        """Resume is rejected exactly while an approval gate is pending."""
        await machine.initialize_workflow("new-project")

        for _ in range(30):
            state = await machine.snapshot()
            if state.completed:
                break
            if state.awaiting_approval_gate is not None:
                with pytest.raises(ResumeBlockedError) as exc_info:
                    await machine.resume()
                assert exc_info.value.reason == ReasonCode.RESUME_BLOCKED
                await machine.approve_gate(state.awaiting_approval_gate)
            else:
                resumed = await machine.resume()
                assert resumed.can_resume
                await machine.complete_phase()

        assert (await machine.snapshot()).completed

    async def test_resume_after_completion_fails(self, machine):
        await machine.initialize_workflow("existing-project")
        await _advance_to(machine, "implementation")
        state = await machine.complete_phase()

        assert state.completed
        assert state.can_resume is False
        with pytest.raises(WorkflowCompleteError):
            await machine.resume()
        with pytest.raises(WorkflowCompleteError):
            await machine.complete_phase()


class TestProgressAndQueries:
    async def test_progress_derived_from_documents(self, machine, store):
        await machine.initialize_workflow("new-project")

        progress = await machine.update_phase_progress(documents_created=1, documents_total=4)

        assert progress.progress_percentage == 25
        saved = await store.load_workflow_state()
        assert saved.phase_progress.documents_created == 1

    async def test_explicit_progress_is_clamped(self, machine):
        await machine.initialize_workflow("new-project")
        progress = await machine.update_phase_progress(progress_percentage=150)
        assert progress.progress_percentage == 100

    async def test_record_decision(self, machine, store):
        await machine.initialize_workflow("new-project")
        record = await machine.record_decision("Use PostgreSQL", {"alternatives": ["MySQL"]})

        assert record.id.startswith("decision_")
        assert record.phase == "discovery"
        persistent = await store.load_persistent_state()
        assert [d.decision for d in persistent.decisions] == ["Use PostgreSQL"]
        assert persistent.metrics.total_decisions == 1

    async def test_phase_completion_updates_metrics(self, machine, store):
        await machine.initialize_workflow("new-project")
        await machine.complete_phase({"documents_created": 3})

        persistent = await store.load_persistent_state()
        assert [r.phase for r in persistent.phases_completed] == ["discovery"]
        assert persistent.metrics.total_phases == 1
        assert persistent.documents_created == 3

    async def test_status(self, machine):
        assert (await machine.status()) == {"active": False}

        await machine.initialize_workflow("new-project")
        await machine.complete_phase()
        status = await machine.status()

        assert status["current_phase"] == "research"
        assert status["current_phase_name"] == "Research"
        assert status["total_phases"] == 8
        assert status["phases_completed"] == ["discovery"]
        assert status["overall_progress"] == 12
        # research 300 + analysis 150 + requirements 210 + planning 150
        # + backlog 150 + scaffold 90 + sprint 60
        assert status["estimated_remaining_minutes"] == 1110

    async def test_approval_timeout(self, machine, store):
        await machine.initialize_workflow("new-project")
        assert await machine.check_approval_timeout() == {"awaiting_approval": False}

        await _advance_to(machine, "research")
        await machine.complete_phase()
        info = await machine.check_approval_timeout()
        assert info["gate"] == "post-research"
        assert info["timeout_minutes"] == 30
        assert not info["timed_out"]

        # Age the approval request past its timeout
        state = await store.load_workflow_state()
        state.approval_gates["post-research"].approval_requested_at = datetime.now() - timedelta(
            minutes=45
        )
        await store.save(StateTier.RUNTIME, state)
        await machine.reload()

        info = await machine.check_approval_timeout()
        assert info["timed_out"]
        assert info["remaining_minutes"] == 0
