"""Tests for the WorkflowEngine control surface."""

import pytest
from conftest import phase

from phasegate_mcp.engine import (
    Configuration,
    ControlResult,
    ReasonCode,
    StateConfig,
    StateTier,
    WorkflowEngine,
    WorkflowTypeRegistry,
)
from phasegate_mcp.engine.configuration import CheckpointSettings


def _definitions(*phases):
    return {p.id: p for p in phases}


class TestControlResults:
    async def test_status_without_workflow(self, engine: WorkflowEngine):
        result = await engine.status()
        assert result.success
        assert result.data == {"active": False}
        assert result.to_dict() == {
            "success": True,
            "message": "No active workflow",
            "active": False,
        }

    async def test_transitions_without_workflow_fail_with_reason(self, engine):
        for call in (engine.complete_phase(), engine.resume(), engine.plan_phases()):
            result = await call
            assert not result.success
            assert result.reason == ReasonCode.NO_ACTIVE_WORKFLOW

    async def test_unknown_workflow_type(self, engine):
        result = await engine.initialize_workflow("moonshot")
        assert result.reason == ReasonCode.UNKNOWN_WORKFLOW_TYPE
        assert "new-project" in result.message
        assert result.to_dict()["reason"] == "unknown_workflow_type"

    def test_result_invariants(self):
        with pytest.raises(ValueError):
            ControlResult(success=True, message="ok", reason=ReasonCode.PHASE_FAILED)
        with pytest.raises(ValueError):
            ControlResult(success=False, message="broken")
        assert not ControlResult.fail(ReasonCode.PHASE_FAILED, "boom")


class TestGatedWorkflow:
    async def test_gate_blocks_resume_until_approved(self, engine):
        assert (await engine.initialize_workflow("new-project")).success
        assert (await engine.complete_phase()).data["current_phase"] == "research"

        completed = await engine.complete_phase()
        assert completed.data == {
            "completed_phase": "research",
            "current_phase": "research",
            "awaiting_approval_gate": "post-research",
            "can_resume": False,
            "completed": False,
        }

        wrong_gate = await engine.approve_gate("post-requirements")
        assert wrong_gate.reason == ReasonCode.GATE_NOT_PENDING

        blocked = await engine.resume()
        assert blocked.reason == ReasonCode.RESUME_BLOCKED
        assert (await engine.complete_phase()).reason == ReasonCode.APPROVAL_PENDING

        approved = await engine.approve_gate("post-research")
        assert approved.success
        assert approved.data["current_phase"] == "analysis"

        resumed = await engine.resume()
        assert resumed.success
        assert resumed.data["current_phase"] == "analysis"

    async def test_approval_timeout_report(self, engine):
        await engine.initialize_workflow("new-project")
        assert (await engine.check_approval_timeout()).data == {"awaiting_approval": False}

        await engine.complete_phase()
        await engine.complete_phase()
        result = await engine.check_approval_timeout()
        assert result.data["gate"] == "post-research"
        assert result.message.startswith("Gate post-research:")


class TestCheckpoints:
    async def test_checkpoint_round_trip(self, engine):
        await engine.initialize_workflow("new-project")
        created = await engine.create_checkpoint("start")
        checkpoint_id = created.data["checkpoint_id"]

        await engine.complete_phase()
        assert (await engine.status()).data["current_phase"] == "research"

        restored = await engine.restore_checkpoint(checkpoint_id)
        assert restored.success
        assert restored.data["name"] == "start"
        assert restored.data["current_phase"] == "discovery"
        assert (await engine.status()).data["current_phase"] == "discovery"

        listing = (await engine.list_checkpoints()).data["checkpoints"]
        assert [entry["name"] for entry in listing] == ["pre-restore-backup", "start"]

    async def test_restore_survives_pending_autosave(self, engine, store):
        await engine.initialize_workflow("new-project")
        checkpoint_id = (await engine.create_checkpoint("start")).data["checkpoint_id"]
        await engine.complete_phase()
        await engine.update_phase_progress(progress_percentage=40)

        await engine.restore_checkpoint(checkpoint_id)
        await engine.autosave.flush()

        assert (await store.load_workflow_state()).current_phase == "discovery"

    async def test_restore_unknown_checkpoint(self, engine):
        result = await engine.restore_checkpoint("cp_nope")
        assert result.reason == ReasonCode.CHECKPOINT_NOT_FOUND

    async def test_verify_integrity(self, engine):
        await engine.initialize_workflow("new-project")
        result = await engine.verify_integrity()
        tiers = {report["tier"]: report for report in result.data["tiers"]}
        assert set(tiers) == {"runtime", "persistent", "configuration"}
        assert tiers["runtime"]["valid"]


class TestProgressAndDecisions:
    async def test_progress_is_auto_saved(self, engine, store):
        await engine.initialize_workflow("new-project")
        result = await engine.update_phase_progress(documents_created=1, documents_total=4)
        assert result.data["progress_percentage"] == 25

        await engine.autosave.flush()
        saved = await store.load_workflow_state()
        assert saved.phase_progress.documents_created == 1
        assert saved.auto_save is not None
        assert saved.auto_save.save_count >= 1

    async def test_record_decision(self, engine, store):
        await engine.initialize_workflow("new-project")
        result = await engine.record_decision("Adopt FastAPI", {"why": "async"})
        assert result.data["decision"] == "Adopt FastAPI"
        assert result.data["phase"] == "discovery"
        assert len((await store.load_persistent_state()).decisions) == 1


class TestExecution:
    async def test_plan_for_active_workflow(self, engine):
        await engine.initialize_workflow("new-project")
        result = await engine.plan_phases()

        plan = result.data["plan"]
        assert [wave["phase_ids"] for wave in plan["waves"]] == [
            ["discovery"],
            ["research"],
            ["analysis"],
            ["requirements"],
            ["planning"],
            ["backlog", "scaffold"],
            ["sprint"],
        ]
        assert plan["sequential_time_estimate"] == 1260
        assert plan["parallel_time_estimate"] == 1170
        assert plan["reduction_percent"] == 7

    async def test_plan_rejects_unknown_phase(self, engine):
        await engine.initialize_workflow("new-project")
        result = await engine.plan_phases(["research", "deploy"])
        assert result.reason == ReasonCode.INVALID_PLAN

    async def test_run_phases_reports_partition(self, engine):
        definitions = _definitions(phase("A"), phase("B"), phase("C", "A", "B"))

        async def executor(definition, context):
            if definition.id == "B":
                raise RuntimeError("something odd")
            return definition.id.lower()

        result = await engine.run_phases(["A", "B", "C"], executor, definitions=definitions)

        assert result.success
        assert result.data["successful"] == ["A", "C"]
        assert result.data["failed"] == ["B"]
        assert result.data["skipped"] == ["B"]
        assert result.data["results"] == {"A": "a", "C": "c"}
        assert [[o["phase_id"] for o in wave] for wave in result.data["waves"]] == [
            ["A", "B"],
            ["C"],
        ]
        assert engine.pool.active_allocations == []

        stats = (await engine.get_error_stats()).data
        assert stats["by_phase"] == {"B": 3}

    async def test_run_current_phase(self, engine):
        await engine.initialize_workflow("new-project")

        async def executor(definition, context):
            return {"phase": definition.id, "documents_created": 2}

        result = await engine.run_current_phase(executor)
        assert result.success
        assert result.message == "Phase Project Discovery succeeded"
        assert result.data["result"] == {"phase": "discovery", "documents_created": 2}

        # Execution alone does not advance the workflow
        assert (await engine.status()).data["current_phase"] == "discovery"

    async def test_run_current_phase_failure(self, engine):
        await engine.initialize_workflow("existing-project")

        async def executor(definition, context):
            raise ConnectionError("network unreachable")

        result = await engine.run_current_phase(executor)
        assert not result.success
        assert result.reason == ReasonCode.PHASE_FAILED
        assert result.data["attempts"] == 3
        assert result.data["error_type"] == "network"
        assert len(result.data["recovery_options"]) == 6


async def test_open_applies_overrides(tmp_path, registry: WorkflowTypeRegistry):
    engine = await WorkflowEngine.open(
        StateConfig(root=tmp_path / "state"), registry, max_retries=5, max_checkpoints=7
    )
    try:
        assert engine.recovery.max_retries == 5
        assert engine.store.max_checkpoints == 7
        assert (tmp_path / "state").is_dir()
    finally:
        await engine.close()


async def test_constructor_applies_checkpoint_retention(store, registry):
    configuration = Configuration(checkpoint=CheckpointSettings(max_checkpoints=4))
    engine = WorkflowEngine(store, registry, configuration)
    assert engine.store.max_checkpoints == 4


async def test_start_with_undecodable_runtime_file(store, registry, fast_configuration):
    store.config.tier_path(StateTier.RUNTIME).write_bytes(b"\xff\xfe\x00garbage")
    engine = WorkflowEngine(store, registry, fast_configuration)
    await engine.start()
    try:
        assert (await engine.status()).data == {"active": False}
        assert (await engine.initialize_workflow("new-project")).success
    finally:
        await engine.close()
