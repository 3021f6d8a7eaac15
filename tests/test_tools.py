"""Tests for MCP tools and server helpers.

Tools are called directly with a mock context whose
request_context.lifespan_context holds a real AppContext.
"""

from unittest.mock import MagicMock

import pytest

from phasegate_mcp.context import AppContext
from phasegate_mcp.engine import BUILTIN_TEMPLATES_DIR, WorkflowTypeRegistry
from phasegate_mcp.server import _get_int_env, get_state_config, load_workflow_types, mcp
from phasegate_mcp.tools import (
    approve_gate,
    check_approval_timeout,
    complete_phase,
    create_checkpoint,
    get_error_stats,
    initialize_workflow,
    list_checkpoints,
    list_workflow_types,
    plan_phases,
    record_decision,
    restore_checkpoint,
    resume_workflow,
    update_phase_progress,
    workflow_status,
)


@pytest.fixture
def mock_context(engine, registry) -> MagicMock:
    """Mock MCP context exposing a started engine through the lifespan context."""
    mock_ctx = MagicMock()
    mock_ctx.request_context.lifespan_context = AppContext(engine=engine, registry=registry)
    return mock_ctx


class TestWorkflowTools:
    async def test_list_workflow_types(self, mock_context):
        result = await list_workflow_types(ctx=mock_context)
        assert result["success"]
        assert [t["name"] for t in result["workflow_types"]] == ["existing-project", "new-project"]

    async def test_list_workflow_types_markdown(self, mock_context):
        result = await list_workflow_types(format="markdown", ctx=mock_context)
        assert isinstance(result, str)
        assert "## Available Workflow Types (2)" in result
        assert "### new-project (v1.0)" in result
        assert "post-research (after research)" in result

    async def test_gated_lifecycle(self, mock_context):
        started = await initialize_workflow(
            "new-project", {"project_name": "demo"}, ctx=mock_context
        )
        assert started["success"]
        assert started["current_phase"] == "discovery"

        await complete_phase(ctx=mock_context)
        gated = await complete_phase({"documents_created": 2}, ctx=mock_context)
        assert gated["awaiting_approval_gate"] == "post-research"

        blocked = await resume_workflow(ctx=mock_context)
        assert blocked == {
            "success": False,
            "message": blocked["message"],
            "reason": "resume_blocked",
        }

        wrong = await approve_gate("post-requirements", ctx=mock_context)
        assert wrong["reason"] == "gate_not_pending"

        timeout = await check_approval_timeout(ctx=mock_context)
        assert timeout["gate"] == "post-research"

        approved = await approve_gate("post-research", {"approver": "lead"}, ctx=mock_context)
        assert approved["success"]
        assert approved["current_phase"] == "analysis"

    async def test_unknown_workflow_type(self, mock_context):
        result = await initialize_workflow("moonshot", ctx=mock_context)
        assert result["success"] is False
        assert result["reason"] == "unknown_workflow_type"

    async def test_status_formats(self, mock_context):
        idle = await workflow_status(format="markdown", ctx=mock_context)
        assert idle.startswith("No active workflow")

        await initialize_workflow("new-project", ctx=mock_context)
        status = await workflow_status(ctx=mock_context)
        assert status["current_phase"] == "discovery"
        assert status["total_phases"] == 8

        markdown = await workflow_status(format="markdown", ctx=mock_context)
        assert "- **Current Phase**: discovery (Project Discovery)" in markdown
        assert "- **Phase**: 1 / 8" in markdown

    async def test_progress_and_decisions(self, mock_context):
        await initialize_workflow("new-project", ctx=mock_context)

        progress = await update_phase_progress(2, 4, ctx=mock_context)
        assert progress["progress_percentage"] == 50

        decision = await record_decision("Use PostgreSQL", ctx=mock_context)
        assert decision["success"]
        assert decision["id"].startswith("decision_")


class TestCheckpointTools:
    async def test_checkpoint_round_trip(self, mock_context):
        await initialize_workflow("new-project", ctx=mock_context)
        created = await create_checkpoint("before-research", ctx=mock_context)
        await complete_phase(ctx=mock_context)

        restored = await restore_checkpoint(created["checkpoint_id"], ctx=mock_context)
        assert restored["success"]
        assert restored["current_phase"] == "discovery"

        listing = await list_checkpoints(ctx=mock_context)
        assert [cp["name"] for cp in listing["checkpoints"]] == [
            "pre-restore-backup",
            "before-research",
        ]

        markdown = await list_checkpoints(format="markdown", ctx=mock_context)
        assert "## Available Checkpoints (2)" in markdown
        assert "**before-research**" in markdown

    async def test_restore_without_checkpoints(self, mock_context):
        result = await restore_checkpoint(ctx=mock_context)
        assert result["reason"] == "checkpoint_not_found"

    async def test_error_stats_start_empty(self, mock_context):
        result = await get_error_stats(ctx=mock_context)
        assert result["total"] == 0
        assert result["recent_errors"] == []


class TestPlanTool:
    async def test_plan_json(self, mock_context):
        await initialize_workflow("existing-project", ctx=mock_context)
        result = await plan_phases(["analyze", "discovery"], ctx=mock_context)
        assert [w["phase_ids"] for w in result["plan"]["waves"]] == [["analyze"], ["discovery"]]

    async def test_plan_markdown(self, mock_context):
        await initialize_workflow("new-project", ctx=mock_context)
        markdown = await plan_phases(format="markdown", ctx=mock_context)
        assert "## Execution Plan (7 waves)" in markdown
        assert "- **Phases**: backlog, scaffold" in markdown
        assert "- **Time Reduction**: 7%" in markdown

    async def test_plan_markdown_error(self, mock_context):
        markdown = await plan_phases(format="markdown", ctx=mock_context)
        assert markdown.startswith("**Error** (`no_active_workflow`)")


class TestServer:
    async def test_all_tools_registered(self):
        tools = {tool.name for tool in await mcp.list_tools()}
        assert {
            "list_workflow_types",
            "initialize_workflow",
            "workflow_status",
            "complete_phase",
            "approve_gate",
            "resume_workflow",
            "update_phase_progress",
            "record_decision",
            "check_approval_timeout",
            "create_checkpoint",
            "restore_checkpoint",
            "list_checkpoints",
            "get_error_stats",
            "plan_phases",
        } <= tools

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(None, None), ("", None), ("abc", None), ("4", 4), ("0", 1), ("99", 10)],
    )
    def test_int_env_is_clamped(self, monkeypatch, raw, expected):
        if raw is None:
            monkeypatch.delenv("PHASEGATE_MAX_RETRIES", raising=False)
        else:
            monkeypatch.setenv("PHASEGATE_MAX_RETRIES", raw)
        assert _get_int_env("PHASEGATE_MAX_RETRIES", 1, 10) == expected

    def test_state_dir_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PHASEGATE_STATE_DIR", str(tmp_path))
        assert get_state_config().root.parent == tmp_path

    def test_user_templates_override_builtin(self, monkeypatch, tmp_path):
        (tmp_path / "custom.yaml").write_text(
            "name: new-project\ndescription: Slim\nphases:\n  - id: only\n"
        )
        monkeypatch.setenv("PHASEGATE_TEMPLATE_PATHS", f"{tmp_path}, /does/not/exist")

        registry = WorkflowTypeRegistry()
        load_workflow_types(registry)

        assert registry.get("new-project").phase_ids == ["only"]
        assert registry.get_source("existing-project") == BUILTIN_TEMPLATES_DIR
