"""MCP tool implementations for the workflow control surface.

Every tool delegates to the WorkflowEngine held in the lifespan context and
returns ControlResult.to_dict(): a "success" flag, a "message", a "reason"
code on failure, plus operation-specific fields. Listing and status tools
also accept format="markdown".

Following official Anthropic MCP Python SDK patterns:
- Tool functions decorated with @mcp.tool()
- Flat parameter signatures with Annotated types for validation
- Async functions for all tools
- Clear docstrings (become tool descriptions)
"""

from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field

from .context import AppContextType
from .engine import WorkflowEngine
from .formatting import (
    format_checkpoint_list_markdown,
    format_error_markdown,
    format_plan_markdown,
    format_status_markdown,
    format_workflow_type_list_markdown,
)
from .server import mcp

ResponseFormat = Annotated[
    Literal["json", "markdown"],
    Field(description="json=structured data, markdown=human-readable"),
]


def _engine(ctx: AppContextType) -> WorkflowEngine:
    return ctx.request_context.lifespan_context.engine


# =============================================================================
# Workflow lifecycle
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Workflow Types",
        readOnlyHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_workflow_types(
    format: ResponseFormat = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """List available workflow types with their phases and approval gates."""
    registry = ctx.request_context.lifespan_context.registry
    workflow_types = registry.list_all_metadata()
    if format == "markdown":
        return format_workflow_type_list_markdown(workflow_types)
    return {"success": True, "workflow_types": workflow_types}


@mcp.tool(
    annotations=ToolAnnotations(
        title="Initialize Workflow",
        readOnlyHint=False,
        destructiveHint=True,  # Replaces the active workflow's runtime state
        idempotentHint=False,
        openWorldHint=False,
    )
)
async def initialize_workflow(
    workflow_type: Annotated[
        str,
        Field(
            description="Workflow type (use list_workflow_types() to discover)",
            min_length=1,
            max_length=100,
        ),
    ],
    options: Annotated[
        dict[str, Any] | None,
        Field(description="Workflow options, e.g. {'project_name': 'my-app'}"),
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Start a workflow of the given type at its first phase."""
    result = await _engine(ctx).initialize_workflow(workflow_type, options)
    return result.to_dict()


@mcp.tool(
    annotations=ToolAnnotations(
        title="Workflow Status",
        readOnlyHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def workflow_status(
    format: ResponseFormat = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Current phase, progress, pending approval gate and estimated completion."""
    result = await _engine(ctx).status()
    if format == "markdown":
        return format_status_markdown(result.data)
    return result.to_dict()


@mcp.tool(
    annotations=ToolAnnotations(
        title="Complete Phase",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=False,
    )
)
async def complete_phase(
    result: Annotated[
        dict[str, Any] | None,
        Field(description="Phase result, e.g. {'documents_created': ['prd.md']}"),
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Mark the current phase complete. Opens the approval gate that follows it, if any."""
    control = await _engine(ctx).complete_phase(result)
    return control.to_dict()


@mcp.tool(
    annotations=ToolAnnotations(
        title="Approve Gate",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=False,
    )
)
async def approve_gate(
    gate: Annotated[
        str,
        Field(description="Pending approval gate id, e.g. 'post-research'", min_length=1),
    ],
    metadata: Annotated[
        dict[str, Any] | None,
        Field(description="Approval metadata, e.g. {'approver': 'alice', 'notes': '...'}"),
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Approve the pending gate and advance to the next phase."""
    result = await _engine(ctx).approve_gate(gate, metadata)
    return result.to_dict()


@mcp.tool(
    annotations=ToolAnnotations(
        title="Resume Workflow",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def resume_workflow(*, ctx: AppContextType) -> dict[str, Any]:
    """Resume the active workflow. Fails while an approval gate is pending."""
    result = await _engine(ctx).resume()
    return result.to_dict()


# =============================================================================
# Progress and decisions
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Update Phase Progress",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def update_phase_progress(
    documents_created: Annotated[
        int | None, Field(description="Documents produced so far", ge=0)
    ] = None,
    documents_total: Annotated[
        int | None, Field(description="Documents expected in this phase", ge=0)
    ] = None,
    progress_percentage: Annotated[
        int | None,
        Field(description="Explicit progress (derived from documents if omitted)", ge=0, le=100),
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Update progress of the current phase."""
    result = await _engine(ctx).update_phase_progress(
        documents_created, documents_total, progress_percentage
    )
    return result.to_dict()


@mcp.tool(
    annotations=ToolAnnotations(
        title="Record Decision",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=False,
    )
)
async def record_decision(
    decision: Annotated[str, Field(description="The decision made", min_length=1)],
    metadata: Annotated[
        dict[str, Any] | None,
        Field(description="Context, e.g. {'alternatives': [...], 'rationale': '...'}"),
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Append a decision to the project's persistent decision log."""
    result = await _engine(ctx).record_decision(decision, metadata)
    return result.to_dict()


@mcp.tool(
    annotations=ToolAnnotations(
        title="Check Approval Timeout",
        readOnlyHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def check_approval_timeout(*, ctx: AppContextType) -> dict[str, Any]:
    """Elapsed and remaining minutes of the pending approval gate."""
    result = await _engine(ctx).check_approval_timeout()
    return result.to_dict()


# =============================================================================
# Checkpoints and recovery
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Create Checkpoint",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=False,
    )
)
async def create_checkpoint(
    name: Annotated[
        str | None,
        Field(description="Checkpoint name (default: checkpoint-<timestamp>)", max_length=200),
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Snapshot all workflow state."""
    result = await _engine(ctx).create_checkpoint(name)
    return result.to_dict()


@mcp.tool(
    annotations=ToolAnnotations(
        title="Restore Checkpoint",
        readOnlyHint=False,
        destructiveHint=True,  # Overwrites runtime state
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def restore_checkpoint(
    checkpoint_id: Annotated[
        str | None,
        Field(description="Checkpoint id (default: latest checkpoint)"),
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Restore workflow runtime state from a checkpoint."""
    result = await _engine(ctx).restore_checkpoint(checkpoint_id)
    return result.to_dict()


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Checkpoints",
        readOnlyHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_checkpoints(
    format: ResponseFormat = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """List checkpoints, newest first."""
    result = await _engine(ctx).list_checkpoints()
    if format == "markdown":
        if not result.success:
            return format_error_markdown(result.to_dict())
        return format_checkpoint_list_markdown(result.data["checkpoints"])
    return result.to_dict()


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Error Statistics",
        readOnlyHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_error_stats(*, ctx: AppContextType) -> dict[str, Any]:
    """Outstanding phase errors by type and phase, plus the five most recent."""
    result = await _engine(ctx).get_error_stats()
    return result.to_dict()


# =============================================================================
# Planning
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Plan Phases",
        readOnlyHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def plan_phases(
    phase_ids: Annotated[
        list[str] | None,
        Field(description="Phases to plan (default: all phases of the active workflow)"),
    ] = None,
    format: ResponseFormat = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Group phases into dependency waves with sequential/parallel time estimates."""
    result = await _engine(ctx).plan_phases(phase_ids)
    if format == "markdown":
        if not result.success:
            return format_error_markdown(result.to_dict())
        return format_plan_markdown(result.data["plan"])
    return result.to_dict()
