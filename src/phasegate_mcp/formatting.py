"""Shared formatting utilities for MCP tool responses.

Tools return JSON-compatible dicts by default (ControlResult.to_dict()).
With format="markdown" they return the human-readable renderings below.
"""

from typing import Any

# =============================================================================
# Markdown Formatting Utilities
# =============================================================================


def format_status_markdown(status: dict[str, Any]) -> str:
    """Format workflow_status data as markdown.

    Args:
        status: Data of WorkflowEngine.status()

    Returns:
        Markdown with current phase, progress and pending approval
    """
    if not status.get("active"):
        return "No active workflow. Use initialize_workflow() to start one."

    progress = status.get("phase_progress", {})
    lines = [
        f"# Workflow: {status['workflow_id']}",
        "",
        f"- **Type**: {status['workflow_type']}",
        f"- **Current Phase**: {status['current_phase']}"
        + (f" ({status['current_phase_name']})" if status.get("current_phase_name") else ""),
        f"- **Phase**: {status['phase_index'] + 1} / {status['total_phases']}",
        f"- **Overall Progress**: {status['overall_progress']}%",
        f"- **Phase Progress**: {progress.get('progress_percentage', 0)}%"
        f" ({progress.get('documents_created', 0)}/{progress.get('documents_total', 0)} documents)",
    ]

    if status.get("completed"):
        lines.append("- **Status**: Completed")
    elif status.get("awaiting_approval_gate"):
        gate = status["awaiting_approval_gate"]
        lines.append(f"- **Status**: Awaiting approval at gate `{gate}`")
    else:
        lines.append(f"- **Can Resume**: {'yes' if status['can_resume'] else 'no'}")

    remaining = status.get("estimated_remaining_minutes", 0)
    if remaining and not status.get("completed"):
        lines.append(f"- **Estimated Remaining**: {_format_minutes(remaining)}")

    if status.get("phases_completed"):
        lines.append("")
        lines.append("## Completed Phases")
        for phase_id in status["phases_completed"]:
            lines.append(f"- {phase_id}")

    return "\n".join(lines)


def format_plan_markdown(plan: dict[str, Any]) -> str:
    """Format an execution plan as markdown.

    Args:
        plan: ExecutionPlan dumped to JSON (without definitions)

    Returns:
        Markdown with one section per wave and the time estimates
    """
    waves = plan.get("waves", [])
    if not waves:
        return "Empty execution plan"

    lines = [f"## Execution Plan ({len(waves)} waves)", ""]
    for wave in waves:
        header = f"### Wave {wave['index'] + 1}"
        if wave.get("forced"):
            header += " (forced: dependency deadlock)"
        lines.append(header)
        lines.append(f"- **Phases**: {', '.join(wave['phase_ids'])}")
        lines.append(f"- **Estimated Duration**: {_format_minutes(wave['estimated_duration'])}")
        lines.append("")

    lines.append("## Estimates")
    lines.append(f"- **Sequential**: {_format_minutes(plan['sequential_time_estimate'])}")
    lines.append(f"- **Parallel**: {_format_minutes(plan['parallel_time_estimate'])}")
    lines.append(f"- **Time Reduction**: {plan['reduction_percent']}%")
    return "\n".join(lines)


def format_checkpoint_list_markdown(checkpoints: list[dict[str, Any]]) -> str:
    """Format checkpoint list (newest first) as markdown."""
    if not checkpoints:
        return "No checkpoints found"

    lines = [f"## Available Checkpoints ({len(checkpoints)})", ""]
    for cp in checkpoints:
        lines.append(f"- `{cp['checkpoint_id']}` **{cp['name']}** ({cp['timestamp']})")
    return "\n".join(lines)


def format_workflow_type_list_markdown(workflow_types: list[dict[str, Any]]) -> str:
    """Format registry metadata of workflow types as markdown."""
    if not workflow_types:
        return "No workflow types found"

    lines = [f"## Available Workflow Types ({len(workflow_types)})"]
    for info in workflow_types:
        lines.append("")
        lines.append(f"### {info['name']} (v{info['version']})")
        lines.append(info["description"])
        lines.append(f"- **Phases**: {' → '.join(info['phases'])}")
        if info["approval_gates"]:
            gates = ", ".join(
                f"{gate['id']} (after {gate['after']})" for gate in info["approval_gates"]
            )
            lines.append(f"- **Approval Gates**: {gates}")
        lines.append(f"- **Estimated Duration**: {_format_minutes(info['estimated_minutes'])}")
    return "\n".join(lines)


def format_error_markdown(result: dict[str, Any]) -> str:
    """Format a failed ControlResult dict as markdown."""
    return f"**Error** (`{result.get('reason', 'unknown')}`): {result['message']}"


def _format_minutes(minutes: float) -> str:
    if minutes < 60:
        return f"{minutes:.0f} min"
    return f"{minutes / 60:.1f} h"


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "format_status_markdown",
    "format_plan_markdown",
    "format_checkpoint_list_markdown",
    "format_workflow_type_list_markdown",
    "format_error_markdown",
]
