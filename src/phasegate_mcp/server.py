"""FastMCP server initialization for phasegate-mcp.

This module initializes the MCP server and manages shared resources via the
lifespan context. All tool implementations are in the tools module.

Environment Variables:
    PHASEGATE_STATE_DIR: Base directory of per-project state
        (default: ~/.phasegate/states)
    PHASEGATE_TEMPLATE_PATHS: Comma-separated extra workflow-type directories
    PHASEGATE_MAX_RETRIES: Override of retry.max_retries (1-10)
    PHASEGATE_MAX_CHECKPOINTS: Override of checkpoint.max_checkpoints (1-1000)
    PHASEGATE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL
"""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .context import AppContext, AppContextType
from .engine import BUILTIN_TEMPLATES_DIR, StateConfig, WorkflowEngine, WorkflowTypeRegistry

logger = logging.getLogger(__name__)

# =============================================================================
# Shared Resources and Lifespan Management
# =============================================================================


def _get_int_env(name: str, minimum: int, maximum: int) -> int | None:
    """Read an integer override, clamped to [minimum, maximum].

    Returns:
        None if the variable is unset or not an integer
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not an integer")
        return None
    clamped = max(minimum, min(maximum, value))
    if clamped != value:
        logger.warning(f"{name}={value} out of range, clamped to {clamped}")
    return clamped


def get_state_config() -> StateConfig:
    """Per-project state directory, under PHASEGATE_STATE_DIR if set."""
    base_dir = os.getenv("PHASEGATE_STATE_DIR", "").strip()
    return StateConfig.for_cwd(Path(base_dir).expanduser() if base_dir else None)


def load_workflow_types(registry: WorkflowTypeRegistry) -> None:
    """Load workflow types from built-in templates and user-provided directories.

    Priority: user templates OVERRIDE built-in templates by name.

    Example:
        PHASEGATE_TEMPLATE_PATHS="~/my-workflow-types,/opt/company-types"
        # Load order:
        # 1. Built-in: src/phasegate_mcp/templates/
        # 2. User: ~/my-workflow-types (overrides built-in by name)
        # 3. User: /opt/company-types (overrides both by name)

    Raises:
        RuntimeError: Built-in templates are missing or loading failed
    """
    if not BUILTIN_TEMPLATES_DIR.is_dir():
        raise RuntimeError(
            f"Built-in templates directory not found: {BUILTIN_TEMPLATES_DIR}\n"
            "This indicates a broken installation. Please reinstall phasegate-mcp."
        )

    env_paths_str = os.getenv("PHASEGATE_TEMPLATE_PATHS", "")
    user_template_paths: list[Path] = []

    for path_str in env_paths_str.split(","):
        path_str = path_str.strip()
        if not path_str:
            continue
        expanded_path = Path(path_str).expanduser()
        if not expanded_path.is_dir():
            logger.warning(f"Template path is not a directory, skipping: {expanded_path}")
            continue
        user_template_paths.append(expanded_path)

    if env_paths_str.strip() and not user_template_paths:
        logger.warning("PHASEGATE_TEMPLATE_PATHS provided but no valid directories found")

    directories_to_load: list[Path | str] = [BUILTIN_TEMPLATES_DIR]
    directories_to_load.extend(user_template_paths)

    result = registry.load_from_directories(directories_to_load, on_duplicate="overwrite")
    if result.is_failure:
        error_msg = f"Failed to load workflow types: {result.error}"
        logger.error(error_msg)
        raise RuntimeError(error_msg)

    if len(registry) == 0:
        raise RuntimeError("No workflow types loaded. Server cannot start without workflow types.")

    logger.info(f"Loaded {len(registry)} workflow type(s): {', '.join(registry.list_names())}")


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage application lifecycle with resource initialization and cleanup.

    1. Loads workflow types from built-in and user template directories
    2. Opens the workflow engine on the project's state directory
       (auto-save worker started)
    3. Yields context to make resources available to tools
    4. Stops the engine on shutdown, flushing pending auto-saves

    Args:
        _server: FastMCP server instance (unused, required by FastMCP signature)
    """
    logger.info("Initializing MCP server resources...")

    registry = WorkflowTypeRegistry()
    load_workflow_types(registry)

    engine = await WorkflowEngine.open(
        get_state_config(),
        registry,
        max_retries=_get_int_env("PHASEGATE_MAX_RETRIES", 1, 10),
        max_checkpoints=_get_int_env("PHASEGATE_MAX_CHECKPOINTS", 1, 1000),
    )

    try:
        yield AppContext(engine=engine, registry=registry)
    finally:
        logger.info("Shutting down MCP server...")
        await engine.close()


# Initialize MCP server with lifespan management
# Following Python MCP naming convention: {service}_mcp
mcp = FastMCP("phasegate_mcp", lifespan=app_lifespan)


# =============================================================================
# Server Entry Point
# =============================================================================


def main() -> None:
    """Entry point for running the MCP server.

    Called when the server is run via:
    - python -m phasegate_mcp
    - phasegate-mcp (console script)

    Defaults to stdio transport for MCP protocol communication.
    """
    # Import tools to register @mcp.tool() decorators
    from . import tools  # noqa: F401

    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level_str = os.getenv("PHASEGATE_LOG_LEVEL", "INFO").upper()

    if log_level_str not in valid_log_levels:
        print(
            f"Warning: Invalid PHASEGATE_LOG_LEVEL '{log_level_str}'. "
            f"Valid levels: {', '.join(sorted(valid_log_levels))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        log_level_str = "INFO"

    # Configure logging to stderr (MCP requirement)
    logging.basicConfig(
        level=getattr(logging, log_level_str),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info("Starting MCP server (press Ctrl+C to stop)...")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.exception(f"Server error: {e}")
        sys.exit(1)

    logger.info("Server shutdown complete")


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "mcp",
    "main",
    "AppContext",
    "AppContextType",
    "get_state_config",
    "load_workflow_types",
]
