"""
Workflow-type registry.

Central registry for workflow-type definitions loaded from YAML files. The
phase state machine resolves workflow types through it, and the MCP tools
list them.

Features:
- Register workflow types with duplicate detection
- Retrieve workflow types by name (unknown names raise UnknownWorkflowTypeError)
- Load from multiple directories with priority ordering
- Track the source directory of each workflow type
"""

import logging
from pathlib import Path
from typing import Any, Literal

from .exceptions import UnknownWorkflowTypeError
from .loader import discover_workflow_types
from .results import LoadResult
from .schema import WorkflowTypeSchema

logger = logging.getLogger(__name__)

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


class WorkflowTypeRegistry:
    """
    Central registry for workflow-type definitions.

    Example:
        registry = WorkflowTypeRegistry()
        registry.load_from_directories([BUILTIN_TEMPLATES_DIR, "~/my-types"])

        workflow_type = registry.get("new-project")
        print(workflow_type.phase_ids)
    """

    def __init__(self) -> None:
        self._types: dict[str, WorkflowTypeSchema] = {}
        self._sources: dict[str, Path] = {}

    def register(self, workflow_type: WorkflowTypeSchema, source_dir: Path | None = None) -> None:
        """
        Register a workflow type.

        Raises:
            ValueError: If a workflow type with the same name already exists
        """
        if workflow_type.name in self._types:
            raise ValueError(
                f"Workflow type '{workflow_type.name}' already registered. "
                "Use unregister() first."
            )

        self._types[workflow_type.name] = workflow_type
        if source_dir is not None:
            self._sources[workflow_type.name] = source_dir

        logger.info(f"Registered workflow type: {workflow_type.name}")

    def unregister(self, name: str) -> None:
        """
        Unregister a workflow type by name.

        Raises:
            KeyError: If workflow type not found
        """
        if name not in self._types:
            raise KeyError(f"Workflow type '{name}' not found in registry")

        del self._types[name]
        self._sources.pop(name, None)
        logger.info(f"Unregistered workflow type: {name}")

    def get(self, name: str) -> WorkflowTypeSchema:
        """
        Get a workflow type by name.

        Raises:
            UnknownWorkflowTypeError: If the workflow type is not registered
        """
        if name not in self._types:
            raise UnknownWorkflowTypeError(name, self.list_names())
        return self._types[name]

    def exists(self, name: str) -> bool:
        return name in self._types

    def list_names(self) -> list[str]:
        return sorted(self._types)

    def get_source(self, name: str) -> Path | None:
        return self._sources.get(name)

    def get_metadata(self, name: str) -> dict[str, Any]:
        """Summary of a workflow type for listing tools."""
        workflow_type = self.get(name)
        return {
            "name": workflow_type.name,
            "description": workflow_type.description,
            "version": workflow_type.version,
            "tags": workflow_type.tags,
            "phases": workflow_type.phase_ids,
            "approval_gates": [
                {"id": gate.id, "after": gate.after, "before": gate.before}
                for gate in workflow_type.approval_gates
            ],
            "estimated_minutes": workflow_type.remaining_minutes(0),
            "source": str(self._sources[name]) if name in self._sources else None,
        }

    def list_all_metadata(self) -> list[dict[str, Any]]:
        return [self.get_metadata(name) for name in self.list_names()]

    def load_from_directories(
        self,
        directories: list[str | Path],
        on_duplicate: Literal["skip", "overwrite", "error"] = "overwrite",
    ) -> LoadResult[dict[str, int]]:
        """
        Load workflow types from multiple directories in priority order.

        Directories are processed in order. With the default "overwrite"
        policy a later directory replaces workflow types of the same name
        from an earlier one (user directories override built-ins).

        Returns:
            LoadResult.success(dict) with workflow types loaded per directory
            LoadResult.failure(error_message) on a duplicate with on_duplicate="error"
        """
        if not directories:
            return LoadResult.failure("No directories provided")

        results: dict[str, int] = {}

        for directory in directories:
            dir_path = Path(directory).expanduser().resolve()
            discovered = discover_workflow_types(dir_path)

            if discovered.is_failure:
                logger.warning(f"Skipping workflow type directory: {discovered.error}")
                results[str(dir_path)] = 0
                continue

            loaded_count = 0
            for workflow_type in discovered.unwrap():
                if workflow_type.name in self._types:
                    existing = self._sources.get(workflow_type.name, "unknown")
                    if on_duplicate == "skip":
                        logger.info(
                            f"Skipping duplicate workflow type '{workflow_type.name}' "
                            f"from {dir_path} (keeping {existing})"
                        )
                        continue
                    if on_duplicate == "error":
                        error_msg = (
                            f"Duplicate workflow type '{workflow_type.name}' in {dir_path} "
                            f"(already loaded from {existing})"
                        )
                        logger.error(error_msg)
                        return LoadResult.failure(error_msg)
                    logger.info(
                        f"Overriding workflow type '{workflow_type.name}' from {existing} "
                        f"with version from {dir_path}"
                    )
                    self.unregister(workflow_type.name)

                self.register(workflow_type, source_dir=dir_path)
                loaded_count += 1

            results[str(dir_path)] = loaded_count
            logger.info(f"Loaded {loaded_count} workflow type(s) from {dir_path}")

        return LoadResult.success(results)

    def load_builtin(self) -> LoadResult[dict[str, int]]:
        """Load the workflow types shipped with the package."""
        return self.load_from_directories([BUILTIN_TEMPLATES_DIR])

    def clear(self) -> None:
        count = len(self._types)
        self._types.clear()
        self._sources.clear()
        logger.info(f"Cleared {count} workflow types from registry")

    def __len__(self) -> int:
        return len(self._types)

    def __contains__(self, name: str) -> bool:
        return name in self._types

    def __repr__(self) -> str:
        return f"<WorkflowTypeRegistry: {len(self._types)} workflow types>"


__all__ = ["WorkflowTypeRegistry", "BUILTIN_TEMPLATES_DIR"]
