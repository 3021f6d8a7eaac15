"""
YAML workflow-type loader.

Loads and validates workflow-type definitions using the WorkflowTypeSchema
Pydantic model. Every function returns a LoadResult instead of raising, so
one broken file never prevents the others from loading.
"""

import logging
from pathlib import Path

import yaml

from .results import LoadResult
from .schema import WorkflowTypeSchema

logger = logging.getLogger(__name__)


def load_workflow_type_from_file(file_path: str | Path) -> LoadResult[WorkflowTypeSchema]:
    """
    Load and validate a workflow type from a YAML file.

    Args:
        file_path: Path to YAML workflow-type file

    Returns:
        LoadResult.success(WorkflowTypeSchema) if valid
        LoadResult.failure(error_message) with validation errors

    Example:
        result = load_workflow_type_from_file("templates/new-project.yaml")
        if result.is_success:
            registry.register(result.value)
    """
    path = Path(file_path)

    if not path.exists():
        return LoadResult.failure(f"Workflow type file not found: {file_path}")

    if not path.is_file():
        return LoadResult.failure(f"Path is not a file: {file_path}")

    try:
        with open(path, encoding="utf-8") as f:
            yaml_content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        return LoadResult.failure(f"Failed to read file '{file_path}': {e}")

    return load_workflow_type_from_yaml(yaml_content, source=str(file_path))


def load_workflow_type_from_yaml(
    yaml_content: str, source: str = "<string>"
) -> LoadResult[WorkflowTypeSchema]:
    """
    Load and validate a workflow type from a YAML string.

    Args:
        yaml_content: YAML content as string
        source: Source identifier for error messages (default: "<string>")

    Example:
        yaml_str = '''
        name: quick-fix
        description: Two-phase fix workflow
        phases:
          - id: diagnose
          - id: fix
            dependencies: [diagnose]
        '''
        result = load_workflow_type_from_yaml(yaml_str)
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        return LoadResult.failure(f"Invalid YAML syntax in {source}: {e}")

    if not isinstance(data, dict):
        return LoadResult.failure(
            f"Workflow type {source} must be a YAML dictionary, got {type(data).__name__}"
        )

    schema_result = WorkflowTypeSchema.validate_yaml_dict(data)
    if schema_result.is_failure:
        return LoadResult.failure(f"Invalid workflow type in {source}:\n{schema_result.error}")

    return LoadResult.success(schema_result.unwrap(), metadata={"source": source})


def discover_workflow_types(directory: str | Path) -> LoadResult[list[WorkflowTypeSchema]]:
    """
    Discover and load all YAML workflow types in a directory (recursive).

    Invalid files are skipped with warnings, but don't fail the entire operation.

    Returns:
        LoadResult.success(list[WorkflowTypeSchema]) with valid workflow types
        LoadResult.failure(error_message) if directory doesn't exist
    """
    dir_path = Path(directory)

    if not dir_path.exists():
        return LoadResult.failure(f"Directory not found: {directory}")

    if not dir_path.is_dir():
        return LoadResult.failure(f"Path is not a directory: {directory}")

    workflow_types: list[WorkflowTypeSchema] = []
    errors: list[str] = []

    yaml_files = sorted(dir_path.glob("**/*.yaml")) + sorted(dir_path.glob("**/*.yml"))

    for yaml_file in yaml_files:
        result = load_workflow_type_from_file(yaml_file)
        if result.is_success:
            workflow_types.append(result.unwrap())
        else:
            errors.append(f"{yaml_file.name}: {result.error}")

    if errors:
        logger.warning(f"{len(errors)} workflow type(s) failed to load:")
        for error in errors:
            logger.warning(f"  - {error}")

    return LoadResult.success(workflow_types, metadata={"errors": errors})


__all__ = [
    "load_workflow_type_from_file",
    "load_workflow_type_from_yaml",
    "discover_workflow_types",
]
