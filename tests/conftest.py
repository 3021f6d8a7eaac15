"""Shared test configuration for phasegate-mcp tests.

Provides:
- An isolated state directory per test (tmp_path)
- A registry loaded with the built-in workflow types
- A configuration with every delay set to zero so retries, resource
  backoff and auto-save debouncing never slow tests down
- A started WorkflowEngine (closed after the test)
"""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from phasegate_mcp.engine import (
    Configuration,
    PhaseDefinition,
    StateConfig,
    StateStore,
    WorkflowEngine,
    WorkflowTypeRegistry,
)
from phasegate_mcp.engine.configuration import (
    AutoSaveSettings,
    ResourceSettings,
    RetrySettings,
)


@pytest.fixture
def state_config(tmp_path: Path) -> StateConfig:
    return StateConfig(root=tmp_path / "state")


@pytest.fixture
async def store(state_config: StateConfig) -> StateStore:
    store = StateStore(state_config)
    await store.init()
    return store


@pytest.fixture
def registry() -> WorkflowTypeRegistry:
    registry = WorkflowTypeRegistry()
    result = registry.load_builtin()
    assert result.is_success, result.error
    return registry


@pytest.fixture
def fast_configuration() -> Configuration:
    """Configuration with zero delays (retries, resource backoff, auto-save)."""
    return Configuration(
        auto_save=AutoSaveSettings(
            min_interval=0,
            batch_delay=0,
            max_queue_age=0,
            time_interval=0,
            backup_enabled=False,
        ),
        retry=RetrySettings(
            retry_delays=[0, 0, 0],
            resource_delay=0,
            restore_delay=0,
            validation_delay=0,
        ),
        resources=ResourceSettings(acquire_attempts=3, acquire_interval=0, acquire_max_interval=0),
    )


@pytest.fixture
async def engine(
    store: StateStore, registry: WorkflowTypeRegistry, fast_configuration: Configuration
) -> AsyncIterator[WorkflowEngine]:
    engine = WorkflowEngine(store, registry, fast_configuration)
    await engine.start()
    yield engine
    await engine.close()


def phase(
    phase_id: str, *dependencies: str, duration: float = 60, **resources: float
) -> PhaseDefinition:
    """Shorthand for a PhaseDefinition in scheduling tests."""
    return PhaseDefinition(
        id=phase_id,
        dependencies=dependencies,
        estimated_duration=duration,
        resources=resources or {},
    )
