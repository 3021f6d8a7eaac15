"""Tests for AutoSaveCoordinator batching, debouncing and backups."""

import asyncio

import pytest

from phasegate_mcp.engine import (
    AutoSaveCoordinator,
    SaveTrigger,
    StateStore,
    StateTier,
    WorkflowState,
)
from phasegate_mcp.engine.configuration import AutoSaveSettings
from phasegate_mcp.engine.models import AutoSaveInfo


class RecordingPersist:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.saves: list[AutoSaveInfo] = []

    async def __call__(self, info: AutoSaveInfo) -> bool:
        if self.succeed:
            self.saves.append(info)
        return self.succeed


def _settings(**overrides) -> AutoSaveSettings:
    values = {
        "min_interval": 0,
        "batch_delay": 0,
        "max_queue_age": 0,
        "time_interval": 0,
        "backup_enabled": False,
    }
    values.update(overrides)
    return AutoSaveSettings(**values)


async def _wait_for(condition, timeout: float = 2.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.fixture
def persist() -> RecordingPersist:
    return RecordingPersist()


async def test_flush_saves_queued_triggers_in_one_batch(store, persist):
    coordinator = AutoSaveCoordinator(store, persist, _settings())

    assert coordinator.register_trigger(SaveTrigger.DECISION_RECORDING, {"decision_id": "d1"})
    assert coordinator.register_trigger(SaveTrigger.PROGRESS_UPDATE)
    assert await coordinator.flush()

    assert len(persist.saves) == 1
    info = persist.saves[0]
    assert info.save_count == 1
    assert [t["trigger"] for t in info.triggers] == ["decision_recording", "progress_update"]
    assert info.triggers[0]["data"] == {"decision_id": "d1"}
    assert coordinator.get_stats()["queue_size"] == 0


async def test_flush_with_empty_queue_is_a_no_op(store, persist):
    coordinator = AutoSaveCoordinator(store, persist, _settings())
    assert not await coordinator.flush()
    assert persist.saves == []


async def test_disabled_triggers_are_ignored(store, persist):
    settings = _settings(triggers={SaveTrigger.PROGRESS_UPDATE: False})
    coordinator = AutoSaveCoordinator(store, persist, settings)

    assert not coordinator.register_trigger(SaveTrigger.PROGRESS_UPDATE)
    assert coordinator.register_trigger(SaveTrigger.ERROR_OCCURRENCE)

    disabled = AutoSaveCoordinator(store, persist, _settings(enabled=False))
    assert not disabled.register_trigger(SaveTrigger.ERROR_OCCURRENCE)


async def test_queue_is_capped_by_dropping_oldest(store, persist):
    coordinator = AutoSaveCoordinator(store, persist, _settings(max_queue_size=3))
    for n in range(5):
        coordinator.register_trigger(SaveTrigger.DOCUMENT_CREATION, {"n": n})

    stats = coordinator.get_stats()
    assert stats["queue_size"] == 3
    assert stats["dropped_triggers"] == 2

    await coordinator.flush()
    assert [t["data"]["n"] for t in persist.saves[0].triggers] == [2, 3, 4]


async def test_failed_save_requeues_batch(store):
    persist = RecordingPersist(succeed=False)
    coordinator = AutoSaveCoordinator(store, persist, _settings())
    coordinator.register_trigger(SaveTrigger.PHASE_TRANSITION)

    assert not await coordinator.flush()
    assert coordinator.get_stats()["queue_size"] == 1
    assert coordinator.get_stats()["save_count"] == 0

    persist.succeed = True
    assert await coordinator.flush()
    assert persist.saves[0].save_count == 1


async def test_worker_flushes_in_background(store, persist):
    coordinator = AutoSaveCoordinator(store, persist, _settings())
    await coordinator.start()
    try:
        coordinator.register_trigger(SaveTrigger.CHECKPOINT_CREATION)
        await _wait_for(lambda: len(persist.saves) == 1)
        assert coordinator.get_stats()["running"]
    finally:
        await coordinator.stop()
    assert not coordinator.get_stats()["running"]


async def test_rapid_triggers_are_debounced(store, persist):
    coordinator = AutoSaveCoordinator(store, persist, _settings(batch_delay=0.05, max_queue_age=5))
    await coordinator.start()
    try:
        for _ in range(3):
            coordinator.register_trigger(SaveTrigger.PROGRESS_UPDATE)
        await _wait_for(lambda: len(persist.saves) == 1)
        await asyncio.sleep(0.1)
    finally:
        await coordinator.stop()

    assert len(persist.saves) == 1
    assert len(persist.saves[0].triggers) == 3


async def test_queue_age_bounds_the_debounce(store, persist):
    coordinator = AutoSaveCoordinator(store, persist, _settings(batch_delay=60, max_queue_age=0.05))
    await coordinator.start()
    try:
        coordinator.register_trigger(SaveTrigger.PROGRESS_UPDATE)
        await _wait_for(lambda: len(persist.saves) == 1)
    finally:
        await coordinator.stop()


async def test_stop_flushes_pending_triggers(store, persist):
    coordinator = AutoSaveCoordinator(store, persist, _settings(batch_delay=60, max_queue_age=60))
    await coordinator.start()
    coordinator.register_trigger(SaveTrigger.DECISION_RECORDING)
    await asyncio.sleep(0.01)
    assert persist.saves == []

    await coordinator.stop()
    assert len(persist.saves) == 1


async def test_backups_are_rotated_before_save(store: StateStore, persist):
    await store.save(StateTier.RUNTIME, WorkflowState(workflow_id="wf"))
    coordinator = AutoSaveCoordinator(
        store, persist, _settings(backup_enabled=True, max_backups=2)
    )

    for _ in range(4):
        coordinator.register_trigger(SaveTrigger.PROGRESS_UPDATE)
        assert await coordinator.flush()

    assert len(await store.list_backups()) == 2
    assert coordinator.get_stats()["save_count"] == 4
