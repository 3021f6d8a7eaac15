"""Tests for ResourcePool allocation accounting."""

import asyncio
import random

import pytest

from phasegate_mcp.engine import ReasonCode, ResourcePool, ResourceRequirements
from phasegate_mcp.engine.exceptions import ResourceAllocationError, ResourceTimeoutError


def _assert_conserved(pool: ResourcePool) -> None:
    for name, dimension in pool.status().items():
        assert dimension["available"] + dimension["allocated"] == pytest.approx(
            dimension["total"]
        ), name


def test_allocate_and_release_restore_capacity():
    pool = ResourcePool(memory=100, cpu=100, file_handles=10)
    pool.allocate("a", ResourceRequirements(memory=60, cpu=10, file_handles=2))

    status = pool.status()
    assert status["memory"]["available"] == 40
    assert status["memory"]["allocations"] == {"a": 60}
    assert pool.active_allocations == ["a"]

    pool.release("a")
    assert pool.status()["memory"]["available"] == 100
    assert pool.active_allocations == []


def test_allocation_is_all_or_nothing():
    pool = ResourcePool(memory=100, cpu=5, file_handles=10)
    with pytest.raises(ResourceAllocationError) as exc_info:
        pool.allocate("a", ResourceRequirements(memory=10, cpu=50, file_handles=1))

    assert exc_info.value.reason == ReasonCode.RESOURCE_UNAVAILABLE
    assert pool.status()["memory"]["available"] == 100
    assert pool.active_allocations == []


def test_duplicate_execution_id_is_rejected():
    pool = ResourcePool()
    pool.allocate("a", ResourceRequirements())
    with pytest.raises(ResourceAllocationError):
        pool.allocate("a", ResourceRequirements())
    _assert_conserved(pool)


def test_release_is_idempotent():
    pool = ResourcePool()
    pool.allocate("a", ResourceRequirements())
    pool.release("a")
    pool.release("a")
    pool.release("never-allocated")
    assert pool.status()["cpu"]["available"] == 100


def test_can_allocate_does_not_mutate():
    pool = ResourcePool(memory=50)
    assert pool.can_allocate(ResourceRequirements(memory=50))
    assert not pool.can_allocate(ResourceRequirements(memory=51))
    assert pool.active_allocations == []


def test_capacity_is_conserved_across_random_operations():
    rng = random.Random(1234)
    pool = ResourcePool(memory=500, cpu=100, file_handles=20)
    held: list[str] = []

    for step in range(500):
        if held and rng.random() < 0.4:
            pool.release(held.pop(rng.randrange(len(held))))
        else:
            requirement = ResourceRequirements(
                memory=rng.choice([0, 25, 50, 100]),
                cpu=rng.choice([0, 5, 10, 30]),
                file_handles=rng.choice([0, 1, 5]),
            )
            execution_id = f"exec-{step}"
            if pool.can_allocate(requirement):
                pool.allocate(execution_id, requirement)
                held.append(execution_id)
        _assert_conserved(pool)


async def test_acquire_waits_for_release():
    pool = ResourcePool(memory=100)
    pool.allocate("holder", ResourceRequirements(memory=100))

    async def release_soon():
        await asyncio.sleep(0.01)
        pool.release("holder")

    releaser = asyncio.create_task(release_soon())
    await pool.acquire("waiter", ResourceRequirements(memory=80), attempts=50, interval=0.005)
    await releaser

    assert pool.active_allocations == ["waiter"]
    _assert_conserved(pool)


async def test_acquire_times_out_after_bounded_attempts():
    pool = ResourcePool(memory=10)
    with pytest.raises(ResourceTimeoutError) as exc_info:
        await pool.acquire("big", ResourceRequirements(memory=50), attempts=3, interval=0)

    assert exc_info.value.reason == ReasonCode.RESOURCE_TIMEOUT
    assert pool.active_allocations == []
