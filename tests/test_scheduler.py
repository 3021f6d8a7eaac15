"""Tests for DependencyScheduler planning and wave execution."""

import asyncio

import pytest
from conftest import phase

from phasegate_mcp.engine import (
    DependencyScheduler,
    PhaseRunResult,
    PhaseStatus,
    ReasonCode,
    ResourcePool,
)
from phasegate_mcp.engine.configuration import ResourceSettings, SchedulerSettings
from phasegate_mcp.engine.exceptions import (
    CheckpointArchiveError,
    DependencyDeadlockError,
    InvalidPlanError,
)

FAST_RESOURCES = ResourceSettings(acquire_attempts=3, acquire_interval=0, acquire_max_interval=0)


def _definitions(*phases):
    return {p.id: p for p in phases}


@pytest.fixture
def pool() -> ResourcePool:
    return ResourcePool(memory=1000, cpu=100, file_handles=100)


@pytest.fixture
def scheduler(pool: ResourcePool) -> DependencyScheduler:
    return DependencyScheduler(pool, FAST_RESOURCES)


class TestPlanning:
    def test_waves_and_estimates(self, scheduler):
        definitions = _definitions(
            phase("A", duration=60), phase("B", duration=90), phase("C", "A", "B", duration=30)
        )

        plan = scheduler.plan(["A", "B", "C"], definitions)

        assert [w.phase_ids for w in plan.waves] == [["A", "B"], ["C"]]
        assert plan.sequential_time_estimate == 180
        assert plan.parallel_time_estimate == 120
        assert plan.reduction_percent == 33
        assert [w.estimated_duration for w in plan.waves] == [90, 30]
        assert not plan.forced
        assert plan.wave_index_of("B") == 0
        assert plan.wave_index_of("C") == 1
        with pytest.raises(KeyError):
            plan.wave_index_of("ghost")

    def test_parallel_estimate_never_exceeds_sequential(self, scheduler):
        definitions = _definitions(
            phase("a", duration=10),
            phase("b", "a", duration=20),
            phase("c", "a", duration=5),
            phase("d", "b", "c", duration=15),
        )
        plan = scheduler.plan(list(definitions), definitions)
        assert plan.parallel_time_estimate <= plan.sequential_time_estimate
        assert plan.parallel_time_estimate == 10 + 20 + 15

    def test_missing_definition_is_rejected(self, scheduler):
        with pytest.raises(InvalidPlanError) as exc_info:
            scheduler.plan(["A", "ghost"], _definitions(phase("A")))
        assert exc_info.value.reason == ReasonCode.INVALID_PLAN
        assert "ghost" in exc_info.value.message

    def test_deadlock_is_forced_by_default(self, scheduler):
        definitions = _definitions(phase("a", "b"), phase("b", "a"))
        plan = scheduler.plan(["a", "b"], definitions)
        assert plan.forced
        assert plan.phase_ids == ["a", "b"]

    def test_deadlock_can_fail(self, pool):
        scheduler = DependencyScheduler(
            pool, FAST_RESOURCES, SchedulerSettings(on_deadlock="fail")
        )
        with pytest.raises(DependencyDeadlockError) as exc_info:
            scheduler.plan(["a", "b"], _definitions(phase("a", "b"), phase("b", "a")))
        assert exc_info.value.remaining == ["a", "b"]

    def test_concurrency_limit_splits_waves(self, pool):
        scheduler = DependencyScheduler(pool, FAST_RESOURCES, max_concurrency=2)
        definitions = _definitions(*(phase(name) for name in "abc"))
        plan = scheduler.plan(list(definitions), definitions)
        assert [w.phase_ids for w in plan.waves] == [["a", "b"], ["c"]]


class TestExecution:
    async def test_wave_barrier_orders_execution(self, scheduler, pool):
        definitions = _definitions(phase("A"), phase("B"), phase("C", "A", "B"))
        plan = scheduler.plan(["A", "B", "C"], definitions)
        events: list[str] = []
        running = 0
        peak = 0

        async def executor(definition, context):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            events.append(f"start:{definition.id}")
            await asyncio.sleep(0.01)
            events.append(f"end:{definition.id}")
            running -= 1
            return definition.id.lower()

        report = await scheduler.execute(plan, executor)

        assert report.successful == ["A", "B", "C"]
        assert report.failed == []
        assert peak == 2
        assert events.index("start:C") > max(events.index("end:A"), events.index("end:B"))
        assert report.outcome("C").result == "c"
        assert report.outcome("C").wave_index == 1
        assert pool.active_allocations == []
        assert report.finished_at is not None

    async def test_failures_are_partitioned_and_dependents_still_run(self, scheduler, pool):
        definitions = _definitions(phase("A"), phase("B"), phase("C", "A", "B"))
        plan = scheduler.plan(["A", "B", "C"], definitions)
        ran: list[str] = []

        def executor(definition, context):
            ran.append(definition.id)
            if definition.id == "B":
                raise RuntimeError("Connection timeout")
            return context["token"]

        report = await scheduler.execute(plan, executor, {"token": 42})

        assert report.successful == ["A", "C"]
        assert report.failed == ["B"]
        assert sorted(ran) == ["A", "B", "C"]

        failed = report.outcome("B")
        assert failed.status == PhaseStatus.FAILED
        assert failed.reason == ReasonCode.PHASE_FAILED
        assert failed.error == "Connection timeout"
        assert failed.error_type.value == "timeout"
        assert pool.active_allocations == []

    async def test_unavailable_resources_fail_the_phase(self, scheduler, pool):
        definitions = _definitions(phase("small"), phase("huge", memory=5000))
        plan = scheduler.plan(["small", "huge"], definitions)
        ran: list[str] = []

        async def executor(definition, context):
            ran.append(definition.id)

        report = await scheduler.execute(plan, executor)

        assert report.successful == ["small"]
        assert report.failed == ["huge"]
        assert report.outcome("huge").reason == ReasonCode.RESOURCE_TIMEOUT
        assert ran == ["small"]
        assert pool.active_allocations == []

    async def test_runner_result_decides_status(self, scheduler):
        definitions = _definitions(phase("ok"), phase("skip"), phase("bad"))
        plan = scheduler.plan(list(definitions), definitions)

        async def runner(executor, definition, context):
            if definition.id == "ok":
                return PhaseRunResult(success=True, phase_id="ok", attempts=1, result="fine")
            return PhaseRunResult(
                success=False,
                phase_id=definition.id,
                attempts=2,
                skipped=definition.id == "skip",
                error="gave up",
            )

        report = await scheduler.execute(plan, lambda d, c: None, runner=runner)

        assert report.successful == ["ok"]
        assert report.failed == ["skip", "bad"]
        assert report.outcome("ok").result == "fine"
        assert report.outcome("skip").status == PhaseStatus.SKIPPED
        assert report.outcome("bad").status == PhaseStatus.FAILED

    async def test_archive_error_propagates_after_wave_settles(self, scheduler, pool):
        definitions = _definitions(phase("a"), phase("b"), phase("c", "a"))
        plan = scheduler.plan(list(definitions), definitions)
        finished: list[str] = []

        async def runner(executor, definition, context):
            if definition.id == "a":
                raise CheckpointArchiveError("archive unreadable")
            await asyncio.sleep(0.01)
            finished.append(definition.id)
            return "ok"

        with pytest.raises(CheckpointArchiveError):
            await scheduler.execute(plan, lambda d, c: None, runner=runner)

        assert finished == ["b"]
        assert pool.active_allocations == []
