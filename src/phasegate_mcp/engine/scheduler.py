"""Dependency-aware wave planning and execution.

plan() turns phase definitions into an ExecutionPlan: waves of mutually
independent phases plus sequential/parallel time estimates. execute() runs
the waves in order. Phases inside a wave run concurrently; the wave boundary
is a barrier (asyncio.gather waits for every phase to settle).

Each phase first acquires its resource requirement from the ResourcePool
with bounded backoff and always releases it afterwards. Dependency success
is not enforced: a phase whose dependency failed is still attempted, and the
caller gets the full successful/failed partition to decide what to do.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import datetime
from typing import Any

from .configuration import ResourceSettings, SchedulerSettings
from .dag import DAGResolver
from .exceptions import (
    CheckpointArchiveError,
    DependencyDeadlockError,
    InvalidPlanError,
    PhaseGateError,
    ReasonCode,
    ResourceTimeoutError,
)
from .models import (
    ExecutionPlan,
    ExecutionReport,
    PhaseDefinition,
    PhaseOutcome,
    PhaseRunResult,
    Wave,
)
from .phase_executor import PhaseExecutor, PhaseRunner, invoke_executor
from .phase_status import ErrorType, PhaseStatus
from .recovery import classify_error
from .resource_pool import ResourcePool

logger = logging.getLogger(__name__)


class DependencyScheduler:
    """Plans and executes phases in dependency-ordered waves.

    Args:
        pool: Shared resource pool
        resources: Acquire attempts and backoff
        settings: Deadlock policy
        max_concurrency: Maximum phases per wave (wider waves are split)

    Example:
        scheduler = DependencyScheduler(pool, max_concurrency=5)
        plan = scheduler.plan(["A", "B", "C"], definitions)
        report = await scheduler.execute(plan, executor)
        print(report.successful, report.failed)
    """

    def __init__(
        self,
        pool: ResourcePool,
        resources: ResourceSettings | None = None,
        settings: SchedulerSettings | None = None,
        max_concurrency: int | None = None,
    ):
        self.pool = pool
        self.resources = resources or ResourceSettings()
        self.settings = settings or SchedulerSettings()
        self.max_concurrency = max_concurrency

    def plan(
        self, phase_ids: list[str], definitions: dict[str, PhaseDefinition]
    ) -> ExecutionPlan:
        """Compute waves and time estimates for a batch of phases.

        Raises:
            InvalidPlanError: A phase id has no definition
            DependencyDeadlockError: Cyclic dependencies and on_deadlock="fail"
        """
        missing = [phase_id for phase_id in phase_ids if phase_id not in definitions]
        if missing:
            raise InvalidPlanError(f"No definition for phase(s): {', '.join(missing)}")

        batch = {phase_id: definitions[phase_id] for phase_id in phase_ids}
        resolver = DAGResolver(
            list(batch), {phase_id: list(d.dependencies) for phase_id, d in batch.items()}
        )
        result = resolver.get_execution_waves(
            on_deadlock=self.settings.on_deadlock, max_wave_size=self.max_concurrency
        )
        if result.is_failure:
            raise DependencyDeadlockError(result.metadata.get("remaining", list(batch)))

        waves = [
            wave.model_copy(
                update={
                    "estimated_duration": max(
                        batch[phase_id].estimated_duration for phase_id in wave.phase_ids
                    )
                }
            )
            for wave in result.unwrap()
        ]
        sequential = sum(d.estimated_duration for d in batch.values())
        parallel = sum(wave.estimated_duration for wave in waves)
        reduction = math.floor(100 * (1 - parallel / sequential) + 0.5) if sequential > 0 else 0

        plan = ExecutionPlan(
            waves=waves,
            definitions=batch,
            sequential_time_estimate=sequential,
            parallel_time_estimate=parallel,
            reduction_percent=reduction,
        )

        if plan.forced:
            logger.warning(
                "Dependency deadlock: forcing execution of "
                f"{', '.join(w for wave in waves if wave.forced for w in wave.phase_ids)}"
            )
        logger.info(
            f"Planned {len(batch)} phase(s) in {len(waves)} wave(s): "
            f"sequential={sequential:.0f}m parallel={parallel:.0f}m reduction={reduction}%"
        )
        return plan

    async def execute(
        self,
        plan: ExecutionPlan,
        executor: PhaseExecutor,
        context: dict[str, Any] | None = None,
        runner: PhaseRunner | None = None,
    ) -> ExecutionReport:
        """Run every wave of a plan, wave by wave.

        Args:
            plan: Output of plan()
            executor: Phase executor
            context: Shared context passed to every phase
            runner: Optional wrapper around the executor call (e.g.
                ErrorRecoveryManager.run_protected); a PhaseRunResult it
                returns decides the phase's success

        Raises:
            CheckpointArchiveError: Raised by a runner; the current wave is
                allowed to settle before it propagates
        """
        report = ExecutionReport()
        context = context or {}

        for wave in plan.waves:
            logger.info(f"Executing wave {wave.index}: {', '.join(wave.phase_ids)}")
            outcomes = await self._execute_wave(wave, plan, executor, context, runner)
            report.per_wave_results.append(outcomes)
            for outcome in outcomes:
                if outcome.success:
                    report.successful.append(outcome.phase_id)
                else:
                    report.failed.append(outcome.phase_id)

        report.finished_at = datetime.now()
        logger.info(
            f"Execution finished: {len(report.successful)} succeeded, {len(report.failed)} failed"
        )
        return report

    async def _execute_wave(
        self,
        wave: Wave,
        plan: ExecutionPlan,
        executor: PhaseExecutor,
        context: dict[str, Any],
        runner: PhaseRunner | None,
    ) -> list[PhaseOutcome]:
        tasks = [
            self._execute_phase(plan.definitions[phase_id], wave.index, executor, context, runner)
            for phase_id in wave.phase_ids
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes: list[PhaseOutcome] = []
        fatal: BaseException | None = None
        for phase_id, result in zip(wave.phase_ids, results):
            if isinstance(result, PhaseOutcome):
                outcomes.append(result)
                continue
            if isinstance(result, CheckpointArchiveError):
                fatal = fatal or result
            elif not isinstance(result, Exception):
                # CancelledError and friends
                raise result
            outcomes.append(
                PhaseOutcome(
                    phase_id=phase_id,
                    wave_index=wave.index,
                    status=PhaseStatus.FAILED,
                    error=str(result),
                    error_type=classify_error(result),
                    reason=result.reason
                    if isinstance(result, PhaseGateError)
                    else ReasonCode.PHASE_FAILED,
                )
            )

        if fatal is not None:
            raise fatal
        return outcomes

    async def _execute_phase(
        self,
        definition: PhaseDefinition,
        wave_index: int,
        executor: PhaseExecutor,
        context: dict[str, Any],
        runner: PhaseRunner | None,
    ) -> PhaseOutcome:
        execution_id = f"{definition.id}_{time.time_ns()}"
        started = time.monotonic()

        try:
            await self.pool.acquire(
                execution_id,
                definition.resources,
                attempts=self.resources.acquire_attempts,
                interval=self.resources.acquire_interval,
                backoff=self.resources.acquire_backoff,
                max_interval=self.resources.acquire_max_interval,
            )
        except ResourceTimeoutError as e:
            return PhaseOutcome(
                phase_id=definition.id,
                wave_index=wave_index,
                status=PhaseStatus.FAILED,
                execution_id=execution_id,
                error=e.message,
                error_type=ErrorType.RESOURCE,
                reason=ReasonCode.RESOURCE_TIMEOUT,
            )

        try:
            if runner is not None:
                result = await runner(executor, definition, context)
            else:
                result = await invoke_executor(executor, definition, context)
        finally:
            self.pool.release(execution_id)

        duration = time.monotonic() - started
        if isinstance(result, PhaseRunResult):
            return PhaseOutcome(
                phase_id=definition.id,
                wave_index=wave_index,
                status=PhaseStatus.COMPLETED
                if result.success
                else (PhaseStatus.SKIPPED if result.skipped else PhaseStatus.FAILED),
                execution_id=execution_id,
                result=result.result,
                error=result.error,
                error_type=result.error_type,
                reason=None if result.success else ReasonCode.PHASE_FAILED,
                duration_seconds=duration,
            )

        return PhaseOutcome(
            phase_id=definition.id,
            wave_index=wave_index,
            status=PhaseStatus.COMPLETED,
            execution_id=execution_id,
            result=result,
            duration_seconds=duration,
        )


__all__ = ["DependencyScheduler"]
