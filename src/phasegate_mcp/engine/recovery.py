"""Classified error recovery around phase execution.

Every attempt is preceded by a checkpoint named "pre-<phase>-attempt-<n>"
and a validation pass that repairs damaged state documents. A failed attempt
is classified into an ErrorType and the type selects the strategy:

    network     retry after retry_delays[attempt]
    timeout     retry after twice that delay
    resource    retry after resource_delay
    state       restore the best checkpoint, then retry after restore_delay
    permission  run once more in safe mode (no parallelism, longer timeout)
    validation  retry once, then skip
    unknown     retry until max_retries, then skip

Failures are appended to logs/error-recovery.log as JSON lines. An
unreadable checkpoint archive is fatal and propagates immediately.
"""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .checkpoint import Checkpoint
from .configuration import RetrySettings
from .exceptions import (
    CheckpointArchiveError,
    ResourceAllocationError,
    ResourceTimeoutError,
)
from .models import ErrorRecord, PhaseDefinition, PhaseRunResult, RecoveryOption
from .phase_executor import PhaseExecutor, invoke_executor
from .phase_status import ErrorType, RecoveryAction, StateTier
from .state_store import StateStore

logger = logging.getLogger(__name__)

# Checked in order; the first matching keyword wins
_KEYWORDS: list[tuple[ErrorType, tuple[str, ...]]] = [
    (ErrorType.NETWORK, ("network", "fetch", "api")),
    (ErrorType.TIMEOUT, ("timeout", "timed out")),
    (ErrorType.RESOURCE, ("memory", "resource", "allocation")),
    (ErrorType.STATE, ("state", "corrupt", "invalid json")),
    (ErrorType.PERMISSION, ("permission", "access", "denied")),
    (ErrorType.VALIDATION, ("validation", "required", "missing")),
]

RECOVERY_OPTIONS: list[RecoveryOption] = [
    RecoveryOption(action=RecoveryAction.RETRY, description="Retry phase execution"),
    RecoveryOption(action=RecoveryAction.SKIP, description="Skip this phase and continue"),
    RecoveryOption(
        action=RecoveryAction.SAFE_MODE,
        description="Execute in safe mode with limited functionality",
    ),
    RecoveryOption(action=RecoveryAction.RESTORE, description="Restore from checkpoint and retry"),
    RecoveryOption(action=RecoveryAction.REPAIR, description="Repair state and retry"),
    RecoveryOption(action=RecoveryAction.ABORT, description="Abort the workflow"),
]


def classify_error(error: BaseException | str) -> ErrorType:
    """Best-effort triage of an error into an ErrorType.

    Exception types that carry an unambiguous meaning are mapped first;
    everything else falls back to keyword matching on the message.

    Examples:
        >>> classify_error(RuntimeError("Connection timeout"))
        <ErrorType.TIMEOUT: 'timeout'>
        >>> classify_error("fetch failed")
        <ErrorType.NETWORK: 'network'>
    """
    if isinstance(error, BaseException):
        if isinstance(error, TimeoutError):
            return ErrorType.TIMEOUT
        if isinstance(error, PermissionError):
            return ErrorType.PERMISSION
        if isinstance(error, ConnectionError):
            return ErrorType.NETWORK
        if isinstance(error, MemoryError | ResourceAllocationError | ResourceTimeoutError):
            return ErrorType.RESOURCE
        if isinstance(error, json.JSONDecodeError):
            return ErrorType.STATE
        message = str(error).lower()
    else:
        message = error.lower()

    for error_type, keywords in _KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return error_type
    return ErrorType.UNKNOWN


@dataclass(frozen=True)
class RecoveryDecision:
    action: RecoveryAction
    delay: float = 0.0


def determine_strategy(
    error_type: ErrorType, attempt: int, settings: RetrySettings | None = None
) -> RecoveryDecision:
    """Pick the recovery action for a failed attempt (1-based)."""
    settings = settings or RetrySettings()
    backoff = settings.backoff_delay(attempt)

    if error_type == ErrorType.NETWORK:
        return RecoveryDecision(RecoveryAction.RETRY, backoff)
    if error_type == ErrorType.TIMEOUT:
        return RecoveryDecision(RecoveryAction.RETRY, backoff * 2)
    if error_type == ErrorType.RESOURCE:
        return RecoveryDecision(RecoveryAction.RETRY, settings.resource_delay)
    if error_type == ErrorType.STATE:
        return RecoveryDecision(RecoveryAction.RESTORE, settings.restore_delay)
    if error_type == ErrorType.PERMISSION:
        return RecoveryDecision(RecoveryAction.SAFE_MODE)
    if error_type == ErrorType.VALIDATION:
        action = RecoveryAction.RETRY if attempt < 2 else RecoveryAction.SKIP
        return RecoveryDecision(action, settings.validation_delay)

    action = RecoveryAction.RETRY if attempt < settings.max_retries else RecoveryAction.SKIP
    return RecoveryDecision(action, backoff)


class ErrorRecoveryManager:
    """Wraps phase execution with checkpointing, classification and recovery.

    Args:
        store: State store used for checkpoints, validation, repair and logs
        settings: Retry limits and delays
        on_error: Awaited after every failed attempt is recorded
        restore: Restores a checkpoint by id (default: StateStore.restore_checkpoint);
            PhaseStateMachine.restore_checkpoint also adopts the restored state

    Example:
        manager = ErrorRecoveryManager(store, config.retry)
        outcome = await manager.run_protected(run_research, research_definition)
        if not outcome.success:
            print(outcome.recovery_options)
    """

    def __init__(
        self,
        store: StateStore,
        settings: RetrySettings | None = None,
        on_error: Callable[[ErrorRecord], Awaitable[None]] | None = None,
        restore: Callable[[str], Awaitable[Checkpoint]] | None = None,
    ):
        self.store = store
        self.settings = settings or RetrySettings()
        self.on_error = on_error
        self.restore = restore or store.restore_checkpoint
        self._history: list[ErrorRecord] = []

    @property
    def max_retries(self) -> int:
        return self.settings.max_retries

    async def run_protected(
        self,
        executor: PhaseExecutor,
        phase: PhaseDefinition | str,
        context: dict[str, Any] | None = None,
        safe_mode_executor: PhaseExecutor | None = None,
    ) -> PhaseRunResult:
        """Execute a phase with up to max_retries attempts and recovery.

        Args:
            executor: Phase executor (sync or async)
            phase: Phase definition, or a bare phase id
            context: Passed through to the executor
            safe_mode_executor: Reduced-functionality executor used on
                permission errors (default: the same executor, flagged via
                context["safe_mode"])

        Returns:
            PhaseRunResult; on failure it carries the attempt history, the
            last classified error and the manual recovery options

        Raises:
            CheckpointArchiveError: The checkpoint archive is unusable (fatal)
        """
        definition = phase if isinstance(phase, PhaseDefinition) else PhaseDefinition(id=phase)
        phase_id = definition.id
        context = dict(context or {})
        attempts = 0
        last_error: Exception | None = None
        last_type: ErrorType | None = None

        while attempts < self.max_retries:
            attempts += 1
            await self.store.create_checkpoint(f"pre-{phase_id}-attempt-{attempts}")
            await self._ensure_valid_state()

            logger.info(f"Executing phase {phase_id} (attempt {attempts}/{self.max_retries})")
            try:
                result = await invoke_executor(
                    executor, definition, context, timeout=self.settings.attempt_timeout
                )
            except CheckpointArchiveError:
                raise
            except Exception as e:
                last_error = e
                last_type = classify_error(e)
                await self._record_error(phase_id, attempts, last_type, e)

                decision = determine_strategy(last_type, attempts, self.settings)
                logger.warning(
                    f"Phase {phase_id} attempt {attempts} failed ({last_type.value}): {e}; "
                    f"strategy={decision.action.value}"
                )

                if decision.action == RecoveryAction.RETRY and attempts < self.max_retries:
                    await self._sleep(decision.delay)
                    continue
                if decision.action == RecoveryAction.SKIP:
                    return PhaseRunResult(
                        success=False,
                        phase_id=phase_id,
                        attempts=attempts,
                        skipped=True,
                        error=str(e),
                        error_type=last_type,
                        history=self.history_for(phase_id),
                    )
                if decision.action == RecoveryAction.SAFE_MODE:
                    return await self._run_safe_mode(
                        safe_mode_executor or executor, definition, context, attempts
                    )
                if decision.action == RecoveryAction.RESTORE:
                    await self._restore_for(phase_id)
                    if attempts < self.max_retries:
                        await self._sleep(decision.delay)
                        continue
                break
            else:
                if attempts > 1:
                    logger.info(f"Phase {phase_id} succeeded after {attempts} attempts")
                self._clear_errors(phase_id)
                return PhaseRunResult(
                    success=True, phase_id=phase_id, attempts=attempts, result=result
                )

        logger.error(f"Phase {phase_id} failed after {attempts} attempts: {last_error}")
        return PhaseRunResult(
            success=False,
            phase_id=phase_id,
            attempts=attempts,
            error=str(last_error) if last_error else None,
            error_type=last_type,
            history=self.history_for(phase_id),
            recovery_options=self.get_recovery_options(phase_id, last_error),
        )

    def get_recovery_options(
        self, phase_id: str, error: BaseException | None = None
    ) -> list[RecoveryOption]:
        """Manual recovery options offered once automatic recovery gave up."""
        return list(RECOVERY_OPTIONS)

    def get_error_stats(self) -> dict[str, Any]:
        """Counts of outstanding errors by type and phase, plus the five most recent."""
        by_type: dict[str, int] = {}
        by_phase: dict[str, int] = {}
        for record in self._history:
            by_type[record.classified_type.value] = by_type.get(record.classified_type.value, 0) + 1
            by_phase[record.phase_id] = by_phase.get(record.phase_id, 0) + 1

        return {
            "total": len(self._history),
            "by_type": by_type,
            "by_phase": by_phase,
            "recent_errors": [r.model_dump(mode="json") for r in self._history[-5:]],
        }

    def history_for(self, phase_id: str) -> list[ErrorRecord]:
        return [record for record in self._history if record.phase_id == phase_id]

    async def _run_safe_mode(
        self,
        executor: PhaseExecutor,
        definition: PhaseDefinition,
        context: dict[str, Any],
        attempts: int,
    ) -> PhaseRunResult:
        """Single reduced-functionality run: no parallelism, extended timeout."""
        logger.warning(f"Entering safe mode for phase {definition.id}")
        safe_context = {**context, "safe_mode": True, "max_parallel": 1}
        timeout = None
        if self.settings.attempt_timeout is not None:
            timeout = self.settings.attempt_timeout * self.settings.safe_mode_timeout_factor

        try:
            result = await invoke_executor(executor, definition, safe_context, timeout=timeout)
        except CheckpointArchiveError:
            raise
        except Exception as e:
            error_type = classify_error(e)
            await self._record_error(definition.id, attempts + 1, error_type, e)
            logger.error(f"Safe mode execution of {definition.id} also failed: {e}")
            return PhaseRunResult(
                success=False,
                phase_id=definition.id,
                attempts=attempts + 1,
                safe_mode=True,
                error=str(e),
                error_type=error_type,
                history=self.history_for(definition.id),
                recovery_options=self.get_recovery_options(definition.id, e),
            )

        self._clear_errors(definition.id)
        return PhaseRunResult(
            success=True,
            phase_id=definition.id,
            attempts=attempts + 1,
            result=result,
            safe_mode=True,
        )

    async def _ensure_valid_state(self) -> None:
        for tier in (StateTier.RUNTIME, StateTier.PERSISTENT):
            report = await self.store.validate(tier)
            if not report.valid:
                logger.warning(f"{tier.value} state failed validation before execution")
                await self.store.repair(tier, report)

    async def _restore_for(self, phase_id: str) -> None:
        checkpoint = await self.store.find_best_checkpoint(phase_id)
        if checkpoint is None:
            logger.warning(f"No checkpoint available to restore for phase {phase_id}")
            return
        await self.restore(checkpoint.checkpoint_id)

    async def _record_error(
        self, phase_id: str, attempt: int, error_type: ErrorType, error: BaseException
    ) -> None:
        record = ErrorRecord(
            phase_id=phase_id,
            attempt=attempt,
            classified_type=error_type,
            message=str(error),
        )
        self._history.append(record)

        await self.store.append_log(
            self.store.config.error_log_path,
            {
                "timestamp": record.timestamp.isoformat(),
                "phase_id": phase_id,
                "attempt": attempt,
                "error": {
                    "message": record.message,
                    "type": error_type.value,
                    "exception": type(error).__name__,
                    "traceback": "".join(traceback.format_exception(error)),
                },
            },
        )
        if self.on_error is not None:
            await self.on_error(record)

    def _clear_errors(self, phase_id: str) -> None:
        self._history = [record for record in self._history if record.phase_id != phase_id]

    async def _sleep(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)


__all__ = [
    "classify_error",
    "determine_strategy",
    "RecoveryDecision",
    "ErrorRecoveryManager",
    "RECOVERY_OPTIONS",
]
