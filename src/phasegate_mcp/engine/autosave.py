"""Debounced, rate-limited auto-save.

State mutations register named triggers instead of writing immediately. A
single worker coroutine flushes the queued triggers as one save when

    - no new trigger arrived for batch_delay seconds, or
    - the oldest trigger of the batch has waited max_queue_age seconds,

but never sooner than min_interval seconds after the previous save. The age
cap guarantees that a continuous stream of triggers is still flushed.

Before each save the runtime document is copied into backups/ and old
backups are rotated out. The save itself is delegated to a persist callback
which receives the AutoSaveInfo (last_save, save_count, triggers) to embed
in the runtime state.

Usage:
    coordinator = AutoSaveCoordinator(store, machine.persist_snapshot, settings)
    await coordinator.start()
    coordinator.register_trigger(SaveTrigger.DECISION_RECORDING, {"id": "d1"})
    ...
    await coordinator.stop()  # flushes anything still queued
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .configuration import AutoSaveSettings
from .models import AutoSaveInfo
from .phase_status import SaveTrigger
from .state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class QueuedTrigger:
    trigger: SaveTrigger
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class AutoSaveCoordinator:
    """Batches save triggers into debounced persistence calls.

    Args:
        store: Used for runtime backups
        persist: Writes the state; returns False if the write failed
        settings: Cadence, queue limits, enabled triggers and backups
        clock: Monotonic clock (seconds)
    """

    def __init__(
        self,
        store: StateStore,
        persist: Callable[[AutoSaveInfo], Awaitable[bool]],
        settings: AutoSaveSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.persist = persist
        self.settings = settings or AutoSaveSettings()
        self._clock = clock

        self._queue: deque[QueuedTrigger] = deque()
        self._batch_started: float | None = None
        self._last_trigger = 0.0
        self._last_save: float | None = None
        self._last_save_at: datetime | None = None
        self._save_count = 0
        self._dropped = 0

        self._wakeup = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._worker_task: asyncio.Task[None] | None = None
        self._interval_task: asyncio.Task[None] | None = None
        self._running = False

    def register_trigger(self, trigger: SaveTrigger, data: dict[str, Any] | None = None) -> bool:
        """Queue a save request.

        Returns:
            False if auto-save or this trigger is disabled, True otherwise
        """
        if not self.settings.enabled or not self.settings.trigger_enabled(trigger):
            logger.debug(f"Auto-save trigger ignored: {trigger.value}")
            return False

        now = self._clock()
        if not self._queue:
            self._batch_started = now
        self._queue.append(QueuedTrigger(trigger=trigger, data=dict(data or {})))
        self._last_trigger = now

        while len(self._queue) > self.settings.max_queue_size:
            dropped = self._queue.popleft()
            self._dropped += 1
            logger.debug(f"Auto-save queue full, dropped oldest trigger {dropped.trigger.value}")

        self._wakeup.set()
        return True

    async def start(self) -> None:
        """Start the flush worker and the periodic save task."""
        if self._running:
            logger.warning("AutoSaveCoordinator already running")
            return

        self._running = True
        self._worker_task = asyncio.create_task(self._worker())
        if self.settings.time_interval > 0:
            self._interval_task = asyncio.create_task(self._interval_loop())
        logger.info("AutoSaveCoordinator started")

    async def stop(self) -> None:
        """Stop background tasks and flush whatever is still queued."""
        if not self._running:
            return

        self._running = False
        for task in (self._interval_task, self._worker_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._worker_task = None
        self._interval_task = None

        await self.flush()
        logger.info(f"AutoSaveCoordinator stopped after {self._save_count} save(s)")

    async def flush(self) -> bool:
        """Persist all queued triggers now, ignoring the debounce timers.

        Returns:
            True if a save happened, False if the queue was empty or the save failed
        """
        async with self._flush_lock:
            if not self._queue:
                return False

            batch = list(self._queue)
            self._queue.clear()
            self._batch_started = None

            try:
                if self.settings.backup_enabled:
                    await self.store.create_backup()
                    await self.store.prune_backups(self.settings.max_backups)
            except OSError as e:
                logger.error(f"Auto-save backup failed: {e}")

            now = datetime.now()
            info = AutoSaveInfo(
                last_save=now,
                save_count=self._save_count + 1,
                triggers=[queued.to_dict() for queued in batch],
            )
            if not await self.persist(info):
                logger.error(f"Auto-save failed; {len(batch)} trigger(s) requeued")
                self._queue.extendleft(reversed(batch))
                self._batch_started = self._clock()
                return False

            self._save_count += 1
            self._last_save = self._clock()
            self._last_save_at = now
            logger.debug(
                f"Auto-saved ({len(batch)} trigger(s): "
                f"{', '.join(sorted({q.trigger.value for q in batch}))})"
            )
            return True

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self.settings.enabled,
            "running": self._running,
            "save_count": self._save_count,
            "queue_size": len(self._queue),
            "dropped_triggers": self._dropped,
            "last_save": self._last_save_at.isoformat() if self._last_save_at else None,
        }

    def _due_at(self) -> float:
        """Clock time at which the current batch should be flushed."""
        quiet = self._last_trigger + self.settings.batch_delay
        oldest = self._batch_started if self._batch_started is not None else self._last_trigger
        due = min(quiet, oldest + self.settings.max_queue_age)
        if self._last_save is not None:
            due = max(due, self._last_save + self.settings.min_interval)
        return due

    async def _worker(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()

            while self._queue:
                delay = self._due_at() - self._clock()
                if delay > 0:
                    # A new trigger wakes us early to recompute the deadline
                    with contextlib.suppress(TimeoutError):
                        await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                    self._wakeup.clear()
                    continue

                if not await self.flush():
                    # Persist failed; back off for one min_interval before retrying
                    await asyncio.sleep(max(self.settings.min_interval, 0.1))

    async def _interval_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.time_interval)
            self.register_trigger(SaveTrigger.TIME_INTERVAL)


__all__ = ["AutoSaveCoordinator", "QueuedTrigger"]
