"""Bounded multi-dimensional resource accounting.

Each dimension (memory, cpu, file_handles) tracks a total, the amount still
available, and the amount held by each execution id. The invariant
available + sum(allocations) == total holds after every call, because
allocation is all-or-nothing across dimensions and release returns exactly
what was granted.

Mutation is serialized by a threading.Lock so the pool can be shared
between the event loop and executor threads.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from .configuration import ResourceSettings
from .exceptions import ResourceAllocationError, ResourceTimeoutError
from .models import ResourceRequirements

logger = logging.getLogger(__name__)


@dataclass
class ResourceDimension:
    total: float
    available: float
    allocations: dict[str, float] = field(default_factory=dict)

    @property
    def allocated(self) -> float:
        return sum(self.allocations.values())


class ResourcePool:
    """Grants, denies and releases resource allocations per execution id.

    Example:
        pool = ResourcePool.from_settings(ResourceSettings())
        req = ResourceRequirements(memory=50, cpu=10, file_handles=5)
        await pool.acquire("research_1", req)
        try:
            ...
        finally:
            pool.release("research_1")
    """

    DIMENSIONS = ("memory", "cpu", "file_handles")

    def __init__(self, memory: float = 1024.0, cpu: float = 100.0, file_handles: float = 100.0):
        self._lock = threading.Lock()
        self._dimensions: dict[str, ResourceDimension] = {
            "memory": ResourceDimension(total=memory, available=memory),
            "cpu": ResourceDimension(total=cpu, available=cpu),
            "file_handles": ResourceDimension(total=file_handles, available=file_handles),
        }

    @classmethod
    def from_settings(cls, settings: ResourceSettings) -> ResourcePool:
        return cls(memory=settings.memory, cpu=settings.cpu, file_handles=settings.file_handles)

    def can_allocate(self, requirements: ResourceRequirements) -> bool:
        with self._lock:
            return self._fits(requirements)

    def allocate(self, execution_id: str, requirements: ResourceRequirements) -> None:
        """Grant every dimension of the requirement, or nothing.

        Raises:
            ResourceAllocationError: Insufficient capacity, or the id already holds resources
        """
        with self._lock:
            if any(execution_id in dim.allocations for dim in self._dimensions.values()):
                raise ResourceAllocationError(f"Execution {execution_id} already holds resources")
            if not self._fits(requirements):
                raise ResourceAllocationError(
                    f"Insufficient resources for {execution_id}: requested "
                    f"{requirements.as_dict()}, available {self._available()}"
                )
            for name, amount in requirements.as_dict().items():
                dimension = self._dimensions[name]
                dimension.available -= amount
                dimension.allocations[execution_id] = amount

        logger.debug(f"Allocated resources for {execution_id}: {requirements.as_dict()}")

    def release(self, execution_id: str) -> None:
        """Return everything held by an execution id. Unknown ids are a no-op."""
        released = False
        with self._lock:
            for dimension in self._dimensions.values():
                amount = dimension.allocations.pop(execution_id, None)
                if amount is not None:
                    dimension.available += amount
                    released = True

        if released:
            logger.debug(f"Released resources for {execution_id}")

    async def acquire(
        self,
        execution_id: str,
        requirements: ResourceRequirements,
        attempts: int = 10,
        interval: float = 1.0,
        backoff: float = 1.5,
        max_interval: float = 10.0,
    ) -> None:
        """Wait until the requirement can be granted, then allocate it.

        Polls with a growing delay between attempts, so waiting never
        busy-loops and never exceeds the configured number of attempts.

        Raises:
            ResourceTimeoutError: Resources never became available
        """
        delay = interval
        for attempt in range(1, attempts + 1):
            try:
                self.allocate(execution_id, requirements)
                return
            except ResourceAllocationError:
                if attempt == attempts:
                    break
                logger.debug(
                    f"Waiting for resources ({execution_id}, attempt {attempt}/{attempts})"
                )
                await asyncio.sleep(delay)
                delay = min(delay * backoff, max_interval)

        logger.warning(f"Resource allocation timeout for {execution_id}")
        raise ResourceTimeoutError(execution_id, attempts)

    def status(self) -> dict[str, Any]:
        """Snapshot of every dimension (totals, availability, holders)."""
        with self._lock:
            return {
                name: {
                    "total": dim.total,
                    "available": dim.available,
                    "allocated": dim.allocated,
                    "allocations": dict(dim.allocations),
                }
                for name, dim in self._dimensions.items()
            }

    @property
    def active_allocations(self) -> list[str]:
        with self._lock:
            ids: set[str] = set()
            for dimension in self._dimensions.values():
                ids.update(dimension.allocations)
            return sorted(ids)

    def _fits(self, requirements: ResourceRequirements) -> bool:
        return all(
            self._dimensions[name].available >= amount
            for name, amount in requirements.as_dict().items()
        )

    def _available(self) -> dict[str, float]:
        return {name: dim.available for name, dim in self._dimensions.items()}


__all__ = ["ResourcePool", "ResourceDimension"]
