"""Checkpoint archive implementations.

FileCheckpointArchive keeps one JSON file per checkpoint in the state
directory's checkpoints/ folder. InMemoryCheckpointArchive is used by tests
and by embedders that do not need durability.

Retention is FIFO: prune() deletes the oldest checkpoints first and never
deletes a checkpoint listed in `protected` (checkpoints currently being
restored).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TypeVar

from pydantic import ValidationError

from .checkpoint import Checkpoint
from .exceptions import CheckpointArchiveError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CheckpointArchive(ABC):
    """Abstract base class for checkpoint storage."""

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> str:
        """Save checkpoint and return its id."""
        ...

    @abstractmethod
    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        """Load checkpoint by id, return None if not found."""
        ...

    @abstractmethod
    async def list(self) -> list[Checkpoint]:
        """List all checkpoints, oldest first."""
        ...

    @abstractmethod
    async def delete(self, checkpoint_id: str) -> bool:
        """Delete checkpoint by id, return True if deleted."""
        ...

    async def latest(self) -> Checkpoint | None:
        checkpoints = await self.list()
        return checkpoints[-1] if checkpoints else None

    async def prune(self, max_checkpoints: int, protected: Iterable[str] = ()) -> list[str]:
        """Delete the oldest checkpoints until at most max_checkpoints remain.

        Args:
            max_checkpoints: Retention limit
            protected: Checkpoint ids that must not be deleted

        Returns:
            Ids of deleted checkpoints, oldest first
        """
        keep = set(protected)
        checkpoints = await self.list()
        excess = len(checkpoints) - max_checkpoints
        deleted: list[str] = []

        for checkpoint in checkpoints:
            if excess <= 0:
                break
            if checkpoint.checkpoint_id in keep:
                continue
            if await self.delete(checkpoint.checkpoint_id):
                deleted.append(checkpoint.checkpoint_id)
                excess -= 1

        if deleted:
            logger.info(f"Pruned {len(deleted)} checkpoint(s): {', '.join(deleted)}")
        return deleted


class InMemoryCheckpointArchive(CheckpointArchive):
    """In-memory checkpoint archive for development and testing."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, Checkpoint] = {}
        self._lock = asyncio.Lock()

    async def save(self, checkpoint: Checkpoint) -> str:
        async with self._lock:
            self._checkpoints[checkpoint.checkpoint_id] = checkpoint
            return checkpoint.checkpoint_id

    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        async with self._lock:
            return self._checkpoints.get(checkpoint_id)

    async def list(self) -> list[Checkpoint]:
        async with self._lock:
            return sorted(self._checkpoints.values(), key=lambda c: c.sort_key)

    async def delete(self, checkpoint_id: str) -> bool:
        async with self._lock:
            return self._checkpoints.pop(checkpoint_id, None) is not None


class FileCheckpointArchive(CheckpointArchive):
    """Checkpoint archive backed by a directory of JSON files.

    Storage Layout:
        checkpoints/
          cp_1729270000000000000_000001.json
          cp_1729270000000500000_000002.json

    Any OS-level failure (unreadable directory, failed write) is raised as
    CheckpointArchiveError. A single undecodable file is skipped by list()
    with a warning, but load() of that id raises.
    """

    def __init__(self, directory: Path):
        self._directory = directory
        self._lock = asyncio.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, checkpoint_id: str) -> Path:
        return self._directory / f"{checkpoint_id}.json"

    async def save(self, checkpoint: Checkpoint) -> str:
        def _write() -> str:
            self._directory.mkdir(parents=True, exist_ok=True)
            target = self._path(checkpoint.checkpoint_id)
            temp = target.with_suffix(".json.tmp")
            with open(temp, "w", encoding="utf-8") as f:
                f.write(checkpoint.model_dump_json(indent=2))
            temp.replace(target)
            return checkpoint.checkpoint_id

        async with self._lock:
            return await self._run_in_executor(
                _write, f"write checkpoint {checkpoint.checkpoint_id}"
            )

    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        def _read() -> Checkpoint | None:
            path = self._path(checkpoint_id)
            if not path.exists():
                return None
            try:
                return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
            except (ValidationError, UnicodeDecodeError) as e:
                raise CheckpointArchiveError(
                    f"Checkpoint {checkpoint_id} is unreadable: {e}"
                ) from e

        async with self._lock:
            return await self._run_in_executor(_read, f"read checkpoint {checkpoint_id}")

    async def list(self) -> list[Checkpoint]:
        def _scan() -> list[Checkpoint]:
            if not self._directory.exists():
                return []
            checkpoints = []
            for path in self._directory.glob("*.json"):
                try:
                    checkpoints.append(
                        Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
                    )
                except (ValidationError, UnicodeDecodeError) as e:
                    logger.warning(f"Skipping unreadable checkpoint file {path.name}: {e}")
            return sorted(checkpoints, key=lambda c: c.sort_key)

        async with self._lock:
            return await self._run_in_executor(_scan, "list checkpoints")

    async def delete(self, checkpoint_id: str) -> bool:
        def _delete() -> bool:
            path = self._path(checkpoint_id)
            if not path.exists():
                return False
            path.unlink()
            return True

        async with self._lock:
            return await self._run_in_executor(_delete, f"delete checkpoint {checkpoint_id}")

    async def _run_in_executor(self, func: Callable[[], T], operation: str) -> T:
        """Run blocking file I/O in the default thread pool.

        Raises:
            CheckpointArchiveError: The archive directory or file is inaccessible
        """
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func)
        except OSError as e:
            raise CheckpointArchiveError(f"Checkpoint archive failure ({operation}): {e}") from e


__all__ = ["CheckpointArchive", "InMemoryCheckpointArchive", "FileCheckpointArchive"]
