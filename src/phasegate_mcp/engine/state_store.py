"""Durable storage for the three state tiers plus checkpoints and backups.

Architecture:
    - One JSON document per tier (runtime, persistent, configuration)
    - Atomic writes: temp file + rename, serialized by an asyncio.Lock
    - SHA256 of every written document recorded in state-checksums.json
    - Checkpoints delegated to a CheckpointArchive (FIFO retention)
    - Rotating runtime backups for the auto-save coordinator
    - Blocking file I/O runs in the default thread pool

Loading never fails: a missing or undecodable document yields the tier's
default model, and a document its model rejects is repaired in memory so
that an active workflow or recorded history is not silently dropped. Use
validate() and repair() to inspect and fix a damaged document on disk.

Example:
    store = StateStore(StateConfig.for_cwd())
    await store.init()

    state = await store.load_workflow_state()
    state.current_phase = "research"
    await store.save(StateTier.RUNTIME, state)

    checkpoint_id = await store.create_checkpoint("before-research")
    await store.restore_checkpoint(checkpoint_id)
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import shutil
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar, cast

from pydantic import BaseModel, ValidationError

from .checkpoint import Checkpoint
from .checkpoint_store import CheckpointArchive, FileCheckpointArchive
from .configuration import Configuration
from .exceptions import CheckpointNotFoundError, StateCorruptedError
from .models import (
    CheckpointIndexEntry,
    PersistentState,
    RestoreRecord,
    WorkflowState,
)
from .phase_status import StateTier
from .state_config import StateConfig
from .validation import ValidationReport, repair_until_valid, validate_state

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()

_MODELS: dict[StateTier, type[BaseModel]] = {
    StateTier.RUNTIME: WorkflowState,
    StateTier.PERSISTENT: PersistentState,
    StateTier.CONFIGURATION: Configuration,
}


class StateStore:
    """Atomic, serialized access to state documents and the checkpoint archive.

    Args:
        config: State directory layout
        archive: Checkpoint archive (default: files under config.checkpoints_dir)
        max_checkpoints: Archive retention limit (oldest deleted first)
    """

    def __init__(
        self,
        config: StateConfig,
        archive: CheckpointArchive | None = None,
        max_checkpoints: int = 20,
    ):
        self.config = config
        self.archive = archive or FileCheckpointArchive(config.checkpoints_dir)
        self.max_checkpoints = max_checkpoints
        self._lock = asyncio.Lock()
        # Checkpoints referenced by an in-flight restore are never pruned
        self._pinned: set[str] = set()

    async def init(self) -> None:
        """Create the state directory layout."""
        await self._run_in_executor(self.config.ensure_directories)
        logger.info(f"StateStore initialized: root={self.config.root}")

    # =========================================================================
    # Documents
    # =========================================================================

    async def load(self, tier: StateTier) -> BaseModel:
        """Load a tier as its model, falling back to the default.

        The configuration default is materialized on disk the first time it
        is loaded; the other tiers are only written by explicit saves.
        """
        raw = await self._read_raw(tier)
        model = _MODELS[tier]

        if raw is _MISSING:
            state = model()
            if tier == StateTier.CONFIGURATION:
                await self.save(tier, state)
            return state

        if isinstance(raw, _Undecodable):
            logger.warning(f"{tier.value} state is undecodable, using defaults")
            return model()

        try:
            return model.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"{tier.value} state is invalid: {e.error_count()} error(s)")

        repaired, issues = repair_until_valid(raw, tier)
        try:
            state = model.model_validate(repaired)
        except ValidationError:
            logger.error(f"{tier.value} state could not be repaired, using defaults")
            return model()
        logger.warning(
            f"Loaded {tier.value} state after repairing {len(issues)} issue(s) in memory; "
            "run repair() to fix the file"
        )
        return state

    async def load_workflow_state(self) -> WorkflowState:
        return cast(WorkflowState, await self.load(StateTier.RUNTIME))

    async def load_persistent_state(self) -> PersistentState:
        return cast(PersistentState, await self.load(StateTier.PERSISTENT))

    async def load_configuration(self) -> Configuration:
        return cast(Configuration, await self.load(StateTier.CONFIGURATION))

    async def load_raw(self, tier: StateTier) -> Any | None:
        """Load the decoded JSON document, or None if missing or undecodable."""
        raw = await self._read_raw(tier)
        if raw is _MISSING or isinstance(raw, _Undecodable):
            return None
        return raw

    async def save(self, tier: StateTier, state: BaseModel | dict[str, Any]) -> bool:
        """Atomically write a tier document and record its checksum.

        Returns:
            True if the document was written, False on an OS-level failure
        """
        document = state.model_dump(mode="json") if isinstance(state, BaseModel) else state
        try:
            async with self._lock:
                await self._write_document(tier, document)
            return True
        except OSError as e:
            logger.error(f"Failed to save {tier.value} state: {e}")
            return False

    async def update_persistent(self, mutate: Callable[[PersistentState], None]) -> PersistentState:
        """Apply an append/increment mutation to the persistent tier.

        A damaged persistent document is repaired first (bad log entries are
        dropped, rejected values reset) so that the rest of the history is
        kept. Only a document that is not a JSON object at all is reset, and
        its text survives in the pre-repair checkpoint.

        Raises:
            StateCorruptedError: The document still fails its model after repair
        """
        report = await self.validate(StateTier.PERSISTENT)
        if not report.valid:
            await self.repair(StateTier.PERSISTENT, report)
        return await self._mutate_persistent(mutate)

    # =========================================================================
    # Validation and repair
    # =========================================================================

    async def validate(self, tier: StateTier, state: Any = _MISSING) -> ValidationReport:
        """Validate a document (default: the one currently on disk).

        A missing document is valid, since load() provides its default.
        """
        raw = await self._read_raw(tier) if state is _MISSING else state
        if raw is _MISSING:
            return ValidationReport(tier=tier)
        if isinstance(raw, _Undecodable):
            raw = raw.text
        return validate_state(raw, tier)

    async def repair(self, tier: StateTier, report: ValidationReport | None = None) -> Any:
        """Repair the on-disk document of a tier.

        A "pre-repair-backup" checkpoint preserving the damaged document is
        created before anything is written, and every repaired issue is
        appended to the repair log.

        Returns:
            The repaired document (unchanged if nothing needed repair)
        """
        raw = await self._read_raw(tier)
        if raw is _MISSING:
            return None
        if isinstance(raw, _Undecodable):
            raw = raw.text

        report = report or validate_state(raw, tier)
        if report.valid:
            return raw

        await self.create_checkpoint("pre-repair-backup")
        repaired, issues = repair_until_valid(raw, tier, report)

        async with self._lock:
            await self._write_document(tier, repaired)

        timestamp = datetime.now().isoformat()
        for issue in issues:
            await self.append_log(
                self.config.repair_log_path,
                {"timestamp": timestamp, "action": "repair", **issue.to_dict()},
            )

        logger.warning(f"Repaired {len(issues)} issue(s) in {tier.value} state")
        return repaired

    async def verify_integrity(self, tier: StateTier) -> dict[str, Any]:
        """Compare a document's SHA256 against the checksum recorded on write."""

        def _verify() -> dict[str, Any]:
            path = self.config.tier_path(tier)
            checksums = self._read_checksums()
            expected = checksums.get(tier.value, {}).get("sha256")
            actual = hashlib.sha256(path.read_bytes()).hexdigest() if path.exists() else None
            return {
                "tier": tier.value,
                "valid": expected is not None and expected == actual,
                "expected": expected,
                "actual": actual,
            }

        return await self._run_in_executor(_verify)

    # =========================================================================
    # Checkpoints
    # =========================================================================

    async def create_checkpoint(self, name: str | None = None) -> str:
        """Snapshot every tier exactly as stored and archive it.

        Raises:
            CheckpointArchiveError: The archive cannot be written (fatal)
        """
        async with self._lock:
            documents = {tier: await self._read_raw(tier) for tier in StateTier}

        # Documents that are not JSON objects are kept verbatim as text
        raw_documents: dict[str, str] = {}

        def _snapshot(tier: StateTier) -> dict[str, Any] | None:
            raw = documents[tier]
            if isinstance(raw, dict):
                return raw
            if isinstance(raw, _Undecodable):
                raw_documents[tier.value] = raw.text
            elif raw is not _MISSING:
                raw_documents[tier.value] = json.dumps(raw, default=str)
            return None

        workflow_state = _snapshot(StateTier.RUNTIME)
        persistent_state = _snapshot(StateTier.PERSISTENT)
        configuration = _snapshot(StateTier.CONFIGURATION)

        checkpoint = Checkpoint(
            name=name or f"checkpoint-{datetime.now().strftime('%Y%m%d-%H%M%S')}",
            workflow_state=workflow_state,
            persistent_state=persistent_state,
            configuration=configuration,
            raw_documents=raw_documents,
        )
        checkpoint_id = await self.archive.save(checkpoint)

        def _index(state: PersistentState) -> None:
            state.checkpoints.append(
                CheckpointIndexEntry(
                    checkpoint_id=checkpoint_id,
                    name=checkpoint.name,
                    timestamp=checkpoint.timestamp,
                )
            )
            state.metrics.total_checkpoints += 1

        # Indexing must not repair, since repair itself checkpoints first
        if (await self.validate(StateTier.PERSISTENT)).valid:
            await self._mutate_persistent(_index)

        await self.archive.prune(self.max_checkpoints, protected=self._pinned)

        logger.info(f"Checkpoint created: {checkpoint.name} ({checkpoint_id})")
        return checkpoint_id

    async def restore_checkpoint(self, checkpoint_id: str | None = None) -> Checkpoint:
        """Restore the runtime tier from a checkpoint (default: most recent).

        The current runtime document is saved as a "pre-restore-backup"
        checkpoint first. Persistent history and configuration are left as
        they are: the former only grows and the latter is owned externally.

        Raises:
            CheckpointNotFoundError: Unknown id, or the archive is empty
            CheckpointArchiveError: The archive cannot be read (fatal)
        """
        if checkpoint_id is None:
            checkpoint = await self.archive.latest()
        else:
            checkpoint = await self.archive.load(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)

        self._pinned.add(checkpoint.checkpoint_id)
        try:
            await self.create_checkpoint("pre-restore-backup")

            document = checkpoint.workflow_state
            if document is None:
                document = WorkflowState().model_dump(mode="json")
            async with self._lock:
                await self._write_document(StateTier.RUNTIME, document)

            def _record(state: PersistentState) -> None:
                state.restores.append(
                    RestoreRecord(
                        checkpoint_id=checkpoint.checkpoint_id, restored_at=datetime.now()
                    )
                )
                state.metrics.total_restores += 1

            if (await self.validate(StateTier.PERSISTENT)).valid:
                await self._mutate_persistent(_record)
        finally:
            self._pinned.discard(checkpoint.checkpoint_id)

        logger.info(f"Restored checkpoint: {checkpoint.name} ({checkpoint.checkpoint_id})")
        return checkpoint

    async def list_checkpoints(self) -> list[Checkpoint]:
        """All archived checkpoints, oldest first."""
        return await self.archive.list()

    async def find_best_checkpoint(self, phase_id: str) -> Checkpoint | None:
        """Most recent checkpoint whose name references the phase, else the most recent."""
        checkpoints = await self.archive.list()
        relevant = [c for c in checkpoints if c.references_phase(phase_id)]
        if relevant:
            return relevant[-1]
        return checkpoints[-1] if checkpoints else None

    # =========================================================================
    # Backups
    # =========================================================================

    async def create_backup(self) -> Path | None:
        """Copy the runtime document into backups/ (None if there is nothing to copy)."""

        def _copy() -> Path | None:
            source = self.config.tier_path(StateTier.RUNTIME)
            if not source.exists():
                return None
            self.config.backups_dir.mkdir(parents=True, exist_ok=True)
            target = self.config.backups_dir / f"runtime-{time.time_ns()}.json"
            shutil.copy2(source, target)
            return target

        async with self._lock:
            return await self._run_in_executor(_copy)

    async def list_backups(self) -> list[Path]:
        """Backup files, oldest first."""

        def _list() -> list[Path]:
            if not self.config.backups_dir.exists():
                return []
            return sorted(self.config.backups_dir.glob("runtime-*.json"))

        return await self._run_in_executor(_list)

    async def prune_backups(self, max_backups: int) -> int:
        """Delete the oldest backups beyond max_backups. Returns the count deleted."""
        backups = await self.list_backups()
        excess = backups[: max(len(backups) - max_backups, 0)]

        def _delete() -> None:
            for path in excess:
                path.unlink(missing_ok=True)

        await self._run_in_executor(_delete)
        return len(excess)

    async def restore_from_backup(self, name: str | None = None) -> bool:
        """Replace the runtime document with a backup (default: the newest).

        Returns:
            True if a backup was restored, False if none matched
        """
        backups = await self.list_backups()
        if name is not None:
            backups = [path for path in backups if path.name == name]
        if not backups:
            return False

        source = backups[-1]
        try:
            document = await self._run_in_executor(lambda: json.loads(source.read_bytes()))
        except (OSError, ValueError) as e:
            logger.error(f"Backup {source.name} is unreadable: {e}")
            return False
        async with self._lock:
            await self._write_document(StateTier.RUNTIME, document)
        logger.info(f"Runtime state restored from backup {source.name}")
        return True

    # =========================================================================
    # Append-only logs
    # =========================================================================

    async def append_log(self, path: Path, entry: dict[str, Any]) -> None:
        """Append one JSON line to a post-mortem log."""

        def _append() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")

        try:
            await self._run_in_executor(_append)
        except OSError as e:
            logger.error(f"Failed to append to {path.name}: {e}")

    # =========================================================================
    # Internals
    # =========================================================================

    async def _mutate_persistent(
        self, mutate: Callable[[PersistentState], None]
    ) -> PersistentState:
        async with self._lock:
            raw = await self._read_raw(StateTier.PERSISTENT)
            if raw is _MISSING:
                state = PersistentState()
            else:
                try:
                    state = PersistentState.model_validate(raw)
                except ValidationError as e:
                    raise StateCorruptedError(
                        StateTier.PERSISTENT.value, f"{e.error_count()} validation error(s)"
                    ) from e
            mutate(state)
            await self._write_document(StateTier.PERSISTENT, state.model_dump(mode="json"))
            return state

    async def _read_raw(self, tier: StateTier) -> Any:
        """Decoded document, _MISSING, or _Undecodable wrapping the raw text."""

        def _read() -> Any:
            path = self.config.tier_path(tier)
            if not path.exists():
                return _MISSING
            data = path.read_bytes()
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning(f"{tier.value} state file is not valid UTF-8: {path}")
                return _Undecodable(data.decode("utf-8", errors="backslashreplace"))
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"{tier.value} state file is not valid JSON: {path}")
                return _Undecodable(text)

        return await self._run_in_executor(_read)

    async def _write_document(self, tier: StateTier, document: Any) -> None:
        """Atomic write plus checksum record. Caller must hold the lock."""

        def _write() -> None:
            self.config.root.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(document, indent=2, default=str, ensure_ascii=False)
            target = self.config.tier_path(tier)
            temp = target.with_suffix(".json.tmp")
            with open(temp, "w", encoding="utf-8") as f:
                f.write(payload)
            temp.replace(target)

            checksums = self._read_checksums()
            checksums[tier.value] = {
                "sha256": hashlib.sha256(payload.encode("utf-8")).hexdigest(),
                "updated_at": datetime.now().isoformat(),
            }
            checksum_temp = self.config.checksum_path.with_suffix(".json.tmp")
            with open(checksum_temp, "w", encoding="utf-8") as f:
                json.dump(checksums, f, indent=2)
            checksum_temp.replace(self.config.checksum_path)

        await self._run_in_executor(_write)

    def _read_checksums(self) -> dict[str, Any]:
        path = self.config.checksum_path
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_bytes())
        except ValueError:
            logger.warning("Checksum file is corrupt, starting a new one")
            return {}
        return data if isinstance(data, dict) else {}

    async def _run_in_executor(self, func: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)


class _Undecodable:
    """Raw text of a document that is not valid JSON (or not valid UTF-8)."""

    def __init__(self, text: str):
        self.text = text


__all__ = ["StateStore"]
