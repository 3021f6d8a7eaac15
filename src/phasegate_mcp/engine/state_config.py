"""State directory layout.

Each project (working directory) gets its own isolated state directory,
keyed by a SHA256 hash of the CWD, unless an explicit root is injected.

Architecture:
    ~/.phasegate/
      states/
        <hash-of-cwd>/
          runtime.json              # WorkflowState
          persistent.json           # PersistentState
          configuration.json        # Configuration
          state-checksums.json      # SHA256 of every document written
          checkpoints/              # Checkpoint archive (one JSON per checkpoint)
          backups/                  # Rotating runtime backups (auto-save)
          logs/
            error-recovery.log      # JSON lines, append-only
            state-repairs.log       # JSON lines, append-only
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

from .phase_status import StateTier


@dataclass(frozen=True)
class StateConfig:
    """Paths of every persisted artifact under one state root.

    Example:
        config = StateConfig(Path("/tmp/project-state"))
        config.tier_path(StateTier.RUNTIME)
        # Path('/tmp/project-state/runtime.json')
    """

    root: Path

    @classmethod
    def for_cwd(cls, base_dir: Path | None = None) -> StateConfig:
        """Path-isolated state directory for the current working directory.

        Args:
            base_dir: Parent of the per-project directories
                (default: ~/.phasegate/states)
        """
        cwd_hash = hashlib.sha256(str(Path.cwd()).encode()).hexdigest()[:16]
        base = base_dir or Path.home() / ".phasegate" / "states"
        return cls(root=base / cwd_hash)

    def tier_path(self, tier: StateTier) -> Path:
        return self.root / f"{tier.value}.json"

    @property
    def checksum_path(self) -> Path:
        return self.root / "state-checksums.json"

    @property
    def checkpoints_dir(self) -> Path:
        return self.root / "checkpoints"

    @property
    def backups_dir(self) -> Path:
        return self.root / "backups"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def error_log_path(self) -> Path:
        return self.logs_dir / "error-recovery.log"

    @property
    def repair_log_path(self) -> Path:
        return self.logs_dir / "state-repairs.log"

    def ensure_directories(self) -> None:
        """Create the directory structure if it doesn't exist."""
        for directory in (self.root, self.checkpoints_dir, self.backups_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)


__all__ = ["StateConfig"]
