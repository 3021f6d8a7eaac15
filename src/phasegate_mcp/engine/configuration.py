"""User configuration tier.

The configuration document is owned by an external collaborator (a settings
UI, an editor, or the operator). The engine reads it and only writes it when
materializing the defaults on first load.

Layout of configuration.json:
    {
      "version": "1.0",
      "preferences": {...},      # research level, parallelism cap, ...
      "auto_save": {...},        # debounce cadence, triggers, backups
      "retry": {...},            # retry limits and delays
      "checkpoint": {...},       # archive retention
      "resources": {...},        # resource pool totals and acquire backoff
      "scheduler": {...}         # deadlock policy
    }
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from .phase_status import SaveTrigger


class Preferences(BaseModel):
    """User-facing preferences."""

    research_level: str = "thorough"
    verbosity: Literal["quiet", "normal", "verbose"] = "normal"
    parallel_agents: int = Field(default=5, ge=1, description="Maximum phases per wave")
    confirm_destructive: bool = True
    confirmation_style: Literal["minimal", "detailed", "silent"] = "minimal"


class AutoSaveSettings(BaseModel):
    """Debounce and backup settings for the auto-save coordinator (seconds)."""

    enabled: bool = True
    min_interval: float = Field(default=5.0, ge=0, description="Minimum time between saves")
    batch_delay: float = Field(default=1.0, ge=0, description="Quiet period before a save")
    max_queue_age: float = Field(
        default=30.0, ge=0, description="Oldest queued trigger is flushed after this long"
    )
    max_queue_size: int = Field(default=10, ge=1)
    time_interval: float = Field(default=300.0, ge=0, description="Periodic save (0 disables)")
    triggers: dict[SaveTrigger, bool] = Field(
        default_factory=lambda: {trigger: True for trigger in SaveTrigger}
    )
    backup_enabled: bool = True
    max_backups: int = Field(default=20, ge=1)

    def trigger_enabled(self, trigger: SaveTrigger) -> bool:
        return self.triggers.get(trigger, True)


class RetrySettings(BaseModel):
    """Retry limits and delays for the error recovery manager (seconds)."""

    max_retries: int = Field(default=3, ge=1)
    retry_delays: list[float] = Field(default_factory=lambda: [1.0, 3.0, 5.0])
    resource_delay: float = Field(default=5.0, ge=0)
    restore_delay: float = Field(default=1.0, ge=0)
    validation_delay: float = Field(default=2.0, ge=0)
    attempt_timeout: float | None = Field(
        default=None, gt=0, description="Per-attempt executor timeout (None = unbounded)"
    )
    safe_mode_timeout_factor: float = Field(default=3.0, ge=1)

    def backoff_delay(self, attempt: int) -> float:
        """Progressive delay for the given 1-based attempt number."""
        if not self.retry_delays:
            return 0.0
        return self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]


class CheckpointSettings(BaseModel):
    """Checkpoint archive retention."""

    max_checkpoints: int = Field(default=20, ge=1)


class ResourceSettings(BaseModel):
    """Resource pool capacity and acquire backoff."""

    memory: float = Field(default=1024.0, ge=0, description="MB")
    cpu: float = Field(default=100.0, ge=0, description="percent")
    file_handles: float = Field(default=100.0, ge=0)
    acquire_attempts: int = Field(default=10, ge=1)
    acquire_interval: float = Field(default=1.0, ge=0)
    acquire_backoff: float = Field(default=1.5, ge=1)
    acquire_max_interval: float = Field(default=10.0, ge=0)


class SchedulerSettings(BaseModel):
    """Dependency scheduler policy."""

    on_deadlock: Literal["force", "fail"] = "force"


class Configuration(BaseModel):
    """User configuration document."""

    version: str = "1.0"
    preferences: Preferences = Field(default_factory=Preferences)
    auto_save: AutoSaveSettings = Field(default_factory=AutoSaveSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    resources: ResourceSettings = Field(default_factory=ResourceSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)


__all__ = [
    "Configuration",
    "Preferences",
    "AutoSaveSettings",
    "RetrySettings",
    "CheckpointSettings",
    "ResourceSettings",
    "SchedulerSettings",
]
