"""Checkpoint snapshot model.

A checkpoint captures every state tier exactly as it was on disk, including
documents that fail validation, so that a pre-repair checkpoint preserves
the broken state for post-mortem. Documents that are not JSON objects are kept
as text in raw_documents.
"""

from __future__ import annotations

import itertools
import re
import time
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_sequence = itertools.count()

_ATTEMPT_NAME = re.compile(r"^pre-(?P<phase>.+)-attempt-\d+$")


def new_checkpoint_id() -> str:
    """Generate a unique, chronologically sortable checkpoint id."""
    return f"cp_{time.time_ns()}_{next(_sequence):06d}"


class Checkpoint(BaseModel):
    """Immutable snapshot of all state tiers.

    Attributes:
        checkpoint_id: Unique identifier (sortable by creation time)
        name: Human-readable name, e.g. "pre-research-attempt-1"
        timestamp: When the snapshot was taken
        workflow_state: Raw runtime document (None if it did not exist)
        persistent_state: Raw persistent document (None if it did not exist)
        configuration: Raw configuration document (None if it did not exist)
        raw_documents: Tier name -> text of a document that was not a JSON object
    """

    model_config = ConfigDict(frozen=True)

    checkpoint_id: str = Field(default_factory=new_checkpoint_id)
    name: str
    timestamp: datetime = Field(default_factory=datetime.now)
    workflow_state: dict[str, Any] | None = None
    persistent_state: dict[str, Any] | None = None
    configuration: dict[str, Any] | None = None
    raw_documents: dict[str, str] = Field(default_factory=dict)

    def references_phase(self, phase_id: str) -> bool:
        """Check if this is a pre-attempt checkpoint of the given phase."""
        match = _ATTEMPT_NAME.match(self.name)
        return match is not None and match.group("phase") == phase_id

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.timestamp, self.checkpoint_id)


__all__ = ["Checkpoint", "new_checkpoint_id"]
