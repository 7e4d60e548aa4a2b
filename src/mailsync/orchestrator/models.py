"""Domain models for the sync orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class JobKind(str, Enum):
    INITIAL = "initial"
    INCREMENTAL = "incremental"


class JobPriority(int, Enum):
    LOW = 1
    NORMAL = 2
    HIGH = 3


@dataclass(slots=True)
class SyncJob:
    """One connection waiting to be synchronized."""

    connection_id: str
    kind: JobKind
    priority: JobPriority = JobPriority.NORMAL
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_connection(cls, connection_id: str, kind: JobKind) -> "SyncJob":
        """Incremental jobs run ahead of initial imports."""
        priority = JobPriority.HIGH if kind is JobKind.INCREMENTAL else JobPriority.NORMAL
        return cls(connection_id=connection_id, kind=kind, priority=priority)


__all__ = ["JobKind", "JobPriority", "SyncJob"]
