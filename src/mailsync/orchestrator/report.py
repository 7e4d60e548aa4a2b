"""Pass and connection summaries produced by the sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .models import JobKind


class ConnectionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class BatchTally:
    """Per-message outcomes of one batch."""

    fetched: int = 0
    stored: int = 0
    skipped: int = 0
    failed: int = 0
    skipped_sequences: List[int] = field(default_factory=list)

    def record_skip(self, sequence_number: int) -> None:
        self.skipped += 1
        self.skipped_sequences.append(sequence_number)


class ConnectionReport(BaseModel):
    """Outcome of synchronizing one connection during a pass."""

    connection_id: str
    kind: Optional[JobKind] = None
    status: ConnectionStatus = ConnectionStatus.SUCCEEDED
    fetched: int = Field(default=0, ge=0)
    stored: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped_sequences: List[int] = Field(default_factory=list)
    attempts: int = Field(default=0, ge=0)
    full_resync: bool = False
    mailbox_epoch: Optional[int] = None
    cursor_sequence: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_seconds: float = Field(default=0.0, ge=0.0)

    def add(self, tally: BatchTally) -> None:
        self.fetched += tally.fetched
        self.stored += tally.stored
        self.skipped += tally.skipped
        self.failed += tally.failed
        self.skipped_sequences.extend(tally.skipped_sequences)

    def counts(self) -> Dict[str, int]:
        return {
            "fetched": self.fetched,
            "stored": self.stored,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class SyncReport(BaseModel):
    """Summary of one sync pass over every enabled connection."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: float = Field(default=0.0, ge=0.0)
    connections: List[ConnectionReport] = Field(default_factory=list)

    def get(self, connection_id: str) -> Optional[ConnectionReport]:
        for report in self.connections:
            if report.connection_id == connection_id:
                return report
        return None

    def totals(self) -> Dict[str, int]:
        totals = {"fetched": 0, "stored": 0, "skipped": 0, "failed": 0}
        for report in self.connections:
            for key, value in report.counts().items():
                totals[key] += value
        return totals

    def status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ConnectionStatus}
        for report in self.connections:
            counts[report.status.value] += 1
        return counts

    @property
    def has_failures(self) -> bool:
        return any(r.status == ConnectionStatus.FAILED for r in self.connections)


__all__ = ["BatchTally", "ConnectionReport", "ConnectionStatus", "SyncReport"]
