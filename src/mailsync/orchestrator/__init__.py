"""Sync orchestration: job queue, leases, pipeline, engine and scheduler."""

from .engine import SyncEngine
from .lease import ConnectionLease, LeaseHeldError
from .models import JobKind, JobPriority, SyncJob
from .queue import SyncJobQueue
from .report import BatchTally, ConnectionReport, ConnectionStatus, SyncReport
from .retry_policy import FailureType, RetryBudget, RetryPolicy, RetryStrategy
from .scheduler import SyncScheduler

__all__ = [
    "BatchTally",
    "ConnectionLease",
    "ConnectionReport",
    "ConnectionStatus",
    "FailureType",
    "JobKind",
    "JobPriority",
    "LeaseHeldError",
    "RetryBudget",
    "RetryPolicy",
    "RetryStrategy",
    "SyncEngine",
    "SyncJob",
    "SyncJobQueue",
    "SyncReport",
    "SyncScheduler",
]
