"""Sequential Q&A extraction queue with crash-resilient scheduling."""

from .models import (
    ExtractResponse,
    JobOutcome,
    QAResult,
    QueueItem,
    QueueStats,
    RemoteItem,
    SchedulerState,
)
from .queue import JobQueueManager
from .scheduler import DurableScheduler
from .store import StateStore

__all__ = [
    "DurableScheduler",
    "ExtractResponse",
    "JobOutcome",
    "JobQueueManager",
    "QAResult",
    "QueueItem",
    "QueueStats",
    "RemoteItem",
    "SchedulerState",
    "StateStore",
]
