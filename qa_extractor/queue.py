"""Job queue state: the single owned SchedulerState, its mutations and persistence."""

import logging
import re
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from pydantic import ValidationError

from .models import QueueItem, QueueStats, SchedulerState
from .scheduler import PROCESS_NEXT, DurableScheduler
from .store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_KEY_PATTERN = r"^[A-Z0-9]{10,12}$"

StateListener = Callable[[SchedulerState], None]


class JobQueueManager:
    """Owns the queue, the running flag and the current index.

    Every change goes through ``mutate()``, which persists the state and
    broadcasts it to subscribers when the block exits.
    """

    STATE_KEY = "scheduler_state"

    def __init__(
        self,
        store: StateStore,
        scheduler: Optional[DurableScheduler] = None,
        key_pattern: str = DEFAULT_KEY_PATTERN,
    ):
        self.store = store
        self.scheduler = scheduler
        self.key_pattern = re.compile(key_pattern)
        self._state = SchedulerState()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> SchedulerState:
        return self._state

    def load(self) -> SchedulerState:
        """Rehydrate the state from the store."""
        raw = self.store.get(self.STATE_KEY)
        if raw is None:
            self._state = SchedulerState()
        else:
            try:
                self._state = SchedulerState.model_validate(raw)
            except ValidationError as e:
                logger.error(f"Discarding unreadable persisted state: {e}")
                self._state = SchedulerState()
        return self._state

    def persist(self):
        self.store.set(self.STATE_KEY, self._state.model_dump(mode="json"))

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state observer. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def broadcast(self):
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"State listener failed: {e}", exc_info=True)

    @contextmanager
    def mutate(self) -> Iterator[SchedulerState]:
        """Yield the state for modification, then persist and broadcast."""
        try:
            yield self._state
        finally:
            self.persist()
            self.broadcast()

    # Lookups

    def find(self, key: str, marketplace_id: str) -> Optional[QueueItem]:
        return next(
            (item for item in self._state.queue if item.matches(key, marketplace_id)),
            None,
        )

    def processing_item(self) -> Optional[QueueItem]:
        return next(
            (item for item in self._state.queue if item.status == "processing"),
            None,
        )

    def first_pending_index(self) -> int:
        """Index of the oldest pending item, or -1."""
        for i, item in enumerate(self._state.queue):
            if item.status == "pending":
                return i
        return -1

    def has_pending(self) -> bool:
        return self.first_pending_index() >= 0

    def clean_key(self, key: str) -> Optional[str]:
        """Normalize a raw key, or return None when it is malformed."""
        cleaned = key.strip().upper()
        if not self.key_pattern.match(cleaned):
            return None
        return cleaned

    # Operations

    def enqueue(self, keys: list[str], marketplace_id: str) -> int:
        """Append valid, new keys as pending items.

        Malformed keys and ``(key, marketplace_id)`` pairs already in the
        queue are dropped without error.

        Args:
            keys: Raw identifiers as typed or pasted by the user
            marketplace_id: Marketplace the keys belong to

        Returns:
            Number of items added
        """
        added = 0
        with self.mutate() as state:
            for raw in keys:
                key = self.clean_key(raw)
                if key is None:
                    logger.debug(f"Rejected malformed key {raw!r}")
                    continue
                if self.find(key, marketplace_id) is not None:
                    continue
                state.queue.append(QueueItem(key=key, marketplace_id=marketplace_id))
                added += 1

        logger.info(f"Enqueued {added} of {len(keys)} keys for {marketplace_id}")
        return added

    def remove(self, key: str, marketplace_id: str) -> bool:
        """Remove an item unless it is being processed.

        Returns:
            True if an item was removed
        """
        item = self.find(key, marketplace_id)
        if item is None or item.status == "processing":
            return False

        with self.mutate() as state:
            state.queue.remove(item)
            self._repoint_index()
        return True

    def clear_all(self):
        """Empty the queue and return to idle, cancelling the next-job wake-up."""
        with self.mutate() as state:
            state.queue = []
            state.is_running = False
            state.current_index = -1
        if self.scheduler is not None:
            self.scheduler.cancel(PROCESS_NEXT)
        logger.info("Queue cleared")

    def clear_finished(self) -> int:
        """Remove done and error items. Returns how many were removed."""
        with self.mutate() as state:
            before = len(state.queue)
            state.queue = [
                item for item in state.queue if item.status not in ("done", "error")
            ]
            self._repoint_index()
            removed = before - len(state.queue)
        return removed

    def retry_failed(self) -> int:
        """Move every error item back to pending. Returns how many moved."""
        retried = 0
        with self.mutate() as state:
            for item in state.queue:
                if item.status == "error":
                    item.reset()
                    retried += 1
        if retried:
            logger.info(f"Re-queued {retried} failed items")
        return retried

    def export_finished(self) -> list[QueueItem]:
        """Finished items that carry results, including salvaged error items."""
        return [
            item.model_copy(deep=True)
            for item in self._state.queue
            if item.status in ("done", "error") and item.results
        ]

    def stats(self) -> QueueStats:
        counts = {"pending": 0, "processing": 0, "done": 0, "error": 0}
        for item in self._state.queue:
            counts[item.status] += 1
        return QueueStats(total=len(self._state.queue), **counts)

    def _repoint_index(self):
        """Keep current_index valid after items were removed mid-run."""
        if not self._state.is_running:
            return
        processing = self.processing_item()
        if processing is not None:
            self._state.current_index = self._state.queue.index(processing)
        else:
            first = self.first_pending_index()
            self._state.current_index = (first if first >= 0 else len(self._state.queue)) - 1
