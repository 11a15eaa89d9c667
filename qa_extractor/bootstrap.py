"""Recovery on process start: rehydrate state and resume interrupted work."""

import logging

from .models import SchedulerState
from .poller import RemoteQueuePoller
from .queue import JobQueueManager
from .scheduler import PROCESS_NEXT, DurableScheduler
from .worker import SequentialJobProcessor

logger = logging.getLogger(__name__)


class RecoveryBootstrapper:
    """Runs once per process start, before any new work is accepted."""

    def __init__(
        self,
        queue: JobQueueManager,
        scheduler: DurableScheduler,
        processor: SequentialJobProcessor,
        poller: RemoteQueuePoller,
    ):
        self.queue = queue
        self.scheduler = scheduler
        self.processor = processor
        self.poller = poller

    async def run(self) -> SchedulerState:
        state = self.queue.load()
        logger.info(
            f"Recovered state: {len(state.queue)} items, running={state.is_running}, "
            f"remote_poll={state.remote_poll_enabled}"
        )

        with self.queue.mutate() as state:
            # The browser died with the previous process.
            state.active_session_id = None

            # In-flight work is lost; the item goes back to the queue.
            for item in state.queue:
                if item.status == "processing":
                    logger.info(f"Re-queueing interrupted item {item.key}")
                    item.status = "pending"
                    item.progress = None

            if state.is_running:
                first = self.queue.first_pending_index()
                if first >= 0:
                    state.current_index = first - 1
                else:
                    state.is_running = False
                    state.current_index = -1
            else:
                state.current_index = -1

            if state.remote_poll_busy:
                logger.info("Clearing remote poll busy flag left by previous process")
                state.remote_poll_busy = False

        if state.is_running:
            logger.info(f"Resuming run at index {state.current_index + 1}")
            await self.processor.resume()
        else:
            self.scheduler.cancel(PROCESS_NEXT)

        if state.remote_poll_enabled:
            self.poller.resume()

        return state
