"""Remote queue poller: takes jobs from the backend instead of the local queue."""

import logging
from typing import Optional

from .backend import BackendClient
from .config import Settings
from .models import JobOutcome, QueueItem, RemoteItem
from .queue import JobQueueManager
from .scheduler import REMOTE_POLL, DurableScheduler
from .worker import SequentialJobProcessor

logger = logging.getLogger(__name__)


class RemoteQueuePoller:
    """Polls the backend for the next remote item on a durable interval.

    Remote items run through the processor's own ``run_job`` so both job
    sources share one page session. A tick never dispatches while the local
    processor is running, and the processor defers while this poller is busy.
    """

    def __init__(
        self,
        queue: JobQueueManager,
        processor: SequentialJobProcessor,
        scheduler: DurableScheduler,
        backend: BackendClient,
        settings: Settings,
    ):
        self.queue = queue
        self.processor = processor
        self.scheduler = scheduler
        self.backend = backend
        self.settings = settings

        scheduler.register(REMOTE_POLL, self.tick)

    @property
    def enabled(self) -> bool:
        return self.queue.state.remote_poll_enabled

    @property
    def busy(self) -> bool:
        return self.queue.state.remote_poll_busy

    async def enable(self) -> bool:
        """Turn polling on. Refused when no backend API key is configured."""
        if not self.backend.enabled:
            logger.warning("Remote polling needs BACKEND_API_KEY; not enabling")
            return False

        with self.queue.mutate() as state:
            state.remote_poll_enabled = True
        self.scheduler.schedule(REMOTE_POLL, 0)
        logger.info(f"Remote polling enabled (every {self.settings.REMOTE_POLL_INTERVAL:g}s)")
        return True

    async def disable(self):
        with self.queue.mutate() as state:
            state.remote_poll_enabled = False
        self.scheduler.cancel(REMOTE_POLL)
        logger.info("Remote polling disabled")

    def resume(self):
        """Re-arm the poll wake-up after a restart."""
        if self.scheduler.pending(REMOTE_POLL) is None:
            self.scheduler.schedule(REMOTE_POLL, 0)

    async def tick(self):
        """One poll: fetch and run at most one remote item.

        The busy flag is taken before the fetch so a local job cannot claim
        the page session while the request is in flight.
        """
        if not self.enabled:
            return

        interval = self.settings.REMOTE_POLL_INTERVAL
        if self.busy or self.queue.state.is_running or self.processor.busy:
            logger.debug("Page session in use; skipping remote poll")
            self.scheduler.schedule(REMOTE_POLL, interval)
            return

        with self.queue.mutate() as state:
            state.remote_poll_busy = True
        try:
            outcome = await self._poll_once()
        finally:
            with self.queue.mutate() as state:
                state.remote_poll_busy = False

        if outcome is None:
            self.scheduler.schedule(REMOTE_POLL, interval)
            return

        if outcome.login_required:
            logger.error(f"Login required; disabling remote polling: {outcome.error}")
            await self.disable()
            return

        if self.enabled:
            self.scheduler.schedule(REMOTE_POLL, self.settings.DELAY_BETWEEN_JOBS)

    async def _poll_once(self) -> Optional[JobOutcome]:
        try:
            remote = await self.backend.fetch_next_item()
        except Exception as e:
            logger.error(f"Fetching next remote item failed: {e}")
            return None
        if remote is None:
            return None

        logger.info(f"Processing remote item {remote.item_id}: {remote.key}")
        item = QueueItem(key=remote.key, marketplace_id=remote.marketplace_id, status="processing")
        outcome = await self.processor.run_job(item, max_results=remote.max_results)
        await self._report(remote, outcome)
        return outcome

    async def _report(self, remote: RemoteItem, outcome: JobOutcome):
        if outcome.results:
            try:
                await self.backend.submit_results(remote.key, remote.marketplace_id, outcome.results)
            except Exception as e:
                logger.error(f"Submitting results for remote item {remote.item_id} failed: {e}")

        try:
            if outcome.status == "done":
                await self.backend.report_item(
                    remote.item_id, "completed", results_found=len(outcome.results)
                )
            else:
                await self.backend.report_item(
                    remote.item_id,
                    "failed",
                    results_found=len(outcome.results),
                    error_message=outcome.error,
                )
        except Exception as e:
            logger.error(f"Reporting remote item {remote.item_id} failed: {e}")
