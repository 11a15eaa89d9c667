"""Sequential job processor: drives one page session through each queued job."""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .agent import PageAgentClient, build_extraction_settings
from .backend import BackendClient
from .config import Settings, get_settings
from .errors import PageLoadTimeout
from .marketplaces import item_url
from .models import ExtractResponse, JobOutcome, QueueItem
from .queue import JobQueueManager
from .scheduler import PROCESS_NEXT, DurableScheduler
from .session import PlaywrightSessions

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


def _stopped_outcome() -> JobOutcome:
    return JobOutcome(status="error", error="Stopped")


class SequentialJobProcessor:
    """Advances the local queue one job at a time.

    Jobs never run in parallel: the page agent's conversation lives in the
    page session, and there is only one. Between jobs the processor does not
    sleep in memory; it schedules a durable ``process-next`` wake-up so the
    run resumes even if the process is restarted in between.
    """

    def __init__(
        self,
        queue: JobQueueManager,
        sessions: PlaywrightSessions,
        agent: PageAgentClient,
        scheduler: DurableScheduler,
        settings: Settings,
        backend: Optional[BackendClient] = None,
    ):
        self.queue = queue
        self.sessions = sessions
        self.agent = agent
        self.scheduler = scheduler
        self.settings = settings
        self.backend = backend
        self._generation = 0
        self._job_in_flight = False
        self._job_session_id: Optional[str] = None

        scheduler.register(PROCESS_NEXT, self.advance)
        sessions.on_closed(self._on_session_closed)
        sessions.on_progress(self._on_agent_progress)

    @property
    def busy(self) -> bool:
        """True while a local job occupies the page session."""
        return self._job_in_flight

    async def start(self) -> bool:
        """Start a run from the oldest pending item.

        Returns:
            True if a run was started
        """
        if self.queue.state.is_running or not self.queue.has_pending():
            return False

        with self.queue.mutate() as state:
            state.is_running = True
            state.current_index = self.queue.first_pending_index() - 1
        self._generation += 1
        self.scheduler.schedule(PROCESS_NEXT, 0)
        logger.info(f"Run started at index {self.queue.state.current_index + 1}")
        return True

    async def stop(self):
        """Stop the run. The item being processed goes back to pending."""
        with self.queue.mutate() as state:
            state.is_running = False
            state.current_index = -1
            processing = self.queue.processing_item()
            if processing is not None:
                processing.status = "pending"
                processing.progress = None
        self._generation += 1
        self.scheduler.cancel(PROCESS_NEXT)

        if self._job_in_flight and self._job_session_id:
            await self.agent.abort(self._job_session_id)
        logger.info("Run stopped")

    async def resume(self):
        """Continue an interrupted run; used by the recovery bootstrapper."""
        self._generation += 1
        if self.scheduler.pending(PROCESS_NEXT) is None:
            self.scheduler.schedule(PROCESS_NEXT, 0)

    async def advance(self):
        """Dispatch the next pending job, then cool down or finish the run."""
        if not self.queue.state.is_running:
            return

        if self._job_in_flight or self.queue.state.remote_poll_busy:
            logger.info("Page session still in use; deferring next local job")
            self.scheduler.schedule(PROCESS_NEXT, self.settings.DELAY_BETWEEN_JOBS)
            return

        item = self._claim_next()
        if item is None:
            logger.info("Queue exhausted; run finished")
            return

        generation = self._generation
        self._job_in_flight = True
        try:
            outcome = await self.run_job(
                item,
                on_progress=lambda text: self._set_progress(item, text),
                generation=generation,
            )
        finally:
            self._job_in_flight = False
            self._job_session_id = None

        if generation != self._generation or not self._still_processing(item):
            logger.info(f"Discarding outcome for {item.key}: run was stopped")
            return

        if outcome.login_required:
            self._halt_on_login(item, outcome)
            return

        with self.queue.mutate():
            item.status = outcome.status
            item.results = outcome.results
            item.exhausted = outcome.exhausted
            item.error = outcome.error
            item.progress = None

        if outcome.status == "done":
            logger.info(f"{item.key}: extracted {len(item.results)} results")
        else:
            logger.warning(f"{item.key}: {item.error}")

        await self._report(item)
        self._cool_down()

    async def run_job(
        self,
        item: QueueItem,
        max_results: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        generation: Optional[int] = None,
    ) -> JobOutcome:
        """Open a fresh session for ``item`` and extract its results.

        Every failure becomes an error outcome; nothing is raised. When
        ``generation`` is given, the job gives up between phases once
        ``stop()`` has moved the run to a newer generation.
        """
        progress = on_progress or (lambda text: None)
        url = item_url(
            item.marketplace_id,
            item.key,
            item_path=self.settings.ITEM_PATH,
            default=self.settings.DEFAULT_BASE_URL,
        )

        try:
            session_id = await self.sessions.open_fresh(url)
            self._job_session_id = session_id if self._job_in_flight else None
            with self.queue.mutate() as state:
                state.active_session_id = session_id

            try:
                await self.sessions.wait_for_load(session_id, self.settings.PAGE_LOAD_TIMEOUT)
            except PageLoadTimeout as e:
                return JobOutcome(status="error", error=str(e))
            if self._stopped_since(generation):
                return _stopped_outcome()

            progress("Waiting for page agent...")
            await asyncio.sleep(self.settings.SETTLE_DELAY)
            if self._stopped_since(generation):
                return _stopped_outcome()
            if not await self._wait_for_agent(session_id):
                return JobOutcome(status="error", error="Page agent unresponsive")
            if self._stopped_since(generation):
                return _stopped_outcome()

            progress("Extracting...")
            settings = build_extraction_settings(
                max_results or self.settings.MAX_RESULTS,
                self.settings.DELAY_BETWEEN_CLICKS_MS,
                self.settings.SELECTORS,
            )
            try:
                response = await asyncio.wait_for(
                    self.agent.extract(session_id, settings),
                    timeout=self.settings.EXTRACTION_TIMEOUT,
                )
            except asyncio.TimeoutError:
                return await self._recover_partial(session_id, progress)

            return _outcome_from(response)

        except Exception as e:
            logger.error(f"Job {item.key} failed: {e}", exc_info=True)
            return JobOutcome(status="error", error=str(e) or type(e).__name__)

    def _stopped_since(self, generation: Optional[int]) -> bool:
        return generation is not None and generation != self._generation

    async def _wait_for_agent(self, session_id: str) -> bool:
        attempts = self.settings.PING_ATTEMPTS
        for attempt in range(1, attempts + 1):
            if await self.agent.ping(session_id, timeout=self.settings.PING_TIMEOUT):
                return True
            logger.debug(f"Page agent not ready ({attempt}/{attempts})")
            if attempt < attempts:
                await asyncio.sleep(self.settings.PING_INTERVAL)
        return False

    async def _recover_partial(self, session_id: str, progress: ProgressCallback) -> JobOutcome:
        timeout = self.settings.EXTRACTION_TIMEOUT
        logger.warning(f"Extraction in {session_id} hit the {timeout:g}s ceiling; taking snapshot")
        progress("Timed out; collecting partial results...")

        results = await self.agent.snapshot(session_id, timeout=self.settings.SNAPSHOT_TIMEOUT)
        if results:
            return JobOutcome(
                status="error",
                results=results,
                error=f"Extraction timed out after {timeout:g}s; "
                f"recovered {len(results)} partial results",
            )
        return JobOutcome(status="error", error=f"Extraction timed out after {timeout:g}s with no results")

    def _claim_next(self) -> Optional[QueueItem]:
        """Move current_index to the next pending item and mark it processing.

        Finishes the run when no pending item is left past the index.
        """
        with self.queue.mutate() as state:
            index = max(state.current_index, -1)
            while True:
                index += 1
                if index >= len(state.queue):
                    state.is_running = False
                    state.current_index = -1
                    return None
                item = state.queue[index]
                if item.status == "pending":
                    state.current_index = index
                    item.status = "processing"
                    item.progress = "Loading page..."
                    item.error = None
                    return item

    def _still_processing(self, item: QueueItem) -> bool:
        return item.status == "processing" and any(i is item for i in self.queue.state.queue)

    def _halt_on_login(self, item: QueueItem, outcome: JobOutcome):
        with self.queue.mutate() as state:
            item.status = "error"
            item.error = outcome.error
            item.progress = None
            state.is_running = False
            state.current_index = -1
        self.scheduler.cancel(PROCESS_NEXT)
        logger.error(f"Login required, run halted at {item.key}: {outcome.error}")

    async def _report(self, item: QueueItem):
        if not (self.backend and self.backend.enabled and item.results):
            return

        self._set_progress(item, "Sending to backend...")
        try:
            new_count = await self.backend.submit_results(
                item.key, item.marketplace_id, item.results
            )
        except Exception as e:
            logger.error(f"Reporting {item.key} to backend failed: {e}")
            with self.queue.mutate():
                item.sent_to_backend = False
                item.backend_error = str(e)
                item.progress = None
            return

        with self.queue.mutate():
            item.sent_to_backend = True
            item.backend_new_count = new_count
            item.backend_error = None
            item.progress = None

    def _cool_down(self):
        state = self.queue.state
        if not state.is_running:
            return
        if not self.queue.has_pending():
            self._finish()
            return

        delay = self.settings.DELAY_BETWEEN_JOBS
        next_item = state.queue[self.queue.first_pending_index()]
        with self.queue.mutate():
            next_item.progress = f"Waiting {round(delay)}s..."
        self.scheduler.schedule(PROCESS_NEXT, delay)

    def _finish(self):
        with self.queue.mutate() as state:
            state.is_running = False
            state.current_index = -1
        logger.info("Run finished")

    def _set_progress(self, item: QueueItem, text: Optional[str]):
        item.progress = text
        self.queue.broadcast()

    def _on_session_closed(self, session_id: str):
        if self.queue.state.active_session_id == session_id:
            with self.queue.mutate() as state:
                state.active_session_id = None

    def _on_agent_progress(self, session_id: str, data: Any):
        if session_id != self.queue.state.active_session_id or not isinstance(data, dict):
            return
        item = self.queue.processing_item()
        if item is not None:
            last = str(data.get("lastQuestion", ""))[:60]
            self._set_progress(item, f"Q{data.get('resultsCollected', '?')}: {last}")


def _outcome_from(response: ExtractResponse) -> JobOutcome:
    if response.login_required:
        return JobOutcome(
            status="error",
            error=response.error or "Login required",
            login_required=True,
        )
    if response.success:
        return JobOutcome(status="done", results=response.results, exhausted=response.exhausted)
    return JobOutcome(status="error", error=response.error or "Extraction failed")


def _read_keys(args) -> list[str]:
    keys = list(args.keys or [])
    if args.keys_file:
        text = Path(args.keys_file).read_text(encoding="utf-8")
        keys.extend(part for part in text.replace(",", "\n").splitlines() if part.strip())
    return keys


async def _run_worker(settings: Settings, args):
    from .runtime import Runtime

    runtime = Runtime(settings)
    await runtime.startup()
    try:
        keys = _read_keys(args)
        if keys:
            added = runtime.queue.enqueue(keys, args.marketplace)
            logger.info(f"Added {added} items for {args.marketplace}")
        if args.remote_poll:
            await runtime.poller.enable()
        if args.start:
            await runtime.processor.start()
        await runtime.serve_forever()
    finally:
        await runtime.shutdown()


def main():
    """Main entry point for the worker."""
    parser = argparse.ArgumentParser(description="Sequential Q&A extraction worker")
    parser.add_argument(
        "--db",
        default=None,
        help="Path to SQLite state database (default: DB_PATH setting)"
    )
    parser.add_argument(
        "--marketplace",
        default="amazon.com",
        help="Marketplace for keys added on the command line"
    )
    parser.add_argument(
        "--keys",
        nargs="*",
        help="Item keys to add to the queue"
    )
    parser.add_argument(
        "--keys-file",
        help="File with item keys, one per line or comma separated"
    )
    parser.add_argument(
        "--start",
        action="store_true",
        help="Start processing the local queue"
    )
    parser.add_argument(
        "--remote-poll",
        action="store_true",
        help="Take jobs from the backend's remote queue"
    )

    args = parser.parse_args()

    settings = get_settings()
    if args.db:
        settings = settings.model_copy(update={"DB_PATH": args.db})
    if args.remote_poll and not settings.backend_enabled:
        parser.error("--remote-poll requires BACKEND_API_KEY")

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"Starting worker with state in {settings.DB_PATH}")

    try:
        asyncio.run(_run_worker(settings, args))
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")


if __name__ == "__main__":
    main()
