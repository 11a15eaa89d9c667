"""Wires the components together for one process."""

import asyncio
import logging
from typing import Optional

from .agent import PageAgentClient
from .backend import BackendClient
from .bootstrap import RecoveryBootstrapper
from .config import Settings
from .models import SchedulerState
from .poller import RemoteQueuePoller
from .queue import JobQueueManager
from .scheduler import DurableScheduler
from .session import PlaywrightSessions
from .store import StateStore
from .worker import SequentialJobProcessor

logger = logging.getLogger(__name__)


class Runtime:
    """All long-lived objects of the orchestrator, sharing one state database."""

    def __init__(
        self,
        settings: Settings,
        sessions: Optional[PlaywrightSessions] = None,
        backend: Optional[BackendClient] = None,
    ):
        self.settings = settings
        self.store = StateStore(db_path=settings.DB_PATH)
        self.scheduler = DurableScheduler(db_path=settings.DB_PATH)
        self.queue = JobQueueManager(self.store, self.scheduler, key_pattern=settings.KEY_PATTERN)
        self.sessions = sessions or PlaywrightSessions(
            headless=settings.HEADLESS,
            storage_state_path=settings.STORAGE_STATE_PATH,
            agent_script_path=settings.AGENT_SCRIPT_PATH,
        )
        self.agent = PageAgentClient(self.sessions)
        self.backend = backend or BackendClient(
            settings.BACKEND_URL,
            settings.BACKEND_API_KEY,
            submit_path=settings.SUBMIT_PATH,
            queue_path=settings.QUEUE_PATH,
            timeout=settings.BACKEND_TIMEOUT,
        )
        self.processor = SequentialJobProcessor(
            self.queue,
            self.sessions,
            self.agent,
            self.scheduler,
            settings,
            backend=self.backend,
        )
        self.poller = RemoteQueuePoller(
            self.queue, self.processor, self.scheduler, self.backend, settings
        )
        self.bootstrapper = RecoveryBootstrapper(
            self.queue, self.scheduler, self.processor, self.poller
        )
        self._scheduler_task: Optional[asyncio.Task] = None

        self.queue.subscribe(_log_state)

    async def startup(self) -> SchedulerState:
        """Recover persisted state and start dispatching wake-ups."""
        state = await self.bootstrapper.run()
        self._scheduler_task = asyncio.create_task(self.scheduler.run(), name="durable-scheduler")
        return state

    async def serve_forever(self):
        if self._scheduler_task:
            await self._scheduler_task

    async def shutdown(self):
        await self.scheduler.aclose()
        if self._scheduler_task:
            await asyncio.gather(self._scheduler_task, return_exceptions=True)
            self._scheduler_task = None
        await self.sessions.shutdown()
        await self.backend.close()
        logger.info("Runtime shut down")


def _log_state(state: SchedulerState):
    logger.debug(
        f"State: running={state.is_running} index={state.current_index} "
        f"items={len(state.queue)} remote_busy={state.remote_poll_busy}"
    )
