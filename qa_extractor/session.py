"""Managed browser page sessions.

Every job gets a brand-new browser context and page. A context is never
re-navigated to a new target, so the page agent and the widget it drives start
without any state left over from the previous job. Login cookies can still be
carried over by seeding each context from a saved Playwright storage state.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from .errors import PageLoadTimeout, SessionClosedError

logger = logging.getLogger(__name__)

# Global the injected page agent registers itself under
AGENT_GLOBAL = "__qaExtractionAgent"
# Binding the page agent calls to report progress
PROGRESS_BINDING = "__qaExtractionProgress"

_DISPATCH_JS = """
async ([name, message]) => {
  const agent = window[name];
  if (!agent || typeof agent.handle !== "function") {
    return null;
  }
  return await agent.handle(message);
}
"""

ClosedListener = Callable[[str], None]
ProgressListener = Callable[[str, Any], None]


@dataclass
class PageSession:
    """One managed viewport: a private context with a single page."""
    session_id: str
    url: str
    context: BrowserContext
    page: Page
    navigation: Optional[asyncio.Task] = None
    created_at: datetime = field(default_factory=datetime.now)


class PlaywrightSessions:
    """Opens, tracks and closes the single active page session."""

    def __init__(
        self,
        headless: bool = False,
        storage_state_path: Optional[str] = None,
        agent_script_path: Optional[str] = None,
    ):
        self.headless = headless
        self.storage_state_path = storage_state_path
        self.agent_script_path = agent_script_path
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.active: Optional[PageSession] = None
        self._closing: set[str] = set()
        self._closed_listeners: list[ClosedListener] = []
        self._progress_listeners: list[ProgressListener] = []

    @property
    def active_session_id(self) -> Optional[str]:
        return self.active.session_id if self.active else None

    def on_closed(self, listener: ClosedListener):
        """Called with the session id when a session closes without us asking."""
        self._closed_listeners.append(listener)

    def on_progress(self, listener: ProgressListener):
        """Called with (session_id, data) when the page agent reports progress."""
        self._progress_listeners.append(listener)

    async def launch(self):
        """Start Playwright and the browser if they are not running yet."""
        if not self.playwright:
            self.playwright = await async_playwright().start()
        if not self.browser:
            self.browser = await self.playwright.chromium.launch(headless=self.headless)
            logger.info(f"Browser launched (headless={self.headless})")

    async def shutdown(self):
        if self.active:
            await self.close(self.active.session_id)
        if self.browser:
            try:
                await self.browser.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing browser: {e}")
            self.browser = None
        if self.playwright:
            await self.playwright.stop()
            self.playwright = None

    async def open_fresh(self, url: str) -> str:
        """Close the previous session and open a new one at ``url``.

        Navigation starts immediately; use ``wait_for_load`` to wait for it.

        Returns:
            The new session id
        """
        await self.launch()
        if self.active:
            await self.close(self.active.session_id)

        context_args = {}
        if self.storage_state_path and Path(self.storage_state_path).exists():
            context_args["storage_state"] = self.storage_state_path

        session_id = f"session_{uuid.uuid4().hex[:12]}"
        context = await self.browser.new_context(**context_args)

        if self.agent_script_path:
            await context.add_init_script(path=self.agent_script_path)
        await context.expose_binding(
            PROGRESS_BINDING,
            lambda source, data: self._notify_progress(session_id, data),
        )

        page = await context.new_page()
        page.on("close", lambda _page: self._handle_closed(session_id))

        session = PageSession(session_id=session_id, url=url, context=context, page=page)
        session.navigation = asyncio.create_task(page.goto(url, wait_until="load", timeout=0))
        session.navigation.add_done_callback(_consume_result)
        self.active = session

        logger.info(f"Opened {session_id}: {url}")
        return session_id

    async def wait_for_load(self, session_id: str, timeout: float = 30.0):
        """Wait until the session's navigation completes.

        Raises:
            PageLoadTimeout: navigation did not finish within ``timeout``
            SessionClosedError: the session is not the active one
        """
        session = self._require(session_id)
        try:
            await asyncio.wait_for(asyncio.shield(session.navigation), timeout=timeout)
        except asyncio.TimeoutError:
            raise PageLoadTimeout(timeout) from None
        except asyncio.CancelledError:
            if session.navigation.cancelled():
                raise SessionClosedError(f"{session_id} closed while loading") from None
            raise

    async def evaluate(self, session_id: str, message: dict) -> Any:
        """Hand one message to the page agent and return its raw reply.

        Returns:
            The agent's reply, or None when no agent is present in the page
        """
        session = self._require(session_id)
        try:
            return await session.page.evaluate(_DISPATCH_JS, [AGENT_GLOBAL, message])
        except PlaywrightError as e:
            if session.page.is_closed():
                raise SessionClosedError(f"{session_id} closed during {message.get('type')}") from e
            raise

    async def close(self, session_id: str):
        """Close a session. Closing one that is already gone is a no-op."""
        if not self.active or self.active.session_id != session_id:
            return

        session = self.active
        self.active = None
        self._closing.add(session_id)

        if session.navigation and not session.navigation.done():
            session.navigation.cancel()
        try:
            await session.context.close()
        except PlaywrightError as e:
            logger.debug(f"Context for {session_id} already gone: {e}")
        logger.info(f"Closed {session_id}")

    def _require(self, session_id: str) -> PageSession:
        if not self.active or self.active.session_id != session_id:
            raise SessionClosedError(f"{session_id} is not open")
        return self.active

    def _handle_closed(self, session_id: str):
        if session_id in self._closing:
            self._closing.discard(session_id)
            return
        if self.active and self.active.session_id == session_id:
            logger.warning(f"{session_id} was closed externally")
            self.active = None
            for listener in list(self._closed_listeners):
                listener(session_id)

    def _notify_progress(self, session_id: str, data: Any):
        for listener in list(self._progress_listeners):
            listener(session_id, data)


def _consume_result(task: asyncio.Task):
    # Navigation errors surface through wait_for_load; keep asyncio quiet otherwise.
    if not task.cancelled():
        task.exception()
