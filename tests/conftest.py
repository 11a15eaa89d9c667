"""Shared fixtures: temporary state databases and fakes for the browser side."""

import asyncio
import json
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest

from qa_extractor.backend import BackendClient
from qa_extractor.config import Settings
from qa_extractor.errors import PageLoadTimeout, SessionClosedError
from qa_extractor.runtime import Runtime


class FakePageAgent:
    """Stands in for the script running inside the target page.

    ``extract_replies`` is consumed one reply per EXTRACT request; the last
    reply is reused once the list runs out. A reply of ``"hang"`` never
    answers until an ABORT arrives.
    """

    def __init__(
        self,
        extract_replies: Optional[list] = None,
        snapshot_results: Optional[list] = None,
        alive: bool = True,
    ):
        self.extract_replies = list(extract_replies or [
            {"success": True, "results": [{"question": "A?", "answer": "B"}], "exhausted": True}
        ])
        self.snapshot_results = snapshot_results or []
        self.alive = alive
        self.received: list[str] = []
        self.extract_started = asyncio.Event()
        self.aborted = asyncio.Event()

    async def handle(self, message: dict) -> Any:
        kind = message["type"]
        self.received.append(kind)

        if kind == "PING":
            return {"alive": self.alive}
        if kind == "EXTRACT":
            self.extract_started.set()
            reply = self.extract_replies.pop(0) if len(self.extract_replies) > 1 else self.extract_replies[0]
            if reply == "hang":
                await self.aborted.wait()
                return {"success": True, "results": [], "exhausted": False}
            return reply
        if kind == "EXTRACT_SNAPSHOT_ONLY":
            return {"results": self.snapshot_results}
        if kind == "ABORT":
            self.aborted.set()
            return {"success": True}
        raise AssertionError(f"unexpected message {kind}")


class FakeSessions:
    """In-memory replacement for PlaywrightSessions."""

    def __init__(self, agent: Optional[FakePageAgent] = None, load_fails: bool = False):
        self.agent = agent if agent is not None else FakePageAgent()
        self.load_fails = load_fails
        self.active_session_id: Optional[str] = None
        self.opened: list[str] = []
        self.closed: list[str] = []
        self._counter = 0
        self._closed_listeners: list[Callable] = []
        self._progress_listeners: list[Callable] = []

    def on_closed(self, listener):
        self._closed_listeners.append(listener)

    def on_progress(self, listener):
        self._progress_listeners.append(listener)

    async def open_fresh(self, url: str) -> str:
        if self.active_session_id:
            await self.close(self.active_session_id)
        self._counter += 1
        self.active_session_id = f"session_{self._counter}"
        self.opened.append(url)
        return self.active_session_id

    async def wait_for_load(self, session_id: str, timeout: float = 30.0):
        self._require(session_id)
        if self.load_fails:
            raise PageLoadTimeout(timeout)

    async def evaluate(self, session_id: str, message: dict) -> Any:
        self._require(session_id)
        if self.agent is None:
            return None
        return await self.agent.handle(message)

    async def close(self, session_id: str):
        if self.active_session_id == session_id:
            self.active_session_id = None
            self.closed.append(session_id)

    async def shutdown(self):
        if self.active_session_id:
            await self.close(self.active_session_id)

    def close_externally(self):
        session_id = self.active_session_id
        self.active_session_id = None
        for listener in self._closed_listeners:
            listener(session_id)

    def emit_progress(self, data: Any):
        for listener in self._progress_listeners:
            listener(self.active_session_id, data)

    def _require(self, session_id: str):
        if session_id != self.active_session_id:
            raise SessionClosedError(f"{session_id} is not open")


class FakeBackend:
    """Records requests made through an httpx MockTransport."""

    def __init__(self, remote_items: Optional[list] = None, submit_status: int = 200):
        self.remote_items = list(remote_items or [])
        self.submit_status = submit_status
        self.submitted: list[dict] = []
        self.reports: list[dict] = []
        self.auth_headers: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.auth_headers.append(request.headers.get("Authorization", ""))
        if request.url.path == "/api/rufus-qna" and request.method == "POST":
            body = json.loads(request.content)
            self.submitted.append(body)
            if self.submit_status >= 400:
                return httpx.Response(self.submit_status, text="storage unavailable")
            return httpx.Response(200, json={"newResultsAdded": len(body["results"])})
        if request.url.path == "/api/rufus-qna/queue" and request.method == "GET":
            if not self.remote_items:
                return httpx.Response(200, json={"item": None})
            return httpx.Response(200, json={"item": self.remote_items.pop(0)})
        if request.url.path == "/api/rufus-qna/queue" and request.method == "POST":
            self.reports.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, text="not found")

    def client(self, api_key: str = "secret-key") -> BackendClient:
        return BackendClient(
            "http://backend.test",
            api_key,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def temp_db():
    """Create a temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_state.db")


def make_settings(db_path: str, **overrides) -> Settings:
    values = {
        "DB_PATH": db_path,
        "BACKEND_API_KEY": "",
        "SETTLE_DELAY": 0.0,
        "PING_INTERVAL": 0.0,
        "PING_TIMEOUT": 0.5,
        "DELAY_BETWEEN_JOBS": 0.0,
        "REMOTE_POLL_INTERVAL": 3600.0,
        "EXTRACTION_TIMEOUT": 5.0,
        "SNAPSHOT_TIMEOUT": 0.5,
    }
    values.update(overrides)
    return Settings(**values)


def make_runtime(
    db_path: str,
    agent: Optional[FakePageAgent] = None,
    backend: Optional[FakeBackend] = None,
    api_key: str = "",
    load_fails: bool = False,
    **overrides,
) -> Runtime:
    settings = make_settings(db_path, BACKEND_API_KEY=api_key, **overrides)
    backend = backend or FakeBackend()
    return Runtime(
        settings,
        sessions=FakeSessions(agent, load_fails=load_fails),
        backend=backend.client(api_key),
    )


async def run_until_idle(runtime: Runtime, max_rounds: int = 100) -> int:
    """Fire due wake-ups until none are left. Returns how many fired."""
    fired = 0
    for _ in range(max_rounds):
        names = await runtime.scheduler.fire_due()
        if not names:
            return fired
        fired += len(names)
    raise AssertionError("wake-ups kept firing")
