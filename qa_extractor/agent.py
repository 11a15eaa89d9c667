"""Client for the agent embedded in the target page."""

import asyncio
import logging
from typing import Any, Optional, get_args

from pydantic import BaseModel, TypeAdapter, ValidationError

from .config import SelectorSet
from .errors import AgentProtocolError
from .models import (
    AbortRequest,
    AckResponse,
    AgentRequest,
    AgentSelectors,
    ExtractionSettings,
    ExtractRequest,
    ExtractResponse,
    PingRequest,
    PingResponse,
    QAResult,
    SnapshotRequest,
    SnapshotResponse,
)
from .session import PlaywrightSessions

logger = logging.getLogger(__name__)

# Every request type maps to exactly one reply type.
RESPONSE_TYPES: dict[type, type[BaseModel]] = {
    PingRequest: PingResponse,
    ExtractRequest: ExtractResponse,
    SnapshotRequest: SnapshotResponse,
    AbortRequest: AckResponse,
}

_request_adapter = TypeAdapter(AgentRequest)

_missing = [
    member for member in get_args(get_args(AgentRequest)[0])
    if member not in RESPONSE_TYPES
]
if _missing:
    raise TypeError(f"No reply type for agent requests: {[m.__name__ for m in _missing]}")


def build_extraction_settings(
    max_results: int, delay_between_clicks_ms: int, selectors: SelectorSet
) -> ExtractionSettings:
    return ExtractionSettings(
        max_results=max_results,
        delay_between_clicks=delay_between_clicks_ms,
        selectors=AgentSelectors(**selectors.model_dump()),
    )


class PageAgentClient:
    """Sends typed requests to the page agent and parses its replies.

    Timeouts are the caller's business except where a method takes one;
    ``extract`` deliberately has none so the caller can race it.
    """

    def __init__(self, sessions: PlaywrightSessions):
        self.sessions = sessions

    async def send(self, session_id: str, request: AgentRequest) -> Optional[BaseModel]:
        """Deliver ``request`` and parse the reply into its response model.

        Returns:
            The parsed reply, or None when the page has no agent
        """
        payload = _request_adapter.dump_python(request, by_alias=True, mode="json")
        raw: Any = await self.sessions.evaluate(session_id, payload)
        if raw is None:
            return None

        response_type = RESPONSE_TYPES[type(request)]
        try:
            return response_type.model_validate(raw)
        except ValidationError as e:
            raise AgentProtocolError(f"Bad {request.type} reply: {e}") from e

    async def ping(self, session_id: str, timeout: float = 2.0) -> bool:
        try:
            reply = await asyncio.wait_for(self.send(session_id, PingRequest()), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        except Exception as e:
            logger.debug(f"Ping to {session_id} failed: {e}")
            return False
        return bool(reply and reply.alive)

    async def extract(self, session_id: str, settings: ExtractionSettings) -> ExtractResponse:
        reply = await self.send(session_id, ExtractRequest(settings=settings))
        if reply is None:
            return ExtractResponse(success=False, error="Page agent not present")
        return reply

    async def snapshot(self, session_id: str, timeout: float = 10.0) -> list[QAResult]:
        """Collect whatever results are already visible, without interacting."""
        try:
            reply = await asyncio.wait_for(
                self.send(session_id, SnapshotRequest()), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Snapshot from {session_id} timed out after {timeout:g}s")
            return []
        except Exception as e:
            logger.warning(f"Snapshot from {session_id} failed: {e}")
            return []
        return reply.results if reply else []

    async def abort(self, session_id: str, timeout: float = 2.0):
        """Ask the agent to stop extracting. Failures are only logged."""
        try:
            await asyncio.wait_for(self.send(session_id, AbortRequest()), timeout=timeout)
        except Exception as e:
            logger.debug(f"Abort to {session_id} not delivered: {e}")
