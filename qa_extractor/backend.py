"""HTTP client for the backend: result submission and the remote job queue."""

import logging
from typing import Optional

import httpx

from .errors import BackendError
from .models import QAResult, RemoteItem

logger = logging.getLogger(__name__)


class BackendClient:
    """Bearer-authenticated client for the extraction backend."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        submit_path: str = "/api/rufus-qna",
        queue_path: str = "/api/rufus-qna/queue",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.submit_path = submit_path
        self.queue_path = queue_path
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def close(self):
        await self.client.aclose()

    @staticmethod
    def _check(response: httpx.Response):
        if not response.is_success:
            raise BackendError(response.status_code, response.text)

    async def submit_results(
        self, key: str, marketplace_id: str, results: list[QAResult]
    ) -> int:
        """Send extracted results for one item.

        Returns:
            Number of results the backend reported as new
        """
        response = await self.client.post(
            self.submit_path,
            json={
                "key": key,
                "marketplaceId": marketplace_id,
                "results": [r.model_dump() for r in results],
            },
        )
        self._check(response)
        data = response.json()
        return int(data.get("newResultsAdded") or 0)

    async def fetch_next_item(self) -> Optional[RemoteItem]:
        """Ask the remote queue for the next pending item, or None."""
        response = await self.client.get(self.queue_path)
        self._check(response)
        if not response.content.strip():
            return None

        data = response.json()
        if isinstance(data, dict) and "item" in data:
            data = data["item"]
        if not data:
            return None
        return RemoteItem.model_validate(data)

    async def report_item(
        self,
        item_id: str,
        status: str,
        results_found: int = 0,
        error_message: Optional[str] = None,
    ):
        """Report a remote item as ``completed`` or ``failed``."""
        response = await self.client.post(
            self.queue_path,
            json={
                "itemId": item_id,
                "status": status,
                "resultsFound": results_found,
                "errorMessage": error_message,
            },
        )
        self._check(response)
        logger.info(f"Reported remote item {item_id} as {status}")
