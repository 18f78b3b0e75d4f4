"""PostHog event capture over HTTP.

Best-effort: capture() never raises and never fails the pipeline.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class Analytics:
    def __init__(self, api_key: str, host: str, *, client: httpx.AsyncClient):
        self._api_key = api_key
        self._host = host.rstrip("/")
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def capture(
        self,
        distinct_id: str,
        event: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        """Send one event. Returns False if it was skipped or failed."""
        if not self.is_configured:
            logger.debug("Analytics not configured, skipping %s", event)
            return False
        try:
            response = await self._client.post(
                f"{self._host}/capture/",
                json={
                    "api_key": self._api_key,
                    "event": event,
                    "distinct_id": distinct_id,
                    "properties": properties or {},
                },
            )
            response.raise_for_status()
        except httpx.HTTPError:
            logger.warning("Analytics capture failed for %s", event, exc_info=True)
            return False
        return True
