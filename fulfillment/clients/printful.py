"""Printful v2 order API client.

Draft-order protocol used by the print order handler:
    POST   /orders                     create draft (recipient + external_id)
    POST   /orders/{id}/order-items    add one line item
    POST   /orders/{id}/confirm        submit for fulfillment
    DELETE /orders/{id}                discard a draft (compensation)

Responses are returned as ProviderResponse values, never raised, so the
caller can classify 4xx vs 5xx. Transport errors are status 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from fulfillment.messages import StagedItem
from fulfillment.retry import is_retryable_status

logger = logging.getLogger(__name__)

# Max characters of a provider body kept for logs and error reports
_BODY_EXCERPT = 500


@dataclass
class ProviderResponse:
    status_code: int
    body: Any = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def retryable(self) -> bool:
        return not self.ok and is_retryable_status(self.status_code)

    @property
    def order_id(self) -> int | None:
        """Order id from a create-order response body."""
        if not isinstance(self.body, dict):
            return None
        data = self.body.get("data") or self.body.get("result") or {}
        order_id = data.get("id") if isinstance(data, dict) else None
        return int(order_id) if order_id is not None else None

    def excerpt(self) -> str:
        if self.error:
            return self.error
        return str(self.body)[:_BODY_EXCERPT]


def item_payload(item: StagedItem) -> dict[str, Any]:
    """Line item bound to one front print placement."""
    return {
        "source": "catalog",
        "catalog_variant_id": item.catalog_variant_id,
        "quantity": item.quantity,
        "placements": [
            {
                "placement": "front",
                "technique": "dtg",
                "layers": [{"type": "file", "url": item.design_url}],
            }
        ],
    }


class PrintfulClient:
    def __init__(
        self,
        api_key: str,
        *,
        client: httpx.AsyncClient,
        base_url: str = "https://api.printful.com/v2",
        store_id: str = "",
    ):
        self._api_key = api_key
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._store_id = store_id

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if self._store_id:
            headers["X-PF-Store-Id"] = self._store_id
        return headers

    async def _request(self, method: str, path: str, payload: dict | None = None) -> ProviderResponse:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(method, url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("Printful %s %s transport error: %s", method, path, type(e).__name__)
            return ProviderResponse(status_code=0, error=f"{type(e).__name__}: {e}")

        try:
            body = response.json()
        except ValueError:
            body = response.text
        if response.is_error:
            logger.warning("Printful %s %s -> HTTP %d", method, path, response.status_code)
        return ProviderResponse(status_code=response.status_code, body=body)

    async def create_order(
        self,
        recipient: dict[str, Any],
        external_id: str,
        shipping: str | None = None,
    ) -> ProviderResponse:
        payload: dict[str, Any] = {"recipient": recipient, "external_id": external_id}
        if shipping:
            payload["shipping"] = shipping
        return await self._request("POST", "/orders", payload)

    async def add_item(self, order_id: int, item: StagedItem) -> ProviderResponse:
        return await self._request("POST", f"/orders/{order_id}/order-items", item_payload(item))

    async def confirm_order(self, order_id: int) -> ProviderResponse:
        return await self._request("POST", f"/orders/{order_id}/confirm")

    async def delete_order(self, order_id: int) -> ProviderResponse:
        return await self._request("DELETE", f"/orders/{order_id}")
