"""Producer side of the fulfillment contract.

Called after a verified "payment succeeded" event: stage the order payload
in the KV store (TTL'd) and enqueue exactly one message per fulfillment
unit. Message ids are derived from the payment so an accidental second
enqueue of the same payment carries the same dedup key.
"""

from __future__ import annotations

import logging
import secrets

from fulfillment.bus import FulfillmentBus
from fulfillment.config import Settings
from fulfillment.messages import (
    TOKEN_BUNDLES,
    OrderFulfillment,
    StagedOrder,
    TokenFulfillment,
    staged_order_key,
)
from fulfillment.store import KVStore

logger = logging.getLogger(__name__)

MSG_TYPE_TOKEN = "token_fulfillment"
MSG_TYPE_ORDER = "order_fulfillment"


class EnqueueError(Exception):
    """The fulfillment message could not be published."""


def issue_grant_id() -> str:
    """New opaque grant id (doubles as the purchaser's access key)."""
    return secrets.token_urlsafe(24)


class FulfillmentProducer:
    def __init__(self, bus: FulfillmentBus, store: KVStore, settings: Settings, *, source: str = "api-gateway"):
        self._bus = bus
        self._store = store
        self._settings = settings
        self._source = source

    async def enqueue_token_fulfillment(self, message: TokenFulfillment) -> str:
        if message.bundle_id not in TOKEN_BUNDLES:
            raise ValueError(f"unknown bundle_id {message.bundle_id!r}")
        msg_id = f"tok_{message.payment_ref}" if message.payment_ref else None
        entry_id = await self._bus.publish(
            self._settings.token_queue,
            MSG_TYPE_TOKEN,
            message.model_dump(),
            source=self._source,
            msg_id=msg_id,
        )
        if entry_id is None:
            raise EnqueueError(f"token fulfillment for {message.payment_ref or 'grant'} not enqueued")
        logger.info("Enqueued token fulfillment (%s) as %s", message.bundle_id, entry_id)
        return entry_id

    async def stage_order(self, payment_ref: str, order: StagedOrder) -> None:
        """Set aside the order payload for the async fulfillment step."""
        await self._store.put(
            staged_order_key(payment_ref),
            order.model_dump(mode="json"),
            ttl=self._settings.staged_order_ttl_seconds,
        )

    async def enqueue_order_fulfillment(self, message: OrderFulfillment) -> str:
        entry_id = await self._bus.publish(
            self._settings.order_queue,
            MSG_TYPE_ORDER,
            message.model_dump(),
            source=self._source,
            msg_id=f"ord_{message.payment_ref}",
        )
        if entry_id is None:
            raise EnqueueError(f"order fulfillment for {message.payment_ref} not enqueued")
        logger.info("Enqueued order fulfillment for %s as %s", message.payment_ref, entry_id)
        return entry_id
