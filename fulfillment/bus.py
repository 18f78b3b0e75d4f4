"""Redis Streams fulfillment queues: publish, consume, retry, dead-letter.

Each logical queue (``token-fulfillment-<env>``, ``order-fulfillment-<env>``)
is a Redis Stream read through the ``fulfillment-workers`` consumer group.

Entry fields:
    msg_id    stable across redeliveries (producer-assigned)
    msg_type  "token_fulfillment" | "order_fulfillment"
    source    producer name
    ts        enqueue time (UTC)
    attempts  delivery attempt counter, starts at 0
    payload   JSON body

Retry-with-delay parks the next attempt in the ``fulfillment:delayed`` sorted
set (score = due time) and acks the current entry; ``promote_due()`` moves due
entries back onto their stream. Dead letters are appended to
``fulfillment:dead-letter`` with the failure reason.

publish() and dead_letter() are fire-and-forget: they never raise and return
None on failure, like the rest of the bus.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "fulfillment-workers"
DELAYED_KEY = "fulfillment:delayed"
STREAM_DEAD_LETTER = "fulfillment:dead-letter"
STREAM_ERRORS = "fulfillment:errors"

# Approximate trim policies per stream; queues themselves are never trimmed
_TRIM_POLICIES: dict[str, int] = {
    STREAM_DEAD_LETTER: 10_000,
    STREAM_ERRORS: 5000,
}

# Max delayed entries promoted per promote_due() call
_PROMOTE_BATCH = 100


def _utc_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime())


@dataclass
class QueueMessage:
    """One delivered queue entry, bound to the bus that delivered it."""

    id: str
    queue: str
    entry_id: str
    body: dict[str, Any] | None
    attempts: int = 0
    msg_type: str = ""
    source: str = ""
    _bus: FulfillmentBus | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_fields(
        cls, bus: FulfillmentBus | None, queue: str, entry_id: str, fields: dict[str, str]
    ) -> QueueMessage:
        try:
            body = json.loads(fields.get("payload", "null"))
        except json.JSONDecodeError:
            body = None
        if not isinstance(body, dict):
            body = None
        try:
            attempts = int(fields.get("attempts", 0))
        except ValueError:
            attempts = 0
        return cls(
            id=fields.get("msg_id") or entry_id,
            queue=queue,
            entry_id=entry_id,
            body=body,
            attempts=attempts,
            msg_type=fields.get("msg_type", ""),
            source=fields.get("source", ""),
            _bus=bus,
        )

    def to_fields(self, *, attempts: int | None = None) -> dict[str, str]:
        return {
            "msg_id": self.id,
            "msg_type": self.msg_type,
            "source": self.source,
            "ts": _utc_now(),
            "attempts": str(self.attempts if attempts is None else attempts),
            "payload": json.dumps(self.body, default=str),
        }

    async def ack(self) -> None:
        if self._bus is not None:
            await self._bus.ack(self.queue, self.entry_id)

    async def retry(self, delay_seconds: int) -> None:
        if self._bus is not None:
            await self._bus.schedule_retry(self, delay_seconds)

    async def dead_letter(self, reason: str) -> None:
        if self._bus is not None:
            await self._bus.dead_letter(self, reason)


class FulfillmentBus:
    """Queue operations over a shared redis.asyncio client."""

    def __init__(self, client: aioredis.Redis, *, group: str = CONSUMER_GROUP):
        self._redis = client
        self._group = group

    @classmethod
    def from_url(cls, redis_url: str) -> FulfillmentBus:
        return cls(aioredis.from_url(redis_url, decode_responses=True))

    # -----------------------------------------------------------------------
    # Publishing
    # -----------------------------------------------------------------------

    async def publish(
        self,
        queue: str,
        msg_type: str,
        payload: dict[str, Any],
        *,
        source: str = "",
        msg_id: str | None = None,
        attempts: int = 0,
    ) -> str | None:
        """Append a message to a queue stream. Returns the entry id or None."""
        if msg_id is None:
            msg_id = uuid.uuid4().hex[:16]
        entry = {
            "msg_id": msg_id,
            "msg_type": msg_type,
            "source": source,
            "ts": _utc_now(),
            "attempts": str(attempts),
            "payload": json.dumps(payload, default=str),
        }
        return await self._xadd(queue, entry)

    async def _xadd(self, stream: str, entry: dict[str, str]) -> str | None:
        maxlen = _TRIM_POLICIES.get(stream)
        try:
            if maxlen:
                return await self._redis.xadd(stream, entry, maxlen=maxlen, approximate=True)
            return await self._redis.xadd(stream, entry)
        except RedisError:
            logger.warning(
                "Bus publish failed: stream=%s type=%s", stream, entry.get("msg_type"),
                exc_info=True,
            )
            return None

    async def record_error(self, record: dict[str, Any]) -> str | None:
        """Append an error record to the error stream (never raises)."""
        entry = {k: json.dumps(v, default=str) if not isinstance(v, str) else v
                 for k, v in record.items()}
        entry.setdefault("ts", _utc_now())
        return await self._xadd(STREAM_ERRORS, entry)

    # -----------------------------------------------------------------------
    # Consumer group management
    # -----------------------------------------------------------------------

    async def ensure_consumer_groups(self, queues: list[str]) -> None:
        """Create the consumer group on every queue (idempotent)."""
        for queue in queues:
            try:
                await self._redis.xgroup_create(queue, self._group, id="0", mkstream=True)
                logger.info("Consumer group '%s' created on %s", self._group, queue)
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    logger.warning(
                        "Failed to create consumer group on %s: %s", queue, exc,
                    )

    # -----------------------------------------------------------------------
    # Consuming
    # -----------------------------------------------------------------------

    async def read_multi(
        self,
        queues: list[str],
        consumer_name: str,
        *,
        count: int = 10,
        block_ms: int = 2000,
    ) -> list[QueueMessage]:
        """Read new entries from several queues at once."""
        try:
            result = await self._redis.xreadgroup(
                self._group,
                consumer_name,
                {q: ">" for q in queues},
                count=count,
                block=block_ms,
            )
        except RedisError:
            logger.warning("Bus read_multi failed", exc_info=True)
            return []
        messages: list[QueueMessage] = []
        for stream_name, entries in result or []:
            for entry_id, fields in entries:
                messages.append(QueueMessage.from_fields(self, stream_name, entry_id, fields))
        return messages

    async def ack(self, queue: str, *entry_ids: str) -> int:
        if not entry_ids:
            return 0
        try:
            return await self._redis.xack(queue, self._group, *entry_ids)
        except RedisError:
            logger.warning("Bus ack failed: queue=%s ids=%s", queue, entry_ids, exc_info=True)
            return 0

    async def claim_stale(
        self,
        queue: str,
        consumer_name: str,
        *,
        min_idle_ms: int = 60_000,
        count: int = 10,
    ) -> list[QueueMessage]:
        """Reclaim entries another worker read but never acknowledged."""
        try:
            result = await self._redis.xautoclaim(
                queue,
                self._group,
                consumer_name,
                min_idle_time=min_idle_ms,
                count=count,
            )
        except RedisError:
            logger.warning("Bus claim_stale failed: queue=%s", queue, exc_info=True)
            return []
        # Redis 6.2 replies [cursor, entries]; 7.0+ adds a deleted-ids list
        entries = []
        if isinstance(result, (list, tuple)) and len(result) >= 2:
            entries = result[1] or []
        # Entries deleted from the stream come back with no fields
        messages = [QueueMessage.from_fields(self, queue, entry_id, fields)
                    for entry_id, fields in entries if fields]
        if messages:
            logger.info(
                "Claimed %d stale messages from %s (idle > %dms)",
                len(messages), queue, min_idle_ms,
            )
        return messages

    # -----------------------------------------------------------------------
    # Retry and dead-letter
    # -----------------------------------------------------------------------

    async def schedule_retry(self, message: QueueMessage, delay_seconds: int) -> bool:
        """Park the next attempt of ``message`` and ack the current entry.

        If parking fails the entry stays pending and is reclaimed later
        by claim_stale().
        """
        member = json.dumps({
            "queue": message.queue,
            "fields": message.to_fields(attempts=message.attempts + 1),
        })
        try:
            await self._redis.zadd(DELAYED_KEY, {member: time.time() + delay_seconds})
        except RedisError:
            logger.warning(
                "Failed to schedule retry for %s on %s", message.id, message.queue,
                exc_info=True,
            )
            return False
        await self.ack(message.queue, message.entry_id)
        return True

    async def promote_due(self, now: float | None = None) -> int:
        """Move due delayed entries back onto their queues."""
        now = time.time() if now is None else now
        try:
            due = await self._redis.zrangebyscore(
                DELAYED_KEY, "-inf", now, start=0, num=_PROMOTE_BATCH,
            )
        except RedisError:
            logger.warning("Bus promote_due failed", exc_info=True)
            return 0
        promoted = 0
        for member in due:
            try:
                # ZREM succeeds for exactly one worker when several race
                if not await self._redis.zrem(DELAYED_KEY, member):
                    continue
            except RedisError:
                logger.warning("Bus promote_due zrem failed", exc_info=True)
                continue
            item = json.loads(member)
            if await self._xadd(item["queue"], item["fields"]) is None:
                # Put it back so the retry is not lost
                try:
                    await self._redis.zadd(DELAYED_KEY, {member: now})
                except RedisError:
                    logger.error(
                        "Lost delayed retry for %s", item["fields"].get("msg_id"),
                        exc_info=True,
                    )
                continue
            promoted += 1
        return promoted

    async def dead_letter(self, message: QueueMessage, reason: str) -> str | None:
        entry = message.to_fields()
        entry["queue"] = message.queue
        entry["reason"] = reason
        entry["original_entry_id"] = message.entry_id
        entry_id = await self._xadd(STREAM_DEAD_LETTER, entry)
        if entry_id is not None:
            logger.warning(
                "Dead-lettered %s from %s: %s", message.id, message.queue, reason,
            )
        return entry_id

    # -----------------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------------

    async def pending_count(self, queue: str) -> int:
        try:
            info = await self._redis.xpending(queue, self._group)
        except RedisError:
            return 0
        return info.get("pending", 0) if isinstance(info, dict) else 0

    async def delayed_count(self) -> int:
        try:
            return await self._redis.zcard(DELAYED_KEY)
        except RedisError:
            return 0

    async def dead_letter_length(self) -> int:
        try:
            return await self._redis.xlen(STREAM_DEAD_LETTER)
        except RedisError:
            return 0
