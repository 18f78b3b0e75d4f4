"""Fulfillment worker: long-running consumer of both fulfillment queues.

Each poll cycle:
1. Promote delayed retries whose backoff has elapsed
2. Reclaim entries left pending by a crashed worker
3. Read a batch of new entries from both queues and dispatch it

Run with ``python -m fulfillment.worker`` (or the ``fulfillment-worker``
script). Stops cleanly on SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
from dataclasses import dataclass

import httpx
import redis.asyncio as aioredis

from fulfillment.bus import FulfillmentBus
from fulfillment.clients.analytics import Analytics
from fulfillment.clients.email import EmailNotifier
from fulfillment.clients.printful import PrintfulClient
from fulfillment.config import Settings, get_settings
from fulfillment.consumer import FulfillmentDispatcher, default_routes
from fulfillment.handlers.orders import PrintOrderHandler
from fulfillment.handlers.tokens import TokenLedgerHandler
from fulfillment.reporting import ErrorReporter
from fulfillment.retry import RetryPolicy
from fulfillment.store import KVStore, RedisKVStore

logger = logging.getLogger(__name__)

# Pause after an unexpected poll error
_ERROR_BACKOFF_SECONDS = 2.0


@dataclass
class Pipeline:
    bus: FulfillmentBus
    store: KVStore
    dispatcher: FulfillmentDispatcher
    reporter: ErrorReporter


def build_pipeline(
    settings: Settings,
    *,
    redis_client: aioredis.Redis,
    http_client: httpx.AsyncClient,
) -> Pipeline:
    """Wire store, bus, clients and handlers from settings."""
    bus = FulfillmentBus(redis_client)
    store = RedisKVStore(redis_client)
    reporter = ErrorReporter(bus)
    notifier = EmailNotifier(settings.resend_api_key, settings.email_from, client=http_client)
    analytics = Analytics(settings.posthog_api_key, settings.posthog_host, client=http_client)
    provider = PrintfulClient(
        settings.printful_api_key,
        client=http_client,
        base_url=settings.printful_base_url,
        store_id=settings.printful_store_id,
    )

    token_handler = TokenLedgerHandler(
        store, notifier=notifier, analytics=analytics, reporter=reporter,
    )
    order_handler = PrintOrderHandler(
        store,
        provider,
        notifier=notifier,
        analytics=analytics,
        reporter=reporter,
        staged_order_ttl=settings.staged_order_ttl_seconds,
    )
    dispatcher = FulfillmentDispatcher(
        default_routes(token_handler, order_handler),
        reporter=reporter,
        policy=RetryPolicy(settings.max_attempts, settings.base_retry_delay_seconds),
    )
    return Pipeline(bus=bus, store=store, dispatcher=dispatcher, reporter=reporter)


class FulfillmentWorker:
    """Polls both queues and hands batches to the dispatcher."""

    def __init__(
        self,
        bus: FulfillmentBus,
        dispatcher: FulfillmentDispatcher,
        settings: Settings,
        consumer_name: str | None = None,
    ):
        self._bus = bus
        self._dispatcher = dispatcher
        self._settings = settings
        self._consumer_name = consumer_name or f"{socket.gethostname()}-{os.getpid()}"
        self._queues = [settings.token_queue, settings.order_queue]
        self._running = False

    @property
    def queues(self) -> list[str]:
        return list(self._queues)

    async def start(self) -> None:
        await self._bus.ensure_consumer_groups(self._queues)
        self._running = True
        logger.info("Fulfillment worker started: %s on %s", self._consumer_name, self._queues)

    def stop(self) -> None:
        self._running = False
        logger.info("Fulfillment worker stopping")

    async def run(self) -> None:
        await self.start()
        while self._running:
            try:
                handled = await self.run_once()
                if not handled:
                    await asyncio.sleep(0.5)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Fulfillment worker poll error")
                await asyncio.sleep(_ERROR_BACKOFF_SECONDS)

    async def run_once(self) -> int:
        """One poll cycle. Returns the number of messages processed."""
        promoted = await self._bus.promote_due()
        if promoted:
            logger.info("Promoted %d delayed retries", promoted)

        handled = 0
        for queue in self._queues:
            stale = await self._bus.claim_stale(
                queue, self._consumer_name,
                min_idle_ms=self._settings.stale_claim_ms, count=self._settings.batch_size,
            )
            await self._dispatcher.process_batch(stale)
            handled += len(stale)

        batch = await self._bus.read_multi(
            self._queues, self._consumer_name,
            count=self._settings.batch_size, block_ms=self._settings.block_ms,
        )
        await self._dispatcher.process_batch(batch)
        return handled + len(batch)


async def run_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as http_client:
        pipeline = build_pipeline(settings, redis_client=redis_client, http_client=http_client)
        worker = FulfillmentWorker(pipeline.bus, pipeline.dispatcher, settings)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, worker.stop)
            except NotImplementedError:
                pass  # Windows event loops
        try:
            await worker.run()
        finally:
            await redis_client.aclose()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
