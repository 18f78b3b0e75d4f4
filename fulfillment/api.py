"""Operator HTTP API for the fulfillment pipeline.

Routes:
    GET /api/health                         liveness
    GET /api/get-token-balance?grant_id=    tokens_remaining for a grant
    GET /api/fulfillment/status             queue backlog + dead-letter size

Never returns internal error details: store failures become a generic 503.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from fulfillment.bus import FulfillmentBus
from fulfillment.config import Settings, get_settings
from fulfillment.handlers.tokens import mask_grant
from fulfillment.store import KVStore, RedisKVStore, StoreError

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings: Settings) -> None:
    @app.get("/api/health")
    async def health():
        return {"ok": True}

    @app.get("/api/get-token-balance")
    async def get_token_balance(grant_id: str = Query(min_length=1)):
        store: KVStore = app.state.store
        try:
            entry = await store.get(grant_id)
        except StoreError:
            logger.warning("Balance lookup failed for %s", mask_grant(grant_id), exc_info=True)
            return JSONResponse({"error": "temporarily unavailable"}, status_code=503)
        if entry is None:
            return JSONResponse({"error": "grant not found"}, status_code=404)
        return {"tokens_remaining": int(entry.get("tokens_remaining", 0))}

    @app.get("/api/fulfillment/status")
    async def fulfillment_status():
        bus: FulfillmentBus = app.state.bus
        queues = [settings.token_queue, settings.order_queue]
        return {
            "pending": {q: await bus.pending_count(q) for q in queues},
            "delayed": await bus.delayed_count(),
            "dead_letter": await bus.dead_letter_length(),
        }


def create_app(
    settings: Settings | None = None,
    *,
    store: KVStore | None = None,
    bus: FulfillmentBus | None = None,
) -> FastAPI:
    """Build the app. Injected store/bus skip the Redis connection (tests)."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        client = None
        if store is None or bus is None:
            client = aioredis.from_url(settings.redis_url, decode_responses=True)
        app.state.store = store or RedisKVStore(client)
        app.state.bus = bus or FulfillmentBus(client)
        yield
        if client is not None:
            await client.aclose()

    app = FastAPI(title="Fulfillment API", lifespan=lifespan)
    register_routes(app, settings)
    return app


def serve() -> None:
    """Run the operator API with uvicorn (``fulfillment-api`` script)."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8080)
