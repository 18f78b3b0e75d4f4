"""Tests for the producer side: order staging and message enqueueing."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from freezegun import freeze_time

from fulfillment.config import Settings
from fulfillment.messages import OrderFulfillment, StagedOrder, TokenFulfillment
from fulfillment.producer import (
    MSG_TYPE_ORDER,
    MSG_TYPE_TOKEN,
    EnqueueError,
    FulfillmentProducer,
    issue_grant_id,
)

STAGED = {
    "total_amount_cents": 2900,
    "items": [{"catalog_variant_id": 4012, "quantity": 1, "design_url": "https://cdn.example.com/d.png"}],
    "shipping_address": {
        "name": "Ada", "email": "a@b.com", "address1": "Main 1",
        "city": "Berlin", "country_code": "DE", "zip": "10115",
    },
}


@pytest.fixture()
def settings() -> Settings:
    return Settings(environment="production", staged_order_ttl_seconds=600, _env_file=None)


@pytest.fixture()
def bus() -> AsyncMock:
    mock = AsyncMock()
    mock.publish.return_value = "1700000000000-0"
    return mock


@pytest.fixture()
def producer(bus, store, settings) -> FulfillmentProducer:
    return FulfillmentProducer(bus, store, settings, source="test")


class TestTokenEnqueue:
    @pytest.mark.asyncio
    async def test_publishes_to_environment_queue(self, producer, bus):
        message = TokenFulfillment(
            grant_id="g1", bundle_id="tokens_25", email="a@b.com", payment_ref="pi_1",
        )

        entry_id = await producer.enqueue_token_fulfillment(message)

        assert entry_id == "1700000000000-0"
        bus.publish.assert_awaited_once()
        args, kwargs = bus.publish.await_args
        assert args[0] == "token-fulfillment-production"
        assert args[1] == MSG_TYPE_TOKEN
        assert args[2]["grant_id"] == "g1"
        assert kwargs["msg_id"] == "tok_pi_1"
        assert kwargs["source"] == "test"

    @pytest.mark.asyncio
    async def test_unknown_bundle_rejected_before_publish(self, producer, bus):
        message = TokenFulfillment(grant_id="g1", bundle_id="tokens_7", email="a@b.com")

        with pytest.raises(ValueError):
            await producer.enqueue_token_fulfillment(message)
        bus.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_failure_raises(self, producer, bus):
        bus.publish.return_value = None
        message = TokenFulfillment(grant_id="g1", bundle_id="tokens_10", email="a@b.com")

        with pytest.raises(EnqueueError):
            await producer.enqueue_token_fulfillment(message)


class TestOrderEnqueue:
    @pytest.mark.asyncio
    async def test_stage_order_with_ttl(self, producer, store):
        with freeze_time("2026-01-01 00:00:00") as frozen:
            await producer.stage_order("pi_9", StagedOrder.model_validate(STAGED))

            staged = await store.get("order:pi_9")
            assert staged["total_amount_cents"] == 2900
            assert staged["provider_order_id"] is None
            assert await store.ttl("order:pi_9") == 600

            frozen.tick(601)
            assert await store.get("order:pi_9") is None

    @pytest.mark.asyncio
    async def test_order_message_id_derived_from_payment(self, producer, bus):
        await producer.enqueue_order_fulfillment(OrderFulfillment(payment_ref="pi_9", email="a@b.com"))

        args, kwargs = bus.publish.await_args
        assert args[0] == "order-fulfillment-production"
        assert args[1] == MSG_TYPE_ORDER
        assert args[2] == {"payment_ref": "pi_9", "email": "a@b.com"}
        assert kwargs["msg_id"] == "ord_pi_9"


def test_grant_ids_are_unique_and_url_safe():
    ids = {issue_grant_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(len(i) == 32 and "/" not in i and "+" not in i for i in ids)
