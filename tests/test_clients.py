"""Tests for the outbound HTTP clients: Printful, Resend email, PostHog.

All HTTP is served by httpx.MockTransport; nothing leaves the process.
"""

from __future__ import annotations

import json

import httpx
import pytest

from fulfillment.clients.analytics import Analytics
from fulfillment.clients.email import (
    EmailContent,
    EmailNotifier,
    order_confirmation,
    token_confirmation,
)
from fulfillment.clients.printful import PrintfulClient, ProviderResponse
from fulfillment.messages import StagedItem, StagedOrder


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestProviderResponse:
    def test_order_id_from_data(self):
        assert ProviderResponse(200, {"data": {"id": 77}}).order_id == 77

    def test_order_id_from_legacy_result(self):
        assert ProviderResponse(200, {"result": {"id": "78"}}).order_id == 78

    def test_order_id_missing(self):
        assert ProviderResponse(200, "ok").order_id is None
        assert ProviderResponse(200, {"data": []}).order_id is None

    @pytest.mark.parametrize(
        "status,retryable",
        [(200, False), (0, True), (429, False), (400, False), (422, False), (500, True), (503, True)],
    )
    def test_retryable(self, status, retryable):
        assert ProviderResponse(status).retryable is retryable

    def test_excerpt_truncated(self):
        assert len(ProviderResponse(500, "x" * 2000).excerpt()) == 500


class TestPrintfulClient:
    @pytest.mark.asyncio
    async def test_create_order_request(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": {"id": 5}})

        client = PrintfulClient("pf-key", client=_client(handler), store_id="123")
        response = await client.create_order({"name": "Ada"}, "pi_1", shipping="STANDARD")

        assert response.ok
        assert response.order_id == 5
        request = seen[0]
        assert str(request.url) == "https://api.printful.com/v2/orders"
        assert request.headers["Authorization"] == "Bearer pf-key"
        assert request.headers["X-PF-Store-Id"] == "123"
        assert json.loads(request.content) == {
            "recipient": {"name": "Ada"},
            "external_id": "pi_1",
            "shipping": "STANDARD",
        }

    @pytest.mark.asyncio
    async def test_no_store_header_by_default(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        await PrintfulClient("pf-key", client=_client(handler)).confirm_order(5)

        assert "X-PF-Store-Id" not in seen[0].headers
        assert seen[0].url.path == "/v2/orders/5/confirm"

    @pytest.mark.asyncio
    async def test_error_status_returned_not_raised(self):
        client = PrintfulClient(
            "pf-key",
            client=_client(lambda r: httpx.Response(422, json={"error": {"message": "bad"}})),
        )
        item = StagedItem(catalog_variant_id=1, quantity=1, design_url="https://x/y.png")

        response = await client.add_item(5, item)

        assert response.status_code == 422
        assert not response.ok
        assert not response.retryable
        assert response.body == {"error": {"message": "bad"}}

    @pytest.mark.asyncio
    async def test_non_json_body_kept_as_text(self):
        client = PrintfulClient(
            "pf-key", client=_client(lambda r: httpx.Response(502, text="Bad Gateway")),
        )

        response = await client.delete_order(5)

        assert response.body == "Bad Gateway"
        assert response.retryable

    @pytest.mark.asyncio
    async def test_transport_error_is_status_zero(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        response = await PrintfulClient("pf-key", client=_client(handler)).create_order({}, "pi_1")

        assert response.status_code == 0
        assert response.retryable
        assert "ReadTimeout" in response.error

    def test_is_configured(self):
        http = _client(lambda r: httpx.Response(200))
        assert PrintfulClient("pf-key", client=http).is_configured
        assert not PrintfulClient("", client=http).is_configured


class TestEmailNotifier:
    @pytest.mark.asyncio
    async def test_send_posts_to_resend(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "em_123"})

        notifier = EmailNotifier("re-key", "Shop <orders@example.com>", client=_client(handler))
        result = await notifier.send("a@b.com", EmailContent(subject="Hi", html="<p>x</p>"))

        assert result.success
        assert result.response_id == "em_123"
        assert seen[0].headers["Authorization"] == "Bearer re-key"
        body = json.loads(seen[0].content)
        assert body["to"] == ["a@b.com"]
        assert body["from"] == "Shop <orders@example.com>"

    @pytest.mark.asyncio
    async def test_http_error_reported_in_result(self):
        notifier = EmailNotifier(
            "re-key", "orders@example.com",
            client=_client(lambda r: httpx.Response(500, text="oops")),
        )

        result = await notifier.send("a@b.com", EmailContent(subject="Hi", html=""))

        assert not result.success
        assert result.error.startswith("HTTP 500")

    @pytest.mark.asyncio
    async def test_transport_error_reported_in_result(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        notifier = EmailNotifier("re-key", "orders@example.com", client=_client(handler))
        result = await notifier.send("a@b.com", EmailContent(subject="Hi", html=""))

        assert not result.success
        assert "ConnectError" in result.error

    @pytest.mark.asyncio
    async def test_unconfigured_sends_nothing(self):
        calls = []
        notifier = EmailNotifier(
            "", "orders@example.com",
            client=_client(lambda r: calls.append(r) or httpx.Response(200)),
        )

        result = await notifier.send("a@b.com", EmailContent(subject="Hi", html=""))

        assert not notifier.is_configured
        assert not result.success
        assert calls == []


class TestTemplates:
    def test_token_confirmation_shows_key_and_balance(self):
        content = token_confirmation("grant<abc>", 25, 35)
        assert "<strong>25</strong>" in content.html
        assert "<strong>35</strong>" in content.html
        assert "grant&lt;abc&gt;" in content.html

    def test_order_confirmation(self):
        order = StagedOrder.model_validate({
            "total_amount_cents": 5800,
            "items": [
                {"catalog_variant_id": 1, "quantity": 2, "design_url": "https://x/1.png"},
                {"catalog_variant_id": 2, "quantity": 1, "design_url": "https://x/2.png"},
            ],
            "shipping_address": {
                "name": "Ada <b>", "email": "a@b.com", "address1": "Main 1",
                "city": "Berlin", "country_code": "de", "zip": "10115",
            },
        })

        content = order_confirmation("pi_1", 9001, order)

        assert "#9001" in content.html
        assert "58.00 EUR" in content.html
        assert "Items: 3" in content.html
        assert "Ada &lt;b&gt;" in content.html
        assert "Berlin, DE" in content.html


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_capture_posts_event(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": 1})

        analytics = Analytics("ph-key", "https://ph.example.com/", client=_client(handler))
        ok = await analytics.capture("g1", "token_purchase_fulfilled", {"tokens_added": 10})

        assert ok
        assert str(seen[0].url) == "https://ph.example.com/capture/"
        assert json.loads(seen[0].content) == {
            "api_key": "ph-key",
            "event": "token_purchase_fulfilled",
            "distinct_id": "g1",
            "properties": {"tokens_added": 10},
        }

    @pytest.mark.asyncio
    async def test_failure_never_raises(self):
        analytics = Analytics(
            "ph-key", "https://ph.example.com",
            client=_client(lambda r: httpx.Response(503)),
        )
        assert await analytics.capture("g1", "print_order_failed") is False

    @pytest.mark.asyncio
    async def test_unconfigured_skips(self):
        calls = []
        analytics = Analytics(
            "", "https://ph.example.com",
            client=_client(lambda r: calls.append(r) or httpx.Response(200)),
        )
        assert await analytics.capture("g1", "x") is False
        assert calls == []
