"""Email notifier: purchase confirmations via the Resend HTTP API.

Credentials come from settings (FULFILLMENT_RESEND_API_KEY), never logged.
send() reports failures in its SendResult instead of raising; callers
decide whether a failed notification matters (in this pipeline it never
triggers redelivery).
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass

import httpx

from fulfillment.messages import StagedOrder

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass
class SendResult:
    """Result of sending one email."""

    success: bool
    error: str = ""
    response_id: str = ""  # Provider message id


@dataclass
class EmailContent:
    subject: str
    html: str


class EmailNotifier:
    """Transactional email via Resend."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        *,
        client: httpx.AsyncClient,
        api_url: str = RESEND_API_URL,
    ):
        self._api_key = api_key
        self._sender = sender
        self._client = client
        self._api_url = api_url

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key and self._sender)

    async def send(self, to: str, content: EmailContent) -> SendResult:
        if not self.is_configured:
            return SendResult(success=False, error="Email not configured (missing RESEND_API_KEY)")

        try:
            response = await self._client.post(
                self._api_url,
                json={
                    "from": self._sender,
                    "to": [to],
                    "subject": content.subject,
                    "html": content.html,
                },
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as e:
            return SendResult(success=False, error=f"{type(e).__name__}: {e}")

        if response.is_error:
            return SendResult(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:300]}",
            )
        try:
            message_id = str(response.json().get("id", ""))
        except ValueError:
            message_id = ""
        logger.info("Email sent: %s", content.subject)
        return SendResult(success=True, response_id=message_id)


def _wrap(title: str, body: str) -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px;">
        <h2 style="margin: 0 0 12px 0; color: #222;">{html.escape(title)}</h2>
        {body}
        <p style="font-size: 11px; color: #999; margin-top: 24px;">
            Investorio order notifications
        </p>
    </div>
    """


def token_confirmation(grant_id: str, tokens_added: int, balance: int) -> EmailContent:
    """Token purchase receipt. The grant id is the customer's access key."""
    body = f"""
        <p>Thanks for your purchase! We added <strong>{tokens_added}</strong> design tokens.</p>
        <p>Your balance is now <strong>{balance}</strong> tokens.</p>
        <p>Your access key (keep it safe, it unlocks your tokens on any device):</p>
        <p style="font-family: monospace; font-size: 15px; background: #f4f4f4; padding: 8px;">
            {html.escape(grant_id)}
        </p>
    """
    return EmailContent(
        subject="Your design tokens are ready",
        html=_wrap("Tokens added", body),
    )


def order_confirmation(payment_ref: str, provider_order_id: int, order: StagedOrder) -> EmailContent:
    addr = order.shipping_address
    total = f"{order.total_amount_cents / 100:.2f} {order.currency.upper()}"
    item_count = sum(item.quantity for item in order.items)
    body = f"""
        <p>Hi {html.escape(addr.name)}, your order is confirmed and headed to production.</p>
        <ul>
            <li>Order reference: {html.escape(payment_ref)}</li>
            <li>Production order: #{provider_order_id}</li>
            <li>Items: {item_count}</li>
            <li>Total: {total}</li>
        </ul>
        <p>Shipping to {html.escape(addr.city)}, {html.escape(addr.country_code)}.
        We will email you tracking details once it ships.</p>
    """
    return EmailContent(
        subject="Your order is confirmed",
        html=_wrap("Order confirmed", body),
    )
