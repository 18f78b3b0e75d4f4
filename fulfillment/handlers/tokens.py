"""Token ledger handler: credit a purchased token bundle to a grant.

Steps:
1. Resolve the bundle to a token quantity (unknown bundle -> dead-letter)
2. Require a configured email notifier (missing -> dead-letter)
3. Optimistic read-modify-write of the ledger entry under ``grant_id``;
   a purchase key already in ``applied_purchases`` skips the write
4. Analytics event, then confirmation email (failure logged, never retried)

A ledger write failure is the only retryable condition. The purchase key
is ``payment_ref`` when the producer supplied one, else the queue message
id, which is stable across redeliveries.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from fulfillment.clients.analytics import Analytics
from fulfillment.clients.email import EmailNotifier, token_confirmation
from fulfillment.messages import (
    MAX_APPLIED_PURCHASES,
    TOKEN_BUNDLES,
    TokenFulfillment,
    TokenLedgerEntry,
)
from fulfillment.outcome import Outcome
from fulfillment.reporting import ErrorReporter
from fulfillment.store import KVStore, StoreError

logger = logging.getLogger(__name__)


def mask_grant(grant_id: str) -> str:
    """Grant ids are access credentials; only log a prefix."""
    return grant_id[:6] + "..." if len(grant_id) > 6 else "***"


def analytics_id(grant_id: str) -> str:
    """Stable pseudonymous distinct_id for analytics; never send the grant itself."""
    return hashlib.sha256(grant_id.encode()).hexdigest()[:16]


def apply_grant(
    current: dict[str, Any] | None,
    message: TokenFulfillment,
    tokens: int,
    purchase_key: str,
    now: datetime,
) -> dict[str, Any] | None:
    """New ledger value for ``current`` plus one purchase, or None if already applied.

    Fields written by other components (e.g. spend history) are preserved.
    """
    current = current or {}
    applied = list(current.get("applied_purchases") or [])
    if purchase_key in applied:
        return None

    existing = int(current.get("tokens_remaining") or 0)
    applied.append(purchase_key)
    entry = TokenLedgerEntry(
        **{
            **current,
            "tokens_remaining": existing + tokens,
            "email": message.email,
            "payment_customer_ref": message.payment_customer_ref,
            "last_updated": now,
            "last_bundle_purchased": message.bundle_id,
            "applied_purchases": applied[-MAX_APPLIED_PURCHASES:],
        }
    )
    return entry.model_dump(mode="json")


class TokenLedgerHandler:
    def __init__(
        self,
        store: KVStore,
        *,
        notifier: EmailNotifier,
        analytics: Analytics,
        reporter: ErrorReporter,
    ):
        self._store = store
        self._notifier = notifier
        self._analytics = analytics
        self._reporter = reporter

    async def __call__(self, message: TokenFulfillment, *, message_id: str) -> Outcome:
        grant = mask_grant(message.grant_id)
        logger.info("Processing token fulfillment for grant %s (%s)", grant, message.bundle_id)

        tokens = TOKEN_BUNDLES.get(message.bundle_id)
        if tokens is None:
            logger.error("Unknown bundle_id %r for grant %s", message.bundle_id, grant)
            await self._reporter.capture(
                f"Unknown bundle_id {message.bundle_id!r}",
                message_id=message_id, bundle_id=message.bundle_id,
            )
            return Outcome.dead_letter(f"unknown bundle {message.bundle_id}")

        if not self._notifier.is_configured:
            logger.error("Email notifier not configured; cannot fulfill grant %s", grant)
            await self._reporter.capture(
                "Token fulfillment aborted: email notifier not configured",
                message_id=message_id,
            )
            return Outcome.dead_letter("notifier not configured")

        purchase_key = message.payment_ref or message_id
        now = datetime.now(timezone.utc)

        try:
            written = await self._store.update(
                message.grant_id,
                lambda current: apply_grant(current, message, tokens, purchase_key, now),
            )
        except StoreError as exc:
            logger.warning("Ledger write failed for grant %s", grant, exc_info=True)
            await self._reporter.capture(exc, message_id=message_id, step="ledger_write")
            return Outcome.retry("ledger write failed")

        if written is None:
            logger.info(
                "Purchase %s already applied to grant %s; skipping", purchase_key, grant,
            )
            return Outcome.ack("duplicate delivery")

        balance = written["tokens_remaining"]
        logger.info("Granted %d tokens to %s (balance %d)", tokens, grant, balance)

        await self._analytics.capture(
            analytics_id(message.grant_id),
            "token_purchase_fulfilled",
            {"bundle_id": message.bundle_id, "tokens_added": tokens, "new_balance": balance},
        )

        result = await self._notifier.send(
            message.email, token_confirmation(message.grant_id, tokens, balance),
        )
        if not result.success:
            # Tokens are already granted; never redeliver from here
            logger.warning("Token confirmation email failed for %s: %s", grant, result.error)
            await self._reporter.capture(
                f"Token confirmation email failed: {result.error}",
                message_id=message_id, step="notify",
            )

        return Outcome.ack()
