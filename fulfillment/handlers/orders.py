"""Print order handler: turn a staged order into a confirmed Printful order.

Protocol (strictly sequential, the draft id from step 2 feeds steps 3-4):
1. Load staged order ``order:<payment_ref>`` from the KV store
2. Create draft order (recipient + external_id = payment_ref)
3. Add each line item with a single front placement
4. Confirm the draft
5. Analytics + email (non-fatal), completion marker, delete staged entry

Failure classification:
- missing config, missing/invalid staged order, provider 4xx  -> dead-letter
- any line item failure                                       -> dead-letter,
  after a best-effort delete of the draft
- KV read error, provider 5xx / transport error               -> retry
- email or cleanup failures                                   -> logged only
- provider 5xx after a failed checkpoint write                -> dead-letter

Progress (draft id, items added) is checkpointed into the staged entry so a
redelivered message resumes at the step that failed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import ValidationError

from fulfillment.clients.analytics import Analytics
from fulfillment.clients.email import EmailNotifier, order_confirmation
from fulfillment.clients.printful import PrintfulClient, ProviderResponse
from fulfillment.messages import (
    OrderFulfillment,
    StagedOrder,
    order_marker_key,
    staged_order_key,
)
from fulfillment.outcome import Outcome
from fulfillment.reporting import ErrorReporter
from fulfillment.store import KVStore, StoreError

logger = logging.getLogger(__name__)

ORDER_NOT_FOUND = "order details not found"

# Completion markers outlive the longest plausible redelivery window
_COMPLETION_MARKER_TTL = 7 * 86400


class PrintOrderHandler:
    def __init__(
        self,
        store: KVStore | None,
        provider: PrintfulClient | None,
        *,
        notifier: EmailNotifier,
        analytics: Analytics,
        reporter: ErrorReporter,
        staged_order_ttl: int = 86400,
    ):
        self._store = store
        self._provider = provider
        self._notifier = notifier
        self._analytics = analytics
        self._reporter = reporter
        self._staged_order_ttl = staged_order_ttl

    async def __call__(self, message: OrderFulfillment, *, message_id: str) -> Outcome:
        ref = message.payment_ref
        logger.info("Processing order fulfillment for payment %s", ref)

        if self._store is None or self._provider is None or not self._provider.is_configured:
            logger.critical("Print order handler misconfigured: KV store or Printful API key missing")
            await self._reporter.capture(
                "Order fulfillment configuration missing", message_id=message_id, payment_ref=ref,
            )
            return Outcome.dead_letter("missing configuration")

        try:
            if await self._store.get(order_marker_key(ref)) is not None:
                logger.info("Order %s already fulfilled; acknowledging redelivery", ref)
                return Outcome.ack("duplicate delivery")
            raw = await self._store.get(staged_order_key(ref))
        except StoreError as exc:
            logger.warning("Staged order read failed for %s", ref, exc_info=True)
            await self._reporter.capture(exc, message_id=message_id, payment_ref=ref, step="load")
            return Outcome.retry("staged order read failed")

        if raw is None:
            logger.error("Staged order not found for payment %s (expired or never written)", ref)
            await self._fail(ref, ORDER_NOT_FOUND, None)
            return Outcome.dead_letter(ORDER_NOT_FOUND)

        try:
            staged = StagedOrder.model_validate(raw)
        except ValidationError as exc:
            logger.error("Staged order for %s is invalid: %s", ref, exc)
            await self._reporter.capture(exc, message_id=message_id, payment_ref=ref, step="load")
            await self._fail(ref, "invalid staged order", None)
            return Outcome.dead_letter("invalid staged order")

        # Step 2: draft order
        order_id = staged.provider_order_id
        # Cleared when a checkpoint write fails: a redelivery would repeat provider calls
        resumable = True
        if order_id is None:
            response = await self._provider.create_order(
                recipient=staged.shipping_address.model_dump(exclude_none=True),
                external_id=ref,
                shipping=staged.shipping_option_id,
            )
            if not response.ok:
                return await self._provider_failure("create draft order", response, ref, None, message_id)
            order_id = response.order_id
            if order_id is None:
                await self._reporter.capture(
                    "Printful create order response has no order id",
                    payment_ref=ref, body=response.excerpt(),
                )
                await self._fail(ref, "draft order id missing", None)
                return Outcome.dead_letter("draft order id missing")
            logger.info("Created Printful draft %s for payment %s", order_id, ref)
            staged.provider_order_id = order_id
            resumable = await self._checkpoint(ref, staged)
        else:
            logger.info("Resuming payment %s with existing draft %s", ref, order_id)

        # Step 3: line items
        if not staged.items_added:
            for index, item in enumerate(staged.items, start=1):
                response = await self._provider.add_item(order_id, item)
                if response.ok:
                    continue
                logger.error(
                    "Adding item %d/%d (variant %s) to draft %s failed: HTTP %d",
                    index, len(staged.items), item.catalog_variant_id, order_id,
                    response.status_code,
                )
                await self._reporter.capture(
                    f"Printful add item failed (HTTP {response.status_code})",
                    message_id=message_id, payment_ref=ref, provider_order_id=order_id,
                    catalog_variant_id=item.catalog_variant_id,
                    status=response.status_code, body=response.excerpt(),
                )
                cancelled = await self._cancel_draft(order_id)
                if cancelled:
                    staged.provider_order_id = None
                    await self._checkpoint(ref, staged)
                await self._fail(
                    ref, f"failed to add item {index}", order_id, draft_cancelled=cancelled,
                )
                return Outcome.dead_letter(f"failed to add item {index}")
            staged.items_added = True
            resumable = await self._checkpoint(ref, staged) and resumable

        # Step 4: confirm
        response = await self._provider.confirm_order(order_id)
        if not response.ok:
            return await self._provider_failure(
                "confirm order", response, ref, order_id, message_id, resumable=resumable,
            )

        logger.info("Printful order %s confirmed for payment %s", order_id, ref)
        await self._complete(message, staged, order_id, message_id)
        return Outcome.ack()

    async def _complete(
        self, message: OrderFulfillment, staged: StagedOrder, order_id: int, message_id: str,
    ) -> None:
        ref = message.payment_ref
        await self._analytics.capture(
            ref,
            "print_order_fulfilled",
            {
                "payment_ref": ref,
                "provider_order_id": order_id,
                "country_code": staged.shipping_address.country_code,
                "total_amount_cents": staged.total_amount_cents,
                "item_count": len(staged.items),
            },
        )

        result = await self._notifier.send(message.email, order_confirmation(ref, order_id, staged))
        if not result.success:
            logger.warning("Order confirmation email failed for %s: %s", ref, result.error)
            await self._reporter.capture(
                f"Order confirmation email failed: {result.error}",
                message_id=message_id, payment_ref=ref, step="notify",
            )

        try:
            await self._store.put(
                order_marker_key(ref),
                {
                    "provider_order_id": order_id,
                    "completed_at": datetime.now(timezone.utc).isoformat(),
                },
                ttl=_COMPLETION_MARKER_TTL,
            )
        except StoreError as exc:
            logger.warning("Completion marker write failed for %s", ref, exc_info=True)
            await self._reporter.capture(exc, message_id=message_id, payment_ref=ref, step="marker")

        try:
            await self._store.delete(staged_order_key(ref))
        except StoreError as exc:
            # Staged entry expires via its TTL
            logger.warning("Post-fulfillment cleanup failed for %s", ref, exc_info=True)
            await self._reporter.capture(exc, message_id=message_id, payment_ref=ref, step="cleanup")

    async def _provider_failure(
        self,
        step: str,
        response: ProviderResponse,
        ref: str,
        order_id: int | None,
        message_id: str,
        *,
        resumable: bool = True,
    ) -> Outcome:
        await self._reporter.capture(
            f"Printful {step} failed (HTTP {response.status_code})",
            message_id=message_id, payment_ref=ref, provider_order_id=order_id,
            status=response.status_code, body=response.excerpt(),
        )
        if response.retryable and not resumable:
            logger.error(
                "Printful %s for %s failed with %d and progress was not checkpointed; "
                "not retrying", step, ref, response.status_code,
            )
            reason = f"{step} failed ({response.status_code}) after lost checkpoint"
            await self._fail(ref, reason, order_id)
            return Outcome.dead_letter(reason)
        if response.retryable:
            logger.warning("Printful %s for %s failed with %d; will retry", step, ref, response.status_code)
            return Outcome.retry(f"{step} returned {response.status_code}")

        logger.error("Printful rejected %s for %s with %d", step, ref, response.status_code)
        reason = f"{step} rejected ({response.status_code})"
        await self._fail(ref, reason, order_id)
        return Outcome.dead_letter(reason)

    async def _cancel_draft(self, order_id: int) -> bool:
        response = await self._provider.delete_order(order_id)
        if response.ok:
            logger.info("Deleted partial Printful draft %s", order_id)
            return True
        logger.error(
            "Could not delete partial Printful draft %s (HTTP %d); manual cleanup needed",
            order_id, response.status_code,
        )
        return False

    async def _checkpoint(self, ref: str, staged: StagedOrder) -> bool:
        try:
            await self._store.put(
                staged_order_key(ref), staged.model_dump(mode="json"), ttl=self._staged_order_ttl,
            )
        except StoreError as exc:
            logger.warning("Could not checkpoint progress for %s", ref, exc_info=True)
            await self._reporter.capture(exc, payment_ref=ref, step="checkpoint")
            return False
        return True

    async def _fail(
        self,
        ref: str,
        reason: str,
        order_id: int | None,
        *,
        draft_cancelled: bool = False,
    ) -> None:
        """Operator signal: this payment needs manual reconciliation."""
        await self._analytics.capture(
            ref,
            "print_order_failed",
            {
                "reason": reason,
                "payment_ref": ref,
                "provider_order_id": order_id,
                "draft_cancelled": draft_cancelled,
            },
        )
