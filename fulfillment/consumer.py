"""Fulfillment dispatch loop: route each queue message to its handler.

Routing is by queue-name prefix (``token-fulfillment-*``,
``order-fulfillment-*``) so staging and production queues share handlers.

Outcome -> queue action:
- ACK          ack
- DEAD_LETTER  dead-letter + ack
- RETRY        redeliver after 5 * 2**attempt seconds while attempt < 3,
               otherwise dead-letter + ack (no infinite redelivery)

Unknown queues are acked immediately: that is a deployment mismatch,
not a transient fault. An exception escaping a handler is reported and
treated as RETRY.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Protocol

from pydantic import BaseModel, ValidationError

from fulfillment.messages import OrderFulfillment, TokenFulfillment
from fulfillment.outcome import Outcome, OutcomeKind
from fulfillment.reporting import ErrorReporter
from fulfillment.retry import RetryPolicy

logger = logging.getLogger(__name__)

TOKEN_QUEUE_PREFIX = "token-fulfillment-"
ORDER_QUEUE_PREFIX = "order-fulfillment-"

Handler = Callable[..., Awaitable[Outcome]]


class Message(Protocol):
    """What the dispatch loop needs from a delivered queue message."""

    id: str
    queue: str
    body: dict[str, Any] | None
    attempts: int

    async def ack(self) -> None: ...

    async def retry(self, delay_seconds: int) -> None: ...

    async def dead_letter(self, reason: str) -> None: ...


@dataclass(frozen=True)
class Route:
    prefix: str
    model: type[BaseModel]
    handler: Handler


@dataclass(frozen=True)
class Disposition:
    """What the dispatch loop did with one message."""

    action: str  # "ack", "retry", "dead_letter"
    reason: str = ""
    delay_seconds: int | None = None


class FulfillmentDispatcher:
    def __init__(
        self,
        routes: list[Route],
        *,
        reporter: ErrorReporter,
        policy: RetryPolicy | None = None,
    ):
        self._routes = routes
        self._reporter = reporter
        self._policy = policy or RetryPolicy()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def route_for(self, queue: str) -> Route | None:
        for route in self._routes:
            if queue.startswith(route.prefix):
                return route
        return None

    async def process_batch(self, messages: Iterable[Message]) -> list[Disposition]:
        """Process a batch sequentially; one message's failure never stops the batch."""
        return [await self.process(message) for message in messages]

    async def process(self, message: Message) -> Disposition:
        logger.info(
            "Received message %s on %s (attempt %d)", message.id, message.queue, message.attempts,
        )

        route = self.route_for(message.queue)
        if route is None:
            logger.error("Unknown queue %s for message %s; acknowledging", message.queue, message.id)
            await message.ack()
            return Disposition("ack", reason="unknown queue")

        context = {"message_id": message.id, "queue": message.queue, "attempt": message.attempts}
        try:
            body = route.model.model_validate(message.body)
        except ValidationError as exc:
            logger.error("Malformed body for message %s on %s: %s", message.id, message.queue, exc)
            await self._reporter.capture(exc, **context)
            outcome = Outcome.dead_letter("malformed message body")
        else:
            try:
                outcome = await route.handler(body, message_id=message.id)
            except Exception as exc:
                logger.exception("Error processing message %s", message.id)
                await self._reporter.capture(exc, **context)
                outcome = Outcome.retry(f"unhandled {type(exc).__name__}")

        return await self._apply(message, outcome)

    async def _apply(self, message: Message, outcome: Outcome) -> Disposition:
        if outcome.kind == OutcomeKind.ACK:
            await message.ack()
            logger.info("Acknowledged message %s", message.id)
            return Disposition("ack", reason=outcome.reason)

        if outcome.kind == OutcomeKind.RETRY and self._policy.should_retry(message.attempts):
            delay = self._policy.delay_for(message.attempts)
            logger.info(
                "Retrying message %s in %ds (attempt %d): %s",
                message.id, delay, message.attempts + 1, outcome.reason,
            )
            await message.retry(delay)
            return Disposition("retry", reason=outcome.reason, delay_seconds=delay)

        reason = outcome.reason
        if outcome.kind == OutcomeKind.RETRY:
            reason = f"retries exhausted: {outcome.reason}"
            logger.error(
                "Message %s failed after %d attempts; dead-lettering",
                message.id, message.attempts + 1,
            )
            await self._reporter.capture(
                f"Message failed after max retries: {outcome.reason}",
                message_id=message.id, queue=message.queue, attempt=message.attempts,
            )
        await message.dead_letter(reason)
        await message.ack()
        return Disposition("dead_letter", reason=reason)


def default_routes(token_handler: Handler, order_handler: Handler) -> list[Route]:
    return [
        Route(TOKEN_QUEUE_PREFIX, TokenFulfillment, token_handler),
        Route(ORDER_QUEUE_PREFIX, OrderFulfillment, order_handler),
    ]
