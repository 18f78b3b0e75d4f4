"""Error tracker for the fulfillment pipeline.

Every captured error is logged at ERROR level, kept in a capped in-memory
log, and published to the ``fulfillment:errors`` stream for operators.
Capturing never raises.
"""

from __future__ import annotations

import logging
import time
import traceback
from dataclasses import dataclass, field
from typing import Any

from fulfillment.bus import FulfillmentBus

logger = logging.getLogger(__name__)


@dataclass
class ErrorRecord:
    timestamp: float
    message: str
    error_type: str
    context: dict[str, Any] = field(default_factory=dict)


class ErrorReporter:
    """Capture errors with message/queue context attached."""

    MAX_ENTRIES = 1000

    def __init__(self, bus: FulfillmentBus | None = None):
        self._bus = bus
        self._records: list[ErrorRecord] = []

    async def capture(self, error: BaseException | str, **context: Any) -> ErrorRecord:
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            error_type = type(error).__name__
            tb = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            message = error
            error_type = "message"
            tb = ""

        record = ErrorRecord(
            timestamp=time.time(),
            message=message,
            error_type=error_type,
            context=context,
        )
        self._records.append(record)
        if len(self._records) > self.MAX_ENTRIES:
            self._records = self._records[-self.MAX_ENTRIES:]

        logger.error("Captured %s: %s context=%s", error_type, message, context)

        if self._bus is not None:
            payload: dict[str, Any] = {
                "message": message,
                "error_type": error_type,
                "context": context,
            }
            if tb:
                payload["traceback"] = tb
            await self._bus.record_error(payload)
        return record

    def recent(self, limit: int = 50) -> list[ErrorRecord]:
        return self._records[-limit:]
