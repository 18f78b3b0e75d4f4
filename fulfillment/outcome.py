"""Handler outcome: the single value every fulfillment handler returns.

The dispatch loop turns it into a queue action:
- ACK: success, or a duplicate delivery that needs no work
- RETRY: transient failure, redeliver with backoff until attempts run out
- DEAD_LETTER: permanent failure, park the message for manual inspection and ack
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OutcomeKind(str, Enum):
    ACK = "ack"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    reason: str = ""

    @classmethod
    def ack(cls, reason: str = "") -> Outcome:
        return cls(OutcomeKind.ACK, reason)

    @classmethod
    def retry(cls, reason: str) -> Outcome:
        return cls(OutcomeKind.RETRY, reason)

    @classmethod
    def dead_letter(cls, reason: str) -> Outcome:
        return cls(OutcomeKind.DEAD_LETTER, reason)

    @property
    def is_ack(self) -> bool:
        return self.kind == OutcomeKind.ACK

    @property
    def is_retry(self) -> bool:
        return self.kind == OutcomeKind.RETRY

    @property
    def is_dead_letter(self) -> bool:
        return self.kind == OutcomeKind.DEAD_LETTER
