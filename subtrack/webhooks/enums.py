from __future__ import annotations

from enum import StrEnum


class DeliveryOutcome(StrEnum):
    SUCCEEDED = "SUCCEEDED"
    RETRYING = "RETRYING"
    FAILED = "FAILED"
    EXHAUSTED = "EXHAUSTED"
    SKIPPED = "SKIPPED"

    def is_terminal(self) -> bool:
        return self is not DeliveryOutcome.RETRYING
