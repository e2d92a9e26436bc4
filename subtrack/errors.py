from __future__ import annotations


class SubTrackError(Exception):
    """Base class for every error raised by the billing engine."""


class ValidationError(SubTrackError):
    """A business rule was violated by the caller. Never retried."""


class InvalidTransitionError(ValidationError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"invalid subscription transition {current} -> {target}")


class NotFoundError(SubTrackError):
    def __init__(self, resource: str, identifier: object) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class TransientInfraError(SubTrackError):
    """Infrastructure hiccup (conflict, timeout, network). Safe to retry."""


class RetryableDeliveryError(TransientInfraError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

