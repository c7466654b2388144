from __future__ import annotations


class BurstclaimError(Exception):
    """Base class for errors raised by burstclaim."""


class MalformedRecordError(BurstclaimError, ValueError):
    """An upstream record could not be parsed; it is skipped, never merged."""


class ProviderError(BurstclaimError):
    """The upstream record provider failed; the sync attempt is aborted."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class DeliveryError(BurstclaimError):
    """The notification relay did not accept a message."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ResponderError(BurstclaimError):
    """The response generator could not produce a reply."""
