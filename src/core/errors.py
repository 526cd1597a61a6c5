"""Exception taxonomy shared by the core and adapters."""

from __future__ import annotations

from typing import Optional


class CircleWatchError(Exception):
    """Base class for all circlewatch errors."""


class EventSourceError(CircleWatchError):
    """The ledger query failed (network, TLS, HTTP or GraphQL error).

    Only the polling loop retries these.
    """


class PushDeliveryError(CircleWatchError):
    """A single push delivery was rejected by the transport."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnknownEventTypeError(CircleWatchError, ValueError):
    """Raised when a simulation names an event type with no handler."""


class MalformedEventError(CircleWatchError, ValueError):
    """Raised when a raw ledger record cannot be mapped to an event."""
