"""
Error hierarchy for the outbound queue.

Gateway failures are not exceptions — adapters return GatewayResult values.
Only infrastructure and producer-contract failures raise.
"""
from __future__ import annotations


class QueueError(Exception):
    """Base exception for all queue operations."""


class QueueStoreUnavailable(QueueError):
    """The queue store could not complete an operation."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Queue store unavailable during {operation}{detail}")


class CalendarUnavailable(QueueError):
    """Time windows could not be read. Callers fail open."""


class AdmissionRejected(QueueError):
    def __init__(self, recipient: str, reason: str):
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Message for {recipient!r} rejected: {reason}")


class EventNotFound(QueueError):
    def __init__(self, event_id: int):
        self.event_id = event_id
        super().__init__(f"Event {event_id} not found")
