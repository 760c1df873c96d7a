"""Exceptions raised by the no-show prevention pipeline.

Expected branches (unknown message, stale or duplicate status, message
already read, cost-gate skip) are reported through result enums instead.
"""

from __future__ import annotations

from typing import Optional


class PreventionError(Exception):
    """Base class; carries the correlation ids every log line needs."""

    def __init__(self, message: str, *, message_id: Optional[str] = None, booking_id: Optional[str] = None):
        super().__init__(message)
        self.message_id = message_id
        self.booking_id = booking_id


class ScheduleError(PreventionError):
    """The workflow scheduler could not accept a timer.

    ``retryable`` is False for validation failures, which are never retried.
    """

    def __init__(self, message: str, *, retryable: bool = False, **ids):
        super().__init__(message, **ids)
        self.retryable = retryable


class TransientScheduleError(ScheduleError):
    """Broker unreachable; retried with backoff."""

    def __init__(self, message: str, **ids):
        super().__init__(message, retryable=True, **ids)


class SendFailure(PreventionError):
    """The messaging gateway rejected or failed an outbound message."""


class SignatureInvalid(PreventionError):
    """A webhook request failed shared-secret verification."""
