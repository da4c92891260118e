"""
Session registry errors.
Gateway and panel errors live next to their adapters (payments.base, provisioning.base).
"""


class SessionError(Exception):
    """Base error for purchase session operations."""

    def __init__(self, message: str, payment_id: str | None = None):
        super().__init__(message)
        self.payment_id = payment_id


class DuplicateSession(SessionError):
    """A session with this payment id is already registered."""


class ConcurrentPurchase(SessionError):
    """The buyer already has a non-terminal session (payment_id points at it)."""


class ConflictError(SessionError):
    """CAS lost: the session is not in the expected state any more."""

    def __init__(self, message: str, payment_id: str | None = None, actual_state=None):
        super().__init__(message, payment_id)
        self.actual_state = actual_state


class NotFound(SessionError):
    """Unknown payment id."""


class SessionExpired(SessionError):
    """The session was expired by the TTL sweep."""
