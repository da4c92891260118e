"""
Purchase session record and the outcome events handed to the chat layer.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel


class SessionState(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    PROVISIONED = "PROVISIONED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    SessionState.PROVISIONED,
    SessionState.CANCELED,
    SessionState.EXPIRED,
    SessionState.FAILED,
})

# States the TTL sweep may expire
EXPIRABLE_STATES = frozenset({SessionState.CREATED, SessionState.PENDING})


class FailureReason(str, Enum):
    PAYMENT_NOT_COMPLETED = "payment_not_completed"
    PROVISIONING_FAILED = "provisioning_failed"


@dataclass(frozen=True)
class PurchaseSession:
    """
    Immutable snapshot of one purchase attempt.
    The registry swaps whole snapshots; callers never mutate one in place.
    """
    payment_id: str
    buyer_id: str
    channel_id: str
    created_at: datetime
    state: SessionState = SessionState.CREATED
    updated_at: datetime | None = None
    finished_at: datetime | None = None
    confirmation_url: str | None = None
    failure_reason: FailureReason | None = None
    access_link: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


# ----- Outcome events (the chat layer renders them, the orchestrator never sends) -----


class ErrorKind(str, Enum):
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    CONCURRENT_PURCHASE = "concurrent_purchase"
    NOT_FOUND = "not_found"
    SESSION_EXPIRED = "session_expired"
    PROVISIONING_FAILED = "provisioning_failed"
    INTERNAL = "internal"


class Outcome(BaseModel):
    payment_id: str | None = None
    channel_id: str | None = None

    model_config = {"frozen": True}


class PaymentLink(Outcome):
    kind: Literal["payment_link"] = "payment_link"
    url: str


class StatusUpdate(Outcome):
    kind: Literal["status_update"] = "status_update"
    state: SessionState
    # Payment link, repeated while the payment is still open
    confirmation_url: str | None = None


class Provisioned(Outcome):
    kind: Literal["provisioned"] = "provisioned"
    access_link: str
    issued_at: datetime | None = None
    # True when re-displaying an already issued key
    reissued: bool = False


class PurchaseError(Outcome):
    kind: Literal["error"] = "error"
    error: ErrorKind
    message: str
    retryable: bool = False
    support_url: str | None = None
    # Existing purchase for concurrent_purchase
    confirmation_url: str | None = None
