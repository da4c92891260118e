"""
Base classes and types for payment gateways.
Used by factory and all gateways (yookassa).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any


class PaymentStatus(str, Enum):
    """Gateway-agnostic payment status."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    OTHER = "other"


@dataclass(frozen=True)
class CreatedPayment:
    """Result of a successful create_payment call."""
    payment_id: str
    confirmation_url: str


class GatewayError(Exception):
    """Base error for payment gateway calls."""


class GatewayUnavailable(GatewayError):
    """Network failure, timeout or open circuit; the call may be retried."""


class GatewayRejected(GatewayError):
    """Gateway answered with a non-2xx status; payload kept for diagnostics."""
    def __init__(self, message: str, status_code: int | None = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def format_minor_units(amount_minor_units: int) -> str:
    """9900 -> "99.00" (gateways take decimal strings)."""
    if amount_minor_units < 0:
        raise ValueError("amount must not be negative")
    return f"{amount_minor_units // 100}.{amount_minor_units % 100:02d}"


class PaymentGateway(ABC):
    """Base class for payment gateways."""

    def __init__(self, config: dict) -> None:
        self.config = config

    @abstractmethod
    def is_available(self) -> bool:
        """Check if gateway is configured."""
        pass

    @abstractmethod
    def create_payment(
        self,
        amount_minor_units: int,
        currency: str,
        description: str,
        return_url: str,
    ) -> CreatedPayment:
        """
        Create a payment and return its id and confirmation link.
        Each call uses its own fresh idempotency token.
        """
        pass

    @abstractmethod
    def check_status(self, payment_id: str) -> PaymentStatus:
        """Read payment status. Safe to call any number of times."""
        pass

    @abstractmethod
    def cancel_payment(self, payment_id: str) -> bool:
        """Best-effort cancel. Returns True only if the gateway confirms it."""
        pass
