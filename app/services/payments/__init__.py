"""
Payment gateway integration (YooKassa).
"""
from .base import (
    CreatedPayment,
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    PaymentGateway,
    PaymentStatus,
    format_minor_units,
)
from .factory import GatewayFactory
from .yookassa import YooKassaGateway

__all__ = [
    "CreatedPayment",
    "GatewayError",
    "GatewayRejected",
    "GatewayUnavailable",
    "PaymentGateway",
    "PaymentStatus",
    "format_minor_units",
    "GatewayFactory",
    "YooKassaGateway",
]
