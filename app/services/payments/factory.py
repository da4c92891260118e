"""
Factory for creating the payment gateway from configuration.
"""
import logging

import pybreaker

from app.services.payments.base import PaymentGateway
from app.services.payments.yookassa import YooKassaGateway

logger = logging.getLogger(__name__)


class GatewayFactory:
    """Factory for creating payment gateways."""

    GATEWAYS = {
        "yookassa": YooKassaGateway,
    }

    @classmethod
    def create(
        cls,
        gateway_name: str,
        config: dict,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> PaymentGateway:
        gateway_class = cls.GATEWAYS.get(gateway_name.lower())
        if not gateway_class:
            available = ", ".join(cls.GATEWAYS.keys())
            raise ValueError(
                f"Unknown gateway: {gateway_name}. "
                f"Available gateways: {available}"
            )

        logger.info(f"Creating payment gateway: {gateway_name}")
        gateway = gateway_class(config, breaker=breaker)
        if not gateway.is_available():
            logger.warning(f"Gateway {gateway_name} created but not fully configured")
        return gateway

    @classmethod
    def create_from_settings(cls, settings, breaker: pybreaker.CircuitBreaker | None = None) -> PaymentGateway:
        config = {
            "shop_id": settings.yookassa_shop_id,
            "secret_key": settings.yookassa_secret_key,
            "api_url": settings.yookassa_api_url,
            "timeout": settings.gateway_timeout,
            "retry_max_attempts": settings.gateway_retry_max_attempts,
            "retry_backoff_seconds": settings.gateway_retry_backoff_seconds,
        }
        return cls.create("yookassa", config, breaker=breaker)
