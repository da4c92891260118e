"""
Base classes and types for VPN panel provisioning.
Used by factory and all panels (hiddify, three_x_ui).
"""
from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx
import pybreaker

from app.services.circuit_breaker import call_with_breaker


class ProvisioningError(Exception):
    """Base error for panel calls; detail holds the panel reply for logging."""
    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = detail or {}


class ProvisioningUnavailable(ProvisioningError):
    """Transport failure, timeout or open circuit."""


class ProvisioningRejected(ProvisioningError):
    """Panel answered with a well-formed failure (quota, bad identity, auth)."""


class VpnPanelProvider(ABC):
    """
    Base class for VPN panels.

    create_access is NOT idempotent on the panel side: every call creates a
    new client with a freshly generated id/secret. Callers guarantee at most
    one call per paid purchase.
    """

    name = "base"

    def __init__(self, config: dict, breaker: pybreaker.CircuitBreaker | None = None) -> None:
        self.config = config
        self.timeout = config.get("timeout", 30.0)
        self._transport = config.get("transport")
        self._breaker = breaker

    @abstractmethod
    def is_available(self) -> bool:
        """Check if panel is configured."""
        pass

    @abstractmethod
    def create_access(self, identity: str) -> str:
        """Create a VPN client for identity and return its connection link."""
        pass

    def _call(self, func: Callable[[], Any]) -> Any:
        """Run an HTTP exchange, mapping transport and breaker failures."""
        try:
            return call_with_breaker(self._breaker, func)
        except httpx.TransportError as e:
            raise ProvisioningUnavailable(
                f"{self.name} panel unreachable: {e}",
                detail={"error": type(e).__name__},
            ) from e
        except pybreaker.CircuitBreakerError as e:
            raise ProvisioningUnavailable(f"{self.name} circuit open: {e}") from e


def response_detail(response: httpx.Response) -> dict[str, Any]:
    """Status code and (truncated) body of a panel reply for error detail."""
    return {"http_status": response.status_code, "body": response.text[:1000]}
