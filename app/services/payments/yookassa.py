"""
YooKassa API v3 gateway.
Basic auth (shopId:secretKey), Idempotence-Key on every mutating request.
"""
import logging
import random
import time
from typing import Any
from uuid import uuid4

import httpx
import pybreaker

from app.services.circuit_breaker import call_with_breaker
from app.services.payments.base import (
    CreatedPayment,
    GatewayRejected,
    GatewayUnavailable,
    PaymentGateway,
    PaymentStatus,
    format_minor_units,
)
from app.utils.metrics import gateway_requests_total, gateway_request_duration_seconds

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.yookassa.ru/v3"

# capture=true: waiting_for_capture is a short transitional state
_STATUS_MAP = {
    "pending": PaymentStatus.PENDING,
    "waiting_for_capture": PaymentStatus.PENDING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELED,
}


class YooKassaGateway(PaymentGateway):
    """YooKassa payment gateway."""

    def __init__(self, config: dict, breaker: pybreaker.CircuitBreaker | None = None):
        super().__init__(config)
        self.shop_id = config.get("shop_id")
        self.secret_key = config.get("secret_key")
        self.api_url = (config.get("api_url") or DEFAULT_API_URL).rstrip("/")
        self.timeout = config.get("timeout", 15.0)
        self.retry_max_attempts = max(1, int(config.get("retry_max_attempts", 2)))
        self.retry_backoff_seconds = config.get("retry_backoff_seconds", 1.0)
        self._transport = config.get("transport")
        self._breaker = breaker

    def is_available(self) -> bool:
        return bool(self.shop_id and self.secret_key)

    def create_payment(
        self,
        amount_minor_units: int,
        currency: str,
        description: str,
        return_url: str,
    ) -> CreatedPayment:
        if not self.is_available():
            raise GatewayRejected("YooKassa gateway not configured")

        # One key per user action; transport retries below reuse it
        idempotence_key = str(uuid4())
        payload = {
            "amount": {
                "value": format_minor_units(amount_minor_units),
                "currency": currency,
            },
            "capture": True,
            "confirmation": {
                "type": "redirect",
                "return_url": return_url,
            },
            "description": description,
        }
        body = self._send(
            "create_payment",
            "POST",
            "/payments",
            json=payload,
            idempotence_key=idempotence_key,
            attempts=self.retry_max_attempts,
        )
        payment_id = body.get("id")
        confirmation_url = (body.get("confirmation") or {}).get("confirmation_url")
        if not payment_id or not confirmation_url:
            raise GatewayRejected("YooKassa response without id or confirmation_url", payload=body)

        logger.info(
            "payment_created",
            extra={"payment_id": payment_id, "status": body.get("status")},
        )
        return CreatedPayment(payment_id=payment_id, confirmation_url=confirmation_url)

    def check_status(self, payment_id: str) -> PaymentStatus:
        body = self._send(
            "check_status",
            "GET",
            f"/payments/{payment_id}",
            attempts=self.retry_max_attempts,
        )
        raw_status = body.get("status", "")
        status = _STATUS_MAP.get(raw_status, PaymentStatus.OTHER)
        logger.info(
            "payment_status_retrieved",
            extra={"payment_id": payment_id, "status": raw_status},
        )
        return status

    def cancel_payment(self, payment_id: str) -> bool:
        """
        Ask YooKassa to cancel the payment.
        Not retried here: GatewayUnavailable propagates, a rejection returns False.
        """
        try:
            body = self._send(
                "cancel_payment",
                "POST",
                f"/payments/{payment_id}/cancel",
                json={},
                idempotence_key=str(uuid4()),
            )
        except GatewayRejected as e:
            logger.warning(
                "payment_cancel_rejected",
                extra={"payment_id": payment_id, "status_code": e.status_code},
            )
            return False

        status = body.get("status")
        if status == "canceled":
            logger.info("payment_canceled", extra={"payment_id": payment_id})
            return True
        logger.warning(
            "payment_not_canceled",
            extra={"payment_id": payment_id, "status": status},
        )
        return False

    def _request(
        self,
        method: str,
        path: str,
        json: dict | None,
        headers: dict[str, str],
    ) -> httpx.Response:
        with httpx.Client(
            timeout=self.timeout,
            auth=(self.shop_id or "", self.secret_key or ""),
            transport=self._transport,
        ) as client:
            return client.request(method, f"{self.api_url}{path}", json=json, headers=headers)

    def _send(
        self,
        method_name: str,
        http_method: str,
        path: str,
        *,
        json: dict | None = None,
        idempotence_key: str | None = None,
        attempts: int = 1,
    ) -> dict[str, Any]:
        headers = {"Idempotence-Key": idempotence_key} if idempotence_key else {}
        attempt = 0
        while True:
            attempt += 1
            started = time.monotonic()
            try:
                response = call_with_breaker(
                    self._breaker, self._request, http_method, path, json, headers
                )
            except httpx.TransportError as e:
                gateway_requests_total.labels(method=method_name, status="unavailable").inc()
                if attempt >= attempts:
                    raise GatewayUnavailable(f"YooKassa {method_name} failed: {e}") from e
                delay = self.retry_backoff_seconds + random.uniform(0, self.retry_backoff_seconds)
                logger.info(
                    "gateway_retry_scheduled",
                    extra={
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "delay_seconds": round(delay, 2),
                        "error": type(e).__name__,
                    },
                )
                time.sleep(delay)
                continue
            except pybreaker.CircuitBreakerError as e:
                gateway_requests_total.labels(method=method_name, status="circuit_open").inc()
                raise GatewayUnavailable(f"YooKassa circuit open: {e}") from e
            finally:
                gateway_request_duration_seconds.labels(method=method_name).observe(
                    time.monotonic() - started
                )
            break

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            gateway_requests_total.labels(method=method_name, status=str(response.status_code)).inc()
            logger.error(
                "gateway_request_rejected",
                extra={"status_code": response.status_code, "error": str(body)[:500]},
            )
            raise GatewayRejected(
                f"YooKassa {method_name} returned {response.status_code}",
                status_code=response.status_code,
                payload=body if body is not None else response.text,
            )

        if not isinstance(body, dict):
            gateway_requests_total.labels(method=method_name, status="malformed").inc()
            raise GatewayRejected(
                f"YooKassa {method_name} returned malformed body",
                status_code=response.status_code,
                payload=response.text,
            )
        gateway_requests_total.labels(method=method_name, status="ok").inc()
        return body
