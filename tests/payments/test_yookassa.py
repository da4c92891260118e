"""
Unit-тесты YooKassaGateway на httpx.MockTransport (без сети).
"""
import base64
import json
import unittest

import httpx
import pybreaker

from app.services.payments.base import (
    CreatedPayment,
    GatewayRejected,
    GatewayUnavailable,
    PaymentStatus,
    format_minor_units,
)
from app.services.payments.factory import GatewayFactory
from app.services.payments.yookassa import YooKassaGateway

API_URL = "https://api.yookassa.test/v3"


class Recorder:
    """MockTransport handler returning queued responses (or raising queued errors)."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _gateway(recorder: Recorder, breaker=None, **overrides) -> YooKassaGateway:
    config = {
        "shop_id": "shop",
        "secret_key": "secret",
        "api_url": API_URL,
        "timeout": 5,
        "retry_max_attempts": 2,
        "retry_backoff_seconds": 0,
        "transport": httpx.MockTransport(recorder),
    }
    config.update(overrides)
    return YooKassaGateway(config, breaker=breaker)


def _created(payment_id: str = "abc123") -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "id": payment_id,
            "status": "pending",
            "confirmation": {
                "type": "redirect",
                "confirmation_url": f"https://yoomoney.ru/checkout?orderId={payment_id}",
            },
        },
    )


def _connect_error() -> httpx.ConnectError:
    return httpx.ConnectError("connection refused")


class TestFormatMinorUnits(unittest.TestCase):
    def test_formats(self):
        self.assertEqual(format_minor_units(9900), "99.00")
        self.assertEqual(format_minor_units(5), "0.05")
        self.assertEqual(format_minor_units(12345), "123.45")

    def test_negative(self):
        with self.assertRaises(ValueError):
            format_minor_units(-1)


class TestCreatePayment(unittest.TestCase):
    def test_request_shape(self):
        recorder = Recorder(_created())
        gateway = _gateway(recorder)

        result = gateway.create_payment(9900, "RUB", "Оплата VPN подписки для пользователя 42", "https://t.me/bot")

        self.assertEqual(result, CreatedPayment(
            payment_id="abc123",
            confirmation_url="https://yoomoney.ru/checkout?orderId=abc123",
        ))
        request = recorder.requests[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(str(request.url), f"{API_URL}/payments")
        expected_auth = "Basic " + base64.b64encode(b"shop:secret").decode()
        self.assertEqual(request.headers["Authorization"], expected_auth)
        self.assertTrue(request.headers["Idempotence-Key"])
        body = json.loads(request.content)
        self.assertEqual(body, {
            "amount": {"value": "99.00", "currency": "RUB"},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": "https://t.me/bot"},
            "description": "Оплата VPN подписки для пользователя 42",
        })

    def test_retry_reuses_idempotence_key(self):
        recorder = Recorder(_connect_error(), _created())
        gateway = _gateway(recorder)

        gateway.create_payment(9900, "RUB", "desc", "https://t.me/bot")

        self.assertEqual(len(recorder.requests), 2)
        keys = {r.headers["Idempotence-Key"] for r in recorder.requests}
        self.assertEqual(len(keys), 1)

    def test_separate_calls_use_fresh_keys(self):
        recorder = Recorder(_created("p1"), _created("p2"))
        gateway = _gateway(recorder)

        gateway.create_payment(9900, "RUB", "desc", "https://t.me/bot")
        gateway.create_payment(9900, "RUB", "desc", "https://t.me/bot")

        first, second = (r.headers["Idempotence-Key"] for r in recorder.requests)
        self.assertNotEqual(first, second)

    def test_retries_exhausted(self):
        recorder = Recorder(_connect_error(), _connect_error())
        gateway = _gateway(recorder)

        with self.assertRaises(GatewayUnavailable):
            gateway.create_payment(9900, "RUB", "desc", "https://t.me/bot")
        self.assertEqual(len(recorder.requests), 2)

    def test_rejection_keeps_payload(self):
        error_body = {"type": "error", "code": "invalid_request", "description": "bad amount"}
        recorder = Recorder(httpx.Response(400, json=error_body))
        gateway = _gateway(recorder)

        with self.assertRaises(GatewayRejected) as ctx:
            gateway.create_payment(9900, "RUB", "desc", "https://t.me/bot")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.payload, error_body)
        self.assertEqual(len(recorder.requests), 1)

    def test_missing_confirmation_url(self):
        recorder = Recorder(httpx.Response(200, json={"id": "abc123", "status": "pending"}))
        gateway = _gateway(recorder)

        with self.assertRaises(GatewayRejected):
            gateway.create_payment(9900, "RUB", "desc", "https://t.me/bot")

    def test_not_configured_is_rejected(self):
        recorder = Recorder()
        gateway = _gateway(recorder, shop_id="")

        with self.assertRaises(GatewayRejected):
            gateway.create_payment(9900, "RUB", "desc", "https://t.me/bot")
        self.assertEqual(recorder.requests, [])

    def test_open_circuit_is_unavailable(self):
        recorder = Recorder()
        breaker = pybreaker.CircuitBreaker(fail_max=1, reset_timeout=60)
        breaker.open()
        gateway = _gateway(recorder, breaker=breaker)

        with self.assertRaises(GatewayUnavailable):
            gateway.create_payment(9900, "RUB", "desc", "https://t.me/bot")
        self.assertEqual(recorder.requests, [])


class TestCheckStatus(unittest.TestCase):
    def test_status_mapping(self):
        cases = [
            ("pending", PaymentStatus.PENDING),
            ("waiting_for_capture", PaymentStatus.PENDING),
            ("succeeded", PaymentStatus.SUCCEEDED),
            ("canceled", PaymentStatus.CANCELED),
            ("something_new", PaymentStatus.OTHER),
        ]
        for remote, expected in cases:
            with self.subTest(remote=remote):
                recorder = Recorder(httpx.Response(200, json={"id": "abc123", "status": remote}))
                gateway = _gateway(recorder)

                self.assertEqual(gateway.check_status("abc123"), expected)
                request = recorder.requests[0]
                self.assertEqual(request.method, "GET")
                self.assertEqual(str(request.url), f"{API_URL}/payments/abc123")
                self.assertNotIn("Idempotence-Key", request.headers)

    def test_malformed_body(self):
        recorder = Recorder(httpx.Response(200, text="<html>oops</html>"))
        gateway = _gateway(recorder)

        with self.assertRaises(GatewayRejected):
            gateway.check_status("abc123")


class TestCancelPayment(unittest.TestCase):
    def test_canceled(self):
        recorder = Recorder(httpx.Response(200, json={"id": "abc123", "status": "canceled"}))
        gateway = _gateway(recorder)

        self.assertIs(gateway.cancel_payment("abc123"), True)
        request = recorder.requests[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(str(request.url), f"{API_URL}/payments/abc123/cancel")
        self.assertTrue(request.headers["Idempotence-Key"])

    def test_remote_refusal_returns_false(self):
        recorder = Recorder(httpx.Response(400, json={"type": "error", "code": "invalid_request"}))
        gateway = _gateway(recorder)

        self.assertIs(gateway.cancel_payment("abc123"), False)

    def test_other_status_returns_false(self):
        recorder = Recorder(httpx.Response(200, json={"id": "abc123", "status": "succeeded"}))
        gateway = _gateway(recorder)

        self.assertIs(gateway.cancel_payment("abc123"), False)

    def test_transport_error_not_retried(self):
        recorder = Recorder(_connect_error(), _created())
        gateway = _gateway(recorder)

        with self.assertRaises(GatewayUnavailable):
            gateway.cancel_payment("abc123")
        self.assertEqual(len(recorder.requests), 1)


class TestGatewayFactory(unittest.TestCase):
    def test_unknown_gateway(self):
        with self.assertRaises(ValueError):
            GatewayFactory.create("stripe", {})

    def test_create_from_settings(self):
        from app.core.config import settings

        gateway = GatewayFactory.create_from_settings(settings)

        self.assertIsInstance(gateway, YooKassaGateway)
        self.assertEqual(gateway.shop_id, settings.yookassa_shop_id)
        self.assertTrue(gateway.is_available())
