"""
Unit-тесты рендеринга событий покупки и debounce-мидлвари бота (без Telegram API).
"""
import asyncio
import unittest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import redis
from aiogram.types import CallbackQuery

from app.bot.main import DebounceMiddleware, key_text, render_outcome
from app.services.purchases.models import (
    ErrorKind,
    PaymentLink,
    Provisioned,
    PurchaseError,
    SessionState,
    StatusUpdate,
)


def _callback_data(keyboard) -> list[str]:
    return [b.callback_data for row in keyboard.inline_keyboard for b in row if b.callback_data]


def _urls(keyboard) -> list[str]:
    return [b.url for row in keyboard.inline_keyboard for b in row if b.url]


def _callback(data: str) -> CallbackQuery:
    event = MagicMock(spec=CallbackQuery)
    event.data = data
    event.from_user = MagicMock(id=42)
    event.answer = AsyncMock()
    return event


class TestRenderOutcome(unittest.TestCase):
    def test_payment_link(self):
        text, keyboard = render_outcome(
            PaymentLink(payment_id="abc123", channel_id="42", url="https://pay.example/?a=1&b=2")
        )
        self.assertIn("https://pay.example/?a=1&amp;b=2", text)
        self.assertEqual(_callback_data(keyboard), ["check_payment:abc123", "cancel_payment:abc123"])

    def test_pending_offers_recheck(self):
        text, keyboard = render_outcome(
            StatusUpdate(payment_id="abc123", channel_id="42", state=SessionState.PENDING)
        )
        self.assertIn("обрабатывается", text)
        self.assertIn("check_payment:abc123", _callback_data(keyboard))

    def test_fresh_key(self):
        text, keyboard = render_outcome(
            Provisioned(payment_id="abc123", channel_id="42", access_link="vless://x?a=1&b=2")
        )
        self.assertIn("<code>vless://x?a=1&amp;b=2</code>", text)
        self.assertIn("готова", text)
        self.assertIn("instructions", _callback_data(keyboard))

    def test_reissued_key_shows_date(self):
        text = key_text("vless://x", datetime(2024, 5, 1, 12, 30), reissued=True)
        self.assertIn("01.05.2024 12:30", text)

    def test_provisioning_failure_has_support_button(self):
        text, keyboard = render_outcome(
            PurchaseError(
                payment_id="abc123",
                channel_id="42",
                error=ErrorKind.PROVISIONING_FAILED,
                message="panel down",
                support_url="https://t.me/help",
            )
        )
        self.assertEqual(_urls(keyboard), ["https://t.me/help"])
        self.assertIn("поддержку", text)

    def test_concurrent_purchase_repeats_link(self):
        text, keyboard = render_outcome(
            PurchaseError(
                payment_id="abc123",
                error=ErrorKind.CONCURRENT_PURCHASE,
                message="in progress",
                confirmation_url="https://pay.example/abc123",
            )
        )
        self.assertIn("https://pay.example/abc123", text)
        self.assertEqual(_callback_data(keyboard), ["check_payment:abc123", "cancel_payment:abc123"])

    def test_expired(self):
        _, keyboard = render_outcome(
            StatusUpdate(payment_id="abc123", channel_id="42", state=SessionState.EXPIRED)
        )
        self.assertIn("buy_key", _callback_data(keyboard))

    def test_expired_check_offers_support(self):
        text, keyboard = render_outcome(
            PurchaseError(
                payment_id="abc123",
                channel_id="42",
                error=ErrorKind.SESSION_EXPIRED,
                message="expired",
                support_url="https://t.me/help",
            )
        )
        self.assertIn("buy_key", _callback_data(keyboard))
        self.assertEqual(_urls(keyboard), ["https://t.me/help"])
        self.assertIn("поддержку", text)

    def test_expired_check_without_support(self):
        _, keyboard = render_outcome(
            PurchaseError(payment_id="abc123", error=ErrorKind.SESSION_EXPIRED, message="expired")
        )
        self.assertEqual(_urls(keyboard), [])


class TestDebounceMiddleware(unittest.TestCase):
    def _run(self, middleware, event):
        handler = AsyncMock(return_value="handled")
        result = asyncio.run(middleware(handler, event, {}))
        return handler, result

    def test_first_press_passes(self):
        store = MagicMock()
        store.check_and_set.return_value = True
        handler, result = self._run(DebounceMiddleware(store), _callback("check_payment:abc123"))

        self.assertEqual(result, "handled")
        handler.assert_awaited_once()
        store.check_and_set.assert_called_once_with("callback:42:check_payment:abc123")

    def test_repeated_press_dropped(self):
        store = MagicMock()
        store.check_and_set.return_value = False
        event = _callback("check_payment:abc123")

        handler, result = self._run(DebounceMiddleware(store), event)

        self.assertIsNone(result)
        handler.assert_not_awaited()
        event.answer.assert_awaited_once()

    def test_other_buttons_not_debounced(self):
        store = MagicMock()
        handler, _ = self._run(DebounceMiddleware(store), _callback("main_menu"))

        handler.assert_awaited_once()
        store.check_and_set.assert_not_called()

    def test_redis_error_fails_open(self):
        store = MagicMock()
        store.check_and_set.side_effect = redis.ConnectionError("down")
        handler, result = self._run(DebounceMiddleware(store), _callback("pay_vpn"))

        self.assertEqual(result, "handled")
        handler.assert_awaited_once()
