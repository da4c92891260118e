"""
Telegram bot using aiogram 3.x
Renders the purchase workflow: menu, payment link, check/cancel buttons, issued key.
All purchase decisions are taken by PurchaseOrchestrator; handlers only translate
button presses into orchestrator calls and outcome events into messages.
"""
import asyncio
import html
import logging
from datetime import datetime

import redis
from aiogram import BaseMiddleware, Bot, Dispatcher, F, Router
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import CommandStart
from aiogram.types import (
    CallbackQuery,
    ErrorEvent,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    LinkPreviewOptions,
    Message,
    TelegramObject,
)

from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal, init_db
from app.services.circuit_breaker import get_circuit_breaker
from app.services.credentials import Credential, SqlCredentialStore
from app.services.idempotency import IdempotencyStore
from app.services.payments import GatewayFactory, format_minor_units
from app.services.provisioning import ProvisioningFactory
from app.services.purchases import (
    ErrorKind,
    Outcome,
    PaymentLink,
    Provisioned,
    PurchaseConfig,
    PurchaseError,
    PurchaseOrchestrator,
    SessionRegistry,
    SessionState,
    StatusUpdate,
    run_expiry_sweeper,
)
from app.utils.metrics import start_metrics_server

configure_logging()
logger = logging.getLogger("bot")

router = Router()

CHECK_PREFIX = "check_payment:"
CANCEL_PREFIX = "cancel_payment:"
# Callbacks that reach the payment gateway
DEBOUNCED_PREFIXES = ("pay_vpn", CHECK_PREFIX, CANCEL_PREFIX)

PRICE_TEXT = format_minor_units(settings.vpn_price_minor_units)

INSTRUCTIONS_TEXT = (
    "📱 <b>Инструкция по подключению к VPN</b>\n\n"
    "1️⃣ <b>Установите приложение V2Box:</b>\n"
    "▪️ Android: <a href=\"https://play.google.com/store/apps/details?id=com.v2ray.ang\">Google Play</a>\n"
    "▪️ iOS: <a href=\"https://apps.apple.com/app/v2box-v2ray-client/id6446814690\">App Store</a>\n"
    "▪️ Windows: <a href=\"https://github.com/2dust/v2rayN/releases/latest\">V2rayN</a>\n\n"
    "2️⃣ <b>Подключение к серверу:</b>\n"
    "▪️ Скопируйте полученную VPN-ссылку\n"
    "▪️ Откройте установленное приложение\n"
    "▪️ Нажмите на + в правом верхнем углу\n"
    "▪️ Выберите «Импорт из буфера обмена»\n\n"
    "3️⃣ <b>Использование:</b>\n"
    "▪️ Выберите добавленный сервер\n"
    "▪️ Нажмите кнопку подключения\n"
    "▪️ Готово! Вы подключены к VPN"
)


# ===========================================
# Keyboards
# ===========================================

def _button(text: str, data: str) -> InlineKeyboardButton:
    return InlineKeyboardButton(text=text, callback_data=data)


def _keyboard(*rows: list[InlineKeyboardButton]) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=list(rows))


def main_menu_keyboard() -> InlineKeyboardMarkup:
    return _keyboard(
        [_button("💳 Купить ключ", "buy_key")],
        [_button("🔑 Мой ключ", "show_key"), _button("📖 Инструкция", "instructions")],
    )


def back_to_menu_keyboard() -> InlineKeyboardMarkup:
    return _keyboard([_button("⬅️ Назад в меню", "main_menu")])


def key_keyboard() -> InlineKeyboardMarkup:
    return _keyboard(
        [_button("📖 Инструкция по подключению", "instructions")],
        [_button("⬅️ В главное меню", "main_menu")],
    )


def payment_keyboard(payment_id: str, check_text: str = "✅ Проверить оплату") -> InlineKeyboardMarkup:
    return _keyboard(
        [_button(check_text, f"{CHECK_PREFIX}{payment_id}")],
        [_button("❌ Отменить платёж", f"{CANCEL_PREFIX}{payment_id}")],
    )


def retry_purchase_keyboard(support_url: str | None = None) -> InlineKeyboardMarkup:
    rows = [[_button("🔄 Попробовать снова", "buy_key")]]
    if support_url:
        rows.append([InlineKeyboardButton(text="📞 Поддержка", url=support_url)])
    rows.append([_button("⬅️ Вернуться в меню", "main_menu")])
    return _keyboard(*rows)


def support_keyboard(support_url: str | None) -> InlineKeyboardMarkup:
    url = support_url or settings.support_url
    return _keyboard(
        [InlineKeyboardButton(text="📞 Поддержка", url=url)],
        [_button("⬅️ В главное меню", "main_menu")],
    )


# ===========================================
# Rendering
# ===========================================

def _format_issued_at(issued_at: datetime | None) -> str:
    if issued_at is None:
        return ""
    return f"🗓️ Ключ создан: {issued_at.strftime('%d.%m.%Y %H:%M')}\n\n"


def key_text(access_link: str, issued_at: datetime | None, reissued: bool) -> str:
    header = "🔧 Ваша VPN-ссылка:" if reissued else "✅ Ваша VPN-ссылка готова:"
    return (
        f"{header}\n\n<code>{html.escape(access_link)}</code>\n"
        "<i>⬆ Нажмите чтобы скопировать</i>\n\n"
        f"{_format_issued_at(issued_at) if reissued else ''}"
        "❗ Эта ссылка действительна 30 дней с момента получения."
    )


def render_outcome(outcome: Outcome) -> tuple[str, InlineKeyboardMarkup | None]:
    """Outcome event -> (text, keyboard)."""
    if isinstance(outcome, PaymentLink):
        text = (
            "💳 Для оплаты перейдите по ссылке ниже:\n\n"
            f"{html.escape(outcome.url)}\n\n"
            "⏳ После оплаты нажмите кнопку «Проверить оплату»"
        )
        return text, payment_keyboard(outcome.payment_id)

    if isinstance(outcome, Provisioned):
        return key_text(outcome.access_link, outcome.issued_at, outcome.reissued), key_keyboard()

    if isinstance(outcome, StatusUpdate):
        state = outcome.state
        if state in (SessionState.CREATED, SessionState.PENDING):
            text = "⏳ Ваш платеж обрабатывается. Пожалуйста, подождите немного и проверьте статус снова."
            if outcome.confirmation_url:
                text += f"\n\nСсылка для оплаты:\n{html.escape(outcome.confirmation_url)}"
            return text, payment_keyboard(outcome.payment_id, check_text="🔄 Проверить снова")
        if state == SessionState.SUCCEEDED:
            return "✅ Оплата успешно произведена! ⏳ Генерируем для вас доступ к VPN...", None
        if state == SessionState.CANCELED:
            return "📉 Платёж отменён", back_to_menu_keyboard()
        if state == SessionState.EXPIRED:
            return "⌛ Время на оплату истекло, платёж отменён.", retry_purchase_keyboard()
        if state == SessionState.FAILED:
            return "❌ Платеж не был завершен. Пожалуйста, попробуйте еще раз.", retry_purchase_keyboard()
        return "ℹ️ Статус платежа обновлён.", back_to_menu_keyboard()

    if isinstance(outcome, PurchaseError):
        return render_error(outcome)

    logger.warning("unknown_outcome", extra={"payment_id": outcome.payment_id})
    return "❌ Произошла ошибка. Пожалуйста, попробуйте позже.", back_to_menu_keyboard()


def render_error(outcome: PurchaseError) -> tuple[str, InlineKeyboardMarkup | None]:
    kind = outcome.error
    if kind == ErrorKind.GATEWAY_UNAVAILABLE:
        text = "❌ Платёжный сервис временно недоступен. Пожалуйста, попробуйте позже."
        if outcome.payment_id:
            return text, payment_keyboard(outcome.payment_id, check_text="🔄 Проверить снова")
        return text, back_to_menu_keyboard()
    if kind == ErrorKind.CONCURRENT_PURCHASE:
        text = "⏳ У вас уже есть неоплаченный платёж."
        if outcome.confirmation_url:
            text += f"\n\nСсылка для оплаты:\n{html.escape(outcome.confirmation_url)}"
        if outcome.payment_id:
            return text, payment_keyboard(outcome.payment_id)
        return text, back_to_menu_keyboard()
    if kind == ErrorKind.NOT_FOUND:
        return "❓ Платёж не найден.", back_to_menu_keyboard()
    if kind == ErrorKind.SESSION_EXPIRED:
        text = "⌛ Время на оплату истекло. Создайте новый платёж."
        if outcome.support_url:
            text += "\n\nЕсли вы уже оплатили, напишите в поддержку."
        return text, retry_purchase_keyboard(outcome.support_url)
    if kind == ErrorKind.PROVISIONING_FAILED:
        text = "❌ Не удалось создать подписку VPN. Пожалуйста, обратитесь в поддержку."
        return text, support_keyboard(outcome.support_url)
    return "❌ Произошла ошибка. Пожалуйста, попробуйте позже.", back_to_menu_keyboard()


async def send_outcomes(bot: Bot, outcomes: list[Outcome], fallback_chat_id: int | None = None) -> None:
    for outcome in outcomes:
        chat_id = int(outcome.channel_id) if outcome.channel_id else fallback_chat_id
        if chat_id is None:
            logger.warning("outcome_without_chat", extra={"payment_id": outcome.payment_id})
            continue
        text, keyboard = render_outcome(outcome)
        await bot.send_message(chat_id, text, reply_markup=keyboard)


async def remove_inline_keyboard(callback: CallbackQuery) -> None:
    if not callback.message:
        return
    try:
        await callback.message.edit_reply_markup(reply_markup=None)
    except TelegramBadRequest as e:
        logger.warning(
            "remove_keyboard_failed",
            extra={"chat_id": callback.message.chat.id, "error": str(e)},
        )


# ===========================================
# Middleware
# ===========================================

class DebounceMiddleware(BaseMiddleware):
    """
    Drops repeated presses of the same payment button within a short window.
    Fails open: on Redis errors the press is handled as usual.
    """

    def __init__(self, store: IdempotencyStore) -> None:
        self.store = store

    async def __call__(self, handler, event: TelegramObject, data: dict):
        if not isinstance(event, CallbackQuery) or not event.data:
            return await handler(event, data)
        if not event.data.startswith(DEBOUNCED_PREFIXES):
            return await handler(event, data)

        key = f"callback:{event.from_user.id}:{event.data}"
        try:
            first = await asyncio.to_thread(self.store.check_and_set, key)
        except redis.RedisError as e:
            logger.warning("debounce_unavailable", extra={"error": str(e)})
            return await handler(event, data)

        if not first:
            logger.info("callback_debounced", extra={"buyer_id": str(event.from_user.id)})
            await event.answer("⏳ Запрос уже обрабатывается")
            return None
        return await handler(event, data)


# ===========================================
# Handlers
# ===========================================

async def send_main_menu(message: Message) -> None:
    await message.answer(
        f"🌍 Добро пожаловать в {html.escape(settings.bot_nickname)}! 🔒",
        reply_markup=main_menu_keyboard(),
    )


async def send_existing_key(message: Message, credential: Credential) -> None:
    await message.answer(
        key_text(credential.access_link, credential.issued_at, reissued=True),
        reply_markup=key_keyboard(),
    )


@router.message(CommandStart())
async def cmd_start(message: Message, credentials: SqlCredentialStore):
    buyer_id = str(message.from_user.id)
    try:
        await asyncio.to_thread(credentials.ensure_user, buyer_id)
    except Exception:
        logger.exception("user_register_failed", extra={"buyer_id": buyer_id})
    await send_main_menu(message)


@router.message()
async def unknown_message(message: Message):
    await message.answer("Некорректное сообщение", reply_markup=back_to_menu_keyboard())


@router.callback_query(F.data == "main_menu")
async def on_main_menu(callback: CallbackQuery):
    await callback.answer()
    await send_main_menu(callback.message)
    await remove_inline_keyboard(callback)


@router.callback_query(F.data == "instructions")
async def on_instructions(callback: CallbackQuery):
    await callback.answer()
    await callback.message.answer(
        INSTRUCTIONS_TEXT,
        reply_markup=back_to_menu_keyboard(),
        link_preview_options=LinkPreviewOptions(is_disabled=True),
    )
    await remove_inline_keyboard(callback)


@router.callback_query(F.data == "buy_key")
async def on_buy_key(callback: CallbackQuery, orchestrator: PurchaseOrchestrator):
    """Покупка: если ключ уже выдан, показываем его, иначе предлагаем оплату."""
    await callback.answer()
    buyer_id = str(callback.from_user.id)
    credential = await asyncio.to_thread(orchestrator.current_credential, buyer_id)
    if credential:
        await send_existing_key(callback.message, credential)
    else:
        await callback.message.answer(
            f"💳 Для получения доступа к VPN необходимо произвести оплату в размере {PRICE_TEXT} руб.",
            reply_markup=_keyboard(
                [_button(f"Оплатить {PRICE_TEXT} руб.", "pay_vpn")],
                [_button("⬅️ Назад в меню", "main_menu")],
            ),
        )
    await remove_inline_keyboard(callback)


@router.callback_query(F.data == "show_key")
async def on_show_key(callback: CallbackQuery, orchestrator: PurchaseOrchestrator):
    await callback.answer()
    buyer_id = str(callback.from_user.id)
    credential = await asyncio.to_thread(orchestrator.current_credential, buyer_id)
    if credential:
        await send_existing_key(callback.message, credential)
    else:
        await callback.message.answer(
            "📉 У вас еще нет доступа к VPN.",
            reply_markup=_keyboard(
                [_button("💳 Купить доступ", "buy_key")],
                [_button("⬅️ В главное меню", "main_menu")],
            ),
        )
    await remove_inline_keyboard(callback)


@router.callback_query(F.data == "pay_vpn")
async def on_pay(callback: CallbackQuery, bot: Bot, orchestrator: PurchaseOrchestrator):
    await callback.answer()
    buyer_id = str(callback.from_user.id)
    chat_id = callback.message.chat.id
    logger.info("purchase_requested", extra={"buyer_id": buyer_id, "chat_id": chat_id})
    outcomes = await asyncio.to_thread(orchestrator.start_purchase, buyer_id, str(chat_id))
    await send_outcomes(bot, outcomes, chat_id)
    await remove_inline_keyboard(callback)


@router.callback_query(F.data.startswith(CHECK_PREFIX))
async def on_check_payment(callback: CallbackQuery, bot: Bot, orchestrator: PurchaseOrchestrator):
    await callback.answer()
    payment_id = callback.data[len(CHECK_PREFIX):]
    buyer_id = str(callback.from_user.id)
    outcomes = await asyncio.to_thread(orchestrator.check_payment, payment_id, buyer_id)
    await send_outcomes(bot, outcomes, callback.message.chat.id)
    await remove_inline_keyboard(callback)


@router.callback_query(F.data.startswith(CANCEL_PREFIX))
async def on_cancel_payment(callback: CallbackQuery, bot: Bot, orchestrator: PurchaseOrchestrator):
    await callback.answer()
    payment_id = callback.data[len(CANCEL_PREFIX):]
    buyer_id = str(callback.from_user.id)
    outcomes = await asyncio.to_thread(orchestrator.cancel_payment, payment_id, buyer_id)
    await send_outcomes(bot, outcomes, callback.message.chat.id)
    await remove_inline_keyboard(callback)


async def on_error(event: ErrorEvent, *args, **kwargs):
    """Global error handler."""
    logger.exception(
        "Error in handler",
        extra={"error": str(event.exception)},
    )


# ===========================================
# Startup
# ===========================================

def build_orchestrator(credentials: SqlCredentialStore) -> PurchaseOrchestrator:
    gateway = GatewayFactory.create_from_settings(
        settings, breaker=get_circuit_breaker("gateway")
    )
    provisioning = ProvisioningFactory.create_from_settings(
        settings, breaker=get_circuit_breaker("vpn_panel")
    )
    return PurchaseOrchestrator(
        registry=SessionRegistry(),
        gateway=gateway,
        provisioning=provisioning,
        credentials=credentials,
        config=PurchaseConfig.from_settings(settings),
    )


async def main():
    """Start the bot."""
    logger.info("Starting bot...")
    init_db()
    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)

    credentials = SqlCredentialStore(SessionLocal)
    orchestrator = build_orchestrator(credentials)

    bot = Bot(
        token=settings.telegram_bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = Dispatcher()
    dp["orchestrator"] = orchestrator
    dp["credentials"] = credentials

    dp.errors.register(on_error)
    dp.callback_query.middleware(DebounceMiddleware(IdempotencyStore()))
    dp.include_router(router)

    async def notify(outcome: Outcome) -> None:
        await send_outcomes(bot, [outcome])

    stop_sweeper = asyncio.Event()
    sweeper = asyncio.create_task(
        run_expiry_sweeper(
            orchestrator,
            notify,
            settings.session_sweep_interval_seconds,
            stop_event=stop_sweeper,
        )
    )

    # Delete webhook if exists (we use polling)
    await bot.delete_webhook(drop_pending_updates=True)
    logger.info("Bot started successfully!")

    try:
        await dp.start_polling(bot, allowed_updates=["message", "callback_query"])
    finally:
        stop_sweeper.set()
        await sweeper
        await bot.session.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
