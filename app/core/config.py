"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


VPN_PANELS = ("hiddify", "three_x_ui")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS
    # ===========================================
    redis_url: str  # Required, no default

    # ===========================================
    # TELEGRAM BOT
    # ===========================================
    telegram_bot_token: str  # Required, no default
    # Имя бота в приветствии главного меню
    bot_nickname: str = "VPN Bot"
    # Ссылка на поддержку (кнопка «📞 Поддержка» при ошибке выдачи ключа)
    support_url: str = "https://t.me/support"

    # ===========================================
    # PAYMENT GATEWAY (YooKassa)
    # ===========================================
    yookassa_shop_id: str  # Required, no default
    yookassa_secret_key: str  # Required, no default
    yookassa_api_url: str = "https://api.yookassa.ru/v3"
    # Куда ЮKassa вернёт покупателя после оплаты (обычно ссылка на бота)
    yookassa_return_url: str  # Required, no default
    gateway_timeout: float = 15.0
    # Повторы только при сетевых ошибках; Idempotence-Key внутри одного вызова один и тот же
    gateway_retry_max_attempts: int = 2
    gateway_retry_backoff_seconds: float = 1.0

    # ===========================================
    # PRICING
    # ===========================================
    vpn_price_minor_units: int = 9900  # 99.00 RUB
    vpn_currency: str = "RUB"
    vpn_payment_description: str = "Оплата VPN подписки для пользователя {buyer_id}"

    # ===========================================
    # VPN PANEL - BACKEND SELECTION
    # ===========================================
    vpn_panel: str = "three_x_ui"  # hiddify, three_x_ui
    vpn_panel_timeout: float = 30.0

    # ===========================================
    # HIDDIFY (Panel: hiddify)
    # ===========================================
    hiddify_api_url: str = ""
    hiddify_admin_proxy_path: str = ""
    hiddify_user_proxy_path: str = ""
    hiddify_api_key: str = ""
    hiddify_usage_limit_gb: int = 100
    hiddify_package_days: int = 30

    # ===========================================
    # 3X-UI (Panel: three_x_ui)
    # ===========================================
    three_x_ui_api_url: str = ""
    # Базовый адрес подписки: ссылка = {three_x_ui_link_url}/{subId}
    three_x_ui_link_url: str = ""
    three_x_ui_username: str = ""
    three_x_ui_password: str = ""
    three_x_ui_inbound_id: int = 1
    # Панели обычно работают с самоподписанным сертификатом
    three_x_ui_verify_ssl: bool = False
    three_x_ui_expiry_days: int = 30  # 0 = бессрочно

    # ===========================================
    # PURCHASE SESSIONS
    # ===========================================
    session_ttl_seconds: int = 900  # 15 min без оплаты -> EXPIRED
    session_retention_seconds: int = 3600  # терминальные сессии хранятся ещё час
    session_sweep_interval_seconds: int = 120
    # Повторные нажатия одной и той же кнопки оплаты в этом окне игнорируются
    callback_debounce_seconds: int = 2

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING & METRICS
    # ===========================================
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5
    metrics_port: int | None = None  # None = не поднимать /metrics

    @field_validator("vpn_panel")
    @classmethod
    def validate_vpn_panel(cls, v: str) -> str:
        """Normalize and check panel backend name."""
        value = v.strip().lower()
        if value not in VPN_PANELS:
            raise ValueError(f"vpn_panel must be one of: {', '.join(VPN_PANELS)}")
        return value

    @field_validator("vpn_price_minor_units")
    @classmethod
    def validate_price(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("vpn_price_minor_units must be positive")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Игнорировать неизвестные поля из .env


settings = Settings()
