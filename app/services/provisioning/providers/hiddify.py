"""
Hiddify Manager admin API v2 panel.
Creates a user with a fixed traffic/day package; link is built from the user UUID.
"""
import logging
import time
from datetime import date
from uuid import uuid4

import httpx

from app.services.provisioning.base import (
    ProvisioningRejected,
    ProvisioningUnavailable,
    VpnPanelProvider,
    response_detail,
)
from app.utils.metrics import provisioning_requests_total, provisioning_request_duration_seconds

logger = logging.getLogger(__name__)


class HiddifyProvider(VpnPanelProvider):
    """Hiddify panel (admin API v2)."""

    name = "hiddify"

    def __init__(self, config: dict, breaker=None):
        super().__init__(config, breaker=breaker)
        self.api_url = (config.get("api_url") or "").rstrip("/")
        self.admin_proxy_path = config.get("admin_proxy_path", "")
        self.user_proxy_path = config.get("user_proxy_path", "")
        self.api_key = config.get("api_key")
        self.usage_limit_gb = config.get("usage_limit_gb", 100)
        self.package_days = config.get("package_days", 30)

    def is_available(self) -> bool:
        return bool(self.api_url and self.admin_proxy_path and self.api_key)

    def create_access(self, identity: str) -> str:
        if not self.is_available():
            raise ProvisioningRejected("Hiddify panel not configured")

        # New secret on every call; the panel keeps whatever we send
        client_uuid = str(uuid4())
        payload = {
            "uuid": client_uuid,
            "name": f"tg-{identity}",
            "comment": "Created via Telegram Bot",
            "enable": True,
            "is_active": True,
            "lang": "ru",
            "mode": "no_reset",
            "current_usage_GB": 0,
            "usage_limit_GB": self.usage_limit_gb,
            "package_days": self.package_days,
            "start_date": date.today().isoformat(),
            "telegram_id": int(identity) if identity.isdigit() else None,
        }
        headers = {
            "Accept": "application/json",
            "Hiddify-API-Key": self.api_key,
        }
        url = f"{self.api_url}{self.admin_proxy_path}/api/v2/admin/user/"

        def _post() -> httpx.Response:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                return client.post(url, json=payload, headers=headers)

        started = time.monotonic()
        try:
            response = self._call(_post)
        except ProvisioningUnavailable:
            provisioning_requests_total.labels(backend=self.name, status="unavailable").inc()
            raise
        finally:
            provisioning_request_duration_seconds.labels(backend=self.name).observe(
                time.monotonic() - started
            )

        if not response.is_success:
            provisioning_requests_total.labels(backend=self.name, status=str(response.status_code)).inc()
            raise ProvisioningRejected(
                f"Hiddify returned {response.status_code}",
                detail=response_detail(response),
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        panel_uuid = body.get("uuid") if isinstance(body, dict) else None
        if not panel_uuid:
            provisioning_requests_total.labels(backend=self.name, status="malformed").inc()
            raise ProvisioningRejected(
                "UUID not found in Hiddify response",
                detail=response_detail(response),
            )

        provisioning_requests_total.labels(backend=self.name, status="ok").inc()
        logger.info("vpn_user_created", extra={"backend": self.name, "buyer_id": identity})
        return self._connection_link(panel_uuid)

    def _connection_link(self, user_uuid: str) -> str:
        """https://host/<user_proxy_path>/<uuid>"""
        return f"{self.api_url}{self.user_proxy_path}/{user_uuid}"
