"""
3X-UI panel provider.
Logs in (session cookie lives in the per-call client) and adds a client to an inbound.
Connection link is the subscription URL: {link_url}/{subId}.
"""
import json
import logging
import secrets
import string
import time
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

SUB_ID_ALPHABET = string.ascii_letters + string.digits
SUB_ID_LENGTH = 12


def generate_sub_id(length: int = SUB_ID_LENGTH) -> str:
    return "".join(secrets.choice(SUB_ID_ALPHABET) for _ in range(length))


class ThreeXuiProvider(VpnPanelProvider):
    """3X-UI panel (inbounds API)."""

    name = "three_x_ui"

    def __init__(self, config: dict, breaker=None):
        super().__init__(config, breaker=breaker)
        self.api_url = (config.get("api_url") or "").rstrip("/")
        self.link_url = (config.get("link_url") or "").rstrip("/")
        self.username = config.get("username", "")
        self.password = config.get("password", "")
        self.inbound_id = int(config.get("inbound_id", 1))
        self.verify_ssl = config.get("verify_ssl", False)
        self.expiry_days = config.get("expiry_days", 30)

    def is_available(self) -> bool:
        return bool(self.api_url and self.link_url and self.username)

    def create_access(self, identity: str) -> str:
        if not self.is_available():
            raise ProvisioningRejected("3X-UI panel not configured")

        client_id = str(uuid4())
        sub_id = generate_sub_id()
        expiry_ms = 0
        if self.expiry_days:
            expiry_ms = int((time.time() + self.expiry_days * 86400) * 1000)
        client = {
            "id": client_id,
            "flow": "",
            # email is unique per inbound, repeat purchases need a new one
            "email": f"{identity}-{sub_id}",
            "limitIp": 0,
            "totalGB": 0,
            "expiryTime": expiry_ms,
            "enable": True,
            "tgId": int(identity) if identity.isdigit() else "",
            "subId": sub_id,
            "reset": 0,
        }
        payload = {
            "id": self.inbound_id,
            "settings": json.dumps({"clients": [client]}),
        }

        def _exchange() -> tuple[httpx.Response, httpx.Response | None]:
            with httpx.Client(
                timeout=self.timeout,
                verify=self.verify_ssl,
                follow_redirects=True,
                transport=self._transport,
            ) as http:
                login = http.post(
                    f"{self.api_url}/login",
                    data={"username": self.username, "password": self.password},
                )
                if not _is_success_reply(login):
                    return login, None
                added = http.post(
                    f"{self.api_url}/panel/api/inbounds/addClient",
                    json=payload,
                    headers={"Accept": "application/json"},
                )
                return login, added

        started = time.monotonic()
        try:
            login, added = self._call(_exchange)
        except ProvisioningUnavailable:
            provisioning_requests_total.labels(backend=self.name, status="unavailable").inc()
            raise
        finally:
            provisioning_request_duration_seconds.labels(backend=self.name).observe(
                time.monotonic() - started
            )

        if added is None:
            provisioning_requests_total.labels(backend=self.name, status="login_failed").inc()
            raise ProvisioningRejected("3X-UI login failed", detail=response_detail(login))

        if not _is_success_reply(added):
            provisioning_requests_total.labels(backend=self.name, status="rejected").inc()
            logger.error(
                "vpn_client_add_failed",
                extra={"backend": self.name, "buyer_id": identity, "status_code": added.status_code},
            )
            raise ProvisioningRejected("3X-UI refused to add client", detail=response_detail(added))

        provisioning_requests_total.labels(backend=self.name, status="ok").inc()
        logger.info("vpn_client_added", extra={"backend": self.name, "buyer_id": identity})
        return self._connection_link(sub_id)

    def _connection_link(self, sub_id: str) -> str:
        return f"{self.link_url}/{sub_id}"


def _is_success_reply(response: httpx.Response) -> bool:
    """3X-UI answers 200 with {"success": bool, "msg": ...} for both outcomes."""
    if not response.is_success:
        return False
    try:
        body = response.json()
    except ValueError:
        return False
    return isinstance(body, dict) and body.get("success") is True
