"""
Factory for creating the VPN panel provider based on configuration.
"""
import logging

import pybreaker

from app.services.provisioning.base import VpnPanelProvider
from app.services.provisioning.providers.hiddify import HiddifyProvider
from app.services.provisioning.providers.three_x_ui import ThreeXuiProvider

logger = logging.getLogger(__name__)


class ProvisioningFactory:
    """Factory for creating VPN panel providers."""

    PROVIDERS = {
        "hiddify": HiddifyProvider,
        "three_x_ui": ThreeXuiProvider,
    }

    @classmethod
    def create(
        cls,
        panel_name: str,
        config: dict,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> VpnPanelProvider:
        """
        Create panel provider by name.

        Args:
            panel_name: Name of panel (hiddify, three_x_ui)
            config: Panel-specific configuration dict
            breaker: Optional circuit breaker wrapping every panel exchange

        Raises:
            ValueError: If panel name is unknown
        """
        provider_class = cls.PROVIDERS.get(panel_name.lower())

        if not provider_class:
            available = ", ".join(cls.PROVIDERS.keys())
            raise ValueError(
                f"Unknown VPN panel: {panel_name}. "
                f"Available panels: {available}"
            )

        logger.info(f"Creating VPN panel provider: {panel_name}")
        provider = provider_class(config, breaker=breaker)

        if not provider.is_available():
            logger.warning(f"VPN panel {panel_name} created but not fully configured")

        return provider

    @classmethod
    def create_from_settings(cls, settings, breaker: pybreaker.CircuitBreaker | None = None) -> VpnPanelProvider:
        panel_name = settings.vpn_panel

        if panel_name == "hiddify":
            config = {
                "api_url": settings.hiddify_api_url,
                "admin_proxy_path": settings.hiddify_admin_proxy_path,
                "user_proxy_path": settings.hiddify_user_proxy_path,
                "api_key": settings.hiddify_api_key,
                "usage_limit_gb": settings.hiddify_usage_limit_gb,
                "package_days": settings.hiddify_package_days,
                "timeout": settings.vpn_panel_timeout,
            }
        elif panel_name == "three_x_ui":
            config = {
                "api_url": settings.three_x_ui_api_url,
                "link_url": settings.three_x_ui_link_url,
                "username": settings.three_x_ui_username,
                "password": settings.three_x_ui_password,
                "inbound_id": settings.three_x_ui_inbound_id,
                "verify_ssl": settings.three_x_ui_verify_ssl,
                "expiry_days": settings.three_x_ui_expiry_days,
                "timeout": settings.vpn_panel_timeout,
            }
        else:
            raise ValueError(f"VPN panel {panel_name} not supported in settings")

        return cls.create(panel_name, config, breaker=breaker)

    @classmethod
    def get_available_panels(cls) -> list[str]:
        return list(cls.PROVIDERS.keys())
