"""
Unit-тесты для ProvisioningFactory: выбор панели по настройкам.
"""
import unittest
from types import SimpleNamespace

from app.services.provisioning.factory import ProvisioningFactory
from app.services.provisioning.providers.hiddify import HiddifyProvider
from app.services.provisioning.providers.three_x_ui import ThreeXuiProvider


def _settings(**overrides):
    values = {
        "vpn_panel": "three_x_ui",
        "vpn_panel_timeout": 10.0,
        "hiddify_api_url": "https://panel.example",
        "hiddify_admin_proxy_path": "/admin",
        "hiddify_user_proxy_path": "/user",
        "hiddify_api_key": "key",
        "hiddify_usage_limit_gb": 50,
        "hiddify_package_days": 31,
        "three_x_ui_api_url": "https://xui.example",
        "three_x_ui_link_url": "https://sub.example/sub",
        "three_x_ui_username": "admin",
        "three_x_ui_password": "pass",
        "three_x_ui_inbound_id": 2,
        "three_x_ui_verify_ssl": False,
        "three_x_ui_expiry_days": 0,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


class TestProvisioningFactory(unittest.TestCase):
    def test_available_panels(self):
        self.assertEqual(set(ProvisioningFactory.get_available_panels()), {"hiddify", "three_x_ui"})

    def test_create_three_x_ui_from_settings(self):
        provider = ProvisioningFactory.create_from_settings(_settings())

        self.assertIsInstance(provider, ThreeXuiProvider)
        self.assertEqual(provider.inbound_id, 2)
        self.assertEqual(provider.timeout, 10.0)
        self.assertEqual(provider.expiry_days, 0)
        self.assertTrue(provider.is_available())

    def test_create_hiddify_from_settings(self):
        provider = ProvisioningFactory.create_from_settings(_settings(vpn_panel="hiddify"))

        self.assertIsInstance(provider, HiddifyProvider)
        self.assertEqual(provider.usage_limit_gb, 50)
        self.assertEqual(provider.package_days, 31)

    def test_unknown_panel(self):
        with self.assertRaises(ValueError):
            ProvisioningFactory.create("marzban", {})

    def test_create_is_case_insensitive(self):
        provider = ProvisioningFactory.create("Hiddify", {"api_url": ""})
        self.assertIsInstance(provider, HiddifyProvider)
        self.assertFalse(provider.is_available())
