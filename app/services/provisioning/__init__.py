"""
VPN access provisioning with interchangeable panel backends.
"""
from .base import (
    ProvisioningError,
    ProvisioningRejected,
    ProvisioningUnavailable,
    VpnPanelProvider,
)
from .factory import ProvisioningFactory

__all__ = [
    "ProvisioningError",
    "ProvisioningRejected",
    "ProvisioningUnavailable",
    "VpnPanelProvider",
    "ProvisioningFactory",
]
