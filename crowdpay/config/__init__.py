"""Configuration package for crowdpay."""
from .providers import GATEWAY, MOBILE_MONEY, ProviderConfig, ProviderRegistry
from .settings import Settings, get_settings

__all__ = [
    "GATEWAY",
    "MOBILE_MONEY",
    "ProviderConfig",
    "ProviderRegistry",
    "Settings",
    "get_settings",
]
