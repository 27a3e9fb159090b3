"""Builds one adapter per registered provider."""
from typing import Dict, Optional, Type

import httpx

from crowdpay.config import ProviderRegistry, Settings
from crowdpay.exceptions import UnsupportedProvider
from crowdpay.integrations.base import ProviderAdapter
from crowdpay.integrations.gateways import PayPalAdapter, StripeAdapter
from crowdpay.integrations.mobile_money import (
    FloozAdapter,
    HttpProviderAdapter,
    MoovAdapter,
    MtnAdapter,
    OrangeAdapter,
    WaveAdapter,
)

HTTP_ADAPTERS: Dict[str, Type[HttpProviderAdapter]] = {
    "mtn": MtnAdapter,
    "moov": MoovAdapter,
    "flooz": FloozAdapter,
    "orange": OrangeAdapter,
    "wave": WaveAdapter,
    "paypal": PayPalAdapter,
}


def build_adapters(
    registry: ProviderRegistry,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, ProviderAdapter]:
    """
    Create the adapter for every provider in the registry.

    Args:
        registry: Provider static configuration
        settings: Application settings
        transport: Optional httpx transport shared by the HTTP adapters

    Returns:
        Dict[str, ProviderAdapter]: Adapters keyed by provider id
    """
    adapters: Dict[str, ProviderAdapter] = {}
    for config in registry:
        if config.provider_id == "stripe":
            adapters["stripe"] = StripeAdapter(config, settings)
        elif config.provider_id in HTTP_ADAPTERS:
            adapter_class = HTTP_ADAPTERS[config.provider_id]
            adapters[config.provider_id] = adapter_class(config, settings, transport=transport)
        else:
            raise UnsupportedProvider(config.provider_id)
    return adapters
