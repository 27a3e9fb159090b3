"""
Static provider registry.

One immutable entry per payment provider, built once at process start from
Settings. Registration order matters: provider inference walks mobile-money
operators in this order.
"""
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterator, Mapping, Optional, Tuple

from crowdpay.config.settings import Settings
from crowdpay.exceptions import UnsupportedProvider

MOBILE_MONEY = "mobile_money"
GATEWAY = "gateway"


@dataclass(frozen=True)
class ProviderConfig:
    """Static configuration for a single provider."""

    provider_id: str
    name: str
    kind: str
    method: str
    base_url: str
    api_key: str
    api_secret: str
    callback_url: str
    countries: Tuple[str, ...] = ()
    currencies: Tuple[str, ...] = ()
    settlement_currency: Optional[str] = None

    @property
    def is_mobile_money(self) -> bool:
        return self.kind == MOBILE_MONEY

    def supports_currency(self, currency: str) -> bool:
        return not self.currencies or currency.upper() in self.currencies


class ProviderRegistry:
    """Read-only, ordered mapping of provider id to ProviderConfig."""

    def __init__(self, configs: Tuple[ProviderConfig, ...]):
        self._configs: Mapping[str, ProviderConfig] = MappingProxyType(
            {config.provider_id: config for config in configs}
        )

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._configs

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(self._configs.values())

    def __len__(self) -> int:
        return len(self._configs)

    def get(self, provider_id: str) -> ProviderConfig:
        """
        Look up a provider.

        Raises:
            UnsupportedProvider: If the id is not registered
        """
        try:
            return self._configs[provider_id]
        except KeyError:
            raise UnsupportedProvider(provider_id) from None

    def ids(self) -> Tuple[str, ...]:
        return tuple(self._configs)

    def mobile_money_ids(self) -> Tuple[str, ...]:
        return tuple(c.provider_id for c in self if c.is_mobile_money)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        """Build the registry from environment-backed settings."""

        def mobile_money(
            provider_id: str,
            name: str,
            countries: Tuple[str, ...],
            currencies: Tuple[str, ...],
        ) -> ProviderConfig:
            return ProviderConfig(
                provider_id=provider_id,
                name=name,
                kind=MOBILE_MONEY,
                method="mobile_money",
                base_url=getattr(settings, f"{provider_id}_api_base_url").rstrip("/"),
                api_key=getattr(settings, f"{provider_id}_api_key"),
                api_secret=getattr(settings, f"{provider_id}_api_secret"),
                callback_url=settings.callback_url(provider_id),
                countries=countries,
                currencies=currencies,
            )

        configs = (
            mobile_money(
                "mtn",
                "MTN Mobile Money",
                ("TG", "GH", "NG", "CI", "CM", "RW", "ZA"),
                ("XOF", "XAF", "GHS", "NGN", "RWF", "ZAR", "EUR"),
            ),
            mobile_money("moov", "Moov Money", ("TG", "BJ", "CI", "NE", "BF"), ("XOF",)),
            mobile_money("flooz", "Flooz", ("TG", "BJ", "CI", "NE", "BF"), ("XOF",)),
            mobile_money(
                "orange",
                "Orange Money",
                ("SN", "ML", "MG", "CM", "CI", "GN", "CD"),
                ("XOF", "XAF", "GNF", "MGA", "CDF"),
            ),
            mobile_money("wave", "Wave", ("SN", "CI", "ML", "BF"), ("XOF",)),
            ProviderConfig(
                provider_id="paypal",
                name="PayPal",
                kind=GATEWAY,
                method="paypal",
                base_url=settings.paypal_api_base_url.rstrip("/"),
                api_key=settings.paypal_client_id,
                api_secret=settings.paypal_client_secret,
                callback_url=settings.callback_url("paypal"),
                currencies=("USD", "EUR", "GBP", "CAD"),
                settlement_currency="USD",
            ),
            ProviderConfig(
                provider_id="stripe",
                name="Stripe",
                kind=GATEWAY,
                method="card",
                base_url="https://api.stripe.com",
                api_key=settings.stripe_api_key,
                api_secret=settings.stripe_webhook_secret,
                callback_url=settings.callback_url("stripe"),
                currencies=("USD", "EUR", "GBP", "CAD", "JPY"),
                settlement_currency="EUR",
            ),
        )
        return cls(configs)
