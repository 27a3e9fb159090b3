"""
Fixed-rate currency conversion for card gateways.

Gateways only accept a handful of currencies. Contributions in any other
currency (typically XOF) are converted to the gateway's settlement currency
before initiation, and converted back when the project is credited.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping, Tuple

from crowdpay.config import ProviderConfig
from crowdpay.exceptions import UnsupportedCurrency

CENT = Decimal("0.01")
# Numeric(14, 2) columns
MAX_AMOUNT = Decimal("999999999999.99")


class CurrencyConverter:
    """
    Converts amounts through a table of rates against one reference currency.

    A rate is the number of reference units per unit of the currency, so with
    XOF as reference, {"XOF": 1, "USD": 600} means 1 USD = 600 XOF.
    """

    def __init__(self, rates: Mapping[str, Decimal]):
        self.rates: Dict[str, Decimal] = {
            code.upper(): Decimal(str(rate)) for code, rate in rates.items()
        }

    @staticmethod
    def quantize(amount: Decimal) -> Decimal:
        """Round to the precision amounts are stored with."""
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)

    def rate(self, currency: str) -> Decimal:
        try:
            return self.rates[currency.upper()]
        except KeyError:
            raise UnsupportedCurrency(currency) from None

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        """
        Convert amount between two currencies, rounded to cents.

        Raises:
            UnsupportedCurrency: If either currency has no configured rate
        """
        if from_currency.upper() == to_currency.upper():
            return amount
        return self.quantize(amount * self.rate(from_currency) / self.rate(to_currency))

    def for_provider(
        self, amount: Decimal, currency: str, config: ProviderConfig
    ) -> Tuple[Decimal, str]:
        """
        Express an amount in a currency the provider accepts.

        Returns:
            Tuple[Decimal, str]: (amount, currency) to send to the provider
        """
        currency = currency.upper()
        if config.supports_currency(currency) or not config.settlement_currency:
            return amount, currency
        return self.convert(amount, currency, config.settlement_currency), config.settlement_currency
