"""
Currency table.

Built once at startup and passed explicitly to the services that need it.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Iterable, Mapping


@dataclass(frozen=True)
class CurrencyInfo:
    """Display and precision information for a currency."""

    code: str
    symbol: str
    name: str
    decimals: int = 2

    def quantize(self, amount: Decimal) -> Decimal:
        """Round an amount to this currency's minor unit."""
        exponent = Decimal(1).scaleb(-self.decimals)
        return amount.quantize(exponent, rounding=ROUND_HALF_UP)

    def format(self, amount: Decimal) -> str:
        """Format an amount with symbol and thousands separators."""
        return f"{self.symbol}{self.quantize(amount):,.{self.decimals}f}"


DEFAULT_CURRENCIES: tuple[CurrencyInfo, ...] = (
    # Africa
    CurrencyInfo("ZAR", "R", "South African Rand"),
    CurrencyInfo("NGN", "₦", "Nigerian Naira"),
    CurrencyInfo("EGP", "E£", "Egyptian Pound"),
    CurrencyInfo("MAD", "DH", "Moroccan Dirham"),
    CurrencyInfo("KES", "KSh", "Kenyan Shilling"),
    CurrencyInfo("GHS", "GH₵", "Ghanaian Cedi"),
    CurrencyInfo("TND", "DT", "Tunisian Dinar", 3),
    CurrencyInfo("UGX", "USh", "Ugandan Shilling", 0),
    CurrencyInfo("TZS", "TSh", "Tanzanian Shilling", 0),
    CurrencyInfo("RWF", "FRw", "Rwandan Franc", 0),
    CurrencyInfo("XOF", "CFA", "West African CFA Franc", 0),
    CurrencyInfo("XAF", "FCFA", "Central African CFA Franc", 0),
    # Global
    CurrencyInfo("USD", "$", "US Dollar"),
    CurrencyInfo("EUR", "€", "Euro"),
    CurrencyInfo("GBP", "£", "British Pound"),
    CurrencyInfo("CAD", "C$", "Canadian Dollar"),
    CurrencyInfo("AUD", "A$", "Australian Dollar"),
    CurrencyInfo("JPY", "¥", "Japanese Yen", 0),
    CurrencyInfo("CNY", "¥", "Chinese Yuan"),
    CurrencyInfo("INR", "₹", "Indian Rupee"),
    CurrencyInfo("BRL", "R$", "Brazilian Real"),
)

CurrencyTable = Mapping[str, CurrencyInfo]


def build_currency_table(
    currencies: Iterable[CurrencyInfo] = DEFAULT_CURRENCIES,
    allowed: Iterable[str] | None = None,
) -> CurrencyTable:
    """
    Build an immutable currency lookup.

    Args:
        currencies: Currency definitions to include
        allowed: Optional whitelist of ISO codes

    Returns:
        Read-only mapping of ISO code to CurrencyInfo
    """
    allowed_codes = {code.upper() for code in allowed} if allowed else None
    table = {
        info.code: info
        for info in currencies
        if allowed_codes is None or info.code in allowed_codes
    }
    return MappingProxyType(table)
