"""
tokens.py - Collateral token registry entries and native-decimal conversion

Inside the ledger every token quantity is an 18-decimal Decimal. Tokens keep
their native decimals (6 for USDC, 8 for WBTC, ...) only at the transfer
boundary, where amounts become integers in the token's smallest unit.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from .core import InvalidAmount, WAD_DECIMALS, to_wad


@dataclass(frozen=True, slots=True)
class CollateralToken:
    """
    A token accepted as trader collateral or pool liquidity.

    Attributes:
        symbol: Token symbol, the key used in balances.
        decimals: Native decimals of the token contract.
        price_id: Asset id used for pricing; defaults to the symbol.
        enabled: Disabled tokens cannot be deposited.
    """
    symbol: str
    decimals: int
    price_id: Optional[str] = None
    enabled: bool = True

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("Token symbol cannot be empty")
        if not 0 <= self.decimals <= WAD_DECIMALS:
            raise ValueError(f"Token decimals must be in [0, {WAD_DECIMALS}], got {self.decimals}")
        if self.price_id is None:
            object.__setattr__(self, "price_id", self.symbol)


def to_raw_amount(amount: Decimal, decimals: int) -> int:
    """
    Convert a normalized amount to the token's smallest unit, rounding down.

    >>> to_raw_amount(Decimal("1.5"), 6)
    1500000
    """
    if amount < 0:
        raise InvalidAmount(f"Cannot convert negative amount {amount}")
    return int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def from_raw_amount(raw: int, decimals: int) -> Decimal:
    """Convert an integer amount in the token's smallest unit to a normalized Decimal."""
    if raw < 0:
        raise InvalidAmount(f"Cannot convert negative raw amount {raw}")
    return to_wad(Decimal(raw).scaleb(-decimals))


def truncate_to_native(amount: Decimal, decimals: int) -> Decimal:
    """Drop precision the token cannot represent."""
    return from_raw_amount(to_raw_amount(amount, decimals), decimals)
