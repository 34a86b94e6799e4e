"""
market.py - Tradable markets and their backing pools
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Tuple

from .config import MarketConfig
from .core import MissingPrice, ZERO


@dataclass
class Market:
    """
    A single-direction perpetual market.

    A "long BTC" and a "short BTC" market are two Market records sharing an
    oracle. backing_pools is fixed at creation; its order is the leg order
    used for allocation ties and liquidation.
    """
    market_id: str
    is_long: bool
    backing_pools: Tuple[str, ...]
    config: MarketConfig

    def __post_init__(self):
        if not self.backing_pools:
            raise ValueError(f"market {self.market_id!r} needs at least one backing pool")
        if len(set(self.backing_pools)) != len(self.backing_pools):
            raise ValueError(f"market {self.market_id!r} lists a backing pool twice")

    @property
    def oracle_id(self) -> str:
        return self.config.require("oracle_id", self.market_id)

    def mark_price(self, prices: Mapping[str, Decimal]) -> Decimal:
        price = prices.get(self.oracle_id)
        if price is None:
            raise MissingPrice(f"No price for {self.oracle_id!r} (market {self.market_id!r})")
        if price <= ZERO:
            raise MissingPrice(f"Non-positive price {price} for market {self.market_id!r}")
        return price


@dataclass(frozen=True, slots=True)
class BackingPoolView:
    """Read-only snapshot of one pool's exposure to a market."""
    pool_id: str
    total_size: Decimal
    average_entry_price: Decimal
    cumulated_borrowing_per_usd: Decimal
    is_draining: bool


@dataclass(frozen=True, slots=True)
class MarketStateView:
    """Read-only snapshot of a market across all of its backing pools."""
    market_id: str
    is_long: bool
    total_size: Decimal
    pools: Tuple[BackingPoolView, ...]
