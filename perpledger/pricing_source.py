"""
pricing_source.py - Price oracles and per-operation price snapshots

The ledger never reads prices on its own: each operation receives a mapping
asset_id -> price. This module provides the oracle side of that contract.

Classes:
- PriceOracle: Protocol returning (price, timestamp) for an asset
- StaticPriceOracle: Fixed prices, stamped with the requested time
- TimeSeriesPriceOracle: Historical observations, most recent at or before a time

Functions:
- collect_prices: Snapshot several assets with a staleness bound
"""

from __future__ import annotations
from bisect import bisect_right
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from .core import MissingPrice, StalePrice, ZERO, to_decimal


PriceObservation = Tuple[Decimal, datetime]


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for price sources.

    get_price returns the price together with the time it was observed,
    or None when the asset has no observation at or before as_of.
    """

    def get_price(self, asset_id: str, as_of: datetime) -> Optional[PriceObservation]:
        ...


class StaticPriceOracle:
    """
    Oracle with constant prices.

    Observations are reported as taken at the requested time, so they are
    never stale.
    """

    def __init__(self, prices: Dict[str, Decimal]):
        self.prices = {asset: to_decimal(p) for asset, p in prices.items()}

    def get_price(self, asset_id: str, as_of: datetime) -> Optional[PriceObservation]:
        price = self.prices.get(asset_id)
        if price is None:
            return None
        return price, as_of

    def update_price(self, asset_id: str, price: Decimal):
        self.prices[asset_id] = to_decimal(price)

    def update_prices(self, prices: Dict[str, Decimal]):
        for asset_id, price in prices.items():
            self.update_price(asset_id, price)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} prices)"


class TimeSeriesPriceOracle:
    """
    Oracle with time-varying prices.

    Stores observations per asset and answers with the most recent one at
    or before the requested time.

    Examples:
        oracle = TimeSeriesPriceOracle({
            'BTC': [(t0, 50000), (t1, 51000)],
            'ARB': [(t0, 2)],
        })
        oracle.get_price('BTC', t1)  # (Decimal('51000'), t1)
    """

    def __init__(self, price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None):
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}
        if price_paths:
            for asset_id, path in price_paths.items():
                if not path:
                    continue
                self.price_history[asset_id] = sorted(
                    ((ts, to_decimal(p)) for ts, p in path), key=lambda x: x[0]
                )

    def add_price(self, asset_id: str, timestamp: datetime, price: Decimal):
        history = self.price_history.setdefault(asset_id, [])
        history.append((timestamp, to_decimal(price)))
        history.sort(key=lambda x: x[0])

    def add_prices(self, prices: Dict[str, Decimal], timestamp: datetime):
        for asset_id, price in prices.items():
            self.add_price(asset_id, timestamp, price)

    def get_price(self, asset_id: str, as_of: datetime) -> Optional[PriceObservation]:
        history = self.price_history.get(asset_id)
        if not history:
            return None
        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, as_of)
        if idx == 0:
            return None
        ts, price = history[idx - 1]
        return price, ts

    def __repr__(self):
        return f"TimeSeriesPriceOracle({len(self.price_history)} assets)"


def collect_prices(
    oracle: PriceOracle,
    asset_ids: Iterable[str],
    as_of: datetime,
    max_age: Optional[timedelta] = None,
) -> Dict[str, Decimal]:
    """
    Snapshot prices for an operation.

    Args:
        oracle: Source of observations.
        asset_ids: Assets the operation needs.
        as_of: Operation time.
        max_age: Reject observations older than this. None disables the check.

    Returns:
        Mapping asset_id -> price.

    Raises:
        MissingPrice: If an asset has no observation or a non-positive price.
        StalePrice: If an observation is older than max_age.
    """
    prices: Dict[str, Decimal] = {}
    for asset_id in asset_ids:
        observation = oracle.get_price(asset_id, as_of)
        if observation is None:
            raise MissingPrice(f"No price for {asset_id!r} at {as_of}")
        price, observed_at = observation
        if price <= ZERO:
            raise MissingPrice(f"Non-positive price {price} for {asset_id!r}")
        if max_age is not None and as_of - observed_at > max_age:
            raise StalePrice(
                f"Price for {asset_id!r} observed at {observed_at} is older than {max_age}"
            )
        prices[asset_id] = price
    return prices
