"""
borrowing.py - Borrowing fee curve and lazy accrual

Pure functions for the per-pool borrowing rate. A pool accrues a cumulative
borrowing rate per USD of notional for each market it backs:

    u         = reserved_usd / aum_usd            (clamped to [0, 1])
    apy       = base_apy + exp(k * u - b)
    delta     = apy * elapsed_seconds / seconds_per_year
    fee owed  = (cumulated - leg.entry_borrowing) * size * mark_price

Accrual is lazy: nothing changes until a pool-market pair is touched, and a
touch at the same timestamp is a no-op.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .core import ZERO, ONE


def calculate_utilization(reserved_usd: Decimal, aum_usd: Decimal) -> Decimal:
    """
    Fraction of pool AUM reserved by open positions.

    Returns 0 when nothing is reserved. Returns 1 when AUM is exhausted
    (zero or negative) while something is reserved.
    """
    if reserved_usd <= ZERO:
        return ZERO
    if aum_usd <= ZERO:
        return ONE
    return min(reserved_usd / aum_usd, ONE)


def calculate_borrowing_apy(base_apy: Decimal, k: Decimal, b: Decimal, utilization: Decimal) -> Decimal:
    """apy = base_apy + exp(k * utilization - b)."""
    return base_apy + (k * utilization - b).exp()


def calculate_elapsed_seconds(last_update: Optional[datetime], now: datetime) -> Decimal:
    """Seconds since the last update; zero for a pair that was never touched."""
    if last_update is None:
        return ZERO
    elapsed = (now - last_update).total_seconds()
    if elapsed < 0:
        raise ValueError(f"Borrowing clock cannot move backwards: {last_update} -> {now}")
    return Decimal(str(elapsed))


def calculate_accrual_delta(apy: Decimal, elapsed_seconds: Decimal, seconds_per_year: Decimal) -> Decimal:
    """Increase of the cumulative borrowing rate over elapsed_seconds."""
    if elapsed_seconds <= ZERO:
        return ZERO
    return apy * elapsed_seconds / seconds_per_year


def calculate_borrowing_fee(
    cumulated_borrowing_per_usd: Decimal,
    entry_borrowing_per_usd: Decimal,
    size: Decimal,
    mark_price: Decimal,
) -> Decimal:
    """
    Borrowing fee owed by a leg since its entry snapshot.

    Never negative: the cumulative rate only grows.
    """
    delta = cumulated_borrowing_per_usd - entry_borrowing_per_usd
    if delta <= ZERO or size <= ZERO:
        return ZERO
    return delta * size * mark_price
