"""
margin.py - Account margin checks

    margin_balance    = collateral_usd + sum(leg pnl at mark) - sum(pending borrowing fees)
    initial margin    = sum(size * entry_price * initial_margin_rate)
    maintenance margin= sum(size * mark_price * maintenance_margin_rate)

Initial margin is priced at entry and guards open/withdraw; maintenance
margin is priced at mark and decides liquidation. An account is safe when
its margin balance is at least the requirement.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from .core import ZERO
from .pool import calculate_position_pnl


@dataclass(frozen=True, slots=True)
class LegExposure:
    """One leg's contribution to an account's margin."""
    market_id: str
    pool_id: str
    is_long: bool
    size: Decimal
    entry_price: Decimal
    mark_price: Decimal
    borrowing_fee_usd: Decimal
    initial_margin_rate: Decimal
    maintenance_margin_rate: Decimal

    @property
    def pnl_usd(self) -> Decimal:
        return calculate_position_pnl(self.is_long, self.size, self.entry_price, self.mark_price)

    @property
    def entry_notional(self) -> Decimal:
        return self.size * self.entry_price

    @property
    def mark_notional(self) -> Decimal:
        return self.size * self.mark_price


@dataclass(frozen=True, slots=True)
class MarginStatus:
    """Margin snapshot of one account."""
    collateral_usd: Decimal
    pnl_usd: Decimal
    borrowing_fee_usd: Decimal
    margin_balance_usd: Decimal
    initial_margin_usd: Decimal
    maintenance_margin_usd: Decimal

    @property
    def is_initial_margin_safe(self) -> bool:
        return self.margin_balance_usd >= self.initial_margin_usd

    @property
    def is_maintenance_margin_safe(self) -> bool:
        return self.margin_balance_usd >= self.maintenance_margin_usd


def calculate_margin_status(collateral_usd: Decimal, exposures: Iterable[LegExposure]) -> MarginStatus:
    pnl = borrowing = initial = maintenance = ZERO
    for exposure in exposures:
        pnl += exposure.pnl_usd
        borrowing += exposure.borrowing_fee_usd
        initial += exposure.entry_notional * exposure.initial_margin_rate
        maintenance += exposure.mark_notional * exposure.maintenance_margin_rate
    return MarginStatus(
        collateral_usd=collateral_usd,
        pnl_usd=pnl,
        borrowing_fee_usd=borrowing,
        margin_balance_usd=collateral_usd + pnl - borrowing,
        initial_margin_usd=initial,
        maintenance_margin_usd=maintenance,
    )
