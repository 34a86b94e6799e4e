"""
liquidation.py - Liquidation waterfall and auto-deleveraging rules

Liquidation walks every leg of an unsafe account and settles, in order:

    1. trader PnL       (loss to the pool, or profit from the pool)
    2. borrowing fee
    3. liquidation fee  (liquidation_fee_rate * size * mark)

Each charge is a waterfall step against the margin still available: the
applied part is min(requested, remaining) and the rest is a shortfall the
pool absorbs. Nothing ever drives collateral negative.

Auto-deleveraging (ADL) is allowed for a leg whose unrealized PnL over entry
notional exceeds the pool's trigger_rate; the forced close then caps the
realized PnL at max_pnl_rate * entry notional.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Tuple

from .core import LiquidationRegime, ZERO, clip_at_zero
from .pool import calculate_capped_pnl


@dataclass(frozen=True, slots=True)
class WaterfallStep:
    """A charge requested against remaining margin and the part actually paid."""
    requested: Decimal
    applied: Decimal

    @property
    def shortfall(self) -> Decimal:
        return self.requested - self.applied


@dataclass(frozen=True, slots=True)
class LiquidatedLeg:
    """
    Settlement of one leg during liquidation.

    pnl_usd is the trader PnL at mark (signed); pnl_settled_usd is what
    actually moved (signed, clipped by collateral for losses and by pool
    balance for profits).
    """
    market_id: str
    pool_id: str
    size: Decimal
    mark_price: Decimal
    pnl_usd: Decimal
    pnl_settled_usd: Decimal
    borrowing_fee: WaterfallStep
    liquidation_fee: WaterfallStep

    @property
    def loss_shortfall_usd(self) -> Decimal:
        if self.pnl_usd >= ZERO:
            return ZERO
        return self.pnl_settled_usd - self.pnl_usd


def apply_waterfall_step(remaining: Decimal, requested: Decimal) -> Tuple[WaterfallStep, Decimal]:
    """
    Charge requested against remaining margin.

    Returns:
        (step, remaining margin after the step). Remaining never goes below
        zero through this function.
    """
    if requested <= ZERO:
        return WaterfallStep(requested=ZERO, applied=ZERO), remaining
    applied = min(requested, clip_at_zero(remaining))
    return WaterfallStep(requested=requested, applied=applied), remaining - applied


def calculate_liquidation_fee(size: Decimal, mark_price: Decimal, liquidation_fee_rate: Decimal) -> Decimal:
    return size * mark_price * liquidation_fee_rate


def classify_liquidation(legs: Iterable[LiquidatedLeg]) -> LiquidationRegime:
    """
    INSOLVENT when any loss or borrowing fee fell short, PARTIALLY_CHARGED when
    only liquidation fees fell short, FULLY_CHARGED otherwise.
    """
    partial = False
    for leg in legs:
        if leg.loss_shortfall_usd > ZERO or leg.borrowing_fee.shortfall > ZERO:
            return LiquidationRegime.INSOLVENT
        if leg.liquidation_fee.shortfall > ZERO:
            partial = True
    return LiquidationRegime.PARTIALLY_CHARGED if partial else LiquidationRegime.FULLY_CHARGED


def calculate_pnl_rate(pnl: Decimal, size: Decimal, entry_price: Decimal) -> Decimal:
    """PnL as a fraction of entry notional."""
    notional = size * entry_price
    if notional == ZERO:
        return ZERO
    return pnl / notional


def is_deleverage_triggered(pnl: Decimal, size: Decimal, entry_price: Decimal, trigger_rate: Decimal) -> bool:
    return calculate_pnl_rate(pnl, size, entry_price) > trigger_rate


def calculate_deleverage_pnl(pnl: Decimal, size: Decimal, entry_price: Decimal, max_pnl_rate: Decimal) -> Decimal:
    """Realized PnL of an ADL fill, capped at max_pnl_rate * entry notional."""
    return calculate_capped_pnl(pnl, size, entry_price, max_pnl_rate)
