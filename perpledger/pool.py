"""
pool.py - Collateral pools: liquidity, per-market exposure and AUM

A collateral pool holds LP liquidity (possibly in several tokens, since
trader losses are paid in whatever collateral the trader holds) and acts as
the counterparty for every leg allocated to it.

For each market it backs, the pool keeps a PoolMarketState:
    total_size, average_entry_price   aggregate exposure (cost basis)
    cumulated_borrowing_per_usd       lazily accrued borrowing rate
    last_borrowing_update_time        last touch
    is_reallocated                    exposure inherited through reallocation

Two AUM figures exist:
    aum_usd            = liquidity_usd - trader_pnl          (settlement)
    estimated_aum_usd  = liquidity_usd - capped_trader_pnl   (display, LP NAV)
where capped_trader_pnl limits each market's upside at
max_pnl_rate * size * entry_price.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from .borrowing import (
    calculate_accrual_delta, calculate_borrowing_apy,
    calculate_elapsed_seconds, calculate_utilization,
)
from .config import AdlConfig, EngineConfig, PoolConfig
from .core import EssentialConfigNotSet, MissingPrice, ZERO, ONE, to_wad


# ============================================================================
# PER-MARKET STATE
# ============================================================================

@dataclass(frozen=True, slots=True)
class PoolMarketState:
    """
    A pool's aggregate exposure to one market.

    Replaced (never mutated) whenever it changes.
    """
    is_long: bool
    total_size: Decimal = ZERO
    average_entry_price: Decimal = ZERO
    cumulated_borrowing_per_usd: Decimal = ZERO
    last_borrowing_update_time: Optional[datetime] = None
    is_reallocated: bool = False

    def __post_init__(self):
        if self.total_size < ZERO:
            raise ValueError(f"total_size cannot be negative, got {self.total_size}")
        if self.total_size == ZERO and self.average_entry_price != ZERO:
            raise ValueError("average_entry_price must be zero when total_size is zero")


@dataclass(frozen=True, slots=True)
class BorrowingTouch:
    """Result of touching one pool-market pair."""
    state: PoolMarketState
    utilization: Decimal
    apy: Decimal
    accrued: Decimal


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def calculate_position_pnl(is_long: bool, size: Decimal, entry_price: Decimal, mark_price: Decimal) -> Decimal:
    """Trader PnL of size units entered at entry_price, valued at mark_price."""
    if size == ZERO:
        return ZERO
    if is_long:
        return (mark_price - entry_price) * size
    return (entry_price - mark_price) * size


def calculate_capped_pnl(pnl: Decimal, size: Decimal, entry_price: Decimal, max_pnl_rate: Decimal) -> Decimal:
    """Cap trader upside at max_pnl_rate * entry notional. Losses are not capped."""
    cap = max_pnl_rate * size * entry_price
    return min(pnl, cap)


def calculate_blended_entry(
    old_size: Decimal, old_value: Decimal, added_size: Decimal, added_value: Decimal
) -> Decimal:
    """Size-weighted blend, used for entry prices and entry borrowing snapshots."""
    new_size = old_size + added_size
    if new_size == ZERO:
        return ZERO
    return to_wad((old_size * old_value + added_size * added_value) / new_size)


def calculate_reduced_entry(
    total_size: Decimal, average_entry: Decimal, removed_size: Decimal, removed_entry: Decimal
) -> Decimal:
    """
    Average entry of what is left after removing a slice with its own entry.

    Inverse of calculate_blended_entry: the remaining average stays the
    size-weighted mean of the legs still open. Zero once nothing is left.
    """
    remaining = total_size - removed_size
    if remaining <= ZERO:
        return ZERO
    return to_wad((total_size * average_entry - removed_size * removed_entry) / remaining)


def calculate_reference_price(state: PoolMarketState, mark_price: Decimal) -> Decimal:
    """
    Price used to value a pool's reserve.

    Pools holding exposure inherited through reallocation use the live mark;
    all others use their own average entry price.
    """
    if state.is_reallocated:
        return mark_price
    return state.average_entry_price


def calculate_reserved_usd(state: PoolMarketState, reserve_rate: Decimal, mark_price: Decimal) -> Decimal:
    if state.total_size == ZERO:
        return ZERO
    return state.total_size * calculate_reference_price(state, mark_price) * reserve_rate


def calculate_liquidity_usd(balances: Mapping[str, Decimal], token_prices: Mapping[str, Decimal]) -> Decimal:
    total = ZERO
    for token, amount in balances.items():
        if amount == ZERO:
            continue
        if token not in token_prices:
            raise MissingPrice(f"No price for pool token {token!r}")
        total += amount * token_prices[token]
    return total


def calculate_pool_pnl_usd(
    market_states: Mapping[str, PoolMarketState],
    adl_configs: Mapping[str, AdlConfig],
    market_prices: Mapping[str, Decimal],
    capped: bool = False,
) -> Decimal:
    """
    Aggregate trader PnL against the pool across the markets it backs.

    Markets with no open size need no price.
    """
    total = ZERO
    for market_id, state in market_states.items():
        if state.total_size == ZERO:
            continue
        if market_id not in market_prices:
            raise MissingPrice(f"No mark price for market {market_id!r}")
        pnl = calculate_position_pnl(
            state.is_long, state.total_size, state.average_entry_price, market_prices[market_id]
        )
        if capped:
            if market_id not in adl_configs:
                raise EssentialConfigNotSet(f"No ADL config for market {market_id!r}")
            pnl = calculate_capped_pnl(
                pnl, state.total_size, state.average_entry_price, adl_configs[market_id].max_pnl_rate
            )
        total += pnl
    return total


def calculate_borrowing_touch(
    state: PoolMarketState,
    config: PoolConfig,
    adl: AdlConfig,
    engine: EngineConfig,
    aum_usd: Decimal,
    mark_price: Decimal,
    now: datetime,
) -> BorrowingTouch:
    """
    Advance a pool-market pair's cumulative borrowing rate to now.

    Utilization is measured on the state before the touch. The first touch
    only stamps the time.
    """
    reserved = calculate_reserved_usd(state, adl.reserve_rate, mark_price)
    utilization = calculate_utilization(reserved, aum_usd)
    apy = calculate_borrowing_apy(config.base_apy(engine), config.borrowing_k, config.borrowing_b, utilization)
    elapsed = calculate_elapsed_seconds(state.last_borrowing_update_time, now)
    accrued = to_wad(calculate_accrual_delta(apy, elapsed, engine.seconds_per_year))
    new_state = replace(
        state,
        cumulated_borrowing_per_usd=state.cumulated_borrowing_per_usd + accrued,
        last_borrowing_update_time=now,
    )
    return BorrowingTouch(state=new_state, utilization=utilization, apy=apy, accrued=accrued)


def calculate_nav(estimated_aum_usd: Decimal, share_supply: Decimal) -> Decimal:
    """Net asset value per LP share; 1 for an empty pool."""
    if share_supply == ZERO:
        return ONE
    return estimated_aum_usd / share_supply


# ============================================================================
# POOL
# ============================================================================

@dataclass
class CollateralPool:
    """
    Mutable pool record owned by the ledger.

    Only PerpLedger mutates pools; everything else reads them.
    """
    pool_id: str
    collateral_token: str
    config: PoolConfig
    adl_configs: Dict[str, AdlConfig] = field(default_factory=dict)
    market_states: Dict[str, PoolMarketState] = field(default_factory=dict)
    liquidity_balances: Dict[str, Decimal] = field(default_factory=dict)
    share_supply: Decimal = ZERO
    share_balances: Dict[str, Decimal] = field(default_factory=dict)

    def adl_config(self, market_id: str) -> AdlConfig:
        try:
            return self.adl_configs[market_id]
        except KeyError:
            raise EssentialConfigNotSet(
                f"pool {self.pool_id!r}: no reserve/ADL config for market {market_id!r}"
            ) from None

    def market_state(self, market_id: str) -> PoolMarketState:
        return self.market_states[market_id]

    def balance(self, token: str) -> Decimal:
        return self.liquidity_balances.get(token, ZERO)

    def credit(self, token: str, amount: Decimal) -> None:
        self.liquidity_balances[token] = self.balance(token) + amount

    def debit(self, token: str, amount: Decimal) -> None:
        remaining = self.balance(token) - amount
        if remaining < ZERO:
            raise ValueError(f"pool {self.pool_id!r} cannot pay {amount} {token}")
        self.liquidity_balances[token] = remaining

    def liquidity_usd(self, token_prices: Mapping[str, Decimal]) -> Decimal:
        return calculate_liquidity_usd(self.liquidity_balances, token_prices)

    def aum_usd(self, token_prices: Mapping[str, Decimal], market_prices: Mapping[str, Decimal]) -> Decimal:
        """Settlement AUM: liquidity minus uncapped trader PnL."""
        pnl = calculate_pool_pnl_usd(self.market_states, self.adl_configs, market_prices)
        return self.liquidity_usd(token_prices) - pnl

    def estimated_aum_usd(self, token_prices: Mapping[str, Decimal],
                          market_prices: Mapping[str, Decimal]) -> Decimal:
        """Display AUM: liquidity minus trader PnL capped per market."""
        pnl = calculate_pool_pnl_usd(self.market_states, self.adl_configs, market_prices, capped=True)
        return self.liquidity_usd(token_prices) - pnl

    def nav(self, token_prices: Mapping[str, Decimal], market_prices: Mapping[str, Decimal]) -> Decimal:
        return calculate_nav(self.estimated_aum_usd(token_prices, market_prices), self.share_supply)

    def reserved_usd(self, market_id: str, mark_price: Decimal) -> Decimal:
        state = self.market_states[market_id]
        return calculate_reserved_usd(state, self.adl_config(market_id).reserve_rate, mark_price)

    def capacity_usd(self, aum_usd: Decimal) -> Decimal:
        """AUM available to back reserves, bounded by the liquidity cap."""
        return min(aum_usd, self.config.liquidity_cap_usd)

    def open_markets(self) -> Tuple[str, ...]:
        return tuple(m for m, s in self.market_states.items() if s.total_size > ZERO)
