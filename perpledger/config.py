"""
config.py - Immutable configuration records for engine, pools and markets

Configuration is split the same way the ledger state is:

- EngineConfig: ledger-wide defaults (base borrowing APY, year length, dust)
- PoolConfig: per-pool borrowing curve, liquidity cap and flags
- AdlConfig: per (pool, market) reserve / ADL trigger / ADL cap rates
- MarketConfig: per-market fee, margin and lot parameters

Every record is a frozen dataclass that validates itself in __post_init__.
The load_* adapters build records from raw mappings (e.g. parsed JSON/YAML),
converting numeric values to Decimal.

Market fields are Optional so that a partially configured market can exist;
require() raises EssentialConfigNotSet when an operation needs a field that
was never set.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any, Mapping, Optional

from .core import (
    EssentialConfigNotSet, ZERO, ONE,
    SECONDS_PER_YEAR, DEFAULT_DUST_THRESHOLD_USD, to_decimal,
)


def _decimal_fields(obj: Any) -> None:
    """Convert every numeric field of a frozen dataclass to Decimal in place."""
    for f in fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, (int, float, str)) and not isinstance(value, bool):
            if f.type in ("Decimal", "Optional[Decimal]"):
                object.__setattr__(obj, f.name, to_decimal(value))


def _check_rate(name: str, value: Optional[Decimal], upper: Optional[Decimal] = None) -> None:
    if value is None:
        return
    if value < ZERO:
        raise ValueError(f"{name} must be non-negative, got {value}")
    if upper is not None and value > upper:
        raise ValueError(f"{name} must be <= {upper}, got {value}")


# ============================================================================
# ENGINE
# ============================================================================

@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    Ledger-wide parameters.

    Attributes:
        borrowing_base_apy: Default base APY for pools without their own.
        seconds_per_year: Divisor that turns an APY into a per-second rate.
        dust_threshold_usd: Legs and collaterals worth less are dropped.
    """
    borrowing_base_apy: Decimal = ZERO
    seconds_per_year: Decimal = SECONDS_PER_YEAR
    dust_threshold_usd: Decimal = DEFAULT_DUST_THRESHOLD_USD

    def __post_init__(self):
        _decimal_fields(self)
        _check_rate("borrowing_base_apy", self.borrowing_base_apy)
        if self.seconds_per_year <= ZERO:
            raise ValueError(f"seconds_per_year must be positive, got {self.seconds_per_year}")
        if self.dust_threshold_usd < ZERO:
            raise ValueError("dust_threshold_usd must be non-negative")


# ============================================================================
# POOL
# ============================================================================

@dataclass(frozen=True, slots=True)
class PoolConfig:
    """
    Per-pool parameters.

    The borrowing curve is apy = base_apy + exp(borrowing_k * u - borrowing_b).

    Attributes:
        borrowing_k: Steepness of the exponential term.
        borrowing_b: Offset of the exponential term.
        liquidity_cap_usd: Upper bound on pool AUM, also caps capacity.
        liquidity_fee_rate: Fee charged on add/remove liquidity.
        borrowing_base_apy: Overrides EngineConfig.borrowing_base_apy when set.
        is_draining: Draining pools take no new allocation.
        is_high_priority: High-priority pools are filled before the others.
    """
    borrowing_k: Decimal
    borrowing_b: Decimal
    liquidity_cap_usd: Decimal
    liquidity_fee_rate: Decimal = ZERO
    borrowing_base_apy: Optional[Decimal] = None
    is_draining: bool = False
    is_high_priority: bool = False

    def __post_init__(self):
        _decimal_fields(self)
        if self.liquidity_cap_usd < ZERO:
            raise ValueError(f"liquidity_cap_usd must be non-negative, got {self.liquidity_cap_usd}")
        _check_rate("liquidity_fee_rate", self.liquidity_fee_rate, ONE)
        _check_rate("borrowing_base_apy", self.borrowing_base_apy)

    def base_apy(self, engine: EngineConfig) -> Decimal:
        if self.borrowing_base_apy is not None:
            return self.borrowing_base_apy
        return engine.borrowing_base_apy


@dataclass(frozen=True, slots=True)
class AdlConfig:
    """
    Per (pool, market) risk rates.

    Attributes:
        reserve_rate: Fraction of notional reserved against pool AUM.
        trigger_rate: Unrealized PnL / entry notional above which ADL is allowed.
        max_pnl_rate: Cap on realized PnL / entry notional for ADL and display AUM.
    """
    reserve_rate: Decimal
    trigger_rate: Decimal
    max_pnl_rate: Decimal

    def __post_init__(self):
        _decimal_fields(self)
        if self.reserve_rate <= ZERO:
            raise ValueError(f"reserve_rate must be positive, got {self.reserve_rate}")
        _check_rate("trigger_rate", self.trigger_rate)
        _check_rate("max_pnl_rate", self.max_pnl_rate)


# ============================================================================
# MARKET
# ============================================================================

@dataclass(frozen=True, slots=True)
class MarketConfig:
    """
    Per-market parameters. All fields may be left unset.

    Attributes:
        oracle_id: Asset id used to look up the market's mark price.
        position_fee_rate: Fee on size * price when opening or closing.
        liquidation_fee_rate: Fee on size * price when liquidating.
        initial_margin_rate: Required margin / entry notional after open or withdraw.
        maintenance_margin_rate: Required margin / mark notional to avoid liquidation.
        lot_size: Allocation granularity; sizes must be multiples of it.
        max_open_interest_usd: Optional cap on total mark notional across pools.
    """
    oracle_id: Optional[str] = None
    position_fee_rate: Optional[Decimal] = None
    liquidation_fee_rate: Optional[Decimal] = None
    initial_margin_rate: Optional[Decimal] = None
    maintenance_margin_rate: Optional[Decimal] = None
    lot_size: Optional[Decimal] = None
    max_open_interest_usd: Optional[Decimal] = None

    def __post_init__(self):
        _decimal_fields(self)
        _check_rate("position_fee_rate", self.position_fee_rate, ONE)
        _check_rate("liquidation_fee_rate", self.liquidation_fee_rate, ONE)
        _check_rate("initial_margin_rate", self.initial_margin_rate, ONE)
        _check_rate("maintenance_margin_rate", self.maintenance_margin_rate, ONE)
        if self.lot_size is not None and self.lot_size <= ZERO:
            raise ValueError(f"lot_size must be positive, got {self.lot_size}")
        if (self.initial_margin_rate is not None and self.maintenance_margin_rate is not None
                and self.maintenance_margin_rate > self.initial_margin_rate):
            raise ValueError("maintenance_margin_rate must not exceed initial_margin_rate")

    def require(self, name: str, market_id: str = "") -> Any:
        """Return a configured field or raise EssentialConfigNotSet."""
        value = getattr(self, name)
        if value is None:
            raise EssentialConfigNotSet(f"market {market_id!r}: {name} is not set")
        return value


# ============================================================================
# LOADERS
# ============================================================================

def _optional(raw: Mapping[str, Any], key: str) -> Optional[Decimal]:
    value = raw.get(key)
    return None if value is None else to_decimal(value)


def _required(raw: Mapping[str, Any], key: str, what: str) -> Decimal:
    if raw.get(key) is None:
        raise EssentialConfigNotSet(f"{what}: {key} is not set")
    return to_decimal(raw[key])


def load_engine_config(raw: Mapping[str, Any]) -> EngineConfig:
    return EngineConfig(
        borrowing_base_apy=to_decimal(raw.get("borrowing_base_apy", ZERO)),
        seconds_per_year=to_decimal(raw.get("seconds_per_year", SECONDS_PER_YEAR)),
        dust_threshold_usd=to_decimal(raw.get("dust_threshold_usd", DEFAULT_DUST_THRESHOLD_USD)),
    )


def load_pool_config(raw: Mapping[str, Any]) -> PoolConfig:
    """
    Build a PoolConfig from a raw mapping.

    Required keys: borrowing_k, borrowing_b, liquidity_cap_usd.

    Raises:
        EssentialConfigNotSet: If a required key is missing.
    """
    return PoolConfig(
        borrowing_k=_required(raw, "borrowing_k", "pool"),
        borrowing_b=_required(raw, "borrowing_b", "pool"),
        liquidity_cap_usd=_required(raw, "liquidity_cap_usd", "pool"),
        liquidity_fee_rate=to_decimal(raw.get("liquidity_fee_rate", ZERO)),
        borrowing_base_apy=_optional(raw, "borrowing_base_apy"),
        is_draining=bool(raw.get("is_draining", False)),
        is_high_priority=bool(raw.get("is_high_priority", False)),
    )


def load_adl_config(raw: Mapping[str, Any]) -> AdlConfig:
    return AdlConfig(
        reserve_rate=_required(raw, "reserve_rate", "adl"),
        trigger_rate=_required(raw, "trigger_rate", "adl"),
        max_pnl_rate=_required(raw, "max_pnl_rate", "adl"),
    )


def load_market_config(raw: Mapping[str, Any]) -> MarketConfig:
    return MarketConfig(
        oracle_id=raw.get("oracle_id"),
        position_fee_rate=_optional(raw, "position_fee_rate"),
        liquidation_fee_rate=_optional(raw, "liquidation_fee_rate"),
        initial_margin_rate=_optional(raw, "initial_margin_rate"),
        maintenance_margin_rate=_optional(raw, "maintenance_margin_rate"),
        lot_size=_optional(raw, "lot_size"),
        max_open_interest_usd=_optional(raw, "max_open_interest_usd"),
    )
