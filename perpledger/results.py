"""
results.py - Immutable records returned by ledger operations

Every state-changing operation returns one of these frozen dataclasses. Each
carries the Transfer records describing exactly which tokens moved, and
renders as a box via __repr__ (also used by PerpLedger's verbose mode).
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple, Union

from .core import LiquidationRegime, OperationType, Transfer, render_box, render_transfers
from .liquidation import LiquidatedLeg


@dataclass(frozen=True, slots=True)
class LegChange:
    """
    How one pool leg changed in an open, close or ADL fill.

    realized_pnl_usd is signed from the trader's side: positive means the
    pool paid the trader.
    """
    pool_id: str
    size_delta: Decimal
    new_size: Decimal
    entry_price: Decimal
    realized_pnl_usd: Decimal
    borrowing_fee_usd: Decimal


@dataclass(frozen=True, slots=True)
class PositionResult:
    operation: OperationType
    position_id: str
    market_id: str
    is_long: bool
    size: Decimal
    trading_price: Decimal
    legs: Tuple[LegChange, ...]
    position_fee_usd: Decimal
    borrowing_fee_usd: Decimal
    realized_pnl_usd: Decimal
    collaterals: Tuple[Tuple[str, Decimal], ...]
    transfers: Tuple[Transfer, ...]
    timestamp: datetime

    def __repr__(self) -> str:
        side = "LONG" if self.is_long else "SHORT"
        legs = [
            f"{leg.pool_id}: {leg.size_delta:+} -> {leg.new_size} @ {leg.entry_price} "
            f"pnl={leg.realized_pnl_usd} borrowing={leg.borrowing_fee_usd}"
            for leg in self.legs
        ]
        return render_box(
            f"{self.operation.value}: {self.position_id} {self.market_id} ({side})",
            [
                ("size", self.size),
                ("trading_price", self.trading_price),
                ("position_fee_usd", self.position_fee_usd),
                ("borrowing_fee_usd", self.borrowing_fee_usd),
                ("realized_pnl_usd", self.realized_pnl_usd),
                ("collaterals", dict(self.collaterals)),
                ("timestamp", self.timestamp),
            ],
            [(f"Legs ({len(legs)}):", legs),
             (f"Transfers ({len(self.transfers)}):", render_transfers(self.transfers))],
        )


@dataclass(frozen=True, slots=True)
class LiquidationResult:
    position_id: str
    regime: LiquidationRegime
    margin_balance_usd: Decimal
    maintenance_margin_usd: Decimal
    legs: Tuple[LiquidatedLeg, ...]
    collaterals: Tuple[Tuple[str, Decimal], ...]
    transfers: Tuple[Transfer, ...]
    timestamp: datetime
    operation: OperationType = OperationType.LIQUIDATE

    @property
    def liquidation_fee_usd(self) -> Decimal:
        return sum((leg.liquidation_fee.applied for leg in self.legs), Decimal(0))

    @property
    def borrowing_fee_usd(self) -> Decimal:
        return sum((leg.borrowing_fee.applied for leg in self.legs), Decimal(0))

    def __repr__(self) -> str:
        legs = [
            f"{leg.market_id}/{leg.pool_id}: size={leg.size} pnl={leg.pnl_usd} settled={leg.pnl_settled_usd} "
            f"borrowing={leg.borrowing_fee.applied}/{leg.borrowing_fee.requested} "
            f"fee={leg.liquidation_fee.applied}/{leg.liquidation_fee.requested}"
            for leg in self.legs
        ]
        return render_box(
            f"LIQUIDATE: {self.position_id}",
            [
                ("regime", self.regime.value),
                ("margin_balance_usd", self.margin_balance_usd),
                ("maintenance_margin_usd", self.maintenance_margin_usd),
                ("collaterals", dict(self.collaterals)),
                ("timestamp", self.timestamp),
            ],
            [(f"Legs ({len(legs)}):", legs),
             (f"Transfers ({len(self.transfers)}):", render_transfers(self.transfers))],
        )


@dataclass(frozen=True, slots=True)
class ReallocationResult:
    """
    pool_payment_usd is what from_pool paid to_pool; negative means to_pool
    paid from_pool.
    """
    position_id: str
    market_id: str
    from_pool: str
    to_pool: str
    size: Decimal
    trading_price: Decimal
    pool_payment_usd: Decimal
    borrowing_fee_usd: Decimal
    from_leg_size: Decimal
    to_leg_size: Decimal
    to_leg_entry_price: Decimal
    transfers: Tuple[Transfer, ...]
    timestamp: datetime
    operation: OperationType = OperationType.REALLOCATE

    def __repr__(self) -> str:
        return render_box(
            f"REALLOCATE: {self.position_id} {self.market_id} {self.from_pool} -> {self.to_pool}",
            [
                ("size", self.size),
                ("trading_price", self.trading_price),
                ("pool_payment_usd", self.pool_payment_usd),
                ("borrowing_fee_usd", self.borrowing_fee_usd),
                ("from_leg_size", self.from_leg_size),
                ("to_leg", f"{self.to_leg_size} @ {self.to_leg_entry_price}"),
                ("timestamp", self.timestamp),
            ],
            [(f"Transfers ({len(self.transfers)}):", render_transfers(self.transfers))],
        )


@dataclass(frozen=True, slots=True)
class LiquidityResult:
    operation: OperationType
    pool_id: str
    provider: str
    token: str
    amount: Decimal
    fee: Decimal
    shares: Decimal
    nav: Decimal
    transfers: Tuple[Transfer, ...]
    timestamp: datetime

    def __repr__(self) -> str:
        return render_box(
            f"{self.operation.value}: {self.pool_id} ({self.provider})",
            [
                ("token", self.token),
                ("amount", self.amount),
                ("fee", self.fee),
                ("shares", self.shares),
                ("nav", self.nav),
                ("timestamp", self.timestamp),
            ],
            [(f"Transfers ({len(self.transfers)}):", render_transfers(self.transfers))],
        )


@dataclass(frozen=True, slots=True)
class CollateralResult:
    operation: OperationType
    position_id: str
    token: str
    amount: Decimal
    borrowing_fee_usd: Decimal
    collaterals: Tuple[Tuple[str, Decimal], ...]
    transfers: Tuple[Transfer, ...]
    timestamp: datetime
    swap_token: Optional[str] = None

    def __repr__(self) -> str:
        return render_box(
            f"{self.operation.value}: {self.position_id}",
            [
                ("token", self.token),
                ("amount", self.amount),
                ("swap_token", self.swap_token),
                ("borrowing_fee_usd", self.borrowing_fee_usd),
                ("collaterals", dict(self.collaterals)),
                ("timestamp", self.timestamp),
            ],
            [(f"Transfers ({len(self.transfers)}):", render_transfers(self.transfers))],
        )


@dataclass(frozen=True, slots=True)
class BorrowingUpdate:
    pool_id: str
    market_id: str
    utilization: Decimal
    apy: Decimal
    accrued: Decimal
    cumulated_borrowing_per_usd: Decimal
    timestamp: datetime
    operation: OperationType = OperationType.UPDATE_BORROWING

    @property
    def transfers(self) -> Tuple[Transfer, ...]:
        return ()

    def __repr__(self) -> str:
        return render_box(
            f"UPDATE_BORROWING: {self.pool_id} {self.market_id}",
            [
                ("utilization", self.utilization),
                ("apy", self.apy),
                ("accrued", self.accrued),
                ("cumulated_borrowing_per_usd", self.cumulated_borrowing_per_usd),
                ("timestamp", self.timestamp),
            ],
        )


OperationResult = Union[
    PositionResult, LiquidationResult, ReallocationResult,
    LiquidityResult, CollateralResult, BorrowingUpdate,
]


@dataclass(frozen=True, slots=True)
class OperationRecord:
    """An entry of PerpLedger.operation_log."""
    sequence: int
    exec_id: str
    timestamp: datetime
    result: OperationResult

    @property
    def operation(self) -> OperationType:
        return self.result.operation
