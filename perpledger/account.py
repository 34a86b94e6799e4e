"""
account.py - Position accounts, legs and position identifiers

A position account holds ordered collateral balances and, per market, one
PoolLeg per backing pool that carries part of the position.

Invariant maintained by the ledger: a market's legs are removed together
with their size, so a leg present in `positions` always has size > 0 and a
removed leg carries no entry values.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Tuple

from .core import ZERO


POSITION_ID_SEPARATOR = ":"


def encode_position_id(owner: str, index: int) -> str:
    """
    Build a position id from an owner and a per-owner account index.

    >>> encode_position_id("0xabc", 1)
    '0xabc:1'
    """
    if not owner or POSITION_ID_SEPARATOR in owner:
        raise ValueError(f"Invalid owner {owner!r}")
    if index < 0:
        raise ValueError(f"Account index must be non-negative, got {index}")
    return f"{owner}{POSITION_ID_SEPARATOR}{index}"


def decode_position_id(position_id: str) -> Tuple[str, int]:
    owner, sep, index = position_id.rpartition(POSITION_ID_SEPARATOR)
    if not sep or not owner or not index.isdigit():
        raise ValueError(f"Malformed position id {position_id!r}")
    return owner, int(index)


@dataclass(frozen=True, slots=True)
class PoolLeg:
    """
    The slice of a position carried by one pool.

    entry_price and entry_borrowing_per_usd are size-weighted blends of
    every allocation the leg received.
    """
    pool_id: str
    size: Decimal
    entry_price: Decimal
    entry_borrowing_per_usd: Decimal

    def __post_init__(self):
        if self.size <= ZERO:
            raise ValueError(f"PoolLeg size must be positive, got {self.size}")

    @property
    def entry_notional(self) -> Decimal:
        return self.size * self.entry_price


@dataclass
class PositionAccount:
    """
    Mutable account record owned by the ledger.

    collaterals preserves insertion order; the default collateral policy
    debits tokens in that order.
    """
    position_id: str
    owner: str
    collaterals: Dict[str, Decimal] = field(default_factory=dict)
    positions: Dict[str, Dict[str, PoolLeg]] = field(default_factory=dict)

    def collateral(self, token: str) -> Decimal:
        return self.collaterals.get(token, ZERO)

    def credit(self, token: str, amount: Decimal) -> None:
        self.collaterals[token] = self.collateral(token) + amount

    def debit(self, token: str, amount: Decimal) -> None:
        remaining = self.collateral(token) - amount
        if remaining < ZERO:
            raise ValueError(f"account {self.position_id!r} holds less than {amount} {token}")
        self.collaterals[token] = remaining

    def legs(self, market_id: str) -> Dict[str, PoolLeg]:
        return self.positions.get(market_id, {})

    def total_size(self, market_id: str) -> Decimal:
        return sum((leg.size for leg in self.legs(market_id).values()), ZERO)

    def has_positions(self) -> bool:
        return any(self.positions.values())


@dataclass(frozen=True, slots=True)
class PositionView:
    """Read-only snapshot of an account's position in one market."""
    market_id: str
    is_long: bool
    total_size: Decimal
    legs: Tuple[PoolLeg, ...]


@dataclass(frozen=True, slots=True)
class AccountView:
    """Read-only snapshot of an account."""
    position_id: str
    owner: str
    collaterals: Tuple[Tuple[str, Decimal], ...]
    positions: Tuple[PositionView, ...]
