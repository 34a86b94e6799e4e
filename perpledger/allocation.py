"""
allocation.py - Splitting position size across backing pools

Opening:
    Each pool offers a residual size, i.e. how much more it can carry before
    its reserve reaches min(aum, liquidity_cap):

        residual = (capacity_usd - reserved_usd) / (reserve_rate * mark_price)

    Draining pools offer nothing. High-priority pools are filled first up to
    their residual; the rest is split across the other pools in proportion
    to residual capacity. Every share is rounded down to the lot size and the
    rounding remainder goes to the pool with the largest residual (the first
    one on ties).

Closing:
    Close size is split in proportion to leg size, rounded down to the lot,
    with the remainder handed to the largest legs first.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Mapping, Sequence

from .core import InvalidAmount, InvalidCloseSize, MarketFull, ZERO


@dataclass(frozen=True, slots=True)
class PoolCapacity:
    """How much more size a pool can take in one market."""
    pool_id: str
    residual_size: Decimal
    is_high_priority: bool = False


def round_to_lot(size: Decimal, lot_size: Decimal) -> Decimal:
    """Round size down to a multiple of lot_size."""
    if size <= ZERO:
        return ZERO
    return (size / lot_size).to_integral_value(rounding=ROUND_DOWN) * lot_size


def is_lot_multiple(size: Decimal, lot_size: Decimal) -> bool:
    return size % lot_size == ZERO


def validate_size(size: Decimal, lot_size: Decimal) -> None:
    """
    Raises:
        InvalidAmount: If size is not positive or not a multiple of lot_size.
    """
    if size <= ZERO:
        raise InvalidAmount(f"Size must be positive, got {size}")
    if not is_lot_multiple(size, lot_size):
        raise InvalidAmount(f"Size {size} is not a multiple of lot size {lot_size}")


def calculate_residual_size(
    capacity_usd: Decimal, reserved_usd: Decimal, reserve_rate: Decimal, mark_price: Decimal
) -> Decimal:
    free_usd = capacity_usd - reserved_usd
    if free_usd <= ZERO:
        return ZERO
    return free_usd / (reserve_rate * mark_price)


def _distribute(amount: Decimal, group: Sequence[PoolCapacity], lot_size: Decimal) -> Dict[str, Decimal]:
    total_residual = sum((c.residual_size for c in group), ZERO)
    shares = {
        c.pool_id: round_to_lot(amount * c.residual_size / total_residual, lot_size)
        for c in group
    }
    remainder = amount - sum(shares.values(), ZERO)
    if remainder > ZERO:
        largest = max(group, key=lambda c: c.residual_size)
        shares[largest.pool_id] += remainder
    return shares


def allocate_open_size(
    size: Decimal, capacities: Sequence[PoolCapacity], lot_size: Decimal
) -> Dict[str, Decimal]:
    """
    Split a new position across pools.

    Args:
        size: Requested size, a positive multiple of lot_size.
        capacities: One entry per backing pool, in backing order.
        lot_size: Allocation granularity.

    Returns:
        pool_id -> allocated size (zero for pools that take nothing),
        in the order of capacities.

    Raises:
        MarketFull: If the pools cannot absorb size.
    """
    total_residual = sum((c.residual_size for c in capacities), ZERO)
    if size > total_residual:
        raise MarketFull(f"Requested size {size} exceeds pool capacity {total_residual}")

    allocations = {c.pool_id: ZERO for c in capacities}
    remaining = size
    high = [c for c in capacities if c.is_high_priority and c.residual_size > ZERO]
    normal = [c for c in capacities if not c.is_high_priority and c.residual_size > ZERO]

    if high:
        take = min(remaining, round_to_lot(sum((c.residual_size for c in high), ZERO), lot_size))
        if take > ZERO:
            for pool_id, share in _distribute(take, high, lot_size).items():
                allocations[pool_id] += share
            remaining -= take

    if remaining > ZERO:
        group: List[PoolCapacity] = normal or high
        if not group:
            raise MarketFull(f"No pool can take the remaining size {remaining}")
        for pool_id, share in _distribute(remaining, group, lot_size).items():
            allocations[pool_id] += share

    for c in capacities:
        if allocations[c.pool_id] > c.residual_size:
            raise MarketFull(
                f"pool {c.pool_id!r} cannot take {allocations[c.pool_id]} "
                f"(residual {c.residual_size})"
            )
    return allocations


def allocate_close_size(
    size: Decimal, leg_sizes: Mapping[str, Decimal], lot_size: Decimal
) -> Dict[str, Decimal]:
    """
    Split a close across existing legs in proportion to leg size.

    Returns:
        pool_id -> size to close, in leg order.

    Raises:
        InvalidCloseSize: If size exceeds the total held.
    """
    total = sum(leg_sizes.values(), ZERO)
    if size > total:
        raise InvalidCloseSize(f"Close size {size} exceeds position size {total}")
    if size == total:
        return dict(leg_sizes)

    closes = {
        pool_id: min(round_to_lot(size * leg_size / total, lot_size), leg_size)
        for pool_id, leg_size in leg_sizes.items()
    }
    remainder = size - sum(closes.values(), ZERO)
    # sorted() is stable, so equal legs keep their order
    for pool_id, leg_size in sorted(leg_sizes.items(), key=lambda kv: kv[1], reverse=True):
        if remainder <= ZERO:
            break
        extra = min(remainder, leg_size - closes[pool_id])
        closes[pool_id] += extra
        remainder -= extra
    return closes
