"""
collaterals.py - Valuing and debiting multi-token collateral

A position account may hold several collateral tokens. When a USD amount
must be taken from it (fees, losses, withdrawals of profit), a
CollateralPolicy decides the order in which tokens are consumed and
plan_collateral_debit works out how much of each.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .core import MissingPrice, ZERO, to_wad


@runtime_checkable
class CollateralPolicy(Protocol):
    """Chooses the order in which collateral tokens are debited."""

    def debit_order(self, collaterals: Mapping[str, Decimal]) -> List[str]:
        ...


class OrderedCollateralPolicy:
    """
    Debit tokens in deposit order.

    last_consumed_token, when set, is moved to the end so it is spent only
    after everything else.
    """

    def __init__(self, last_consumed_token: Optional[str] = None):
        self.last_consumed_token = last_consumed_token

    def debit_order(self, collaterals: Mapping[str, Decimal]) -> List[str]:
        order = [t for t in collaterals if t != self.last_consumed_token]
        if self.last_consumed_token in collaterals:
            order.append(self.last_consumed_token)
        return order

    def __repr__(self):
        return f"OrderedCollateralPolicy(last_consumed_token={self.last_consumed_token!r})"


@dataclass(frozen=True, slots=True)
class DebitPlan:
    """
    Token amounts to take for a USD debit.

    Attributes:
        debits: (token, amount) pairs in debit order.
        covered_usd: USD value the debits cover.
        shortfall_usd: Part of the request the collateral could not cover.
    """
    debits: Tuple[Tuple[str, Decimal], ...]
    covered_usd: Decimal
    shortfall_usd: Decimal


def calculate_collateral_usd(collaterals: Mapping[str, Decimal], token_prices: Mapping[str, Decimal]) -> Decimal:
    total = ZERO
    for token, amount in collaterals.items():
        if amount == ZERO:
            continue
        if token not in token_prices:
            raise MissingPrice(f"No price for collateral token {token!r}")
        total += amount * token_prices[token]
    return total


def plan_collateral_debit(
    collaterals: Mapping[str, Decimal],
    token_prices: Mapping[str, Decimal],
    usd_amount: Decimal,
    order: Sequence[str],
) -> DebitPlan:
    """
    Plan a debit of usd_amount across tokens in the given order.

    A token is consumed entirely while the remaining request exceeds its
    value; the last token consumed is debited partially.
    """
    debits = []
    remaining = usd_amount
    for token in order:
        if remaining <= ZERO:
            break
        amount = collaterals.get(token, ZERO)
        if amount <= ZERO:
            continue
        price = token_prices[token]
        value = amount * price
        if value <= remaining:
            debits.append((token, amount))
            remaining -= value
        else:
            debits.append((token, min(to_wad(remaining / price), amount)))
            remaining = ZERO
    shortfall = remaining if remaining > ZERO else ZERO
    return DebitPlan(
        debits=tuple((t, a) for t, a in debits if a > ZERO),
        covered_usd=usd_amount - shortfall,
        shortfall_usd=shortfall,
    )
