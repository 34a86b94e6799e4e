"""
collaborators.py - External services the ledger talks to

The ledger core only moves numbers. Real token movement, fee distribution
and swaps belong to collaborators injected into PerpLedger:

- TokenBridge: pulls tokens in on deposit, pushes them out on withdrawal
- FeeRouter: receives every fee the ledger charges
- Swapper: converts a withdrawal into another token; failures are recoverable

Inbound calls are the last step of an operation, after every check that
can reject it (a failing transfer_in still aborts it). Outbound calls and
fee routing happen after the operation commits.

The in-memory implementations below record what they receive and are used
by tests and simulations.
"""

from __future__ import annotations
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

from .core import PerpLedgerError, ZERO, to_decimal, to_wad


class SwapFailed(PerpLedgerError):
    """Raised by a Swapper when a conversion cannot be executed."""
    pass


@runtime_checkable
class TokenBridge(Protocol):

    def transfer_in(self, token: str, raw_amount: int, sender: str) -> None:
        ...

    def transfer_out(self, token: str, raw_amount: int, recipient: str) -> None:
        ...


@runtime_checkable
class FeeRouter(Protocol):

    def route_fee(self, token: str, amount: Decimal, reason: str) -> None:
        ...


@runtime_checkable
class Swapper(Protocol):

    def swap(self, token_in: str, token_out: str, amount_in: Decimal) -> Decimal:
        """Return the amount of token_out received, or raise SwapFailed."""
        ...


class RecordingTokenBridge:
    """Token bridge that records raw transfers instead of moving tokens."""

    def __init__(self):
        self.inbound: List[Tuple[str, int, str]] = []
        self.outbound: List[Tuple[str, int, str]] = []

    def transfer_in(self, token: str, raw_amount: int, sender: str) -> None:
        self.inbound.append((token, raw_amount, sender))

    def transfer_out(self, token: str, raw_amount: int, recipient: str) -> None:
        self.outbound.append((token, raw_amount, recipient))

    def total_out(self, token: str, recipient: Optional[str] = None) -> int:
        return sum(
            raw for t, raw, r in self.outbound
            if t == token and (recipient is None or r == recipient)
        )


class FeeCollector:
    """Fee router that accumulates fees per token and per reason."""

    def __init__(self):
        self.collected: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        self.by_reason: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        self.history: List[Tuple[str, Decimal, str]] = []

    def route_fee(self, token: str, amount: Decimal, reason: str) -> None:
        self.collected[token] += amount
        self.by_reason[reason] += amount
        self.history.append((token, amount, reason))

    def total(self, token: str) -> Decimal:
        return self.collected.get(token, ZERO)


class FixedRateSwapper:
    """
    Swapper that converts at fixed USD prices.

    Pairs missing from `prices` raise SwapFailed.
    """

    def __init__(self, prices: Mapping[str, Decimal]):
        self.prices = {token: to_decimal(p) for token, p in prices.items()}
        self.swaps: List[Tuple[str, str, Decimal, Decimal]] = []

    def swap(self, token_in: str, token_out: str, amount_in: Decimal) -> Decimal:
        if token_in not in self.prices or token_out not in self.prices:
            raise SwapFailed(f"No route from {token_in} to {token_out}")
        amount_out = to_wad(amount_in * self.prices[token_in] / self.prices[token_out])
        self.swaps.append((token_in, token_out, amount_in, amount_out))
        return amount_out
