"""
Core types and pure helpers for the perpetual trading ledger.

This module provides the foundational data structures shared by every other module:
1. Decimal context configuration and fixed-point helpers
2. Constants: wallet names, default thresholds, time constants
3. Enums: OperationType, LiquidationRegime
4. Exceptions: PerpLedgerError and the validation/solvency error families
5. Immutable records: Transfer
6. Rendering helpers used by result reprs

Nothing in this module mutates ledger state.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
from typing import Any, Iterable, List, Tuple, Union


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# The ledger requires deterministic Decimal arithmetic.
# The global context is configured at module load time.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
#   - prec=50: enough headroom for 18-decimal amounts times large notionals
#   - rounding=ROUND_HALF_EVEN: banker's rounding for intermediates
#
_PERP_DECIMAL_CONTEXT = getcontext()
_PERP_DECIMAL_CONTEXT.prec = 50
_PERP_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Stored amounts, prices and cumulative rates keep 18 decimal places.
WAD_DECIMALS = 18
WAD_QUANTUM = Decimal(1).scaleb(-WAD_DECIMALS)

ZERO = Decimal("0")
ONE = Decimal("1")

SECONDS_PER_YEAR = Decimal("31536000")

# Positions and collaterals worth less than this (in USD) are treated as closed.
DEFAULT_DUST_THRESHOLD_USD = Decimal("1e-6")

# Reserved wallet names used in Transfer records.
FEE_WALLET = "fees"
EXTERNAL_WALLET = "external"

NumberLike = Union[Decimal, int, float, str]


def account_wallet(position_id: str) -> str:
    return f"account:{position_id}"


def pool_wallet(pool_id: str) -> str:
    return f"pool:{pool_id}"


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: NumberLike) -> Decimal:
    """
    Convert a number to Decimal without binary float artifacts.

    Floats go through str() so that 0.1 becomes Decimal("0.1").
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a valid amount")
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def to_wad(value: Decimal) -> Decimal:
    """Truncate a value to 18 decimal places (the stored precision)."""
    return value.quantize(WAD_QUANTUM, rounding=ROUND_DOWN)


def clip_at_zero(value: Decimal) -> Decimal:
    return value if value > ZERO else ZERO


# ============================================================================
# ENUMS
# ============================================================================

class OperationType(Enum):
    """Kind of state-changing operation recorded in the operation log."""
    OPEN_POSITION = "OPEN_POSITION"
    CLOSE_POSITION = "CLOSE_POSITION"
    LIQUIDATE = "LIQUIDATE"
    REALLOCATE = "REALLOCATE"
    FILL_ADL = "FILL_ADL"
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    ADD_LIQUIDITY = "ADD_LIQUIDITY"
    REMOVE_LIQUIDITY = "REMOVE_LIQUIDITY"
    UPDATE_BORROWING = "UPDATE_BORROWING"


class LiquidationRegime(Enum):
    """
    Outcome of a liquidation waterfall.

    FULLY_CHARGED: PnL, borrowing and liquidation fee all paid in full.
    PARTIALLY_CHARGED: margin covered PnL and borrowing, liquidation fee clipped.
    INSOLVENT: margin went negative, pool absorbs the shortfall.
    """
    FULLY_CHARGED = "FULLY_CHARGED"
    PARTIALLY_CHARGED = "PARTIALLY_CHARGED"
    INSOLVENT = "INSOLVENT"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class PerpLedgerError(Exception):
    """Base exception for all perpetual ledger errors."""
    pass


# Validation errors: the request is malformed or refers to unknown entities.

class InvalidAmount(PerpLedgerError):
    """Raised when an amount or size is zero, negative, or not a lot multiple."""
    pass


class InvalidCloseSize(PerpLedgerError):
    """Raised when a close or reallocation exceeds the size held."""
    pass


class EssentialConfigNotSet(PerpLedgerError):
    """Raised when a required market or pool configuration value is absent."""
    pass


class MissingPrice(PerpLedgerError):
    """Raised when an operation needs a price that was not supplied."""
    pass


class StalePrice(PerpLedgerError):
    """Raised when an oracle price is older than the allowed age."""
    pass


class SafePositionAccount(PerpLedgerError):
    """Raised when liquidating an account that still meets maintenance margin."""
    pass


class UnknownPool(PerpLedgerError):
    """Raised when referring to a pool that has not been created."""
    pass


class UnknownMarket(PerpLedgerError):
    """Raised when referring to a market that has not been created."""
    pass


class UnknownToken(PerpLedgerError):
    """Raised when a token is not registered or is disabled as collateral."""
    pass


class PositionNotFound(PerpLedgerError):
    """Raised when the account holds no position in the requested market or pool."""
    pass


class UnauthorizedCaller(PerpLedgerError):
    """Raised when a privileged operation is invoked by a caller without the role."""
    pass


class DeleverageNotAllowed(PerpLedgerError):
    """Raised when ADL is requested for a position below every trigger rate."""
    pass


# Solvency errors: the request is well formed but would break a balance rule.

class MarketFull(PerpLedgerError):
    """Raised when backing pools lack capacity for the requested allocation."""
    pass


class InsufficientLiquidity(PerpLedgerError):
    """Raised when a pool cannot release liquidity without breaking its reserve."""
    pass


class LiquidityCapExceeded(PerpLedgerError):
    """Raised when adding liquidity would push a pool above its cap."""
    pass


class UnsafePositionAccount(PerpLedgerError):
    """Raised when an account would fall below its required margin."""
    pass


class InsufficientCollateralUsd(PerpLedgerError):
    """Raised when collateral cannot cover a fee, loss or withdrawal."""
    pass


# ============================================================================
# TRANSFER RECORD
# ============================================================================

@dataclass(frozen=True, slots=True)
class Transfer:
    """
    A single movement of tokens between two wallets.

    Wallets are named "account:<position_id>", "pool:<pool_id>", "fees"
    (the fee router) or "external" (outside the ledger).

    Attributes:
        amount: Token quantity in 18-decimal normalized units (positive).
        token: Token symbol.
        source: Wallet debited.
        dest: Wallet credited.
        reason: Short tag such as "position_fee" or "pnl".
    """
    amount: Decimal
    token: str
    source: str
    dest: str
    reason: str

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            raise ValueError(f"Transfer amount must be Decimal, got {type(self.amount)}")
        if self.amount.is_nan() or self.amount.is_infinite():
            raise ValueError(f"Transfer amount must be finite, got {self.amount}")
        if self.amount <= ZERO:
            raise ValueError(f"Transfer amount must be positive, got {self.amount}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Transfer({self.amount} {self.token}: {self.source}→{self.dest} [{self.reason}])"


# ============================================================================
# RENDERING
# ============================================================================

def render_box(title: str, fields: Iterable[Tuple[str, Any]],
               sections: Iterable[Tuple[str, List[str]]] = ()) -> str:
    """
    Render a boxed, fixed-width block used by result reprs and verbose output.

    Args:
        title: Header line.
        fields: (label, value) pairs shown under the header.
        sections: (heading, lines) groups appended after the fields.
    """
    w = 100
    bar = "─" * w

    def pad(text: str) -> str:
        if len(text) > w:
            return text[:w - 3] + "..."
        return text + " " * (w - len(text))

    fields = list(fields)
    label_width = max((len(label) for label, _ in fields), default=0)
    lines = [
        "",
        f"┌{bar}┐",
        f"│{pad(' ' + title)}│",
        f"├{bar}┤",
    ]
    for label, value in fields:
        lines.append(f"│{pad('   ' + label.ljust(label_width) + ' : ' + str(value))}│")
    for heading, body in sections:
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' ' + heading)}│")
        for line in body:
            lines.append(f"│{pad('   ' + line)}│")
    lines.append(f"└{bar}┘")
    return "\n".join(lines)


def render_transfers(transfers: Iterable[Transfer]) -> List[str]:
    return [
        f"[{i}] {t.amount} {t.token}: {t.source} → {t.dest} ({t.reason})"
        for i, t in enumerate(transfers)
    ]
