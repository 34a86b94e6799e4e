"""
ledger.py - Stateful multi-pool perpetual trading ledger

PerpLedger is the central state manager. It is the only class that mutates
pools and position accounts; every calculation it relies on lives in the
pure modules (borrowing, pool, allocation, margin, liquidation, collaterals).

Key responsibilities:
    - Registers tokens, pools and markets and holds their configuration
    - Executes trading operations atomically: any exception restores the
      state captured when the operation started
    - Touches borrowing state of every affected pool before computing PnL
    - Queues fee routing and outbound transfers, dispatching them only
      after an operation commits
    - Keeps an operation log with monotonic sequence numbers

All operations run at the ledger's logical time (current_time), which only
moves forward via advance_time(). Prices are supplied per call as a mapping
asset_id -> price.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple
import copy
import logging

from .account import (
    AccountView, PoolLeg, PositionAccount, PositionView, decode_position_id,
)
from .allocation import (
    PoolCapacity, allocate_close_size, allocate_open_size,
    calculate_residual_size, validate_size,
)
from .borrowing import calculate_borrowing_fee
from .collaborators import (
    FeeCollector, FeeRouter, RecordingTokenBridge, Swapper, SwapFailed, TokenBridge,
)
from .collaterals import (
    CollateralPolicy, OrderedCollateralPolicy,
    calculate_collateral_usd, plan_collateral_debit,
)
from .config import AdlConfig, EngineConfig, MarketConfig, PoolConfig
from .core import (
    OperationType, Transfer, NumberLike,
    EXTERNAL_WALLET, FEE_WALLET, ZERO,
    account_wallet, pool_wallet, to_decimal, to_wad,
    DeleverageNotAllowed, InsufficientCollateralUsd, InsufficientLiquidity,
    InvalidAmount, InvalidCloseSize, LiquidityCapExceeded, MarketFull, MissingPrice,
    PositionNotFound, SafePositionAccount, UnauthorizedCaller,
    UnknownMarket, UnknownPool, UnknownToken, UnsafePositionAccount,
)
from .liquidation import (
    LiquidatedLeg, apply_waterfall_step, calculate_deleverage_pnl,
    calculate_liquidation_fee, classify_liquidation, is_deleverage_triggered,
)
from .margin import LegExposure, MarginStatus, calculate_margin_status
from .market import BackingPoolView, Market, MarketStateView
from .pool import (
    BorrowingTouch, CollateralPool, PoolMarketState,
    calculate_blended_entry, calculate_borrowing_touch,
    calculate_nav, calculate_reduced_entry, calculate_position_pnl,
)
from .results import (
    BorrowingUpdate, CollateralResult, LegChange, LiquidationResult,
    LiquidityResult, OperationRecord, OperationResult, PositionResult,
    ReallocationResult,
)
from .tokens import CollateralToken, to_raw_amount, truncate_to_native


logger = logging.getLogger(__name__)


class PerpLedger:
    """
    Multi-pool position and collateral ledger.

    Example:
        ledger = PerpLedger("perp", initial_time=datetime(2024, 1, 1))
        ledger.register_token(CollateralToken("USDC", 6))
        ledger.create_pool("pool1", "USDC", pool_config, {"LongBTC": adl_config})
        ledger.create_market("LongBTC", True, ("pool1",), market_config)
        ledger.add_liquidity("pool1", "lp", Decimal("1000000"), prices)
        ledger.deposit_collateral("trader:0", "USDC", Decimal("10000"))
        ledger.open_position("trader:0", "LongBTC", Decimal("1"), prices)
    """

    def __init__(
        self,
        name: str = "perp",
        initial_time: Optional[datetime] = None,
        config: Optional[EngineConfig] = None,
        fee_router: Optional[FeeRouter] = None,
        token_bridge: Optional[TokenBridge] = None,
        swapper: Optional[Swapper] = None,
        collateral_policy: Optional[CollateralPolicy] = None,
        verbose: bool = False,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier, used in execution ids
            initial_time: Starting logical time (default: 1970-01-01)
            config: Engine-wide parameters
            fee_router: Receives every fee (default: in-memory FeeCollector)
            token_bridge: Moves tokens in and out (default: RecordingTokenBridge)
            swapper: Optional converter for withdrawals into another token
            collateral_policy: Token debit order (default: deposit order)
            verbose: Print each applied result
        """
        self.name = name
        self.config = config or EngineConfig()
        self.fee_router = fee_router if fee_router is not None else FeeCollector()
        self.token_bridge = token_bridge if token_bridge is not None else RecordingTokenBridge()
        self.swapper = swapper
        self.collateral_policy = collateral_policy or OrderedCollateralPolicy()
        self.verbose = verbose

        self.tokens: Dict[str, CollateralToken] = {}
        self.pools: Dict[str, CollateralPool] = {}
        self.markets: Dict[str, Market] = {}
        self.accounts: Dict[str, PositionAccount] = {}
        self.deleverage_operators: Set[str] = set()
        self.operation_log: List[OperationRecord] = []

        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._next_sequence: int = 0
        # Ordered set of accounts holding at least one leg
        self._active_position_ids: Dict[str, None] = {}
        # Filled while an operation runs
        self._transfers: List[Transfer] = []
        self._disbursements: List[Tuple[str, Decimal, str, Optional[str]]] = []

    # ========================================================================
    # TIME
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # SETUP (Mutating)
    # ========================================================================

    def register_token(self, token: CollateralToken) -> None:
        if token.symbol in self.tokens:
            raise ValueError(f"Token {token.symbol!r} already registered")
        self.tokens[token.symbol] = token

    def set_token_enabled(self, symbol: str, enabled: bool) -> None:
        self.tokens[symbol] = replace(self._token(symbol), enabled=enabled)

    def create_pool(
        self,
        pool_id: str,
        collateral_token: str,
        config: PoolConfig,
        adl_configs: Optional[Mapping[str, AdlConfig]] = None,
    ) -> CollateralPool:
        if pool_id in self.pools:
            raise ValueError(f"Pool {pool_id!r} already exists")
        self._token(collateral_token)
        pool = CollateralPool(
            pool_id=pool_id,
            collateral_token=collateral_token,
            config=config,
            adl_configs=dict(adl_configs or {}),
        )
        self.pools[pool_id] = pool
        logger.info("created pool %s (%s)", pool_id, collateral_token)
        return pool

    def set_pool_config(self, pool_id: str, config: PoolConfig) -> None:
        self._pool(pool_id).config = config

    def set_pool_draining(self, pool_id: str, is_draining: bool) -> None:
        pool = self._pool(pool_id)
        pool.config = replace(pool.config, is_draining=is_draining)

    def set_adl_config(self, pool_id: str, market_id: str, adl: AdlConfig) -> None:
        self._pool(pool_id).adl_configs[market_id] = adl

    def create_market(
        self, market_id: str, is_long: bool, backing_pools: Iterable[str], config: MarketConfig
    ) -> Market:
        """
        Create a market backed by existing pools.

        Each backing pool gets an empty PoolMarketState for the market.
        """
        if market_id in self.markets:
            raise ValueError(f"Market {market_id!r} already exists")
        market = Market(market_id, is_long, tuple(backing_pools), config)
        for pool_id in market.backing_pools:
            self._pool(pool_id)
        for pool_id in market.backing_pools:
            self.pools[pool_id].market_states[market_id] = PoolMarketState(is_long=is_long)
        self.markets[market_id] = market
        logger.info("created market %s backed by %s", market_id, ", ".join(market.backing_pools))
        return market

    def set_market_config(self, market_id: str, config: MarketConfig) -> None:
        self._market(market_id).config = config

    def grant_deleverage_role(self, caller: str) -> None:
        self.deleverage_operators.add(caller)

    def revoke_deleverage_role(self, caller: str) -> None:
        self.deleverage_operators.discard(caller)

    # ========================================================================
    # QUERIES (read-only)
    # ========================================================================

    def list_pools(self) -> Tuple[str, ...]:
        return tuple(self.pools)

    def list_markets(self) -> Tuple[str, ...]:
        return tuple(self.markets)

    def list_account_collaterals(self, position_id: str) -> Tuple[Tuple[str, Decimal], ...]:
        account = self.accounts.get(position_id)
        if account is None:
            return ()
        return tuple(account.collaterals.items())

    def list_account_positions(self, position_id: str) -> Tuple[PositionView, ...]:
        account = self.accounts.get(position_id)
        if account is None:
            return ()
        return tuple(
            PositionView(
                market_id=market_id,
                is_long=self.markets[market_id].is_long,
                total_size=account.total_size(market_id),
                legs=tuple(legs.values()),
            )
            for market_id, legs in account.positions.items()
            if legs
        )

    def list_account_collaterals_and_positions_of(self, owner: str) -> Tuple[AccountView, ...]:
        return tuple(
            AccountView(
                position_id=account.position_id,
                owner=account.owner,
                collaterals=self.list_account_collaterals(account.position_id),
                positions=self.list_account_positions(account.position_id),
            )
            for account in self.accounts.values()
            if account.owner == owner
        )

    def list_active_position_ids(self, offset: int, limit: int) -> Tuple[Tuple[str, ...], int]:
        """
        Page through accounts holding at least one position.

        Returns:
            (position ids in [offset, offset + limit), total number of active accounts)
        """
        if offset < 0 or limit < 0:
            raise ValueError("offset and limit must be non-negative")
        ids = list(self._active_position_ids)
        return tuple(ids[offset:offset + limit]), len(ids)

    def market_state(self, market_id: str) -> MarketStateView:
        market = self._market(market_id)
        pools = self.list_market_pools(market_id)
        return MarketStateView(
            market_id=market_id,
            is_long=market.is_long,
            total_size=sum((p.total_size for p in pools), ZERO),
            pools=pools,
        )

    def list_market_pools(self, market_id: str) -> Tuple[BackingPoolView, ...]:
        market = self._market(market_id)
        views = []
        for pool_id in market.backing_pools:
            pool = self.pools[pool_id]
            state = pool.market_state(market_id)
            views.append(BackingPoolView(
                pool_id=pool_id,
                total_size=state.total_size,
                average_entry_price=state.average_entry_price,
                cumulated_borrowing_per_usd=state.cumulated_borrowing_per_usd,
                is_draining=pool.config.is_draining,
            ))
        return tuple(views)

    def get_aum_usd(self, pool_id: str, prices: Mapping[str, Decimal]) -> Decimal:
        """Settlement AUM: liquidity minus uncapped trader PnL."""
        return self._pool_aum(self._pool(pool_id), prices)

    def estimated_aum_usd(self, pool_id: str, prices: Mapping[str, Decimal]) -> Decimal:
        """Display AUM: liquidity minus trader PnL capped at max_pnl_rate."""
        return self._pool_aum(self._pool(pool_id), prices, capped=True)

    def pool_nav(self, pool_id: str, prices: Mapping[str, Decimal]) -> Decimal:
        pool = self._pool(pool_id)
        return calculate_nav(self._pool_aum(pool, prices, capped=True), pool.share_supply)

    def share_balance(self, pool_id: str, provider: str) -> Decimal:
        return self._pool(pool_id).share_balances.get(provider, ZERO)

    def borrowing_apy(self, pool_id: str, market_id: str, prices: Mapping[str, Decimal]) -> Decimal:
        """Current borrowing APY of a pool for a market, without touching state."""
        return self._preview_touch(self._pool(pool_id), self._market(market_id), prices).apy

    def account_margin(self, position_id: str, prices: Mapping[str, Decimal]) -> MarginStatus:
        """Margin snapshot including borrowing accrued up to now."""
        return self._margin_status(self._account(position_id), prices)

    def is_deleverage_allowed(self, position_id: str, market_id: str, prices: Mapping[str, Decimal]) -> bool:
        account = self._account(position_id)
        market = self._market(market_id)
        return self._deleverage_triggered(account, market, market.mark_price(prices))

    # ========================================================================
    # COLLATERAL OPERATIONS (Mutating)
    # ========================================================================

    def deposit_collateral(self, position_id: str, token: str, amount: NumberLike) -> CollateralResult:
        """
        Credit collateral to an account, creating the account on first use.

        Raises:
            InvalidAmount: If amount is not positive or below the token's precision
            UnknownToken: If token is not registered or disabled
        """
        amount = to_decimal(amount)
        with self._atomic("deposit_collateral"):
            info = self._collateral_token(token)
            if amount <= ZERO:
                raise InvalidAmount(f"Deposit amount must be positive, got {amount}")
            raw = to_raw_amount(amount, info.decimals)
            if raw == 0:
                raise InvalidAmount(f"Deposit amount {amount} is below {token} precision")
            amount = truncate_to_native(amount, info.decimals)
            account = self._get_or_create_account(position_id)
            account.credit(token, amount)
            self._record(amount, token, EXTERNAL_WALLET, account_wallet(position_id), "deposit")
            self.token_bridge.transfer_in(token, raw, account.owner)
            result = CollateralResult(
                operation=OperationType.DEPOSIT,
                position_id=position_id,
                token=token,
                amount=amount,
                borrowing_fee_usd=ZERO,
                collaterals=tuple(account.collaterals.items()),
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
            )
        return self._finish(result)

    def withdraw_collateral(
        self,
        position_id: str,
        token: str,
        amount: NumberLike,
        prices: Mapping[str, Decimal],
        swap_token: Optional[str] = None,
    ) -> CollateralResult:
        """
        Withdraw collateral, settling pending borrowing fees first.

        Raises:
            InsufficientCollateralUsd: If the account holds less than amount,
                either up front or once its borrowing fees are settled
            UnsafePositionAccount: If the account would fail initial margin
        """
        amount = to_decimal(amount)
        with self._atomic("withdraw_collateral"):
            account = self._account(position_id)
            info = self._token(token)
            if amount <= ZERO:
                raise InvalidAmount(f"Withdraw amount must be positive, got {amount}")
            if amount > account.collateral(token):
                raise InsufficientCollateralUsd(
                    f"{position_id} holds {account.collateral(token)} {token}, cannot withdraw {amount}"
                )
            borrowing = self._settle_account_borrowing(account, prices)
            if amount > account.collateral(token):
                raise InsufficientCollateralUsd(
                    f"{position_id} holds {account.collateral(token)} {token} after borrowing fees, "
                    f"cannot withdraw {amount}"
                )
            amount = truncate_to_native(amount, info.decimals)
            if amount == ZERO:
                raise InvalidAmount(f"Withdraw amount is below {token} precision")
            self._disburse(account, token, amount, swap_token)
            self._require_initial_margin(account, prices)
            self._prune_collaterals(account, prices)
            result = CollateralResult(
                operation=OperationType.WITHDRAW,
                position_id=position_id,
                token=token,
                amount=amount,
                borrowing_fee_usd=borrowing,
                collaterals=tuple(account.collaterals.items()),
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
                swap_token=swap_token,
            )
        return self._finish(result)

    def withdraw_all_collateral(self, position_id: str, swap_token: Optional[str] = None) -> CollateralResult:
        """
        Withdraw every collateral token of an account without positions.

        Raises:
            UnsafePositionAccount: If the account still holds a position
        """
        with self._atomic("withdraw_all_collateral"):
            account = self._account(position_id)
            if account.has_positions():
                raise UnsafePositionAccount(f"{position_id} still holds positions")
            self._disburse_all(account, swap_token)
            result = CollateralResult(
                operation=OperationType.WITHDRAW,
                position_id=position_id,
                token="*",
                amount=ZERO,
                borrowing_fee_usd=ZERO,
                collaterals=tuple(account.collaterals.items()),
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
                swap_token=swap_token,
            )
        return self._finish(result)

    # ========================================================================
    # LIQUIDITY OPERATIONS (Mutating)
    # ========================================================================

    def add_liquidity(
        self, pool_id: str, provider: str, amount: NumberLike, prices: Mapping[str, Decimal]
    ) -> LiquidityResult:
        """
        Deposit the pool's collateral token and mint shares at the current NAV.

        Raises:
            LiquidityCapExceeded: If post-deposit AUM exceeds the liquidity cap
        """
        amount = to_decimal(amount)
        with self._atomic("add_liquidity"):
            pool = self._pool(pool_id)
            token = pool.collateral_token
            info = self._token(token)
            if amount <= ZERO:
                raise InvalidAmount(f"Liquidity amount must be positive, got {amount}")
            raw = to_raw_amount(amount, info.decimals)
            if raw == 0:
                raise InvalidAmount(f"Liquidity amount {amount} is below {token} precision")
            amount = truncate_to_native(amount, info.decimals)
            price = self._token_price(prices, token)
            nav = calculate_nav(self._pool_aum(pool, prices, capped=True), pool.share_supply)
            fee = to_wad(amount * pool.config.liquidity_fee_rate)
            net = amount - fee
            shares = to_wad(net * price / nav)

            pool.credit(token, net)
            self._record(net, token, EXTERNAL_WALLET, pool_wallet(pool_id), "add_liquidity")
            self._record(fee, token, EXTERNAL_WALLET, FEE_WALLET, "liquidity_fee")

            aum_after = self._pool_aum(pool, prices)
            if aum_after > pool.config.liquidity_cap_usd:
                raise LiquidityCapExceeded(
                    f"pool {pool_id!r} AUM {aum_after} would exceed cap {pool.config.liquidity_cap_usd}"
                )
            pool.share_supply += shares
            pool.share_balances[provider] = pool.share_balances.get(provider, ZERO) + shares
            # Tokens are pulled only once nothing can reject the deposit
            self.token_bridge.transfer_in(token, raw, provider)
            result = LiquidityResult(
                operation=OperationType.ADD_LIQUIDITY,
                pool_id=pool_id,
                provider=provider,
                token=token,
                amount=amount,
                fee=fee,
                shares=shares,
                nav=nav,
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
            )
        return self._finish(result)

    def remove_liquidity(
        self, pool_id: str, provider: str, shares: NumberLike, prices: Mapping[str, Decimal]
    ) -> LiquidityResult:
        """
        Burn shares and pay out the pool's collateral token at the current NAV.

        Raises:
            InsufficientLiquidity: If the pool cannot pay, or the payout would
                leave any market's reserve above the remaining AUM
        """
        shares = to_decimal(shares)
        with self._atomic("remove_liquidity"):
            pool = self._pool(pool_id)
            token = pool.collateral_token
            info = self._token(token)
            held = pool.share_balances.get(provider, ZERO)
            if shares <= ZERO:
                raise InvalidAmount(f"Shares must be positive, got {shares}")
            if shares > held:
                raise InvalidAmount(f"{provider} holds {held} shares of {pool_id}, cannot burn {shares}")
            price = self._token_price(prices, token)
            nav = calculate_nav(self._pool_aum(pool, prices, capped=True), pool.share_supply)
            amount = truncate_to_native(shares * nav / price, info.decimals)
            fee = to_wad(amount * pool.config.liquidity_fee_rate)
            if amount > pool.balance(token):
                raise InsufficientLiquidity(
                    f"pool {pool_id!r} holds {pool.balance(token)} {token}, cannot pay {amount}"
                )

            pool.debit(token, amount)
            pool.share_supply -= shares
            pool.share_balances[provider] = held - shares
            self._record(amount - fee, token, pool_wallet(pool_id), EXTERNAL_WALLET, "remove_liquidity")
            self._record(fee, token, pool_wallet(pool_id), FEE_WALLET, "liquidity_fee")
            if amount - fee > ZERO:
                self._disbursements.append((token, amount - fee, provider, None))

            aum_after = self._pool_aum(pool, prices)
            for market_id in pool.open_markets():
                mark = self.markets[market_id].mark_price(prices)
                reserved = pool.reserved_usd(market_id, mark)
                if reserved > aum_after:
                    raise InsufficientLiquidity(
                        f"pool {pool_id!r} reserve {reserved} for {market_id} would exceed AUM {aum_after}"
                    )
            result = LiquidityResult(
                operation=OperationType.REMOVE_LIQUIDITY,
                pool_id=pool_id,
                provider=provider,
                token=token,
                amount=amount,
                fee=fee,
                shares=shares,
                nav=nav,
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
            )
        return self._finish(result)

    # ========================================================================
    # TRADING OPERATIONS (Mutating)
    # ========================================================================

    def update_borrowing(self, market_id: str, prices: Mapping[str, Decimal]) -> Tuple[BorrowingUpdate, ...]:
        """Explicitly accrue borrowing for every pool backing a market."""
        with self._atomic("update_borrowing"):
            market = self._market(market_id)
            touches = self._touch_market(market, prices)
            updates = tuple(
                BorrowingUpdate(
                    pool_id=pool_id,
                    market_id=market_id,
                    utilization=touch.utilization,
                    apy=touch.apy,
                    accrued=touch.accrued,
                    cumulated_borrowing_per_usd=touch.state.cumulated_borrowing_per_usd,
                    timestamp=self._current_time,
                )
                for pool_id, touch in zip(market.backing_pools, touches)
            )
        for update in updates:
            self._finish(update)
        return updates

    def open_position(
        self, position_id: str, market_id: str, size: NumberLike, prices: Mapping[str, Decimal]
    ) -> PositionResult:
        """
        Open or increase a position at the market's mark price.

        The size is split across backing pools by residual capacity; the
        position fee is taken from collateral, then initial margin is checked.

        Raises:
            InvalidAmount: If size is not a positive lot multiple
            MarketFull: If backing pools cannot absorb the size
            InsufficientCollateralUsd: If collateral cannot pay the position fee
            UnsafePositionAccount: If the account fails initial margin afterwards
        """
        size = to_decimal(size)
        with self._atomic("open_position"):
            account = self._account(position_id)
            market = self._market(market_id)
            lot_size = market.config.require("lot_size", market_id)
            fee_rate = market.config.require("position_fee_rate", market_id)
            validate_size(size, lot_size)
            mark = market.mark_price(prices)

            self._touch_market(market, prices)
            capacities = [self._pool_capacity(self.pools[p], market, mark, prices) for p in market.backing_pools]
            allocations = allocate_open_size(size, capacities, lot_size)

            changes = []
            legs = account.positions.setdefault(market_id, {})
            for pool_id, allocation in allocations.items():
                if allocation == ZERO:
                    continue
                pool = self.pools[pool_id]
                state = pool.market_state(market_id)
                pool.market_states[market_id] = replace(
                    state,
                    total_size=state.total_size + allocation,
                    average_entry_price=calculate_blended_entry(
                        state.total_size, state.average_entry_price, allocation, mark
                    ),
                )
                old = legs.get(pool_id)
                old_size = old.size if old else ZERO
                leg = PoolLeg(
                    pool_id=pool_id,
                    size=old_size + allocation,
                    entry_price=calculate_blended_entry(
                        old_size, old.entry_price if old else ZERO, allocation, mark
                    ),
                    entry_borrowing_per_usd=calculate_blended_entry(
                        old_size, old.entry_borrowing_per_usd if old else ZERO,
                        allocation, state.cumulated_borrowing_per_usd,
                    ),
                )
                legs[pool_id] = leg
                changes.append(LegChange(pool_id, allocation, leg.size, leg.entry_price, ZERO, ZERO))

            self._check_open_interest(market, mark)
            fee_usd = fee_rate * size * mark
            self._debit_usd(account, fee_usd, prices, None, "position_fee")
            self._require_initial_margin(account, prices)
            self._prune_collaterals(account, prices)
            self._sync_active(account)
            result = PositionResult(
                operation=OperationType.OPEN_POSITION,
                position_id=position_id,
                market_id=market_id,
                is_long=market.is_long,
                size=size,
                trading_price=mark,
                legs=tuple(changes),
                position_fee_usd=fee_usd,
                borrowing_fee_usd=ZERO,
                realized_pnl_usd=ZERO,
                collaterals=tuple(account.collaterals.items()),
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
            )
        return self._finish(result)

    def close_position(
        self,
        position_id: str,
        market_id: str,
        size: NumberLike,
        prices: Mapping[str, Decimal],
        withdraw_profit: bool = False,
        withdraw_all_if_empty: bool = False,
        swap_token: Optional[str] = None,
    ) -> PositionResult:
        """
        Reduce a position, realizing PnL leg by leg.

        The close is split across legs in proportion to leg size. Each touched
        leg settles its whole borrowing fee; the position fee applies to the
        closed size.

        Args:
            withdraw_profit: Pay out max(0, realized PnL - fees) afterwards
            withdraw_all_if_empty: Pay out all collateral if no position remains
            swap_token: Convert payouts into this token when a swapper is set

        Raises:
            InvalidCloseSize: If size exceeds the position
            InsufficientCollateralUsd: If collateral cannot cover losses and fees
            UnsafePositionAccount: If a remaining position fails its margin check
        """
        size = to_decimal(size)
        with self._atomic("close_position"):
            account = self._account(position_id)
            market = self._market(market_id)
            lot_size = market.config.require("lot_size", market_id)
            legs = account.legs(market_id)
            if not legs:
                raise PositionNotFound(f"{position_id} has no position in {market_id}")
            validate_size(size, lot_size)
            mark = market.mark_price(prices)

            self._touch_market(market, prices)
            closes = allocate_close_size(size, {p: leg.size for p, leg in legs.items()}, lot_size)
            changes, realized, borrowing, fee_usd = self._settle_close(
                account, market, closes, mark, prices, cap_pnl=False
            )

            if account.has_positions():
                status = self._margin_status(account, prices)
                if not status.is_maintenance_margin_safe:
                    raise UnsafePositionAccount(
                        f"{position_id} margin {status.margin_balance_usd} below maintenance "
                        f"{status.maintenance_margin_usd} after close"
                    )
            profit = realized - borrowing - fee_usd
            if withdraw_profit and profit > ZERO:
                self._disburse_usd(account, profit, prices, swap_token)
                self._require_initial_margin(account, prices)
            if withdraw_all_if_empty and not account.has_positions():
                self._disburse_all(account, swap_token)
            self._prune_collaterals(account, prices)
            self._sync_active(account)
            result = PositionResult(
                operation=OperationType.CLOSE_POSITION,
                position_id=position_id,
                market_id=market_id,
                is_long=market.is_long,
                size=size,
                trading_price=mark,
                legs=tuple(changes),
                position_fee_usd=fee_usd,
                borrowing_fee_usd=borrowing,
                realized_pnl_usd=realized,
                collaterals=tuple(account.collaterals.items()),
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
            )
        return self._finish(result)

    def liquidate(self, position_id: str, prices: Mapping[str, Decimal]) -> LiquidationResult:
        """
        Close every leg of an account that fails maintenance margin.

        Each leg runs the waterfall PnL -> borrowing fee -> liquidation fee
        against the account's remaining collateral. Charges are clipped at
        what is left; the pool absorbs any loss shortfall.

        Raises:
            SafePositionAccount: If the account meets maintenance margin
        """
        with self._atomic("liquidate"):
            account = self._account(position_id)
            if not account.has_positions():
                raise PositionNotFound(f"{position_id} has no position")
            for market_id in list(account.positions):
                self._touch_market(self.markets[market_id], prices)
            status = self._margin_status(account, prices)
            if status.is_maintenance_margin_safe:
                raise SafePositionAccount(
                    f"{position_id} margin {status.margin_balance_usd} >= maintenance "
                    f"{status.maintenance_margin_usd}"
                )

            settled: List[LiquidatedLeg] = []
            for market_id, legs in list(account.positions.items()):
                market = self.markets[market_id]
                mark = market.mark_price(prices)
                fee_rate = market.config.require("liquidation_fee_rate", market_id)
                for pool_id, leg in list(legs.items()):
                    pool = self.pools[pool_id]
                    state = pool.market_state(market_id)
                    pnl = calculate_position_pnl(market.is_long, leg.size, leg.entry_price, mark)
                    if pnl >= ZERO:
                        pnl_settled = self._pay_from_pool(pool, account, pnl, prices, "pnl")
                    else:
                        step, _ = apply_waterfall_step(self._collateral_usd(account, prices), -pnl)
                        self._debit_usd(account, step.applied, prices, pool, "pnl", allow_partial=True)
                        pnl_settled = -step.applied
                    borrowing_step, _ = apply_waterfall_step(
                        self._collateral_usd(account, prices),
                        calculate_borrowing_fee(
                            state.cumulated_borrowing_per_usd, leg.entry_borrowing_per_usd, leg.size, mark
                        ),
                    )
                    self._debit_usd(account, borrowing_step.applied, prices, None, "borrowing_fee",
                                    allow_partial=True)
                    fee_step, _ = apply_waterfall_step(
                        self._collateral_usd(account, prices),
                        calculate_liquidation_fee(leg.size, mark, fee_rate),
                    )
                    self._debit_usd(account, fee_step.applied, prices, None, "liquidation_fee",
                                    allow_partial=True)
                    self._reduce_pool_state(pool, market_id, leg.size, leg.entry_price)
                    settled.append(LiquidatedLeg(
                        market_id=market_id,
                        pool_id=pool_id,
                        size=leg.size,
                        mark_price=mark,
                        pnl_usd=pnl,
                        pnl_settled_usd=pnl_settled,
                        borrowing_fee=borrowing_step,
                        liquidation_fee=fee_step,
                    ))
                del account.positions[market_id]

            self._prune_collaterals(account, prices)
            self._sync_active(account)
            regime = classify_liquidation(settled)
            logger.info("liquidated %s: %s", position_id, regime.value)
            result = LiquidationResult(
                position_id=position_id,
                regime=regime,
                margin_balance_usd=status.margin_balance_usd,
                maintenance_margin_usd=status.maintenance_margin_usd,
                legs=tuple(settled),
                collaterals=tuple(account.collaterals.items()),
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
            )
        return self._finish(result)

    def fill_adl_order(
        self, position_id: str, market_id: str, prices: Mapping[str, Decimal], caller: str
    ) -> PositionResult:
        """
        Force-close a profitable position whose PnL rate exceeds a pool's trigger.

        Every leg is closed at mark; each leg's realized profit is capped at
        that pool's max_pnl_rate times entry notional.

        Raises:
            UnauthorizedCaller: If caller lacks the deleverage role
            DeleverageNotAllowed: If no leg exceeds its trigger rate
        """
        if caller not in self.deleverage_operators:
            logger.info("rejected ADL on %s by %s: not authorized", position_id, caller)
            raise UnauthorizedCaller(f"{caller!r} may not fill ADL orders")
        with self._atomic("fill_adl_order"):
            account = self._account(position_id)
            market = self._market(market_id)
            legs = account.legs(market_id)
            if not legs:
                raise PositionNotFound(f"{position_id} has no position in {market_id}")
            mark = market.mark_price(prices)
            self._touch_market(market, prices)
            if not self._deleverage_triggered(account, market, mark):
                raise DeleverageNotAllowed(f"{position_id} {market_id} is below every ADL trigger")
            size = account.total_size(market_id)
            changes, realized, borrowing, fee_usd = self._settle_close(
                account, market, {p: leg.size for p, leg in legs.items()}, mark, prices, cap_pnl=True
            )
            self._prune_collaterals(account, prices)
            self._sync_active(account)
            result = PositionResult(
                operation=OperationType.FILL_ADL,
                position_id=position_id,
                market_id=market_id,
                is_long=market.is_long,
                size=size,
                trading_price=mark,
                legs=tuple(changes),
                position_fee_usd=fee_usd,
                borrowing_fee_usd=borrowing,
                realized_pnl_usd=realized,
                collaterals=tuple(account.collaterals.items()),
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
            )
        return self._finish(result)

    def reallocate(
        self,
        position_id: str,
        market_id: str,
        from_pool_id: str,
        to_pool_id: str,
        size: NumberLike,
        prices: Mapping[str, Decimal],
    ) -> ReallocationResult:
        """
        Move part of a leg from one backing pool to another.

        The trader keeps the cost basis: the moved size carries its entry
        price into to_pool. Unrealized PnL on the moved size is settled
        between the pools (from_pool pays to_pool when the trader is in
        profit, the reverse otherwise). The trader only pays the borrowing
        fee accrued on the moved size.

        The entry price is kept even when to_pool holds nothing yet; taking
        mark there would shift the trader's margin by the PnL the pools have
        already settled, and an unchanged margin takes precedence.

        Raises:
            InvalidCloseSize: If size exceeds the from_pool leg
            MarketFull: If to_pool is draining or lacks capacity
        """
        size = to_decimal(size)
        with self._atomic("reallocate"):
            account = self._account(position_id)
            market = self._market(market_id)
            lot_size = market.config.require("lot_size", market_id)
            for pool_id in (from_pool_id, to_pool_id):
                if pool_id not in market.backing_pools:
                    raise UnknownPool(f"pool {pool_id!r} does not back {market_id}")
            if from_pool_id == to_pool_id:
                raise InvalidAmount("Cannot reallocate a leg to its own pool")
            validate_size(size, lot_size)
            from_leg = account.legs(market_id).get(from_pool_id)
            if from_leg is None:
                raise PositionNotFound(f"{position_id} has no {market_id} leg in {from_pool_id}")
            if size > from_leg.size:
                raise InvalidCloseSize(f"Cannot move {size}, leg holds {from_leg.size}")
            from_pool = self.pools[from_pool_id]
            to_pool = self.pools[to_pool_id]
            if to_pool.config.is_draining:
                raise MarketFull(f"pool {to_pool_id!r} is draining")
            mark = market.mark_price(prices)
            self._touch_market(market, prices)

            from_state = from_pool.market_state(market_id)
            to_state = to_pool.market_state(market_id)
            borrowing = calculate_borrowing_fee(
                from_state.cumulated_borrowing_per_usd, from_leg.entry_borrowing_per_usd, size, mark
            )
            self._debit_usd(account, borrowing, prices, None, "borrowing_fee")

            pnl = calculate_position_pnl(market.is_long, size, from_leg.entry_price, mark)
            if pnl > ZERO:
                payment = self._pay_between_pools(from_pool, to_pool, pnl, prices)
            elif pnl < ZERO:
                payment = -self._pay_between_pools(to_pool, from_pool, -pnl, prices)
            else:
                payment = ZERO

            self._reduce_pool_state(from_pool, market_id, size, from_leg.entry_price)
            legs = account.positions[market_id]
            if size == from_leg.size:
                del legs[from_pool_id]
            else:
                legs[from_pool_id] = replace(from_leg, size=from_leg.size - size)

            to_pool.market_states[market_id] = replace(
                to_state,
                total_size=to_state.total_size + size,
                average_entry_price=calculate_blended_entry(
                    to_state.total_size, to_state.average_entry_price, size, from_leg.entry_price
                ),
                is_reallocated=True,
            )
            old = legs.get(to_pool_id)
            old_size = old.size if old else ZERO
            to_leg = PoolLeg(
                pool_id=to_pool_id,
                size=old_size + size,
                entry_price=calculate_blended_entry(
                    old_size, old.entry_price if old else ZERO, size, from_leg.entry_price
                ),
                entry_borrowing_per_usd=calculate_blended_entry(
                    old_size, old.entry_borrowing_per_usd if old else ZERO,
                    size, to_state.cumulated_borrowing_per_usd,
                ),
            )
            legs[to_pool_id] = to_leg

            to_capacity = to_pool.capacity_usd(self._pool_aum(to_pool, prices))
            to_reserved = to_pool.reserved_usd(market_id, mark)
            if to_reserved > to_capacity:
                raise MarketFull(
                    f"pool {to_pool_id!r} reserve {to_reserved} would exceed capacity {to_capacity}"
                )
            self._prune_collaterals(account, prices)
            remaining_from = legs.get(from_pool_id)
            result = ReallocationResult(
                position_id=position_id,
                market_id=market_id,
                from_pool=from_pool_id,
                to_pool=to_pool_id,
                size=size,
                trading_price=mark,
                pool_payment_usd=payment,
                borrowing_fee_usd=borrowing,
                from_leg_size=remaining_from.size if remaining_from else ZERO,
                to_leg_size=to_leg.size,
                to_leg_entry_price=to_leg.entry_price,
                transfers=tuple(self._transfers),
                timestamp=self._current_time,
            )
        return self._finish(result)

    # ========================================================================
    # CLONING
    # ========================================================================

    def clone(self) -> PerpLedger:
        """
        Create an independent deep copy of this ledger.

        Collaborators are shared with the clone; state, configuration and the
        operation log are copied.
        """
        cloned = PerpLedger.__new__(PerpLedger)
        cloned.name = self.name
        cloned.config = self.config
        cloned.fee_router = self.fee_router
        cloned.token_bridge = self.token_bridge
        cloned.swapper = self.swapper
        cloned.collateral_policy = self.collateral_policy
        cloned.verbose = self.verbose
        cloned.tokens = dict(self.tokens)
        cloned.pools = copy.deepcopy(self.pools)
        cloned.markets = copy.deepcopy(self.markets)
        cloned.accounts = copy.deepcopy(self.accounts)
        cloned.deleverage_operators = set(self.deleverage_operators)
        cloned.operation_log = list(self.operation_log)
        cloned._current_time = self._current_time
        cloned._next_sequence = self._next_sequence
        cloned._active_position_ids = dict(self._active_position_ids)
        cloned._transfers = []
        cloned._disbursements = []
        return cloned

    # ========================================================================
    # INTERNALS: lookups and prices
    # ========================================================================

    def _token(self, symbol: str) -> CollateralToken:
        try:
            return self.tokens[symbol]
        except KeyError:
            raise UnknownToken(f"Token {symbol!r} is not registered") from None

    def _collateral_token(self, symbol: str) -> CollateralToken:
        token = self._token(symbol)
        if not token.enabled:
            raise UnknownToken(f"Token {symbol!r} is disabled as collateral")
        return token

    def _pool(self, pool_id: str) -> CollateralPool:
        try:
            return self.pools[pool_id]
        except KeyError:
            raise UnknownPool(f"Pool {pool_id!r} does not exist") from None

    def _market(self, market_id: str) -> Market:
        try:
            return self.markets[market_id]
        except KeyError:
            raise UnknownMarket(f"Market {market_id!r} does not exist") from None

    def _account(self, position_id: str) -> PositionAccount:
        try:
            return self.accounts[position_id]
        except KeyError:
            raise PositionNotFound(f"Position account {position_id!r} does not exist") from None

    def _get_or_create_account(self, position_id: str) -> PositionAccount:
        account = self.accounts.get(position_id)
        if account is None:
            owner, _ = decode_position_id(position_id)
            account = PositionAccount(position_id=position_id, owner=owner)
            self.accounts[position_id] = account
        return account

    def _token_price(self, prices: Mapping[str, Decimal], symbol: str) -> Decimal:
        price_id = self._token(symbol).price_id
        price = prices.get(price_id)
        if price is None or price <= ZERO:
            raise MissingPrice(f"No valid price for token {symbol!r} ({price_id})")
        return price

    def _token_prices(self, prices: Mapping[str, Decimal], symbols: Iterable[str]) -> Dict[str, Decimal]:
        return {symbol: self._token_price(prices, symbol) for symbol in symbols}

    def _market_prices(self, prices: Mapping[str, Decimal], market_ids: Iterable[str]) -> Dict[str, Decimal]:
        return {market_id: self.markets[market_id].mark_price(prices) for market_id in market_ids}

    def _pool_aum(self, pool: CollateralPool, prices: Mapping[str, Decimal], capped: bool = False) -> Decimal:
        token_prices = self._token_prices(
            prices, [t for t, amount in pool.liquidity_balances.items() if amount != ZERO]
        )
        market_prices = self._market_prices(prices, pool.open_markets())
        if capped:
            return pool.estimated_aum_usd(token_prices, market_prices)
        return pool.aum_usd(token_prices, market_prices)

    def _collateral_usd(self, account: PositionAccount, prices: Mapping[str, Decimal]) -> Decimal:
        held = [t for t, amount in account.collaterals.items() if amount != ZERO]
        return calculate_collateral_usd(account.collaterals, self._token_prices(prices, held))

    # ========================================================================
    # INTERNALS: borrowing
    # ========================================================================

    def _preview_touch(self, pool: CollateralPool, market: Market, prices: Mapping[str, Decimal]) -> BorrowingTouch:
        return calculate_borrowing_touch(
            pool.market_state(market.market_id),
            pool.config,
            pool.adl_config(market.market_id),
            self.config,
            self._pool_aum(pool, prices),
            market.mark_price(prices),
            self._current_time,
        )

    def _touch_market(self, market: Market, prices: Mapping[str, Decimal]) -> List[BorrowingTouch]:
        touches = []
        for pool_id in market.backing_pools:
            pool = self.pools[pool_id]
            touch = self._preview_touch(pool, market, prices)
            pool.market_states[market.market_id] = touch.state
            logger.debug(
                "borrowing %s/%s: u=%s apy=%s accrued=%s",
                pool_id, market.market_id, touch.utilization, touch.apy, touch.accrued,
            )
            touches.append(touch)
        return touches

    def _settle_account_borrowing(self, account: PositionAccount, prices: Mapping[str, Decimal]) -> Decimal:
        """Touch every market of the account and charge all pending borrowing fees."""
        total = ZERO
        for market_id, legs in account.positions.items():
            market = self.markets[market_id]
            self._touch_market(market, prices)
            mark = market.mark_price(prices)
            for pool_id, leg in list(legs.items()):
                cumulated = self.pools[pool_id].market_state(market_id).cumulated_borrowing_per_usd
                fee = calculate_borrowing_fee(cumulated, leg.entry_borrowing_per_usd, leg.size, mark)
                self._debit_usd(account, fee, prices, None, "borrowing_fee")
                legs[pool_id] = replace(leg, entry_borrowing_per_usd=cumulated)
                total += fee
        return total

    # ========================================================================
    # INTERNALS: allocation and settlement
    # ========================================================================

    def _pool_capacity(
        self, pool: CollateralPool, market: Market, mark: Decimal, prices: Mapping[str, Decimal]
    ) -> PoolCapacity:
        if pool.config.is_draining:
            return PoolCapacity(pool.pool_id, ZERO, pool.config.is_high_priority)
        adl = pool.adl_config(market.market_id)
        residual = calculate_residual_size(
            pool.capacity_usd(self._pool_aum(pool, prices)),
            pool.reserved_usd(market.market_id, mark),
            adl.reserve_rate,
            mark,
        )
        return PoolCapacity(pool.pool_id, residual, pool.config.is_high_priority)

    def _check_open_interest(self, market: Market, mark: Decimal) -> None:
        cap = market.config.max_open_interest_usd
        if cap is None:
            return
        open_interest = sum(
            (self.pools[p].market_state(market.market_id).total_size for p in market.backing_pools), ZERO
        ) * mark
        if open_interest > cap:
            raise MarketFull(f"market {market.market_id!r} open interest {open_interest} exceeds {cap}")

    def _reduce_pool_state(
        self, pool: CollateralPool, market_id: str, size: Decimal, entry_price: Decimal
    ) -> None:
        """Remove a leg slice opened at entry_price from the pool's exposure."""
        state = pool.market_state(market_id)
        remaining = state.total_size - size
        if remaining <= ZERO:
            pool.market_states[market_id] = replace(
                state, total_size=ZERO, average_entry_price=ZERO, is_reallocated=False
            )
        else:
            pool.market_states[market_id] = replace(
                state,
                total_size=remaining,
                average_entry_price=calculate_reduced_entry(
                    state.total_size, state.average_entry_price, size, entry_price
                ),
            )

    def _settle_close(
        self,
        account: PositionAccount,
        market: Market,
        closes: Mapping[str, Decimal],
        mark: Decimal,
        prices: Mapping[str, Decimal],
        cap_pnl: bool,
    ) -> Tuple[List[LegChange], Decimal, Decimal, Decimal]:
        """
        Realize closes on the account's legs in one market.

        Profits are credited before any debit so the outcome does not depend
        on leg order. Returns (leg changes, realized pnl, borrowing fee,
        position fee).
        """
        market_id = market.market_id
        fee_rate = market.config.require("position_fee_rate", market_id)
        dust = self.config.dust_threshold_usd
        legs = account.positions[market_id]

        plans = []
        for pool_id, close_size in closes.items():
            if close_size == ZERO:
                continue
            leg = legs[pool_id]
            if (leg.size - close_size) * mark < dust:
                close_size = leg.size
            pool = self.pools[pool_id]
            cumulated = pool.market_state(market_id).cumulated_borrowing_per_usd
            pnl = calculate_position_pnl(market.is_long, close_size, leg.entry_price, mark)
            if cap_pnl:
                pnl = calculate_deleverage_pnl(
                    pnl, close_size, leg.entry_price, pool.adl_config(market_id).max_pnl_rate
                )
            borrowing = calculate_borrowing_fee(cumulated, leg.entry_borrowing_per_usd, leg.size, mark)
            plans.append((pool, leg, close_size, cumulated, pnl, borrowing))

        realized = {}
        for pool, leg, close_size, cumulated, pnl, borrowing in plans:
            if pnl > ZERO:
                realized[pool.pool_id] = self._pay_from_pool(pool, account, pnl, prices, "pnl")
        for pool, leg, close_size, cumulated, pnl, borrowing in plans:
            if pnl < ZERO:
                self._debit_usd(account, -pnl, prices, pool, "pnl")
                realized[pool.pool_id] = pnl

        changes = []
        total_borrowing = total_fee = ZERO
        for pool, leg, close_size, cumulated, pnl, borrowing in plans:
            position_fee = fee_rate * close_size * mark
            self._debit_usd(account, borrowing, prices, None, "borrowing_fee")
            self._debit_usd(account, position_fee, prices, None, "position_fee")
            total_borrowing += borrowing
            total_fee += position_fee

            self._reduce_pool_state(pool, market_id, close_size, leg.entry_price)
            new_size = leg.size - close_size
            if new_size > ZERO:
                legs[pool.pool_id] = replace(leg, size=new_size, entry_borrowing_per_usd=cumulated)
            else:
                del legs[pool.pool_id]
            changes.append(LegChange(
                pool.pool_id, -close_size, new_size, leg.entry_price,
                realized.get(pool.pool_id, ZERO), borrowing,
            ))
        if not legs:
            del account.positions[market_id]
        return changes, sum(realized.values(), ZERO), total_borrowing, total_fee

    # ========================================================================
    # INTERNALS: moving tokens
    # ========================================================================

    def _record(self, amount: Decimal, token: str, source: str, dest: str, reason: str) -> None:
        if amount > ZERO:
            self._transfers.append(Transfer(amount, token, source, dest, reason))

    def _debit_usd(
        self,
        account: PositionAccount,
        usd_amount: Decimal,
        prices: Mapping[str, Decimal],
        pool: Optional[CollateralPool],
        reason: str,
        allow_partial: bool = False,
    ) -> Decimal:
        """
        Take usd_amount of collateral, in policy order, into a pool or the fee router.

        Returns the USD value covered. Raises InsufficientCollateralUsd on a
        shortfall unless allow_partial is set.
        """
        if usd_amount <= ZERO:
            return ZERO
        held = [t for t, amount in account.collaterals.items() if amount > ZERO]
        token_prices = self._token_prices(prices, held)
        plan = plan_collateral_debit(
            account.collaterals, token_prices, usd_amount,
            self.collateral_policy.debit_order(account.collaterals),
        )
        if plan.shortfall_usd > ZERO and not allow_partial:
            raise InsufficientCollateralUsd(
                f"{account.position_id} cannot cover {usd_amount} USD of {reason} "
                f"(short {plan.shortfall_usd})"
            )
        dest = pool_wallet(pool.pool_id) if pool is not None else FEE_WALLET
        for token, amount in plan.debits:
            account.debit(token, amount)
            if pool is not None:
                pool.credit(token, amount)
            self._record(amount, token, account_wallet(account.position_id), dest, reason)
        return plan.covered_usd

    def _pay_from_pool(
        self,
        pool: CollateralPool,
        account: PositionAccount,
        usd_amount: Decimal,
        prices: Mapping[str, Decimal],
        reason: str,
    ) -> Decimal:
        """Pay trader profit in the pool's token, clipped at the pool's balance. Returns USD paid."""
        token = pool.collateral_token
        price = self._token_price(prices, token)
        wanted = to_wad(usd_amount / price)
        amount = min(wanted, pool.balance(token))
        if amount <= ZERO:
            return ZERO
        if amount < wanted:
            logger.warning("pool %s short of %s: profit clipped to %s", pool.pool_id, token, amount)
        pool.debit(token, amount)
        account.credit(token, amount)
        self._record(amount, token, pool_wallet(pool.pool_id), account_wallet(account.position_id), reason)
        return usd_amount if amount == wanted else amount * price

    def _pay_between_pools(
        self,
        payer: CollateralPool,
        payee: CollateralPool,
        usd_amount: Decimal,
        prices: Mapping[str, Decimal],
    ) -> Decimal:
        token = payer.collateral_token
        price = self._token_price(prices, token)
        wanted = to_wad(usd_amount / price)
        amount = min(wanted, payer.balance(token))
        if amount <= ZERO:
            return ZERO
        payer.debit(token, amount)
        payee.credit(token, amount)
        self._record(amount, token, pool_wallet(payer.pool_id), pool_wallet(payee.pool_id), "reallocation_pnl")
        return usd_amount if amount == wanted else amount * price

    def _disburse(self, account: PositionAccount, token: str, amount: Decimal, swap_token: Optional[str]) -> None:
        if amount <= ZERO:
            return
        account.debit(token, amount)
        self._record(amount, token, account_wallet(account.position_id), EXTERNAL_WALLET, "withdraw")
        self._disbursements.append((token, amount, account.owner, swap_token))

    def _disburse_usd(
        self, account: PositionAccount, usd_amount: Decimal, prices: Mapping[str, Decimal],
        swap_token: Optional[str],
    ) -> None:
        held = [t for t, amount in account.collaterals.items() if amount > ZERO]
        plan = plan_collateral_debit(
            account.collaterals, self._token_prices(prices, held), usd_amount,
            self.collateral_policy.debit_order(account.collaterals),
        )
        for token, amount in plan.debits:
            self._disburse(account, token, truncate_to_native(amount, self._token(token).decimals), swap_token)

    def _disburse_all(self, account: PositionAccount, swap_token: Optional[str]) -> None:
        for token, amount in list(account.collaterals.items()):
            self._disburse(account, token, truncate_to_native(amount, self._token(token).decimals), swap_token)
        for token in [t for t, amount in account.collaterals.items() if amount == ZERO]:
            del account.collaterals[token]

    def _prune_collaterals(self, account: PositionAccount, prices: Mapping[str, Decimal]) -> None:
        """Drop collateral entries worth less than the dust threshold."""
        for token, amount in list(account.collaterals.items()):
            if amount == ZERO:
                del account.collaterals[token]
                continue
            price = prices.get(self._token(token).price_id)
            if price is not None and amount * price < self.config.dust_threshold_usd:
                del account.collaterals[token]

    # ========================================================================
    # INTERNALS: margin
    # ========================================================================

    def _exposures(self, account: PositionAccount, prices: Mapping[str, Decimal]) -> List[LegExposure]:
        exposures = []
        for market_id, legs in account.positions.items():
            market = self.markets[market_id]
            mark = market.mark_price(prices)
            initial_rate = market.config.require("initial_margin_rate", market_id)
            maintenance_rate = market.config.require("maintenance_margin_rate", market_id)
            for pool_id, leg in legs.items():
                cumulated = self._preview_touch(self.pools[pool_id], market, prices).state.cumulated_borrowing_per_usd
                exposures.append(LegExposure(
                    market_id=market_id,
                    pool_id=pool_id,
                    is_long=market.is_long,
                    size=leg.size,
                    entry_price=leg.entry_price,
                    mark_price=mark,
                    borrowing_fee_usd=calculate_borrowing_fee(
                        cumulated, leg.entry_borrowing_per_usd, leg.size, mark
                    ),
                    initial_margin_rate=initial_rate,
                    maintenance_margin_rate=maintenance_rate,
                ))
        return exposures

    def _margin_status(self, account: PositionAccount, prices: Mapping[str, Decimal]) -> MarginStatus:
        return calculate_margin_status(self._collateral_usd(account, prices), self._exposures(account, prices))

    def _require_initial_margin(self, account: PositionAccount, prices: Mapping[str, Decimal]) -> None:
        status = self._margin_status(account, prices)
        if not status.is_initial_margin_safe:
            raise UnsafePositionAccount(
                f"{account.position_id} margin {status.margin_balance_usd} below initial "
                f"{status.initial_margin_usd}"
            )

    def _deleverage_triggered(self, account: PositionAccount, market: Market, mark: Decimal) -> bool:
        for pool_id, leg in account.legs(market.market_id).items():
            adl = self.pools[pool_id].adl_config(market.market_id)
            pnl = calculate_position_pnl(market.is_long, leg.size, leg.entry_price, mark)
            if is_deleverage_triggered(pnl, leg.size, leg.entry_price, adl.trigger_rate):
                return True
        return False

    def _sync_active(self, account: PositionAccount) -> None:
        if account.has_positions():
            self._active_position_ids.setdefault(account.position_id, None)
        else:
            self._active_position_ids.pop(account.position_id, None)

    # ========================================================================
    # INTERNALS: atomicity and logging
    # ========================================================================

    @contextmanager
    def _atomic(self, operation: str) -> Iterator[None]:
        """
        Run an operation against a snapshot of mutable state.

        On any exception the snapshot is restored and the exception re-raised.
        """
        snapshot = copy.deepcopy((self.pools, self.accounts, self._active_position_ids))
        self._transfers = []
        self._disbursements = []
        try:
            yield
        except Exception as exc:
            self.pools, self.accounts, self._active_position_ids = snapshot
            self._transfers = []
            self._disbursements = []
            logger.info("rejected %s: %s: %s", operation, type(exc).__name__, exc)
            raise

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def _finish(self, result: OperationResult) -> OperationResult:
        """Log a committed result, then dispatch fees and payouts to collaborators."""
        sequence = self._next_sequence
        self._next_sequence += 1
        self.operation_log.append(OperationRecord(
            sequence=sequence,
            exec_id=self._generate_exec_id(sequence),
            timestamp=self._current_time,
            result=result,
        ))
        logger.info("applied %s #%d", result.operation.value, sequence)

        for transfer in result.transfers:
            if transfer.dest == FEE_WALLET:
                self.fee_router.route_fee(transfer.token, transfer.amount, transfer.reason)
        disbursements, self._disbursements = self._disbursements, []
        for token, amount, recipient, swap_token in disbursements:
            self._pay_out(token, amount, recipient, swap_token)

        if self.verbose:
            print(repr(result))
        return result

    def _pay_out(self, token: str, amount: Decimal, recipient: str, swap_token: Optional[str]) -> None:
        """Send tokens out, converting through the swapper when asked; fall back to the original token."""
        if swap_token and swap_token != token and self.swapper is not None:
            try:
                swapped = self.swapper.swap(token, swap_token, amount)
            except SwapFailed as exc:
                logger.warning("swap %s -> %s failed, paying %s instead: %s", token, swap_token, token, exc)
            else:
                self.token_bridge.transfer_out(
                    swap_token, to_raw_amount(swapped, self._token(swap_token).decimals), recipient
                )
                return
        self.token_bridge.transfer_out(token, to_raw_amount(amount, self._token(token).decimals), recipient)
