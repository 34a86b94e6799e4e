"""
test_liquidity.py - LP deposits and withdrawals

Tests:
- Shares minted at NAV after the liquidity fee
- Liquidity cap on post-deposit AUM
- Withdrawal at NAV, paid in the pool's token
- Reserve protection on withdrawal
"""

import pytest
from decimal import Decimal

from perpledger import (
    OperationType, LiquidityCapExceeded, InsufficientLiquidity, InvalidAmount,
    UnknownPool, EXTERNAL_WALLET, FEE_WALLET, pool_wallet,
)


LP = "lp"
TRADER = "trader:0"


class TestAddLiquidity:
    """Minting LP shares."""

    def test_first_deposit(self, ledger_factory, prices):
        ledger = ledger_factory(funded=False)
        result = ledger.add_liquidity("pool1", LP, Decimal("1000000"), prices)

        assert result.operation == OperationType.ADD_LIQUIDITY
        assert result.nav == Decimal("1")
        assert result.fee == Decimal("100")
        assert result.shares == Decimal("999900")
        assert ledger.share_balance("pool1", LP) == Decimal("999900")
        assert ledger.pools["pool1"].balance("USDC") == Decimal("999900")
        assert ledger.token_bridge.inbound == [("USDC", 1000000_000000, LP)]
        assert ledger.fee_router.by_reason["liquidity_fee"] == Decimal("100")

    def test_deposit_transfers(self, ledger_factory, prices):
        ledger = ledger_factory(funded=False)
        result = ledger.add_liquidity("pool1", LP, Decimal("1000"), prices)
        assert [(t.source, t.dest, t.amount) for t in result.transfers] == [
            (EXTERNAL_WALLET, pool_wallet("pool1"), Decimal("999.9")),
            (EXTERNAL_WALLET, FEE_WALLET, Decimal("0.1")),
        ]

    def test_cap_exceeded(self, ledger, prices, snapshot_state):
        before = snapshot_state(ledger)
        inbound = list(ledger.token_bridge.inbound)
        with pytest.raises(LiquidityCapExceeded):
            ledger.add_liquidity("pool1", LP, Decimal("200"), prices)
        assert snapshot_state(ledger) == before
        assert ledger.token_bridge.inbound == inbound
        assert ledger.share_balance("pool1", LP) == Decimal("999900")

    def test_deposit_up_to_cap(self, ledger, prices):
        # 99.99 lands in the pool after the fee, just under the cap
        ledger.add_liquidity("pool1", LP, Decimal("100"), prices)
        assert ledger.get_aum_usd("pool1", prices) == Decimal("999999.99")

    def test_btc_pool_shares_priced_in_usd(self, ledger_factory, prices):
        ledger = ledger_factory(pools=("pool3",), funded=False)
        result = ledger.add_liquidity("pool3", LP, Decimal("1"), prices)
        assert result.shares == Decimal("49995")

    def test_zero_amount(self, ledger, prices):
        with pytest.raises(InvalidAmount):
            ledger.add_liquidity("pool1", LP, Decimal("0"), prices)

    def test_unknown_pool(self, ledger, prices):
        with pytest.raises(UnknownPool):
            ledger.add_liquidity("pool9", LP, Decimal("1"), prices)


class TestRemoveLiquidity:
    """Burning LP shares."""

    def test_withdraw_at_nav(self, ledger, prices_factory):
        prices = prices_factory(btc="40000")
        assert ledger.pool_nav("pool3", prices) == Decimal("0.8")

        result = ledger.remove_liquidity("pool3", LP, Decimal("100"), prices)

        assert result.operation == OperationType.REMOVE_LIQUIDITY
        assert result.amount == Decimal("0.002")
        assert result.fee == Decimal("0.0000002")
        assert ledger.token_bridge.outbound == [("BTC", 199980, LP)]
        assert ledger.pools["pool3"].balance("BTC") == Decimal("19.996")
        assert ledger.share_balance("pool3", LP) == Decimal("999800")

    def test_more_shares_than_held(self, ledger, prices):
        with pytest.raises(InvalidAmount):
            ledger.remove_liquidity("pool1", LP, Decimal("999901"), prices)

    def test_reserve_blocks_withdrawal(self, single_pool_ledger, prices, snapshot_state):
        ledger = single_pool_ledger
        ledger.deposit_collateral(TRADER, "USDC", Decimal("100000"))
        ledger.open_position(TRADER, "LongBTC", Decimal("20"), prices)
        before = snapshot_state(ledger)
        # 20 * 50,000 * 0.8 = 800,000 reserved; 499,900 would remain
        with pytest.raises(InsufficientLiquidity):
            ledger.remove_liquidity("pool1", LP, Decimal("500000"), prices)
        assert snapshot_state(ledger) == before
        assert ledger.token_bridge.outbound == []

    def test_withdraw_within_reserve(self, single_pool_ledger, prices):
        ledger = single_pool_ledger
        ledger.deposit_collateral(TRADER, "USDC", Decimal("100000"))
        ledger.open_position(TRADER, "LongBTC", Decimal("20"), prices)
        ledger.remove_liquidity("pool1", LP, Decimal("100000"), prices)
        assert ledger.pools["pool1"].balance("USDC") == Decimal("899900")

    def test_full_exit_of_empty_pool(self, ledger, prices):
        ledger.remove_liquidity("pool2", LP, Decimal("999900"), prices)
        assert ledger.pools["pool2"].share_supply == Decimal("0")
        assert ledger.pool_nav("pool2", prices) == Decimal("1")
        assert ledger.token_bridge.total_out("USDC", LP) == 999800_010000
