"""
test_reallocation.py - Moving legs between backing pools

pool2 drains while the trader opens, so the whole long of 1 BTC at 50,500
lands in pool1. Once pool2 accepts size again the leg is moved there at a
mark of 60,000: pool1 pays pool2 the 9,500 of unrealized trader profit and
pool2 inherits the exposure at the trader's entry price.
"""

import pytest
from decimal import Decimal

from perpledger import (
    OperationType, MarketFull, InvalidCloseSize, InvalidAmount, UnknownPool,
    PositionNotFound, pool_wallet,
)


TRADER = "trader:0"


@pytest.fixture
def moved_out(two_pool_ledger, prices_factory):
    ledger = two_pool_ledger
    ledger.set_pool_draining("pool2", True)
    ledger.deposit_collateral(TRADER, "USDC", Decimal("10000"))
    ledger.open_position(TRADER, "LongBTC", Decimal("1"), prices_factory(btc="50500"))
    return ledger


@pytest.fixture
def ready(moved_out):
    moved_out.set_pool_draining("pool2", False)
    return moved_out


class TestReallocate:
    """Reallocation keeps the trader whole and the pools fair."""

    def test_draining_pool_takes_nothing(self, moved_out):
        legs = moved_out.list_account_positions(TRADER)[0].legs
        assert [(leg.pool_id, leg.size) for leg in legs] == [("pool1", Decimal("1"))]

    def test_into_draining_pool_rejected(self, moved_out, prices_factory):
        with pytest.raises(MarketFull):
            moved_out.reallocate(TRADER, "LongBTC", "pool1", "pool2", Decimal("1"), prices_factory(btc="60000"))

    def test_pnl_settled_between_pools(self, ready, prices_factory):
        result = ready.reallocate(TRADER, "LongBTC", "pool1", "pool2", Decimal("1"), prices_factory(btc="60000"))

        assert result.operation == OperationType.REALLOCATE
        assert result.pool_payment_usd == Decimal("9500")
        assert ready.pools["pool1"].balance("USDC") == Decimal("990400")
        assert ready.pools["pool2"].balance("USDC") == Decimal("1009400")
        assert [t.source for t in result.transfers] == [pool_wallet("pool1")]

    def test_destination_inherits_cost_basis(self, ready, prices_factory):
        result = ready.reallocate(TRADER, "LongBTC", "pool1", "pool2", Decimal("1"), prices_factory(btc="60000"))

        assert result.from_leg_size == Decimal("0")
        assert result.to_leg_size == Decimal("1")
        assert result.to_leg_entry_price == Decimal("50500")
        state = ready.pools["pool2"].market_state("LongBTC")
        assert state.total_size == Decimal("1")
        assert state.average_entry_price == Decimal("50500")
        assert state.is_reallocated
        emptied = ready.pools["pool1"].market_state("LongBTC")
        assert emptied.total_size == Decimal("0")
        assert not emptied.is_reallocated

    def test_aum_and_margin_unchanged(self, ready, prices_factory):
        prices = prices_factory(btc="60000")
        aum_before = {p: ready.get_aum_usd(p, prices) for p in ("pool1", "pool2")}
        margin_before = ready.account_margin(TRADER, prices).margin_balance_usd

        ready.reallocate(TRADER, "LongBTC", "pool1", "pool2", Decimal("1"), prices)

        assert {p: ready.get_aum_usd(p, prices) for p in ("pool1", "pool2")} == aum_before
        assert ready.account_margin(TRADER, prices).margin_balance_usd == margin_before
        assert ready.list_account_collaterals(TRADER) == (("USDC", Decimal("9949.5")),)

    def test_trader_loss_paid_the_other_way(self, ready, prices_factory):
        result = ready.reallocate(TRADER, "LongBTC", "pool1", "pool2", Decimal("1"), prices_factory(btc="45000"))
        assert result.pool_payment_usd == Decimal("-5500")
        assert ready.pools["pool1"].balance("USDC") == Decimal("1005400")
        assert ready.pools["pool2"].balance("USDC") == Decimal("994400")

    def test_partial_move(self, ready, prices_factory):
        result = ready.reallocate(TRADER, "LongBTC", "pool1", "pool2", Decimal("0.4"), prices_factory(btc="50500"))
        assert result.from_leg_size == Decimal("0.6")
        assert result.to_leg_size == Decimal("0.4")
        assert result.pool_payment_usd == Decimal("0")
        assert ready.market_state("LongBTC").total_size == Decimal("1")


class TestReallocateValidation:

    def test_more_than_leg(self, ready, prices):
        with pytest.raises(InvalidCloseSize):
            ready.reallocate(TRADER, "LongBTC", "pool1", "pool2", Decimal("1.1"), prices)

    def test_same_pool(self, ready, prices):
        with pytest.raises(InvalidAmount):
            ready.reallocate(TRADER, "LongBTC", "pool1", "pool1", Decimal("1"), prices)

    def test_pool_not_backing_market(self, ready, prices):
        with pytest.raises(UnknownPool):
            ready.reallocate(TRADER, "LongBTC", "pool1", "pool3", Decimal("1"), prices)

    def test_no_leg_in_source(self, ready, prices):
        with pytest.raises(PositionNotFound):
            ready.reallocate(TRADER, "LongBTC", "pool2", "pool1", Decimal("1"), prices)
