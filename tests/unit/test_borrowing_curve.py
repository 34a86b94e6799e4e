"""
test_borrowing_curve.py - Unit tests for the borrowing fee curve

Tests:
- Utilization edge cases (nothing reserved, exhausted AUM, clamping)
- APY formula base + exp(k*u - b)
- Accrual delta over a year fraction
- Borrowing fee owed by a leg
- Elapsed-time handling
- Pool-market touch: first touch, idempotent re-touch, reference price
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from perpledger import (
    calculate_utilization,
    calculate_borrowing_apy,
    calculate_accrual_delta,
    calculate_borrowing_fee,
    PoolMarketState, PoolConfig, AdlConfig, EngineConfig,
    SECONDS_PER_YEAR,
)
from perpledger.borrowing import calculate_elapsed_seconds
from perpledger.pool import calculate_borrowing_touch, calculate_reserved_usd


T0 = datetime(2024, 1, 1)


# ============================================================================
# UTILIZATION
# ============================================================================

class TestUtilization:
    """Tests for calculate_utilization."""

    def test_nothing_reserved_is_zero(self):
        assert calculate_utilization(Decimal("0"), Decimal("1000")) == Decimal("0")

    def test_ratio(self):
        assert calculate_utilization(Decimal("250"), Decimal("1000")) == Decimal("0.25")

    def test_exhausted_aum_is_full(self):
        assert calculate_utilization(Decimal("10"), Decimal("0")) == Decimal("1")
        assert calculate_utilization(Decimal("10"), Decimal("-5")) == Decimal("1")

    def test_clamped_at_one(self):
        assert calculate_utilization(Decimal("2000"), Decimal("1000")) == Decimal("1")


# ============================================================================
# APY AND ACCRUAL
# ============================================================================

class TestBorrowingApy:
    """Tests for calculate_borrowing_apy."""

    def test_zero_utilization(self):
        apy = calculate_borrowing_apy(Decimal("0.10"), Decimal("10"), Decimal("7"), Decimal("0"))
        assert abs(apy - (Decimal("0.10") + Decimal("-7").exp())) < Decimal("1e-30")

    def test_half_utilization(self):
        """exp(10 * 0.5 - 7) = exp(-2) = 0.1353352832366127..."""
        apy = calculate_borrowing_apy(Decimal("0.10"), Decimal("10"), Decimal("7"), Decimal("0.5"))
        assert abs(apy - Decimal("0.2353352832366126919")) < Decimal("1e-15")

    def test_partial_utilization(self):
        """u = 0.3805, k = 10, b = 7 gives exp(-3.195) on top of the base rate."""
        apy = calculate_borrowing_apy(Decimal("0.10"), Decimal("10"), Decimal("7"), Decimal("0.3805"))
        expected = Decimal("0.10") + Decimal("-3.195").exp()
        assert apy == expected
        assert abs(apy - Decimal("0.140980")) < Decimal("1e-5")

    def test_increases_with_utilization(self):
        low = calculate_borrowing_apy(Decimal("0"), Decimal("6.36306"), Decimal("6.58938"), Decimal("0.1"))
        high = calculate_borrowing_apy(Decimal("0"), Decimal("6.36306"), Decimal("6.58938"), Decimal("0.9"))
        assert high > low > Decimal("0")


class TestAccrual:
    """Tests for calculate_accrual_delta and calculate_borrowing_fee."""

    def test_seven_days(self):
        apy = Decimal("0.140980166767003251")
        delta = calculate_accrual_delta(apy, Decimal(7 * 86400), SECONDS_PER_YEAR)
        assert abs(delta - Decimal("0.002703729225668555")) < Decimal("1e-17")

    def test_full_year_equals_apy(self):
        delta = calculate_accrual_delta(Decimal("0.12"), SECONDS_PER_YEAR, SECONDS_PER_YEAR)
        assert delta == Decimal("0.12")

    def test_no_time_no_accrual(self):
        assert calculate_accrual_delta(Decimal("5"), Decimal("0"), SECONDS_PER_YEAR) == Decimal("0")

    def test_fee_owed(self):
        fee = calculate_borrowing_fee(Decimal("0.003"), Decimal("0.001"), Decimal("2"), Decimal("50000"))
        assert fee == Decimal("200")

    def test_fee_never_negative(self):
        fee = calculate_borrowing_fee(Decimal("0.001"), Decimal("0.002"), Decimal("1"), Decimal("50000"))
        assert fee == Decimal("0")

    def test_elapsed_first_touch(self):
        assert calculate_elapsed_seconds(None, T0) == Decimal("0")

    def test_elapsed_seconds(self):
        assert calculate_elapsed_seconds(T0, T0 + timedelta(hours=1)) == Decimal("3600")

    def test_elapsed_backwards_rejected(self):
        with pytest.raises(ValueError):
            calculate_elapsed_seconds(T0, T0 - timedelta(seconds=1))


# ============================================================================
# POOL-MARKET TOUCH
# ============================================================================

class TestBorrowingTouch:
    """Tests for calculate_borrowing_touch."""

    @pytest.fixture
    def setup(self):
        config = PoolConfig(
            borrowing_k=Decimal("10"), borrowing_b=Decimal("7"),
            liquidity_cap_usd=Decimal("1000000"),
        )
        adl = AdlConfig(Decimal("0.5"), Decimal("0.75"), Decimal("0.70"))
        engine = EngineConfig(borrowing_base_apy=Decimal("0.10"))
        return config, adl, engine

    def test_first_touch_only_stamps_time(self, setup):
        config, adl, engine = setup
        state = PoolMarketState(is_long=True, total_size=Decimal("1"), average_entry_price=Decimal("50000"))
        touch = calculate_borrowing_touch(state, config, adl, engine, Decimal("100000"), Decimal("50000"), T0)
        assert touch.accrued == Decimal("0")
        assert touch.state.last_borrowing_update_time == T0
        assert touch.state.cumulated_borrowing_per_usd == Decimal("0")

    def test_touch_accrues_at_pre_touch_utilization(self, setup):
        config, adl, engine = setup
        state = PoolMarketState(
            is_long=True, total_size=Decimal("1"), average_entry_price=Decimal("50000"),
            last_borrowing_update_time=T0,
        )
        now = T0 + timedelta(days=7)
        # reserved = 1 * 50000 * 0.5 = 25000 over AUM 50000 -> u = 0.5
        touch = calculate_borrowing_touch(state, config, adl, engine, Decimal("50000"), Decimal("50000"), now)
        expected_apy = Decimal("0.10") + Decimal("-2").exp()
        assert touch.utilization == Decimal("0.5")
        assert touch.apy == expected_apy
        expected = expected_apy * Decimal(7 * 86400) / SECONDS_PER_YEAR
        assert abs(touch.accrued - expected) < Decimal("1e-18")

    def test_same_timestamp_is_idempotent(self, setup):
        config, adl, engine = setup
        state = PoolMarketState(
            is_long=True, total_size=Decimal("1"), average_entry_price=Decimal("50000"),
            cumulated_borrowing_per_usd=Decimal("0.01"), last_borrowing_update_time=T0,
        )
        touch = calculate_borrowing_touch(state, config, adl, engine, Decimal("50000"), Decimal("50000"), T0)
        assert touch.state == state

    def test_pool_base_apy_overrides_engine(self, setup):
        _, adl, engine = setup
        config = PoolConfig(
            borrowing_k=Decimal("10"), borrowing_b=Decimal("7"),
            liquidity_cap_usd=Decimal("1000000"), borrowing_base_apy=Decimal("0.02"),
        )
        state = PoolMarketState(is_long=True)
        touch = calculate_borrowing_touch(state, config, adl, engine, Decimal("1000"), Decimal("1"), T0)
        assert touch.apy == Decimal("0.02") + Decimal("-7").exp()


class TestReferencePrice:
    """Reserved value uses entry price, or mark for inherited exposure."""

    def test_entry_price_for_opened_exposure(self):
        state = PoolMarketState(is_long=True, total_size=Decimal("2"), average_entry_price=Decimal("50000"))
        assert calculate_reserved_usd(state, Decimal("0.8"), Decimal("60000")) == Decimal("80000")

    def test_mark_price_for_reallocated_exposure(self):
        state = PoolMarketState(
            is_long=True, total_size=Decimal("2"), average_entry_price=Decimal("50000"),
            is_reallocated=True,
        )
        assert calculate_reserved_usd(state, Decimal("0.8"), Decimal("60000")) == Decimal("96000")
