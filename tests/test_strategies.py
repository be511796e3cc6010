"""Tests for resolver bidding strategies."""

import random
from decimal import Decimal

import pytest

from fusioncross.resolvers.base import MarketView, ResolverProfile
from fusioncross.resolvers.strategies import (
    FixedShareStrategy,
    PriceThresholdStrategy,
    StochasticStrategy,
    build_strategy,
)


def view(current="998", remaining=10, total=10) -> MarketView:
    return MarketView(
        swap_id="swap-1",
        current_price=Decimal(current),
        initial_price=Decimal("1000"),
        floor_price=Decimal("985"),
        total_units=total,
        remaining_units=remaining,
        time_remaining=60.0,
    )


@pytest.fixture
def profile() -> ResolverProfile:
    return ResolverProfile(
        id="r1", name="Test", min_fill_percent=Decimal("20"), max_fill_percent=Decimal("50")
    )


class TestResolverProfile:
    """Tests for ResolverProfile bounds."""

    def test_unit_bounds(self, profile):
        assert profile.unit_bounds(10) == (2, 5)
        assert profile.unit_bounds(3) == (1, 1)

    def test_min_above_max_rejected(self):
        with pytest.raises(ValueError):
            ResolverProfile(id="x", name="x", min_fill_percent=60, max_fill_percent=50)


class TestFixedShareStrategy:
    """Tests for FixedShareStrategy."""

    def test_bids_share(self, profile):
        intent = FixedShareStrategy(percent=30).decide(view(), profile)
        assert intent.units == 3
        assert intent.limit_price == Decimal("998")

    def test_clamped_to_bounds_and_remaining(self, profile):
        assert FixedShareStrategy(percent=80).decide(view(), profile).units == 5
        assert FixedShareStrategy(percent=40).decide(view(remaining=3), profile).units == 3
        assert FixedShareStrategy(percent=40).decide(view(remaining=1), profile) is None

    def test_waits_for_price(self, profile):
        strategy = FixedShareStrategy(percent=20, max_price="995")
        assert strategy.decide(view(current="998"), profile) is None
        assert strategy.decide(view(current="994"), profile).limit_price == Decimal("995")


class TestPriceThresholdStrategy:
    """Tests for PriceThresholdStrategy."""

    def test_waits_for_discount(self, profile):
        strategy = PriceThresholdStrategy(min_discount="0.005")

        assert strategy.decide(view(current="998"), profile) is None
        intent = strategy.decide(view(current="995"), profile)
        assert intent.units == 5
        assert intent.limit_price == Decimal("995.000")


class TestStochasticStrategy:
    """Tests for StochasticStrategy."""

    def test_seeded_runs_repeat(self, profile):
        first = StochasticStrategy(rng=random.Random(7), bid_probability=1.0)
        second = StochasticStrategy(rng=random.Random(7), bid_probability=1.0)

        for _ in range(5):
            assert first.decide(view(), profile) == second.decide(view(), profile)

    def test_within_bounds(self, profile):
        strategy = StochasticStrategy(
            rng=random.Random(1), bid_probability=1.0, min_share=0.5, max_share=1.0
        )
        for _ in range(50):
            intent = strategy.decide(view(), profile)
            assert 2 <= intent.units <= 5

    def test_never_bids(self, profile):
        strategy = StochasticStrategy(rng=random.Random(1), bid_probability=0.0)
        assert strategy.decide(view(), profile) is None

    def test_invalid_shares(self):
        with pytest.raises(ValueError):
            StochasticStrategy(min_share=0.8, max_share=0.2)


class TestBuildStrategy:
    """Tests for build_strategy."""

    def test_from_profile(self):
        profile = ResolverProfile(
            id="r", name="r", strategy="fixed_share", strategy_params={"percent": "40"}
        )
        strategy = build_strategy(profile)
        assert isinstance(strategy, FixedShareStrategy)
        assert strategy.percent == Decimal("40")

    def test_stochastic_gets_rng(self):
        rng = random.Random(3)
        strategy = build_strategy(ResolverProfile(id="r", name="r"), rng)
        assert strategy.rng is rng

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown strategy"):
            build_strategy(ResolverProfile(id="r", name="r", strategy="yolo"))
