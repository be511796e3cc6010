"""Bidding strategies for simulated resolvers."""

import math
import random
from decimal import Decimal
from typing import Optional

from fusioncross.resolvers.base import BiddingStrategy, BidIntent, MarketView, ResolverProfile


class FixedShareStrategy(BiddingStrategy):
    """Bid a fixed share of the swap whenever the price is acceptable.

    Args:
        percent: Share of the swap to request on each bid
        max_price: Worst acceptable price (None = take any current price)
    """

    name = "fixed_share"

    def __init__(self, percent=Decimal("20"), max_price=None):
        self.percent = Decimal(str(percent))
        self.max_price = None if max_price is None else Decimal(str(max_price))

    def decide(self, view: MarketView, profile: ResolverProfile) -> Optional[BidIntent]:
        if self.max_price is not None and view.current_price > self.max_price:
            return None
        wanted = math.floor(self.percent * view.total_units / 100)
        units = self.clamp_units(wanted, view, profile)
        if units is None:
            return None
        limit = view.current_price if self.max_price is None else self.max_price
        return BidIntent(units=units, limit_price=limit)


class PriceThresholdStrategy(BiddingStrategy):
    """Wait until the price has decayed far enough, then take as much as allowed.

    Args:
        min_discount: Required fractional drop from the initial price
            (0.005 = bid once the price is 0.5% below its start)
    """

    name = "price_threshold"

    def __init__(self, min_discount=Decimal("0.005")):
        self.min_discount = Decimal(str(min_discount))

    def decide(self, view: MarketView, profile: ResolverProfile) -> Optional[BidIntent]:
        if view.discount < self.min_discount:
            return None
        _, max_units = profile.unit_bounds(view.total_units)
        units = self.clamp_units(max_units, view, profile)
        if units is None:
            return None
        return BidIntent(
            units=units, limit_price=view.initial_price * (1 - self.min_discount)
        )


class StochasticStrategy(BiddingStrategy):
    """Randomized bidder modeled on resolvers observed in the wild.

    Each tick the resolver bids with ``bid_probability``, for a random share
    between ``min_share`` and ``max_share`` of its maximum fill. A bid that
    was decided is dropped with probability ``1 - success_rate``, and the
    submission waits a random response delay.
    """

    name = "stochastic"

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        bid_probability: float = 0.3,
        min_share: float = 0.1,
        max_share: float = 0.5,
        success_rate: float = 1.0,
        min_delay: float = 0.0,
        max_delay: float = 0.0,
    ):
        if not 0 <= min_share <= max_share <= 1:
            raise ValueError("Shares must satisfy 0 <= min_share <= max_share <= 1")
        self.rng = rng or random.Random()
        self.bid_probability = bid_probability
        self.min_share = min_share
        self.max_share = max_share
        self.success_rate = success_rate
        self.min_delay = min_delay
        self.max_delay = max_delay

    def decide(self, view: MarketView, profile: ResolverProfile) -> Optional[BidIntent]:
        if self.rng.random() >= self.bid_probability:
            return None
        share = self.rng.uniform(self.min_share, self.max_share)
        _, max_units = profile.unit_bounds(view.total_units)
        # Round up so small shares still reach one slot
        wanted = max(1, math.ceil(max_units * share))
        units = self.clamp_units(wanted, view, profile)
        if units is None:
            return None
        if self.rng.random() >= self.success_rate:
            return None
        return BidIntent(units=units, limit_price=view.current_price)

    def response_delay(self) -> float:
        if self.max_delay <= 0:
            return 0.0
        return self.rng.uniform(self.min_delay, self.max_delay)


STRATEGIES: dict[str, type[BiddingStrategy]] = {
    FixedShareStrategy.name: FixedShareStrategy,
    PriceThresholdStrategy.name: PriceThresholdStrategy,
    StochasticStrategy.name: StochasticStrategy,
}


def build_strategy(
    profile: ResolverProfile, rng: Optional[random.Random] = None
) -> BiddingStrategy:
    """Instantiate the strategy named in a resolver profile.

    Raises:
        ValueError: If the strategy name is unknown
    """
    cls = STRATEGIES.get(profile.strategy)
    if cls is None:
        raise ValueError(
            f"Unknown strategy '{profile.strategy}' for resolver {profile.id}. "
            f"Available: {', '.join(sorted(STRATEGIES))}"
        )
    params = dict(profile.strategy_params)
    if cls is StochasticStrategy:
        params.setdefault("rng", rng)
    return cls(**params)
