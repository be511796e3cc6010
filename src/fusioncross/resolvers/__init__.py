"""Resolver profiles, bidding strategies and simulated resolver agents.

Agents live in ``fusioncross.resolvers.agent``; they depend on the auction
engine, which itself looks resolvers up through this package.
"""

from fusioncross.resolvers.base import BiddingStrategy, BidIntent, MarketView, ResolverProfile
from fusioncross.resolvers.directory import ResolverDirectory, default_profiles
from fusioncross.resolvers.strategies import (
    FixedShareStrategy,
    PriceThresholdStrategy,
    StochasticStrategy,
    build_strategy,
)

__all__ = [
    "BidIntent",
    "BiddingStrategy",
    "FixedShareStrategy",
    "MarketView",
    "PriceThresholdStrategy",
    "ResolverDirectory",
    "ResolverProfile",
    "StochasticStrategy",
    "build_strategy",
    "default_profiles",
]
