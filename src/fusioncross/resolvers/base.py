"""Resolver profiles and the bidding strategy interface."""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ResolverProfile(BaseModel):
    """Static configuration of one resolver. Never mutated by the engine."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    min_fill_percent: Decimal = Field(default=Decimal("10"), gt=0, le=100)
    max_fill_percent: Decimal = Field(default=Decimal("100"), gt=0, le=100)
    addresses: dict[str, str] = Field(
        default_factory=dict, description="Sending identity per chain name"
    )
    credentials: dict[str, str] = Field(
        default_factory=dict, repr=False, description="Signing credential per chain name"
    )
    strategy: str = "stochastic"
    strategy_params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ResolverProfile":
        if self.min_fill_percent > self.max_fill_percent:
            raise ValueError(
                f"Resolver {self.id}: min_fill_percent exceeds max_fill_percent"
            )
        return self

    def address_on(self, chain: str) -> Optional[str]:
        """Sending identity on a chain, if configured."""
        return self.addresses.get(chain)

    def signer_for(self, chain: str) -> Optional[str]:
        """Signing credential on a chain, if configured."""
        return self.credentials.get(chain)

    def allows_percent(self, percent: Decimal) -> bool:
        return self.min_fill_percent <= percent <= self.max_fill_percent

    def unit_bounds(self, total_units: int) -> tuple[int, int]:
        """Smallest and largest slot counts this resolver may take.

        Returns (min_units, max_units); min_units > max_units means the
        resolver cannot bid on a swap of this size.
        """
        min_units = max(1, math.ceil(self.min_fill_percent * total_units / 100))
        max_units = math.floor(self.max_fill_percent * total_units / 100)
        return min_units, max_units


@dataclass(frozen=True)
class MarketView:
    """What a strategy sees of an auction when deciding to bid."""

    swap_id: str
    current_price: Decimal
    initial_price: Decimal
    floor_price: Decimal
    total_units: int
    remaining_units: int
    time_remaining: float

    @property
    def discount(self) -> Decimal:
        """Fractional decrease from the initial price."""
        if not self.initial_price:
            return Decimal(0)
        return 1 - self.current_price / self.initial_price


@dataclass(frozen=True)
class BidIntent:
    """A strategy's decision: how many slots, and the worst price accepted."""

    units: int
    limit_price: Decimal


class BiddingStrategy(ABC):
    """Decides whether and how much a resolver bids on each tick."""

    name: str = "base"

    @abstractmethod
    def decide(self, view: MarketView, profile: ResolverProfile) -> Optional[BidIntent]:
        """Return a bid to submit now, or None to pass this tick."""
        pass

    def response_delay(self) -> float:
        """Seconds to wait between deciding and submitting."""
        return 0.0

    def clamp_units(
        self, wanted: int, view: MarketView, profile: ResolverProfile
    ) -> Optional[int]:
        """Fit a wanted slot count to the resolver's bounds and what remains."""
        min_units, max_units = profile.unit_bounds(view.total_units)
        units = min(wanted, max_units, view.remaining_units)
        if units < min_units:
            return None
        return units
