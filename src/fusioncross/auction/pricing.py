"""Dutch auction price schedule.

The price decays with both fill level and elapsed time::

    decay = clamp(d(f) + t * time_acceleration, 0, max_decay)
    price = max(initial * (1 - decay), initial * floor_ratio)

where ``f`` is the filled fraction, ``t`` the elapsed fraction of the window
and ``d(f)`` a step table keyed by fill fraction. Steps must be ascending in
both fill and decay, which keeps the price non-increasing in time and fill.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Union

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def _clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return max(low, min(value, high))


@dataclass(frozen=True)
class DecayStep:
    """Decay applied while the filled fraction is at most ``fill_fraction``."""

    fill_fraction: Decimal
    decay: Decimal


@dataclass(frozen=True)
class DecaySchedule:
    """Price decay parameters for an auction."""

    steps: tuple[DecayStep, ...]
    min_decay: Decimal = Decimal("0.001")
    max_decay: Decimal = Decimal("0.015")
    time_acceleration: Decimal = Decimal("0.5")
    floor_ratio: Decimal = Decimal("0.985")

    def __post_init__(self):
        if not self.steps:
            raise ValueError("Decay schedule needs at least one step")
        previous = None
        for step in self.steps:
            if step.decay < 0 or not (0 < step.fill_fraction <= 1):
                raise ValueError(f"Invalid decay step {step}")
            if previous is not None and (
                step.fill_fraction <= previous.fill_fraction or step.decay < previous.decay
            ):
                raise ValueError("Decay steps must ascend in fill fraction and decay")
            previous = step
        if self.min_decay > self.max_decay:
            raise ValueError("min_decay must not exceed max_decay")
        if not (0 < self.floor_ratio <= 1):
            raise ValueError("floor_ratio must be in (0, 1]")

    @classmethod
    def parse(cls, text: str, **kwargs) -> "DecaySchedule":
        """Build a schedule from ``"fill:decay,fill:decay"`` text.

        Example:
            DecaySchedule.parse("0.1:0.002,0.3:0.005,0.6:0.010,1.0:0.015")
        """
        steps = []
        for pair in text.split(","):
            pair = pair.strip()
            if not pair:
                continue
            fill, sep, decay = pair.partition(":")
            if not sep:
                raise ValueError(f"Decay step '{pair}' must look like fill:decay")
            try:
                steps.append(DecayStep(Decimal(fill.strip()), Decimal(decay.strip())))
            except InvalidOperation:
                raise ValueError(f"Decay step '{pair}' must look like fill:decay")
        return cls(steps=tuple(steps), **kwargs)

    @classmethod
    def from_settings(cls, settings) -> "DecaySchedule":
        return cls.parse(
            settings.auction_decay_steps,
            min_decay=settings.auction_min_decay,
            max_decay=settings.auction_max_decay,
            time_acceleration=settings.auction_time_acceleration,
            floor_ratio=settings.auction_floor_ratio,
        )

    def decay_for_fill(self, fill_fraction: Number) -> Decimal:
        """Look up d(f): the first step whose fill fraction covers ``f``.

        Never below ``min_decay``; fills past the last step keep its decay.
        """
        fill = to_decimal(fill_fraction)
        decay = self.steps[-1].decay
        for step in self.steps:
            if fill <= step.fill_fraction:
                decay = step.decay
                break
        return max(decay, self.min_decay)

    def floor_price(self, initial_price: Number) -> Decimal:
        return to_decimal(initial_price) * self.floor_ratio

    def price(
        self,
        initial_price: Number,
        elapsed_fraction: Number,
        fill_fraction: Number,
    ) -> Decimal:
        """Compute the current price.

        Args:
            initial_price: Starting price
            elapsed_fraction: Share of the auction window elapsed (clamped to [0, 1])
            fill_fraction: Share of units already filled (clamped to [0, 1])

        Returns:
            Price, never below ``initial_price * floor_ratio``
        """
        initial = to_decimal(initial_price)
        t = _clamp(to_decimal(elapsed_fraction), Decimal(0), Decimal(1))
        f = _clamp(to_decimal(fill_fraction), Decimal(0), Decimal(1))

        decay = self.decay_for_fill(f) + t * self.time_acceleration
        decay = _clamp(decay, Decimal(0), self.max_decay)
        return max(initial * (1 - decay), self.floor_price(initial))


DEFAULT_SCHEDULE = DecaySchedule.parse("0.1:0.002,0.3:0.005,0.6:0.010,1.0:0.015")
