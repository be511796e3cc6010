"""Fill slot allocation.

A swap is split into ``N`` equal slots. Fill requests are expressed as a
percentage that must be an exact multiple of ``100 / N``; reservations take
the lowest-index available slots so assignments are deterministic.
"""

from decimal import Decimal
from fractions import Fraction
from typing import Iterable, Union

from fusioncross.errors import BelowMinimumGranularity, InsufficientRemaining, OutOfRange


def units_for_percent(percent: Union[Decimal, int, float, str], total_units: int) -> int:
    """Convert a fill percentage to a whole number of slots.

    Args:
        percent: Requested share of the swap, 0 < percent <= 100
        total_units: Number of slots in the swap (N)

    Returns:
        Slot count

    Raises:
        OutOfRange: If percent is not in (0, 100]
        BelowMinimumGranularity: If percent is not a multiple of 100 / N
    """
    try:
        value = Fraction(str(percent)) if isinstance(percent, float) else Fraction(percent)
    except (TypeError, ValueError):
        raise OutOfRange(f"Invalid fill percentage: {percent!r}")

    if value <= 0 or value > 100:
        raise OutOfRange(f"Fill percentage must be in (0, 100], got {percent}")

    units = value * total_units / 100
    if units.denominator != 1 or units < 1:
        raise BelowMinimumGranularity(
            f"Fill percentage {percent} is not a multiple of {Decimal(100) / total_units}%"
        )
    return int(units)


def percent_for_units(units: int, total_units: int) -> Decimal:
    """Share of the swap covered by ``units`` slots, in percent."""
    return Decimal(units * 100) / Decimal(total_units)


class FillAllocator:
    """Tracks the available slots of one swap.

    Not synchronized on its own: callers serialize reserve/release under the
    swap's lock.
    """

    def __init__(self, total_units: int):
        if total_units < 1:
            raise ValueError("total_units must be at least 1")
        self.total_units = total_units
        self._available: list[int] = list(range(total_units))

    @property
    def available(self) -> tuple[int, ...]:
        return tuple(self._available)

    @property
    def remaining(self) -> int:
        return len(self._available)

    def reserve(self, units: int) -> list[int]:
        """Take the ``units`` lowest-index available slots.

        Raises:
            OutOfRange: If units is not positive
            InsufficientRemaining: If fewer than ``units`` slots are left
        """
        if units < 1:
            raise OutOfRange(f"Cannot reserve {units} slots")
        if units > len(self._available):
            raise InsufficientRemaining(
                f"Requested {units} slots, only {len(self._available)} remaining"
            )
        reserved = self._available[:units]
        del self._available[:units]
        return reserved

    def release(self, indices: Iterable[int]) -> None:
        """Return slots from a reservation that could not be persisted."""
        returned = set(indices)
        invalid = [i for i in returned if not 0 <= i < self.total_units]
        if invalid or returned & set(self._available):
            raise ValueError(f"Cannot release slots {sorted(returned)}")
        self._available = sorted(set(self._available) | returned)
