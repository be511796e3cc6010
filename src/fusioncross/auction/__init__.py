"""Dutch auction: price schedule, slot allocation and the per-swap engine."""

from fusioncross.auction.allocator import FillAllocator, percent_for_units, units_for_percent
from fusioncross.auction.engine import (
    AuctionResult,
    AuctionState,
    AuctionStatus,
    Bid,
    DutchAuctionEngine,
)
from fusioncross.auction.pricing import DEFAULT_SCHEDULE, DecaySchedule, DecayStep

__all__ = [
    "AuctionResult",
    "AuctionState",
    "AuctionStatus",
    "Bid",
    "DEFAULT_SCHEDULE",
    "DecaySchedule",
    "DecayStep",
    "DutchAuctionEngine",
    "FillAllocator",
    "percent_for_units",
    "units_for_percent",
]
