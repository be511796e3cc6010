"""Swap lifecycle: state machine and coordinator.

The coordinator lives in ``fusioncross.swaps.service``; it is not imported
here because the relay depends on the state machine.
"""

from fusioncross.swaps.state import TRANSITIONS, SwapStateMachine, can_transition, sources_of

__all__ = [
    "TRANSITIONS",
    "SwapStateMachine",
    "can_transition",
    "sources_of",
]
