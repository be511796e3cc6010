"""Error taxonomy for the swap engine.

Every error raised by the auction engine, the relay and the coordinator
derives from SwapError and carries a stable ``code`` plus the HTTP status
the API layer maps it to.

Families:
1. InvalidRequestError - bad input, rejected synchronously, never retried
2. StateConflict - operation not valid for the current swap/auction state
3. TransientChainError - RPC timeout, rate limiting, unavailability (retried)
4. InvariantViolation - wrong preimage, slot already claimed (never retried)
5. Expired - timelock passed, always wins over in-flight operations
"""

from typing import Optional


class SwapError(Exception):
    """Base class for all swap engine errors."""

    code = "swap_error"
    status_code = 400

    def __init__(self, message: str = "", swap_id: Optional[str] = None):
        self.message = message or self.__class__.__name__
        self.swap_id = swap_id
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Serialize for API responses."""
        data = {"error": self.message, "code": self.code}
        if self.swap_id:
            data["swap_id"] = self.swap_id
        return data


class SwapNotFound(SwapError):
    """No swap with the given id exists in the registry."""

    code = "swap_not_found"
    status_code = 404


# ======================
# Validation errors
# ======================


class InvalidRequestError(SwapError):
    """Request rejected by validation."""

    code = "invalid_request"
    status_code = 400


class InvalidAmount(InvalidRequestError):
    code = "invalid_amount"


class InvalidResolver(InvalidRequestError):
    code = "invalid_resolver"


class OutOfRange(InvalidRequestError):
    code = "out_of_range"


class BelowMinimumGranularity(InvalidRequestError):
    code = "below_minimum_granularity"


class LimitPriceExceeded(InvalidRequestError):
    """Current auction price is worse than the resolver's limit."""

    code = "limit_price_exceeded"


# ======================
# State conflicts
# ======================


class StateConflict(SwapError):
    """Operation is not valid for the current state; nothing was changed."""

    code = "state_conflict"
    status_code = 409

    def __init__(
        self,
        message: str = "",
        swap_id: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(message, swap_id)


class AlreadyActive(StateConflict):
    code = "already_active"


class NoActiveAuction(StateConflict):
    code = "no_active_auction"


class InsufficientRemaining(StateConflict):
    code = "insufficient_remaining"


class RefundNotAllowed(StateConflict):
    code = "refund_not_allowed"


# ======================
# Expiry
# ======================


class Expired(SwapError):
    """The swap's timelock has passed."""

    code = "expired"
    status_code = 410


# ======================
# Invariant violations
# ======================


class InvariantViolation(SwapError):
    code = "invariant_violation"
    status_code = 422


class InvalidPreimage(InvariantViolation):
    """Preimage does not hash to the swap's hash lock."""

    code = "invalid_preimage"


class AlreadyClaimed(InvariantViolation):
    code = "already_claimed"


# ======================
# Chain errors
# ======================


class ChainError(SwapError):
    """Non-transient failure reported by a chain client."""

    code = "chain_error"
    status_code = 502


class TransientChainError(ChainError):
    """Chain failure worth retrying."""

    code = "chain_transient"
    status_code = 503


class ChainTimeout(TransientChainError):
    code = "chain_timeout"
    status_code = 504


class ChainUnavailable(TransientChainError):
    code = "chain_unavailable"


class RateLimited(TransientChainError):
    """Chain endpoint asked us to slow down."""

    code = "rate_limited"
    status_code = 429

    def __init__(
        self,
        message: str = "",
        swap_id: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, swap_id)
