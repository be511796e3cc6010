"""Swap, auction and settlement endpoints."""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator, model_validator

from fusioncross.crypto import normalize_hash_lock
from fusioncross.registry.models import SwapDirection
from fusioncross.swaps.service import SwapCoordinator

router = APIRouter()


def get_coordinator(request: Request) -> SwapCoordinator:
    coordinator = request.app.state.coordinator
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Swap coordinator not running",
        )
    return coordinator


class CreateSwapRequest(BaseModel):
    """Register a swap."""

    direction: SwapDirection = Field(default=SwapDirection.A_TO_B, description="Lock chain -> settlement chain")
    initiator: str = Field(..., min_length=1, max_length=128, description="Initiator address on the lock chain")
    recipient: str = Field(..., min_length=1, max_length=128, description="Recipient address on the settlement chain")
    lock_amount: int = Field(..., gt=0, description="Minor units locked by the initiator")
    settle_amount: int = Field(..., gt=0, description="Minor units expected at the initial price")
    timelock_seconds: Optional[int] = Field(None, gt=0, description="Seconds until refundable")
    hash_lock: Optional[str] = Field(None, description="sha256 of a secret the initiator keeps")

    @field_validator("hash_lock")
    @classmethod
    def validate_hash_lock(cls, v: Optional[str]) -> Optional[str]:
        """Validate the hash lock is 32 hex-encoded bytes."""
        if v is None:
            return v
        return normalize_hash_lock(v)


class LockRequest(BaseModel):
    """Lock the initiator's funds, or confirm a lock made elsewhere."""

    lock_ref: Optional[str] = Field(None, max_length=200, description="Observed lock transaction")


class StartAuctionRequest(BaseModel):
    initial_price: Optional[Decimal] = Field(None, gt=0)
    duration: Optional[float] = Field(None, gt=0, description="Auction window in seconds")


class BidRequest(BaseModel):
    """Resolver fill, as a percentage of the swap or a number of slots."""

    resolver_id: str = Field(..., min_length=1, max_length=64)
    percent: Optional[Decimal] = Field(None, description="Share of the swap, multiple of 100/N")
    units: Optional[int] = Field(None, description="Number of slots")
    limit_price: Optional[Decimal] = Field(None, gt=0, description="Highest acceptable price")

    @model_validator(mode="after")
    def validate_size(self) -> "BidRequest":
        if (self.percent is None) == (self.units is None):
            raise ValueError("Give exactly one of percent or units")
        return self


class EscrowRequest(BaseModel):
    """Resolver escrow.

    Without ``escrow_ref`` the coordinator locks the resolver's outstanding
    counter-value itself; with it, an escrow locked elsewhere is recorded.
    """

    resolver_id: str = Field(..., min_length=1, max_length=64)
    escrow_ref: Optional[str] = Field(None, max_length=200)
    escrow_address: Optional[str] = Field(None, max_length=200)
    amount: Optional[int] = Field(None, gt=0)

    @model_validator(mode="after")
    def validate_external(self) -> "EscrowRequest":
        if self.escrow_ref is not None and (self.escrow_address is None or self.amount is None):
            raise ValueError("escrow_address and amount are required with escrow_ref")
        return self


class ClaimRequest(BaseModel):
    secret: str = Field(..., min_length=64, max_length=66, description="Hex-encoded 32-byte secret")


@router.post("/swaps", status_code=status.HTTP_201_CREATED)
async def create_swap(
    payload: CreateSwapRequest,
    coordinator: SwapCoordinator = Depends(get_coordinator),
):
    """Register a swap. The generated secret is returned once."""
    started = await coordinator.start_swap(
        direction=payload.direction,
        initiator=payload.initiator,
        recipient=payload.recipient,
        lock_amount=payload.lock_amount,
        settle_amount=payload.settle_amount,
        timelock_seconds=payload.timelock_seconds,
        hash_lock=payload.hash_lock,
    )
    return started.to_dict()


@router.get("/swaps/history/{address}")
async def swap_history(
    address: str,
    limit: int = 50,
    coordinator: SwapCoordinator = Depends(get_coordinator),
):
    """Swaps involving an address, newest first."""
    swaps = await coordinator.swap_history(address, limit=min(max(limit, 1), 200))
    return {"address": address, "swaps": [s.to_dict() for s in swaps]}


@router.get("/swaps/{swap_id}")
async def get_swap(swap_id: str, coordinator: SwapCoordinator = Depends(get_coordinator)):
    view = await coordinator.get_swap_status(swap_id)
    return view.to_dict()


@router.post("/swaps/{swap_id}/lock")
async def lock_swap(
    swap_id: str,
    payload: Optional[LockRequest] = None,
    coordinator: SwapCoordinator = Depends(get_coordinator),
):
    """Lock funds on the lock chain, or confirm an observed lock."""
    if payload is not None and payload.lock_ref is not None:
        view = await coordinator.confirm_lock(swap_id, payload.lock_ref)
    else:
        view = await coordinator.lock_funds(swap_id)
    return view.to_dict()


@router.post("/swaps/{swap_id}/auction", status_code=status.HTTP_201_CREATED)
async def start_auction(
    swap_id: str,
    payload: Optional[StartAuctionRequest] = None,
    coordinator: SwapCoordinator = Depends(get_coordinator),
):
    payload = payload or StartAuctionRequest()
    auction = await coordinator.start_auction(
        swap_id, initial_price=payload.initial_price, duration=payload.duration
    )
    return auction.to_dict()


@router.get("/swaps/{swap_id}/auction")
async def get_auction(swap_id: str, coordinator: SwapCoordinator = Depends(get_coordinator)):
    auction = await coordinator.get_auction_status(swap_id)
    return auction.to_dict()


@router.post("/swaps/{swap_id}/auction/close")
async def close_auction(swap_id: str, coordinator: SwapCoordinator = Depends(get_coordinator)):
    result = await coordinator.close_auction(swap_id)
    return {
        "swap_id": result.swap_id,
        "total_filled": result.total_filled,
        "final_price": str(result.final_price),
        "winning_bids": [b.to_dict() for b in result.winning_bids],
    }


@router.post("/swaps/{swap_id}/bids", status_code=status.HTTP_201_CREATED)
async def submit_bid(
    swap_id: str,
    payload: BidRequest,
    coordinator: SwapCoordinator = Depends(get_coordinator),
):
    bid = await coordinator.submit_bid(
        swap_id,
        payload.resolver_id,
        percent=payload.percent,
        units=payload.units,
        limit_price=payload.limit_price,
    )
    return bid.to_dict()


@router.post("/swaps/{swap_id}/escrows", status_code=status.HTTP_201_CREATED)
async def add_escrow(
    swap_id: str,
    payload: EscrowRequest,
    coordinator: SwapCoordinator = Depends(get_coordinator),
):
    """Lock or record a resolver's settlement-chain escrow."""
    if payload.escrow_ref is not None:
        return await coordinator.record_escrow(
            swap_id,
            payload.resolver_id,
            payload.escrow_ref,
            payload.escrow_address,
            payload.amount,
        )
    escrow = await coordinator.lock_resolver_escrow(swap_id, payload.resolver_id)
    if escrow is None:
        return {"swap_id": swap_id, "resolver_id": payload.resolver_id, "escrow_ref": None}
    return escrow


@router.post("/swaps/{swap_id}/claim-settlement")
async def claim_settlement(
    swap_id: str,
    payload: ClaimRequest,
    coordinator: SwapCoordinator = Depends(get_coordinator),
):
    """Recipient claims the resolvers' escrows, revealing the secret."""
    return await coordinator.claim_settlement(swap_id, payload.secret)


@router.post("/swaps/{swap_id}/slots/{slot_index}/claim")
async def claim_slot(
    swap_id: str,
    slot_index: int,
    payload: ClaimRequest,
    coordinator: SwapCoordinator = Depends(get_coordinator),
):
    slot_status = await coordinator.claim_slot(swap_id, slot_index, payload.secret)
    return {"swap_id": swap_id, "slot_index": slot_index, "status": slot_status.value}


@router.post("/swaps/{swap_id}/refund")
async def refund_swap(swap_id: str, coordinator: SwapCoordinator = Depends(get_coordinator)):
    view = await coordinator.refund(swap_id)
    return view.to_dict()


@router.get("/swaps/{swap_id}/resolver-stats")
async def resolver_stats(swap_id: str, coordinator: SwapCoordinator = Depends(get_coordinator)):
    return {"swap_id": swap_id, "resolvers": await coordinator.resolver_stats(swap_id)}


@router.get("/resolvers")
async def list_resolvers(coordinator: SwapCoordinator = Depends(get_coordinator)):
    return {"resolvers": coordinator.list_resolvers()}
