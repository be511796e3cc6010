"""Health check endpoints."""

from fastapi import APIRouter, Request

from fusioncross.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "fusioncross"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration and live activity."""
    settings = get_settings()
    coordinator = request.app.state.coordinator
    activity = None
    if coordinator is not None:
        activity = {
            "active_auctions": coordinator.engine.active_swaps(),
            "pending_swaps": await coordinator.pending_swaps(),
            "relay_watching": coordinator.relay.watched_swaps(),
            "resolvers": coordinator.resolvers.ids(),
        }
    return {
        "status": "healthy",
        "service": "fusioncross",
        "version": "0.1.0",
        "config": settings.get_safe_dict(),
        "activity": activity,
    }
