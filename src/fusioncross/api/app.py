"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fusioncross.config import get_settings
from fusioncross.errors import SwapError
from fusioncross.registry.database import close_db, init_db
from fusioncross.swaps.service import SwapCoordinator, build_coordinator
from fusioncross.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Builds and owns a coordinator unless one was injected.
    """
    owned = app.state.coordinator is None
    if owned:
        await init_db()
        app.state.coordinator = build_coordinator()
        await app.state.coordinator.resume()
    yield
    if owned:
        await app.state.coordinator.shutdown()
        await close_db()


async def swap_error_handler(request: Request, exc: SwapError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def lock_timeout_handler(request: Request, exc: LockTimeoutError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"error": str(exc), "code": "busy"})


def create_app(coordinator: Optional[SwapCoordinator] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        coordinator: Coordinator to serve; built from settings at startup if None
    """
    settings = get_settings()

    app = FastAPI(
        title="fusioncross API",
        description="Cross-chain atomic swaps with Dutch auction partial fills",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.coordinator = coordinator

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SwapError, swap_error_handler)
    app.add_exception_handler(LockTimeoutError, lock_timeout_handler)

    # Register routes
    from fusioncross.api.routes import health, swaps

    app.include_router(health.router, tags=["Health"])
    app.include_router(swaps.router, prefix="/api/v1", tags=["Swaps"])

    return app


# Default app instance
app = create_app()
