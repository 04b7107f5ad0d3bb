"""
FastAPI server for the Portion backend.

create_app() mounts the /api and /x402 routers, installs the CORS policy and
maps domain errors to HTTP statuses. The lifespan loads the persisted ledger,
spend holds, audit trail and spending policies, and runs the balance refresh loop until shutdown.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from portion_backend import __version__
from portion_backend.api_server.api_routes import router as api_router
from portion_backend.api_server.dependencies import PortionServices, build_services
from portion_backend.api_server.x402_routes import router as x402_router
from portion_backend.config.settings import Settings, get_settings
from portion_backend.core.exceptions import (
    AllEndpointsUnavailable,
    FacilitatorError,
    InsufficientYield,
    InvalidRequest,
    PaymentNotPrepared,
    PolicyDenied,
    PortionError,
    StateStoreError,
)
from portion_backend.portion_logging import get_logger

logger = get_logger(__name__)

REFRESH_SHUTDOWN_TIMEOUT_SEC = 5.0

# Most specific first
ERROR_STATUS: tuple[tuple[type[PortionError], int], ...] = (
    (InvalidRequest, 400),
    (InsufficientYield, 402),
    (PaymentNotPrepared, 402),
    (PolicyDenied, 403),
    (AllEndpointsUnavailable, 503),
    (StateStoreError, 503),
    (FacilitatorError, 502),
)


def status_for(exc: PortionError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


async def portion_error_handler(request: Request, exc: PortionError) -> JSONResponse:
    status = status_for(exc)
    log = logger.warning if status < 500 else logger.error
    log("api_request_failed", path=request.url.path, status=status, error=exc.code, detail=exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


def _cors_origins(settings: Settings) -> list[str]:
    if settings.debug_cors:
        logger.warning("cors_allow_all_enabled")
        return ["*"]
    return list(settings.cors_origins)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services if not injected, load persisted state, run the refresh loop."""
    services: PortionServices | None = app.state.services
    if services is None:
        services = build_services(app.state.settings)
        app.state.services = services

    await services.ledger.load()
    await services.spends.load()
    await services.audit.load()
    await services.policies.load()

    stop_event = asyncio.Event()
    refresh_task = asyncio.create_task(
        services.balances.run_refresh_loop(stop_event, services.settings.balance_refresh_interval_sec)
    )
    logger.info(
        "api_started",
        network=services.settings.solana_network,
        facilitator=services.facilitator.url,
    )

    yield

    stop_event.set()
    try:
        await asyncio.wait_for(refresh_task, timeout=REFRESH_SHUTDOWN_TIMEOUT_SEC)
    except asyncio.TimeoutError:
        logger.warning("balance_refresh_shutdown_timeout", timeout_sec=REFRESH_SHUTDOWN_TIMEOUT_SEC)
    await services.ledger.aclose()
    logger.info("api_stopped")


def create_app(services: PortionServices | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Build the ASGI app.

    Tests pass a prebuilt PortionServices (memory store, mock transport);
    production builds one from get_settings() at startup.
    """
    if settings is None:
        settings = services.settings if services is not None else get_settings()

    app = FastAPI(
        title="Portion Backend API",
        description="Spend staking yield on pay-per-call services via x402.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=not settings.debug_cors,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PortionError, portion_error_handler)

    app.include_router(api_router, prefix="/api")
    app.include_router(x402_router, prefix="/x402")
    return app
