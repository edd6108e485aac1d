"""FastAPI application entry-point."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fleetcmd import __version__
from fleetcmd.errors import FleetError
from fleetcmd.models.responses import ErrorResponse
from fleetcmd.routers import audit, commands, dashboard, health, servers, stream
from fleetcmd.services.fleet import fleet
from fleetcmd.utils.logging import get_logger, setup_logging

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hooks."""
    setup_logging()
    await fleet.start()
    yield
    # Shutdown: fail in-flight commands and close pooled SSH sessions
    await fleet.close()


app = FastAPI(
    title="Fleet Command API",
    description="Queue, run and audit shell commands across remote servers",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    if exc.status_code >= 500:
        log.warning("api.error", path=request.url.path, error=type(exc).__name__)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.detail, error=type(exc).__name__).model_dump(),
    )


app.include_router(health.router)
# stream routes go before /commands/{command_id}
app.include_router(stream.router)
app.include_router(servers.router)
app.include_router(commands.router)
app.include_router(audit.router)
app.include_router(dashboard.router)
