"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shotweave import validate_dependencies
from shotweave.db import init_database, shutdown
from shotweave.api.routes import router
from shotweave.services.continuity.session_service import ContinuitySessionService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Validate the imaging stack (OpenCV, Pillow)
        - Initialize database schema

    Shutdown:
        - Close database connections
    """
    logger.info("Starting shotweave API...")
    validate_dependencies()
    await init_database()
    if app.state.continuity_service is None:
        logger.warning(
            "No continuity service configured; continuity endpoints will return 503 "
            "until configure_continuity_service() is called"
        )
    logger.info("API startup complete")

    yield

    logger.info("Shutting down shotweave API...")
    await shutdown()
    logger.info("API shutdown complete")


app = FastAPI(
    title="shotweave API",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.continuity_service = None

# CORS for Vite dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


def configure_continuity_service(service: ContinuitySessionService, target: FastAPI = app) -> None:
    """Install the service the routes delegate to.

    Deployments build it with build_continuity_service() around their
    provider, frame-extraction, style-synthesis and storage clients.
    """
    target.state.continuity_service = service


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        }
    )
