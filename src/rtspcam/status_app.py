"""FastAPI application for the optional status API.

Built by the orchestrator once the stream is up and served by uvicorn
inside the same event loop. Read-only: health, liveness, metrics.
"""
from fastapi import FastAPI
import logging

from . import __version__
from .api import health
from .errors import general_exception_handler
from .middleware.request_id import RequestIDMiddleware

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create the status API application."""
    app = FastAPI(
        title="rtspcam",
        description="USB camera to RTSP publisher: process status and metrics.",
        version=__version__,
        docs_url=None,  # Status surface only
        redoc_url=None,
    )

    app.add_exception_handler(Exception, general_exception_handler)
    app.add_middleware(RequestIDMiddleware)
    app.include_router(health.router)

    logger.debug("Status API app created")
    return app
