"""
FastAPI application entry point for the DevPulse dashboard.
"""

import logging
import sys
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import analysis_router
from .config import settings
from .services.analysis_service import AnalysisService
from .services.devpulse_client import DevPulseClient


def configure_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    if settings.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting DevPulse dashboard",
               version=__version__,
               debug=settings.app_debug,
               backend=settings.devpulse_api_url)

    client = DevPulseClient()
    app.state.analysis_service = AnalysisService(client)

    yield

    # Shutdown: no watch may outlive the application
    logger.info("Shutting down DevPulse dashboard")
    await app.state.analysis_service.shutdown()


# Create FastAPI application
app = FastAPI(
    title=settings.dashboard_title,
    description="AI-powered PR review, repository analysis and release risk dashboard",
    version=__version__,
    debug=settings.app_debug,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(analysis_router, prefix="/api/analysis", tags=["Analysis"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    service = getattr(app.state, "analysis_service", None)
    return {
        "status": "healthy",
        "version": __version__,
        "services": {
            "devpulse_api": settings.devpulse_api_url,
            "active_watches": service.active_count if service else 0
        }
    }


def main() -> None:
    """Run the dashboard with uvicorn."""
    import uvicorn

    uvicorn.run(
        "devpulse.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_debug,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
