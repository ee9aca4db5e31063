"""
FastAPI Application Entry Point

This module creates and configures the FastAPI application.
It sets up all routes, middleware, and exception handlers.

Design Decisions:
- Use lifespan events for startup/shutdown
- The review orchestrator is built once at startup (or injected) and kept
  on ``app.state``; routes receive it through a dependency
- Add CORS middleware for flexibility
- Include comprehensive error handling
- Expose health check endpoints
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from forge_review import __version__
from forge_review.config import Settings, get_settings
from forge_review.logging_config import get_logger, setup_logging
from forge_review.providers import create_provider_from_settings, supported_providers
from forge_review.services.reviewer import OpenAIReviewer
from forge_review.webhook import reviews_router, webhook_router
from forge_review.webhook.processor import ReviewOrchestrator

# Initialize logging first
setup_logging()

logger = get_logger(__name__)


def build_orchestrator(settings: Optional[Settings] = None) -> ReviewOrchestrator:
    """Wire the configured forge provider and reviewer into an orchestrator."""
    settings = settings or get_settings()
    return ReviewOrchestrator(
        provider=create_provider_from_settings(settings),
        reviewer=OpenAIReviewer(settings),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for the application.
    """
    settings = get_settings()

    # Startup
    logger.info(
        "Starting forge review service",
        host=settings.host,
        port=settings.port,
        provider=settings.forge_provider,
        forge_url=settings.forge_base_url
    )

    if getattr(app.state, "orchestrator", None) is None:
        try:
            app.state.orchestrator = build_orchestrator(settings)
            logger.info("Configuration validated successfully")
        except Exception as e:
            logger.error(
                "Configuration validation failed",
                error=str(e)
            )
            raise

    if not settings.forge_webhook_secret:
        logger.warning("FORGE_WEBHOOK_SECRET is not set, webhook signatures will not be checked")

    yield

    # Shutdown
    logger.info("Shutting down forge review service")


def create_app(orchestrator: Optional[ReviewOrchestrator] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator; built from settings at startup
            when omitted

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Forge Review",
        description="AI-assisted pull request reviews for Gitea and Forgejo",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )
    app.state.orchestrator = orchestrator

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes
    app.include_router(webhook_router)
    app.include_router(reviews_router)

    # Add global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request,
        exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            error_type=type(exc).__name__
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error",
                "type": type(exc).__name__
            }
        )

    # Add root endpoint
    @app.get("/")
    async def root():
        """Root endpoint with basic info."""
        return {
            "name": "Forge Review",
            "version": __version__,
            "status": "running",
            "providers": [p.value for p in supported_providers()],
            "docs": "/docs"
        }

    # Add health check endpoint
    @app.get("/health")
    async def health_check():
        """
        Health check endpoint.

        Returns basic health status for load balancers and monitors.
        """
        return {
            "status": "healthy",
            "service": "forge-review",
            "version": __version__
        }

    return app


# Create the application instance
app = create_app()
