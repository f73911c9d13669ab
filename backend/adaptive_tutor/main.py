"""Adaptive Tutor FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import rules, tutor
from .core.config import settings
from .core.logging_config import configure_logging
from .db.base import close_all, init_databases
from .observability.langsmith import initialize_langsmith
from .orchestrator.service import TutorOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan context for startup and shutdown events."""
    configure_logging(settings)
    logger.info(f"{settings.APP_NAME} starting up...")
    initialize_langsmith(settings)
    await init_databases()

    orchestrator: Optional[TutorOrchestrator] = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = build_orchestrator(settings=settings)
        app.state.orchestrator = orchestrator
    try:
        await orchestrator.registry.seed_defaults()
    except Exception as e:
        logger.warning(f"Agent catalogue seeding skipped: {e}")

    yield

    logger.info(f"{settings.APP_NAME} shutting down...")
    await orchestrator.shutdown()
    await close_all()


def create_app(orchestrator: Optional[TutorOrchestrator] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.APP_NAME,
        description="Multi-agent adaptive tutoring orchestrator",
        version="0.1.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=["*"],
        allow_headers=settings.cors_allow_headers_list,
    )

    app.include_router(tutor.router, prefix=settings.API_V1_PREFIX)
    app.include_router(rules.router, prefix=settings.API_V1_PREFIX)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "app": settings.APP_NAME}

    @app.get("/")
    async def root():
        return {
            "app": settings.APP_NAME,
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/health"
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error": str(exc) if settings.DEBUG else "An error occurred"
            }
        )

    return app


app = create_app()
