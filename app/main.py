"""
FastAPI application factory for the budget archive extraction service.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.router import api_router
from app.config import settings
from app.engines.tesseract_engine import TesseractEngine
from app.models.database import close_db, init_db
from app.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def _init_sentry() -> None:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[FastApiIntegration()],
        release=f"{settings.APP_NAME}@{settings.APP_VERSION}",
        traces_sample_rate=0.1,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if settings.SENTRY_DSN:
        _init_sentry()

    if settings.DB_AUTO_CREATE:
        await init_db()
        logger.info("database_schema_ensured")

    # OCR binaries are optional; batches still run and report BINARY_MISSING
    binaries = TesseractEngine().binary_status() if settings.OCR_ENABLED else {}
    logger.info(
        "service_started",
        version=settings.APP_VERSION,
        extraction_strategy=settings.DEFAULT_EXTRACTION_STRATEGY,
        ai_configured=bool(settings.AI_BASE_URL),
        ocr_enabled=settings.OCR_ENABLED,
        ocr_binaries=binaries,
    )

    yield

    await close_db()
    logger.info("service_stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Budget Archive Extraction Service",
        description="Locates, extracts, reconciles and reviews figures from government unit budget tables.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        app.mount("/metrics", make_asgi_app())

    app.include_router(api_router)
    return app


app = create_app()
