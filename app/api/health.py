"""
Health check endpoints.
/health always returns 200; DB and OCR binaries are reported, not enforced.
"""

from typing import Optional

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.engines.tesseract_engine import TesseractEngine
from app.models.database import async_session_factory

router = APIRouter(tags=["health"])


async def _database_status() -> tuple[bool, Optional[str]]:
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1, None
    except (SQLAlchemyError, OSError) as e:
        return False, str(e)[:200]


@router.get("/health")
async def health_check():
    """
    Verifies the API is running and reports DB connectivity and whether
    selective OCR could run on this host.
    """
    db_ok, db_error = await _database_status()
    binaries = TesseractEngine().binary_status()

    response = {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "pipeline_version": settings.PIPELINE_VERSION,
        "database": "connected" if db_ok else "unreachable",
        "ocr": {
            "enabled": settings.OCR_ENABLED,
            "mock_mode": bool(settings.OCR_MOCK_TEXT_JSON),
            "binary_status": binaries,
        },
        "ai_configured": bool(settings.AI_BASE_URL),
    }
    if db_error:
        response["database_error"] = db_error

    return response


@router.get("/health/ready")
async def readiness_check():
    """Readiness probe: ready only when the database answers."""
    db_ok, _ = await _database_status()
    return {"ready": db_ok}
