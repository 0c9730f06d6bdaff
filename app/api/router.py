"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from app.api.health import router as health_router
from app.api.batches import router as batches_router
from app.api.aliases import router as aliases_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(batches_router)
api_router.include_router(aliases_router)
