"""
/api/v1/aliases and /api/v1/facts endpoints.
Alias review (approve/reject learned label mappings) and direct fact saving.
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db, verify_api_key
from app.models.enums import AliasStatus
from app.pipeline.alias_resolver import (
    AliasNotFoundError,
    list_aliases,
    load_resolver,
    refresh_alias_gauge,
    set_alias_status,
)
from app.review.history_store import save_budget_facts
from app.schemas.batches import AliasOut, AliasStatusUpdate, SaveFactsRequest, SaveFactsResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["aliases"], dependencies=[Depends(verify_api_key)])


@router.get("/aliases", response_model=list[AliasOut])
async def list_aliases_endpoint(
    status_filter: Optional[AliasStatus] = Query(None, alias="status"),
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    mappings = await list_aliases(session, status_filter, limit, offset)
    return [AliasOut.model_validate(m) for m in mappings]


@router.patch("/aliases/{alias_id}", response_model=AliasOut)
async def update_alias_status(
    alias_id: uuid.UUID,
    request: AliasStatusUpdate,
    session: AsyncSession = Depends(get_db),
):
    """Approve or reject a mapping. APPROVED mappings apply to batches created afterwards."""
    try:
        mapping = await set_alias_status(session, alias_id, request.status)
    except AliasNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": str(e)},
        )
    await refresh_alias_gauge(session)
    return AliasOut.model_validate(mapping)


@router.post("/facts", response_model=SaveFactsResponse)
async def save_facts(request: SaveFactsRequest, session: AsyncSession = Depends(get_db)):
    """Resolve free-form labels and upsert the values straight into history."""
    resolver = await load_resolver(session)
    mapped, unmatched = await save_budget_facts(session, request.unit_id, request.year, request.items, resolver)
    logger.info("facts_saved", unit_id=request.unit_id, year=request.year, mapped=mapped, unmatched=len(unmatched))
    return SaveFactsResponse(mapped_count=mapped, unmatched_count=len(unmatched), unmatched=unmatched)
