"""Linkage audit trail routes."""

from datetime import datetime
from typing import Any, List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ammo_resolver.api.deps import get_store
from ammo_resolver.errors import LookupFailure

router = APIRouter(prefix="/api/linkages", tags=["linkages"])


class LinkageResponse(BaseModel):
    id: int
    source_record_id: int
    canonical_product_id: int | None
    status: str
    reason_code: str | None
    match_path: str
    confidence: float
    resolver_version: str
    evidence: dict[str, Any]
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("/{source_record_id}", response_model=List[LinkageResponse])
async def list_linkages(source_record_id: int, store=Depends(get_store)):
    """Full linkage history for a source record, oldest first."""
    try:
        linkages = await store.get_linkages(source_record_id)
    except LookupFailure as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if not linkages:
        raise HTTPException(status_code=404, detail="No linkages for source record")

    return [LinkageResponse.model_validate(linkage) for linkage in linkages]


@router.get("/{source_record_id}/latest", response_model=LinkageResponse)
async def get_latest_linkage(source_record_id: int, store=Depends(get_store)):
    """The authoritative (newest) linkage for a source record."""
    try:
        linkage = await store.get_latest_linkage(source_record_id)
    except LookupFailure as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if linkage is None:
        raise HTTPException(status_code=404, detail="No linkages for source record")

    return LinkageResponse.model_validate(linkage)
