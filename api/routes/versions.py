"""API routes for estimate version history"""

from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.exceptions import ConcurrencyConflict, EstimateEngineError
from src.models.database import get_db
from src.models.estimate import LineItem
from src.services.db_service import DatabaseService
from src.services.version_service import VersionStore
from src.utils.retry import async_retry_with_backoff
from src.versioning.diff_engine import DiffEntry, compare_versions

logger = logging.getLogger(__name__)

router = APIRouter()


class VersionCreateRequest(BaseModel):
    """Full line item snapshot for a new version"""
    line_items: List[LineItem]
    notes: Optional[str] = None
    stage_as_draft: bool = False
    # Active version the edit was based on; omit to build on whatever is active
    base_version_id: Optional[str] = None


class VersionActivateRequest(BaseModel):
    base_version_id: Optional[str] = None


def diff_entry_payload(entry: DiffEntry) -> Dict[str, Any]:
    return {
        "item_key": entry.item_key,
        "type": entry.type.value,
        "changes": [
            {"field": c.field, "old_value": c.old_value, "new_value": c.new_value}
            for c in entry.changes
        ],
        "item": entry.item.model_dump(mode="json") if entry.item else None,
    }


@router.get("/estimates/{estimate_id}/versions")
async def list_versions(estimate_id: str, db: AsyncSession = Depends(get_db)):
    """List versions, newest first, with display summaries"""
    estimate = await DatabaseService.get_estimate(estimate_id, db=db, include_line_items=False)
    if not estimate:
        raise HTTPException(status_code=404, detail=f"Estimate {estimate_id} not found")

    versions = await VersionStore(db=db).list_versions(estimate_id)
    return {
        "estimate_id": estimate_id,
        "active_version_id": estimate.active_version_id,
        "versions": [VersionStore.get_version_summary(v) for v in versions],
    }


@router.post("/estimates/{estimate_id}/versions", status_code=201)
async def create_version(
    estimate_id: str,
    request: VersionCreateRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None),
):
    """
    Create a version from a full snapshot

    With base_version_id the write fails with 409 if another version was
    activated since; without it, conflicts are retried against the latest state.
    """
    store = VersionStore(db=db)
    kwargs = dict(
        notes=request.notes,
        created_by=x_user_id,
        stage_as_draft=request.stage_as_draft,
    )
    try:
        if request.base_version_id is not None:
            version = await store.create_version(
                estimate_id,
                request.line_items,
                expected_active_version_id=request.base_version_id,
                **kwargs,
            )
        else:
            @async_retry_with_backoff(max_retries=3, exceptions=(ConcurrencyConflict,))
            async def _create():
                return await store.create_version(estimate_id, request.line_items, **kwargs)

            version = await _create()
        return version.model_dump(mode="json")

    except EstimateEngineError:
        raise
    except Exception as e:
        logger.error(f"Error creating version for estimate {estimate_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get("/versions/compare")
async def compare(
    old_version_id: str = Query(...),
    new_version_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    """Line item diff between two versions"""
    store = VersionStore(db=db)
    old = await store.get_version(old_version_id)
    new = await store.get_version(new_version_id)
    comparison = compare_versions(old, new)
    return {
        "old_version_id": old_version_id,
        "new_version_id": new_version_id,
        "added": [diff_entry_payload(e) for e in comparison.added],
        "removed": [diff_entry_payload(e) for e in comparison.removed],
        "modified": [diff_entry_payload(e) for e in comparison.modified],
        "price_change": comparison.price_change,
    }


@router.get("/versions/{version_id}")
async def get_version(version_id: str, db: AsyncSession = Depends(get_db)):
    """Get a version with its full snapshot"""
    version = await VersionStore(db=db).get_version(version_id)
    return version.model_dump(mode="json")


@router.post("/versions/{version_id}/revert", status_code=201)
async def revert_to_version(
    version_id: str,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None),
):
    """Append a new active version copying an earlier one"""
    store = VersionStore(db=db)

    @async_retry_with_backoff(max_retries=3, exceptions=(ConcurrencyConflict,))
    async def _revert():
        return await store.revert_to_version(version_id, created_by=x_user_id)

    version = await _revert()
    return version.model_dump(mode="json")


@router.post("/versions/{version_id}/activate")
async def activate_version(
    version_id: str,
    request: Optional[VersionActivateRequest] = None,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None),
):
    """
    Promote a draft version to active

    With base_version_id the promotion fails with 409 if another version was
    activated since; without it, conflicts are retried against the latest state.
    """
    store = VersionStore(db=db)
    if request and request.base_version_id is not None:
        version = await store.activate_version(
            version_id,
            expected_active_version_id=request.base_version_id,
            activated_by=x_user_id,
        )
    else:
        @async_retry_with_backoff(max_retries=3, exceptions=(ConcurrencyConflict,))
        async def _activate():
            return await store.activate_version(version_id, activated_by=x_user_id)

        version = await _activate()
    return version.model_dump(mode="json")


@router.post("/versions/{version_id}/archive")
async def archive_version(version_id: str, db: AsyncSession = Depends(get_db)):
    """Archive a version (idempotent)"""
    version = await VersionStore(db=db).archive_version(version_id)
    return version.model_dump(mode="json")
