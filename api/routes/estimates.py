"""API routes for estimates and their pricing"""

from datetime import date
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.exceptions import ConcurrencyConflict, EstimateEngineError
from src.models.database import get_db
from src.models.estimate import Estimate, LineItem
from src.pricing.tax_calculator import calculate_per_person_cost, is_government_contract
from src.services.db_service import DatabaseService
from src.services.pricing_service import PricingConsistencyService
from src.services.version_service import VersionStore
from src.utils.retry import async_retry_with_backoff

logger = logging.getLogger(__name__)

router = APIRouter()


class EstimateCreateRequest(BaseModel):
    """Request to create an estimate, optionally with its first version"""
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    event_name: Optional[str] = None
    event_date: Optional[date] = None
    start_time: Optional[str] = None
    guest_count: int = Field(default=0, ge=0)
    compliance_level: Optional[str] = None
    requires_po_number: bool = False
    line_items: Optional[List[LineItem]] = None
    notes: Optional[str] = None


class ComplianceUpdateRequest(BaseModel):
    """New tax exemption context; applied as a new version"""
    compliance_level: Optional[str] = None
    requires_po_number: bool = False
    base_version_id: Optional[str] = None


def pricing_payload(estimate: Estimate, pricing) -> Dict[str, Any]:
    payload = pricing.model_dump(mode="json")
    payload["estimate_id"] = estimate.id
    payload["per_person_cost"] = calculate_per_person_cost(pricing.total_amount, estimate.guest_count)
    return payload


async def _require_estimate(estimate_id: str, db: AsyncSession) -> Estimate:
    estimate = await DatabaseService.get_estimate(estimate_id, db=db)
    if not estimate:
        raise HTTPException(status_code=404, detail=f"Estimate {estimate_id} not found")
    return estimate


@router.post("/estimates", status_code=201)
async def create_estimate(
    request: EstimateCreateRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None),
):
    """
    Create an estimate

    When line items are supplied they become version 1.
    """
    try:
        estimate = await DatabaseService.create_estimate(
            Estimate(**request.model_dump(exclude={"line_items", "notes"})),
            db=db,
        )

        if request.line_items:
            store = VersionStore(db=db)

            @async_retry_with_backoff(max_retries=3, exceptions=(ConcurrencyConflict,))
            async def _create_first_version():
                return await store.create_version(
                    estimate.id,
                    request.line_items,
                    notes=request.notes or "Initial estimate",
                    created_by=x_user_id,
                )

            await _create_first_version()

        estimate = await DatabaseService.get_estimate(estimate.id, db=db)
        return JSONResponse(status_code=201, content=jsonable_encoder(estimate.model_dump(mode="json")))

    except (HTTPException, EstimateEngineError):
        raise
    except Exception as e:
        logger.error(f"Error creating estimate: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get("/estimates/{estimate_id}")
async def get_estimate(estimate_id: str, db: AsyncSession = Depends(get_db)):
    """Get an estimate with its current line items"""
    estimate = await _require_estimate(estimate_id, db)
    return estimate.model_dump(mode="json")


@router.put("/estimates/{estimate_id}/compliance", status_code=201)
async def update_compliance(
    estimate_id: str,
    request: ComplianceUpdateRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None),
):
    """
    Change the tax exemption context

    Creates a new version from the current line items so the totals change
    with it. Returns the new version.
    """
    store = VersionStore(db=db)
    kwargs = dict(
        compliance_level=request.compliance_level,
        requires_po_number=request.requires_po_number,
        created_by=x_user_id,
    )
    if request.base_version_id is not None:
        version = await store.update_exemption_context(
            estimate_id, expected_active_version_id=request.base_version_id, **kwargs
        )
    else:
        @async_retry_with_backoff(max_retries=3, exceptions=(ConcurrencyConflict,))
        async def _update():
            return await store.update_exemption_context(estimate_id, **kwargs)

        version = await _update()
    return version.model_dump(mode="json")


@router.get("/estimates/{estimate_id}/pricing")
async def get_pricing(estimate_id: str, db: AsyncSession = Depends(get_db)):
    """
    Complete pricing computed from the current line items

    Read-only; persisted totals are not consulted or changed.
    """
    estimate = await _require_estimate(estimate_id, db)
    is_exempt = is_government_contract(estimate.compliance_level, estimate.requires_po_number)
    pricing = PricingConsistencyService.compute_pricing(estimate.line_items, is_exempt)
    return pricing_payload(estimate, pricing)


@router.post("/estimates/{estimate_id}/recalculate")
async def recalculate_estimate(estimate_id: str, db: AsyncSession = Depends(get_db)):
    """Recompute and persist the estimate totals"""
    try:
        estimate = await _require_estimate(estimate_id, db)
        pricing = await PricingConsistencyService(db=db).recalculate(estimate_id)
        return pricing_payload(estimate, pricing)

    except (HTTPException, EstimateEngineError):
        raise
    except Exception as e:
        logger.error(f"Error recalculating estimate {estimate_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get("/estimates/{estimate_id}/validate")
async def validate_estimate(estimate_id: str, db: AsyncSession = Depends(get_db)):
    """Compare persisted totals with a fresh computation (no repair)"""
    return await PricingConsistencyService(db=db).get_validation_summary(estimate_id)


@router.post("/estimates/{estimate_id}/send")
async def send_estimate(estimate_id: str, db: AsyncSession = Depends(get_db)):
    """Recalculate and mark the estimate as sent to the customer"""
    try:
        pricing = await PricingConsistencyService(db=db).prepare_for_customer(estimate_id)
        estimate = await _require_estimate(estimate_id, db)
        payload = pricing_payload(estimate, pricing)
        payload["status"] = estimate.status
        return payload

    except (HTTPException, EstimateEngineError):
        raise
    except Exception as e:
        logger.error(f"Error sending estimate {estimate_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")
