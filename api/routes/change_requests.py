"""API routes for customer change requests"""

from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.exceptions import EstimateEngineError
from src.models.database import get_db
from src.models.estimate import ChangeRequestStatus, ChangeRequestType, RequestedChange
from src.services.change_request_service import ChangeRequestService

logger = logging.getLogger(__name__)

router = APIRouter()


class ChangeRequestCreateRequest(BaseModel):
    """Customer change request submission"""
    request_type: ChangeRequestType = ChangeRequestType.OTHER
    requested_changes: List[RequestedChange] = Field(default_factory=list)
    customer_email: Optional[str] = None
    customer_comments: Optional[str] = None
    priority: str = "medium"


class ResolutionRequest(BaseModel):
    """Administrator decision on a change request"""
    admin_response: Optional[str] = None


@router.post("/estimates/{estimate_id}/change-requests", status_code=201)
async def submit_change_request(
    estimate_id: str,
    request: ChangeRequestCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Record a pending change request"""
    try:
        change_request = await ChangeRequestService(db=db).submit_change_request(
            estimate_id,
            request.requested_changes,
            request_type=request.request_type,
            customer_email=request.customer_email,
            customer_comments=request.customer_comments,
            priority=request.priority,
        )
        return change_request.model_dump(mode="json")

    except EstimateEngineError:
        raise
    except Exception as e:
        logger.error(f"Error submitting change request for {estimate_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get("/estimates/{estimate_id}/change-requests")
async def list_change_requests(
    estimate_id: str,
    status: Optional[ChangeRequestStatus] = None,
    db: AsyncSession = Depends(get_db),
):
    """List change requests for an estimate, newest first"""
    change_requests = await ChangeRequestService(db=db).list_change_requests(estimate_id, status)
    return {
        "estimate_id": estimate_id,
        "change_requests": [cr.model_dump(mode="json") for cr in change_requests],
    }


@router.get("/change-requests/{change_request_id}/evaluation")
async def evaluate_change_request(change_request_id: str, db: AsyncSession = Depends(get_db)):
    """Auto-approval decision against the estimate's current items"""
    decision = await ChangeRequestService(db=db).evaluate_change_request(change_request_id)
    return {
        "change_request_id": change_request_id,
        "can_auto_approve": decision.can_auto_approve,
        "reason": decision.reason,
        "cost_impact": decision.cost_impact,
        "suggested_response": decision.suggested_response,
        "proposed_line_items": (
            [item.model_dump(mode="json") for item in decision.proposed_line_items]
            if decision.proposed_line_items is not None
            else None
        ),
    }


@router.post("/change-requests/{change_request_id}/approve")
async def approve_change_request(
    change_request_id: str,
    request: Optional[ResolutionRequest] = None,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None),
):
    """Approve a pending request and apply it as a new estimate version"""
    change_request, version = await ChangeRequestService(db=db).approve_change_request(
        change_request_id,
        admin_response=request.admin_response if request else None,
        reviewed_by=x_user_id,
    )
    return {
        "change_request": change_request.model_dump(mode="json"),
        "version": version.model_dump(mode="json"),
    }


@router.post("/change-requests/{change_request_id}/reject")
async def reject_change_request(
    change_request_id: str,
    request: Optional[ResolutionRequest] = None,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None),
):
    """Reject a pending request; the estimate is not changed"""
    change_request = await ChangeRequestService(db=db).reject_change_request(
        change_request_id,
        admin_response=request.admin_response if request else None,
        reviewed_by=x_user_id,
    )
    return change_request.model_dump(mode="json")
