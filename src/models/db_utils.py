"""Utilities for converting between Pydantic and SQLAlchemy models"""

from typing import Optional, List
import json
import logging

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from .estimate import (
    Estimate as EstimatePydantic,
    EstimateVersion as EstimateVersionPydantic,
    ChangeRequest as ChangeRequestPydantic,
    LineItem as LineItemPydantic,
    RequestedChange,
)
from .db_models import (
    Estimate as EstimateDB,
    EstimateVersion as EstimateVersionDB,
    ChangeRequest as ChangeRequestDB,
)

logger = logging.getLogger(__name__)

_requested_changes_adapter = TypeAdapter(List[RequestedChange])


def line_items_to_json(line_items: Optional[list]) -> Optional[list]:
    """Convert list of LineItem Pydantic models to a JSON-serializable list

    None (unset) stays None; an explicit empty list stays [].
    """
    if line_items is None:
        return None
    return [
        {
            "id": item.id,
            "title": item.title,
            "description": item.description,
            "category": item.category,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "total_price": item.total_price,
            "sort_order": item.sort_order,
        }
        for item in line_items
    ]


def json_to_line_items(data) -> List[LineItemPydantic]:
    """Convert JSON snapshot data to LineItem models, skipping unreadable entries"""
    if not data:
        return []
    if isinstance(data, str):
        data = json.loads(data)
    items = []
    for i, raw in enumerate(data):
        if not isinstance(raw, dict):
            logger.warning(f"Skipping non-object line item at index {i}: {raw!r}")
            continue
        try:
            item = LineItemPydantic(
                id=raw.get("id"),
                title=raw.get("title") or "",
                description=raw.get("description") or "",
                category=raw.get("category") or "other",
                quantity=raw.get("quantity") or 1,
                unit_price=raw.get("unit_price") or 0,
                total_price=raw.get("total_price") or 0,
                sort_order=raw.get("sort_order", i),
            )
        except PydanticValidationError as e:
            logger.warning(f"Skipping malformed line item at index {i}: {e}")
            continue
        items.append(item)
    return items


def requested_changes_to_json(changes: list) -> list:
    return [change.model_dump(mode="json") for change in changes]


def json_to_requested_changes(data) -> list:
    if not data:
        return []
    if isinstance(data, str):
        data = json.loads(data)
    return _requested_changes_adapter.validate_python(data)


def pydantic_to_db_estimate(estimate: EstimatePydantic) -> EstimateDB:
    """Convert Pydantic Estimate to SQLAlchemy Estimate (totals start at zero)

    Totals and line items are never copied from the Pydantic model; they are
    only ever set by version activation.
    """
    kwargs = dict(
        status=estimate.status,
        customer_name=estimate.customer_name,
        customer_email=estimate.customer_email,
        event_name=estimate.event_name,
        event_date=estimate.event_date,
        start_time=estimate.start_time,
        guest_count=estimate.guest_count,
        compliance_level=estimate.compliance_level,
        requires_po_number=estimate.requires_po_number,
        subtotal=0,
        tax_amount=0,
        total_amount=0,
        active_version_id=None,
    )
    if estimate.id:
        kwargs["id"] = estimate.id
    return EstimateDB(**kwargs)


def db_to_pydantic_estimate(
    estimate_db: EstimateDB,
    line_items: Optional[List[LineItemPydantic]] = None,
) -> EstimatePydantic:
    """Convert SQLAlchemy Estimate to Pydantic Estimate"""
    return EstimatePydantic(
        id=estimate_db.id,
        status=estimate_db.status,
        customer_name=estimate_db.customer_name,
        customer_email=estimate_db.customer_email,
        event_name=estimate_db.event_name,
        event_date=estimate_db.event_date,
        start_time=estimate_db.start_time,
        guest_count=estimate_db.guest_count or 0,
        compliance_level=estimate_db.compliance_level,
        requires_po_number=bool(estimate_db.requires_po_number),
        subtotal=estimate_db.subtotal or 0,
        tax_amount=estimate_db.tax_amount or 0,
        total_amount=estimate_db.total_amount or 0,
        active_version_id=estimate_db.active_version_id,
        line_items=line_items or [],
        created_at=estimate_db.created_at,
        updated_at=estimate_db.updated_at,
    )


def db_to_pydantic_version(version_db: EstimateVersionDB) -> EstimateVersionPydantic:
    """Convert SQLAlchemy EstimateVersion to Pydantic EstimateVersion"""
    return EstimateVersionPydantic(
        id=version_db.id,
        estimate_id=version_db.estimate_id,
        change_request_id=version_db.change_request_id,
        version_number=version_db.version_number,
        line_items=json_to_line_items(version_db.line_items),
        subtotal=version_db.subtotal or 0,
        tax_amount=version_db.tax_amount or 0,
        total_amount=version_db.total_amount or 0,
        status=version_db.status,
        notes=version_db.notes,
        created_at=version_db.created_at,
        created_by=version_db.created_by,
    )


def pydantic_to_db_change_request(change_request: ChangeRequestPydantic) -> ChangeRequestDB:
    """Convert Pydantic ChangeRequest to SQLAlchemy ChangeRequest"""
    kwargs = dict(
        estimate_id=change_request.estimate_id,
        customer_email=change_request.customer_email,
        request_type=change_request.request_type.value,
        priority=change_request.priority,
        status=change_request.status.value,
        customer_comments=change_request.customer_comments,
        requested_changes=requested_changes_to_json(change_request.requested_changes),
        estimated_cost_change=change_request.estimated_cost_change,
    )
    if change_request.id:
        kwargs["id"] = change_request.id
    return ChangeRequestDB(**kwargs)


def db_to_pydantic_change_request(change_request_db: ChangeRequestDB) -> ChangeRequestPydantic:
    """Convert SQLAlchemy ChangeRequest to Pydantic ChangeRequest"""
    return ChangeRequestPydantic(
        id=change_request_db.id,
        estimate_id=change_request_db.estimate_id,
        customer_email=change_request_db.customer_email,
        request_type=change_request_db.request_type,
        priority=change_request_db.priority,
        status=change_request_db.status,
        customer_comments=change_request_db.customer_comments,
        requested_changes=json_to_requested_changes(change_request_db.requested_changes),
        estimated_cost_change=change_request_db.estimated_cost_change or 0,
        admin_response=change_request_db.admin_response,
        final_cost_change=change_request_db.final_cost_change,
        reviewed_by=change_request_db.reviewed_by,
        reviewed_at=change_request_db.reviewed_at,
        created_at=change_request_db.created_at,
        updated_at=change_request_db.updated_at,
    )
