"""Estimate, version and change request data models

All monetary fields are integers in minor currency units (cents).
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field
from enum import Enum


class VersionStatus(str, Enum):
    """Estimate version lifecycle states"""
    DRAFT = "draft"
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    ARCHIVED = "archived"


# Allowed lifecycle moves; nothing ever returns to DRAFT or ACTIVE
VERSION_TRANSITIONS = {
    VersionStatus.DRAFT: {VersionStatus.ACTIVE, VersionStatus.ARCHIVED},
    VersionStatus.ACTIVE: {VersionStatus.SUPERSEDED, VersionStatus.ARCHIVED},
    VersionStatus.SUPERSEDED: {VersionStatus.ARCHIVED},
    VersionStatus.ARCHIVED: set(),
}


class ChangeRequestStatus(str, Enum):
    """Change request workflow states (approved/rejected are terminal)"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ChangeRequestType(str, Enum):
    """Classification tag supplied with a change request"""
    QUANTITY_CHANGE = "quantity_change"
    ADD_ITEM = "add_item"
    REMOVE_ITEM = "remove_item"
    RESCHEDULE = "reschedule"
    NOTE_ONLY = "note_only"
    MENU_CHANGE = "menu_change"
    OTHER = "other"


class LineItem(BaseModel):
    """Estimate line item"""
    id: Optional[str] = None  # absent until persisted
    title: str = ""
    description: str = ""
    category: str = "other"
    quantity: int = Field(default=1, ge=1)
    unit_price: int = Field(default=0, ge=0)
    total_price: int = Field(default=0, ge=0)
    sort_order: int = 0

    @property
    def expected_total(self) -> int:
        return self.quantity * self.unit_price

    def normalized(self) -> "LineItem":
        """Copy with total_price recomputed from quantity and unit price"""
        return self.model_copy(update={"total_price": self.expected_total})


class CompletePricing(BaseModel):
    """Derived pricing for a set of line items; never stored"""
    subtotal: int
    tax_amount: int
    total_amount: int
    tax_rate: Decimal
    is_exempt: bool
    deposit_required: int
    balance_due: int


class EstimateVersion(BaseModel):
    """Immutable snapshot of an estimate's line items and totals"""
    id: Optional[str] = None
    estimate_id: str
    change_request_id: Optional[str] = None
    version_number: int = Field(ge=1)
    line_items: List[LineItem] = Field(default_factory=list)
    subtotal: int = 0
    tax_amount: int = 0
    total_amount: int = 0
    status: VersionStatus = VersionStatus.ACTIVE
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: str = "system"


class Estimate(BaseModel):
    """Parent estimate record; totals mirror the active version"""
    id: Optional[str] = None
    status: str = "draft"  # draft, sent, approved
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    event_name: Optional[str] = None
    event_date: Optional[date] = None
    start_time: Optional[str] = None
    guest_count: int = 0

    # Exemption context from the originating quote
    compliance_level: Optional[str] = None
    requires_po_number: bool = False

    subtotal: int = 0
    tax_amount: int = 0
    total_amount: int = 0
    active_version_id: Optional[str] = None
    line_items: List[LineItem] = Field(default_factory=list)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class QuantityChange(BaseModel):
    kind: Literal["quantity_change"] = "quantity_change"
    item_key: str
    new_quantity: int = Field(ge=0)  # 0 removes the item


class ItemAdd(BaseModel):
    kind: Literal["item_add"] = "item_add"
    item: LineItem


class ItemRemove(BaseModel):
    kind: Literal["item_remove"] = "item_remove"
    item_key: str


class Reschedule(BaseModel):
    kind: Literal["reschedule"] = "reschedule"
    event_date: date
    start_time: Optional[str] = None


class NoteOnly(BaseModel):
    kind: Literal["note_only"] = "note_only"
    note: str


RequestedChange = Annotated[
    Union[QuantityChange, ItemAdd, ItemRemove, Reschedule, NoteOnly],
    Field(discriminator="kind"),
]


class ChangeRequest(BaseModel):
    """Customer-submitted modification proposal"""
    id: Optional[str] = None
    estimate_id: str
    customer_email: Optional[str] = None
    request_type: ChangeRequestType = ChangeRequestType.OTHER
    priority: str = "medium"
    status: ChangeRequestStatus = ChangeRequestStatus.PENDING
    customer_comments: Optional[str] = None
    requested_changes: List[RequestedChange] = Field(default_factory=list)
    estimated_cost_change: int = 0
    admin_response: Optional[str] = None
    final_cost_change: Optional[int] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
