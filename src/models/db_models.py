"""SQLAlchemy ORM models"""

from sqlalchemy import (
    Column, String, Integer, Boolean, Date, DateTime, Text, JSON, ForeignKey, Index,
    UniqueConstraint, text,
)
from datetime import datetime
import uuid

from .database import Base


class Estimate(Base):
    """Estimate table; subtotal/tax/total are a projection of the active version"""
    __tablename__ = "estimates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    status = Column(String(50), nullable=False, default="draft")

    # Customer / event
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    event_name = Column(String, nullable=True)
    event_date = Column(Date, nullable=True)
    start_time = Column(String(20), nullable=True)
    guest_count = Column(Integer, nullable=False, default=0)

    # Exemption context copied from the quote record
    compliance_level = Column(String(50), nullable=True)
    requires_po_number = Column(Boolean, nullable=False, default=False)

    # Denormalized totals (cents). Written only by PricingConsistencyService.
    subtotal = Column(Integer, nullable=False, default=0)
    tax_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)

    # Compare-and-swap key for version activation
    active_version_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_estimates_status', 'status'),
    )


class EstimateVersion(Base):
    """Append-only version history"""
    __tablename__ = "estimate_versions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    estimate_id = Column(String(36), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False)
    change_request_id = Column(String(36), ForeignKey("change_requests.id"), nullable=True)
    version_number = Column(Integer, nullable=False)

    # Full snapshot, not a diff
    line_items = Column(JSON, nullable=False, default=list)
    subtotal = Column(Integer, nullable=False, default=0)
    tax_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default="active")
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_by = Column(String(100), nullable=False, default="system")

    __table_args__ = (
        UniqueConstraint('estimate_id', 'version_number', name='uq_estimate_versions_number'),
        # Second line of defence for "at most one active version"
        Index(
            'uq_estimate_versions_one_active',
            'estimate_id',
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index('ix_estimate_versions_estimate_id', 'estimate_id'),
    )


class ChangeRequest(Base):
    """Customer change requests"""
    __tablename__ = "change_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    estimate_id = Column(String(36), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False)
    customer_email = Column(String, nullable=True)
    request_type = Column(String(50), nullable=False, default="other")
    priority = Column(String(20), nullable=False, default="medium")
    status = Column(String(20), nullable=False, default="pending")
    customer_comments = Column(Text, nullable=True)
    requested_changes = Column(JSON, nullable=False, default=list)
    estimated_cost_change = Column(Integer, nullable=False, default=0)

    # Resolution
    admin_response = Column(Text, nullable=True)
    final_cost_change = Column(Integer, nullable=True)
    reviewed_by = Column(String(100), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_change_requests_estimate_id', 'estimate_id'),
        Index('ix_change_requests_status', 'status'),
    )
