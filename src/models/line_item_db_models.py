"""SQLAlchemy ORM model for the estimate's current line items

Rows mirror the active version's snapshot and are replaced wholesale on every
version activation.
"""

from sqlalchemy import Column, String, Integer, Text, ForeignKey, Index
import uuid

from .database import Base


class LineItem(Base):
    """Current line items of an estimate"""
    __tablename__ = "line_items"

    # Item ids are stable across versions of one estimate, so the key is per estimate
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    estimate_id = Column(
        String(36), ForeignKey("estimates.id", ondelete="CASCADE"), primary_key=True, nullable=False
    )

    title = Column(String, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    category = Column(String(50), nullable=False, default="other")
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Integer, nullable=False, default=0)
    total_price = Column(Integer, nullable=False, default=0)
    sort_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index('ix_line_items_estimate_id', 'estimate_id'),
        Index('ix_line_items_sort_order', 'estimate_id', 'sort_order'),
    )
