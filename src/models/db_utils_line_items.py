"""
Helper functions for the estimate's current line items table.

The table is a projection of the active version's snapshot: it is replaced
wholesale during version activation and read by the pricing service.
"""

from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, insert
import logging

from .estimate import LineItem as LineItemPydantic
from .line_item_db_models import LineItem as LineItemDB

logger = logging.getLogger(__name__)


async def replace_line_items_in_table(
    session: AsyncSession,
    estimate_id: str,
    line_items: List[LineItemPydantic],
) -> None:
    """
    Replace the line items rows for an estimate.

    Does not commit; callers run this inside their own unit of work.

    Args:
        session: Database session
        estimate_id: Estimate ID
        line_items: Snapshot items; every item must already carry an id
    """
    await session.execute(
        delete(LineItemDB)
        .where(LineItemDB.estimate_id == estimate_id)
        .execution_options(synchronize_session=False)
    )

    if line_items:
        await session.execute(
            insert(LineItemDB),
            [
                {
                    "id": item.id,
                    "estimate_id": estimate_id,
                    "title": item.title,
                    "description": item.description,
                    "category": item.category,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "total_price": item.total_price,
                    "sort_order": item.sort_order,
                }
                for item in line_items
            ],
        )

    logger.debug(f"Replaced line items for estimate {estimate_id}: {len(line_items)} rows")


async def get_line_items_from_table(
    session: AsyncSession,
    estimate_id: str,
) -> List[LineItemPydantic]:
    """
    Get the estimate's current line items ordered for display.

    Args:
        session: Database session
        estimate_id: Estimate ID

    Returns:
        List of LineItem Pydantic models
    """
    result = await session.execute(
        select(
            LineItemDB.id,
            LineItemDB.title,
            LineItemDB.description,
            LineItemDB.category,
            LineItemDB.quantity,
            LineItemDB.unit_price,
            LineItemDB.total_price,
            LineItemDB.sort_order,
        )
        .where(LineItemDB.estimate_id == estimate_id)
        .order_by(LineItemDB.sort_order, LineItemDB.id)
    )

    return [
        LineItemPydantic(
            id=row.id,
            title=row.title or "",
            description=row.description or "",
            category=row.category or "other",
            quantity=row.quantity,
            unit_price=row.unit_price or 0,
            total_price=row.total_price or 0,
            sort_order=row.sort_order or 0,
        )
        for row in result.all()
    ]
