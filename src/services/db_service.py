"""Async database service for estimate and change request records

Totals and line items of an estimate are not writable through this service;
they change only through version activation (see VersionStore).
"""

from typing import Optional, List, Iterable
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
import logging

from src.models.database import AsyncSessionLocal
from src.models.estimate import (
    Estimate as EstimatePydantic,
    ChangeRequest as ChangeRequestPydantic,
    ChangeRequestStatus,
)
from src.models.db_models import Estimate as EstimateDB, ChangeRequest as ChangeRequestDB
from src.models.db_utils import (
    pydantic_to_db_estimate,
    db_to_pydantic_estimate,
    pydantic_to_db_change_request,
    db_to_pydantic_change_request,
)
from src.models.db_utils_line_items import get_line_items_from_table

logger = logging.getLogger(__name__)

# Estimate fields a caller may change directly
EDITABLE_ESTIMATE_FIELDS = {
    "status",
    "customer_name",
    "customer_email",
    "event_name",
    "event_date",
    "start_time",
    "guest_count",
}


class DatabaseService:
    """Async service for estimate and change request persistence"""

    @staticmethod
    async def create_estimate(
        estimate: EstimatePydantic,
        db: Optional[AsyncSession] = None
    ) -> EstimatePydantic:
        """
        Create an estimate record with zero totals and no versions

        Args:
            estimate: Pydantic Estimate model (totals/line items ignored)
            db: Async database session (optional, creates new if not provided)

        Returns:
            Persisted Pydantic Estimate
        """
        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            db_estimate = pydantic_to_db_estimate(estimate)
            session.add(db_estimate)
            await session.commit()
            await session.refresh(db_estimate)

            logger.info(f"Estimate created: {db_estimate.id}")
            return db_to_pydantic_estimate(db_estimate)

        except Exception as e:
            await session.rollback()
            logger.error(f"Error creating estimate {estimate.id}: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def get_estimate(
        estimate_id: str,
        db: Optional[AsyncSession] = None,
        include_line_items: bool = True,
    ) -> Optional[EstimatePydantic]:
        """
        Get estimate from database

        Args:
            estimate_id: Estimate ID
            db: Async database session (optional)
            include_line_items: Load the current line items projection

        Returns:
            Pydantic Estimate model or None if not found
        """
        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            result = await session.execute(
                select(EstimateDB)
                .where(EstimateDB.id == estimate_id)
                .execution_options(populate_existing=True)
            )
            db_estimate = result.scalar_one_or_none()

            if not db_estimate:
                return None

            line_items = None
            if include_line_items:
                line_items = await get_line_items_from_table(session, estimate_id)
            return db_to_pydantic_estimate(db_estimate, line_items)

        except Exception as e:
            logger.error(f"Error getting estimate {estimate_id}: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def list_estimates(
        skip: int = 0,
        limit: int = 100,
        status: Optional[str] = None,
        db: Optional[AsyncSession] = None
    ) -> List[EstimatePydantic]:
        """
        List estimates, newest first (without line items)
        """
        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            query = select(EstimateDB)

            if status:
                query = query.where(EstimateDB.status == status)

            query = query.order_by(EstimateDB.created_at.desc())
            query = query.offset(skip).limit(limit)

            result = await session.execute(query)
            return [db_to_pydantic_estimate(est) for est in result.scalars().all()]

        except Exception as e:
            logger.error(f"Error listing estimates: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def update_estimate_details(
        estimate_id: str,
        patch: dict,
        db: Optional[AsyncSession] = None
    ) -> bool:
        """
        Update non-pricing estimate fields

        Pricing fields, line items, active_version_id and the tax exemption
        context in the patch are ignored; exemption changes go through
        VersionStore.update_exemption_context.

        Returns:
            True if updated, False if not found
        """
        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        values = {k: v for k, v in patch.items() if k in EDITABLE_ESTIMATE_FIELDS}
        ignored = set(patch) - set(values)
        if ignored:
            logger.warning(f"Ignoring protected estimate fields for {estimate_id}: {sorted(ignored)}")

        try:
            values["updated_at"] = datetime.utcnow()
            result = await session.execute(
                update(EstimateDB)
                .where(EstimateDB.id == estimate_id)
                .values(**values)
            )
            await session.commit()
            return result.rowcount > 0

        except Exception as e:
            await session.rollback()
            logger.error(f"Error updating estimate {estimate_id}: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def save_change_request(
        change_request: ChangeRequestPydantic,
        db: Optional[AsyncSession] = None
    ) -> ChangeRequestPydantic:
        """
        Insert a new change request

        Returns:
            Persisted Pydantic ChangeRequest
        """
        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            db_change_request = pydantic_to_db_change_request(change_request)
            session.add(db_change_request)
            await session.commit()
            await session.refresh(db_change_request)

            logger.info(
                f"Change request {db_change_request.id} saved for estimate {change_request.estimate_id}"
            )
            return db_to_pydantic_change_request(db_change_request)

        except Exception as e:
            await session.rollback()
            logger.error(f"Error saving change request for {change_request.estimate_id}: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def get_change_request(
        change_request_id: str,
        db: Optional[AsyncSession] = None
    ) -> Optional[ChangeRequestPydantic]:
        """Get change request or None if not found"""
        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            result = await session.execute(
                select(ChangeRequestDB)
                .where(ChangeRequestDB.id == change_request_id)
                .execution_options(populate_existing=True)
            )
            db_change_request = result.scalar_one_or_none()
            if db_change_request:
                return db_to_pydantic_change_request(db_change_request)
            return None

        except Exception as e:
            logger.error(f"Error getting change request {change_request_id}: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def list_change_requests(
        estimate_id: str,
        status: Optional[str] = None,
        db: Optional[AsyncSession] = None
    ) -> List[ChangeRequestPydantic]:
        """List change requests for an estimate, newest first"""
        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            query = select(ChangeRequestDB).where(ChangeRequestDB.estimate_id == estimate_id)
            if status:
                query = query.where(ChangeRequestDB.status == status)
            query = query.order_by(ChangeRequestDB.created_at.desc())

            result = await session.execute(query.execution_options(populate_existing=True))
            return [db_to_pydantic_change_request(cr) for cr in result.scalars().all()]

        except Exception as e:
            logger.error(f"Error listing change requests for {estimate_id}: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def transition_change_request(
        session: AsyncSession,
        change_request_id: str,
        from_states: Iterable[ChangeRequestStatus],
        to_state: ChangeRequestStatus,
        patch: Optional[dict] = None,
    ) -> bool:
        """
        Atomically move a change request between workflow states

        Uses a single conditional UPDATE (not SELECT-then-UPDATE). Does not
        commit; the caller owns the unit of work.

        Returns:
            True if the row was in one of from_states and was updated
        """
        values = dict(patch or {})
        values["status"] = to_state.value
        values["updated_at"] = datetime.utcnow()

        result = await session.execute(
            update(ChangeRequestDB)
            .where(ChangeRequestDB.id == change_request_id)
            .where(ChangeRequestDB.status.in_([s.value for s in from_states]))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
