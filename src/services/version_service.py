"""Estimate version store

Owns the append-only version history of an estimate. Activating a version
(create, revert, promote a draft) is a single unit of work:

1. compare-and-swap ``estimates.active_version_id`` from the expected value
   to the new version id,
2. move the previous active version to ``superseded``,
3. insert (or promote) the new version as ``active``,
4. replace the estimate's line items projection with the snapshot,
5. recalculate the estimate totals,

committed together or not at all.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import logging
import uuid

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.exceptions import ConcurrencyConflict, NotFoundError, PersistenceError, ValidationError
from src.models.database import AsyncSessionLocal
from src.models.db_models import Estimate as EstimateDB, EstimateVersion as EstimateVersionDB
from src.models.db_utils import db_to_pydantic_version, line_items_to_json
from src.models.db_utils_line_items import get_line_items_from_table, replace_line_items_in_table
from src.models.estimate import (
    EstimateVersion,
    LineItem,
    VersionStatus,
    VERSION_TRANSITIONS,
)
from src.pricing.tax_calculator import is_government_contract
from src.services.pricing_service import PricingConsistencyService

logger = logging.getLogger(__name__)

# Sentinel: read the current active version id inside the transaction
_READ_CURRENT = object()


class VersionStore:
    """Create, list, revert and archive estimate versions"""

    def __init__(
        self,
        db: Optional[AsyncSession] = None,
        pricing_service: Optional[PricingConsistencyService] = None,
    ):
        """
        Initialize version store

        Args:
            db: Async database session (optional, creates new per call if not provided)
            pricing_service: Pricing service used for recalculation
        """
        self.db = db
        self.pricing = pricing_service or PricingConsistencyService(db=db)

    def _session(self):
        if self.db:
            return self.db, False
        return AsyncSessionLocal(), True

    @staticmethod
    def prepare_snapshot(line_items: Sequence[LineItem]) -> List[LineItem]:
        """
        Normalize a line item snapshot for storage

        Assigns ids to unsaved items, recomputes total_price from quantity and
        unit price, and fills sort_order from position when unset.
        """
        seen_ids = set()
        snapshot = []
        for position, item in enumerate(line_items):
            if item.id and item.id in seen_ids:
                raise ValidationError(f"Duplicate line item id in snapshot: {item.id}")
            normalized = item.normalized()
            if normalized.total_price != item.total_price:
                logger.warning(
                    f"Line item {item.id or item.description!r} total_price {item.total_price} "
                    f"!= {item.quantity} x {item.unit_price}; using {normalized.total_price}"
                )
            update_fields: Dict[str, Any] = {}
            if not normalized.id:
                update_fields["id"] = str(uuid.uuid4())
            if not normalized.sort_order:
                update_fields["sort_order"] = position
            if update_fields:
                normalized = normalized.model_copy(update=update_fields)
            seen_ids.add(normalized.id)
            snapshot.append(normalized)
        return snapshot

    async def _get_estimate_row(self, session: AsyncSession, estimate_id: str) -> EstimateDB:
        result = await session.execute(
            select(EstimateDB)
            .where(EstimateDB.id == estimate_id)
            .execution_options(populate_existing=True)
        )
        estimate = result.scalar_one_or_none()
        if estimate is None:
            raise NotFoundError("Estimate", estimate_id)
        return estimate

    async def _get_version_row(self, session: AsyncSession, version_id: str) -> EstimateVersionDB:
        result = await session.execute(
            select(EstimateVersionDB)
            .where(EstimateVersionDB.id == version_id)
            .execution_options(populate_existing=True)
        )
        version = result.scalar_one_or_none()
        if version is None:
            raise NotFoundError("EstimateVersion", version_id)
        return version

    async def _next_version_number(self, session: AsyncSession, estimate_id: str) -> int:
        result = await session.execute(
            select(func.max(EstimateVersionDB.version_number))
            .where(EstimateVersionDB.estimate_id == estimate_id)
        )
        current_max = result.scalar()
        return (current_max or 0) + 1

    async def _swap_active_version(
        self,
        session: AsyncSession,
        estimate_id: str,
        expected_active_version_id: Optional[str],
        new_active_version_id: Optional[str],
    ) -> None:
        """Compare-and-swap the estimate's active version pointer"""
        if expected_active_version_id is None:
            condition = EstimateDB.active_version_id.is_(None)
        else:
            condition = EstimateDB.active_version_id == expected_active_version_id

        result = await session.execute(
            update(EstimateDB)
            .where(EstimateDB.id == estimate_id)
            .where(condition)
            .values(active_version_id=new_active_version_id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"Active version of estimate {estimate_id} changed concurrently "
                f"(expected {expected_active_version_id})",
                estimate_id=estimate_id,
            )

    async def _activate_in_transaction(
        self,
        session: AsyncSession,
        estimate_id: str,
        version_id: str,
        line_items: List[LineItem],
        expected_active_version_id: Any,
    ) -> None:
        """Steps 1, 2 and 4 of activation; the caller writes the row and recalculates"""
        if expected_active_version_id is _READ_CURRENT:
            estimate = await self._get_estimate_row(session, estimate_id)
            expected_active_version_id = estimate.active_version_id

        await self._swap_active_version(session, estimate_id, expected_active_version_id, version_id)

        await session.execute(
            update(EstimateVersionDB)
            .where(EstimateVersionDB.estimate_id == estimate_id)
            .where(EstimateVersionDB.status == VersionStatus.ACTIVE.value)
            .values(status=VersionStatus.SUPERSEDED.value)
            .execution_options(synchronize_session=False)
        )
        # Make the supersession visible to the partial unique index before the
        # new active row is written
        await session.flush()

        await replace_line_items_in_table(session, estimate_id, line_items)

    async def create_version_in_transaction(
        self,
        session: AsyncSession,
        estimate_id: str,
        line_items: Sequence[LineItem],
        notes: Optional[str] = None,
        change_request_id: Optional[str] = None,
        created_by: Optional[str] = None,
        stage_as_draft: bool = False,
        expected_active_version_id: Any = _READ_CURRENT,
    ) -> EstimateVersion:
        """
        Create a version inside the caller's unit of work (no commit)

        Raises:
            NotFoundError: estimate does not exist
            ConcurrencyConflict: the active version changed since it was read
            ValidationError: malformed snapshot
        """
        estimate = await self._get_estimate_row(session, estimate_id)
        snapshot = self.prepare_snapshot(line_items)
        version_number = await self._next_version_number(session, estimate_id)
        version_id = str(uuid.uuid4())

        is_exempt = is_government_contract(estimate.compliance_level, estimate.requires_po_number)
        pricing = self.pricing.compute_pricing(snapshot, is_exempt)

        status = VersionStatus.DRAFT if stage_as_draft else VersionStatus.ACTIVE
        if not stage_as_draft:
            await self._activate_in_transaction(
                session, estimate_id, version_id, snapshot, expected_active_version_id
            )

        version_row = EstimateVersionDB(
            id=version_id,
            estimate_id=estimate_id,
            change_request_id=change_request_id,
            version_number=version_number,
            line_items=line_items_to_json(snapshot),
            subtotal=pricing.subtotal,
            tax_amount=pricing.tax_amount,
            total_amount=pricing.total_amount,
            status=status.value,
            notes=notes,
            created_at=datetime.utcnow(),
            created_by=created_by or settings.DEFAULT_ACTOR,
        )
        session.add(version_row)
        await session.flush()

        if not stage_as_draft:
            await self.pricing.recalculate_in_transaction(session, estimate_id)

        return db_to_pydantic_version(version_row)

    async def run_unit_of_work(self, action: str, subject: str, work):
        """
        Execute work(session) as one unit of work and commit it

        Store failures are mapped onto the engine's error taxonomy; every
        failure rolls the whole unit back.
        """
        session, should_close = self._session()
        try:
            try:
                result = await work(session)
                await session.commit()
                return result
            except IntegrityError as e:
                await session.rollback()
                logger.warning(f"Constraint violation during {action} on {subject}: {e}")
                raise ConcurrencyConflict(f"Concurrent {action} on {subject}") from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Store failure during {action} on {subject}: {e}", exc_info=True)
                raise PersistenceError(f"{action} failed on {subject}") from e
            except Exception:
                await session.rollback()
                raise
        finally:
            if should_close:
                await session.close()

    async def create_version(
        self,
        estimate_id: str,
        line_items: Sequence[LineItem],
        notes: Optional[str] = None,
        change_request_id: Optional[str] = None,
        created_by: Optional[str] = None,
        stage_as_draft: bool = False,
        expected_active_version_id: Any = _READ_CURRENT,
    ) -> EstimateVersion:
        """
        Create a new version from a full line item snapshot

        Args:
            estimate_id: Estimate ID
            line_items: Complete item set for the new version (not a diff)
            notes: Free-text notes
            change_request_id: Originating change request, if any
            created_by: Acting user identity
            stage_as_draft: Insert as draft without activating
            expected_active_version_id: Active version id the caller based its
                edit on; defaults to whatever is active at write time

        Returns:
            The committed EstimateVersion

        Raises:
            ConcurrencyConflict: another writer activated a version first;
                nothing was written, re-read and retry
            PersistenceError: the store failed; re-validate before retrying
        """
        async def work(session):
            return await self.create_version_in_transaction(
                session,
                estimate_id,
                line_items,
                notes=notes,
                change_request_id=change_request_id,
                created_by=created_by,
                stage_as_draft=stage_as_draft,
                expected_active_version_id=expected_active_version_id,
            )

        version = await self.run_unit_of_work("create_version", f"estimate {estimate_id}", work)
        logger.info(
            f"Estimate {estimate_id} version {version.version_number} created "
            f"({version.status.value}, total={version.total_amount})"
        )
        return version

    async def activate_version(
        self,
        version_id: str,
        expected_active_version_id: Any = _READ_CURRENT,
        activated_by: Optional[str] = None,
    ) -> EstimateVersion:
        """
        Promote a draft version to active, superseding the current one

        The draft keeps its created_by; activated_by is recorded in the log.

        Raises:
            ValidationError: version is not a draft
        """
        async def work(session):
            row = await self._get_version_row(session, version_id)
            if row.status != VersionStatus.DRAFT.value:
                raise ValidationError(
                    f"Only draft versions can be activated; version {version_id} is {row.status}"
                )
            version = db_to_pydantic_version(row)
            await self._activate_in_transaction(
                session, row.estimate_id, row.id, version.line_items, expected_active_version_id
            )
            await session.execute(
                update(EstimateVersionDB)
                .where(EstimateVersionDB.id == version_id)
                .where(EstimateVersionDB.status == VersionStatus.DRAFT.value)
                .values(status=VersionStatus.ACTIVE.value)
                .execution_options(synchronize_session=False)
            )
            await self.pricing.recalculate_in_transaction(session, row.estimate_id)
            return version.model_copy(update={"status": VersionStatus.ACTIVE})

        version = await self.run_unit_of_work("activate_version", f"version {version_id}", work)
        logger.info(
            f"Estimate {version.estimate_id} version {version.version_number} activated "
            f"by {activated_by or settings.DEFAULT_ACTOR}"
        )
        return version

    async def list_versions(self, estimate_id: str) -> List[EstimateVersion]:
        """
        List versions of an estimate, newest first
        """
        session, should_close = self._session()
        try:
            result = await session.execute(
                select(EstimateVersionDB)
                .where(EstimateVersionDB.estimate_id == estimate_id)
                .order_by(EstimateVersionDB.version_number.desc())
                .execution_options(populate_existing=True)
            )
            return [db_to_pydantic_version(v) for v in result.scalars().all()]

        except Exception as e:
            logger.error(f"Error listing versions for estimate {estimate_id}: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    async def get_version(self, version_id: str) -> EstimateVersion:
        """Get a version by id (NotFoundError when missing)"""
        session, should_close = self._session()
        try:
            row = await self._get_version_row(session, version_id)
            return db_to_pydantic_version(row)
        finally:
            if should_close:
                await session.close()

    async def get_active_version(self, estimate_id: str) -> Optional[EstimateVersion]:
        """Get the estimate's active version, if any"""
        session, should_close = self._session()
        try:
            result = await session.execute(
                select(EstimateVersionDB)
                .where(EstimateVersionDB.estimate_id == estimate_id)
                .where(EstimateVersionDB.status == VersionStatus.ACTIVE.value)
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()
            return db_to_pydantic_version(row) if row else None
        finally:
            if should_close:
                await session.close()

    async def revert_to_version(self, version_id: str, created_by: Optional[str] = None) -> EstimateVersion:
        """
        Append a new version duplicating an earlier version's items

        History is never mutated; the target version keeps its number and status.
        """
        target = await self.get_version(version_id)
        logger.info(
            f"Reverting estimate {target.estimate_id} to version {target.version_number}"
        )
        return await self.create_version(
            target.estimate_id,
            target.line_items,
            notes=f"Reverted to version {target.version_number}",
            created_by=created_by,
        )

    async def update_exemption_context(
        self,
        estimate_id: str,
        compliance_level: Optional[str],
        requires_po_number: bool,
        created_by: Optional[str] = None,
        expected_active_version_id: Any = _READ_CURRENT,
    ) -> EstimateVersion:
        """
        Change the estimate's tax exemption context

        The flags are written and a new version is created from the current
        line items in the same unit of work, so the estimate totals only move
        with a version transition.

        Args:
            estimate_id: Estimate ID
            compliance_level: New compliance level ("government" is tax exempt)
            requires_po_number: New PO requirement flag
            created_by: Acting user identity
            expected_active_version_id: Active version the caller based its edit on

        Returns:
            The new active EstimateVersion
        """
        async def work(session):
            estimate = await self._get_estimate_row(session, estimate_id)
            was_exempt = is_government_contract(estimate.compliance_level, estimate.requires_po_number)
            await session.execute(
                update(EstimateDB)
                .where(EstimateDB.id == estimate_id)
                .values(
                    compliance_level=compliance_level,
                    requires_po_number=requires_po_number,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.flush()

            is_exempt = is_government_contract(compliance_level, requires_po_number)
            if is_exempt == was_exempt:
                notes = "Compliance details updated"
            elif is_exempt:
                notes = "Tax exemption applied"
            else:
                notes = "Tax exemption removed"

            items = await get_line_items_from_table(session, estimate_id)
            return await self.create_version_in_transaction(
                session,
                estimate_id,
                items,
                notes=notes,
                created_by=created_by,
                expected_active_version_id=expected_active_version_id,
            )

        version = await self.run_unit_of_work("update_exemption_context", f"estimate {estimate_id}", work)
        logger.info(
            f"Estimate {estimate_id} exemption context updated; "
            f"version {version.version_number} total={version.total_amount}"
        )
        return version

    async def archive_version(self, version_id: str) -> EstimateVersion:
        """
        Archive a version; idempotent

        Archiving the active version also clears the estimate's active
        version pointer. Totals and line items are left as they are.
        """
        async def work(session):
            row = await self._get_version_row(session, version_id)
            current = VersionStatus(row.status)
            if current == VersionStatus.ARCHIVED:
                return db_to_pydantic_version(row)
            if VersionStatus.ARCHIVED not in VERSION_TRANSITIONS[current]:
                raise ValidationError(f"Cannot archive version {version_id} from {current.value}")

            if current == VersionStatus.ACTIVE:
                await self._swap_active_version(session, row.estimate_id, row.id, None)
                logger.warning(f"Archiving active version {version_id}; estimate {row.estimate_id} has no active version")

            await session.execute(
                update(EstimateVersionDB)
                .where(EstimateVersionDB.id == version_id)
                .where(EstimateVersionDB.status == current.value)
                .values(status=VersionStatus.ARCHIVED.value)
                .execution_options(synchronize_session=False)
            )
            return db_to_pydantic_version(row).model_copy(update={"status": VersionStatus.ARCHIVED})

        version = await self.run_unit_of_work("archive_version", f"version {version_id}", work)
        logger.info(f"Version {version_id} archived")
        return version

    @staticmethod
    def get_version_summary(version: EstimateVersion) -> Dict[str, Any]:
        """Item count, categories and totals for display"""
        categories = []
        for item in version.line_items:
            if item.category not in categories:
                categories.append(item.category)
        return {
            "version_id": version.id,
            "version_number": version.version_number,
            "status": version.status.value,
            "item_count": len(version.line_items),
            "categories": categories,
            "subtotal": version.subtotal,
            "tax_amount": version.tax_amount,
            "total_amount": version.total_amount,
            "created_at": version.created_at.isoformat() if version.created_at else None,
            "created_by": version.created_by,
        }
