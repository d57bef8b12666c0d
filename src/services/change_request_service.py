"""Change request workflow: submit, evaluate, approve, reject

pending -> approved | rejected. Both resolutions are terminal and use a
conditional UPDATE, so two administrators resolving the same request cannot
both succeed. Approval applies the requested changes as a new estimate
version in the same unit of work as the status change.
"""

from datetime import datetime
from typing import List, Optional, Sequence, Tuple
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.approval.auto_approval import (
    AutoApprovalDecision,
    AutoApprovalEngine,
    EstimateContext,
    apply_requested_changes,
    requested_schedule,
)
from src.config import settings
from src.exceptions import ConcurrencyConflict, NotFoundError
from src.models.db_models import ChangeRequest as ChangeRequestDB, Estimate as EstimateDB
from src.models.db_utils import db_to_pydantic_change_request
from src.models.estimate import (
    ChangeRequest,
    ChangeRequestStatus,
    ChangeRequestType,
    EstimateVersion,
    RequestedChange,
)
from src.models.db_utils_line_items import get_line_items_from_table
from src.services.db_service import DatabaseService
from src.services.version_service import VersionStore
from src.versioning.diff_engine import cost_delta

logger = logging.getLogger(__name__)


class ChangeRequestService:
    """Customer change request lifecycle"""

    def __init__(
        self,
        db: Optional[AsyncSession] = None,
        version_store: Optional[VersionStore] = None,
        engine: Optional[AutoApprovalEngine] = None,
    ):
        """
        Initialize change request service

        Args:
            db: Async database session (optional, creates new per call if not provided)
            version_store: Version store used on approval
            engine: Auto-approval engine (policy from settings when not provided)
        """
        self.db = db
        self.versions = version_store or VersionStore(db=db)
        self.engine = engine or AutoApprovalEngine()

    async def _require_estimate(self, estimate_id: str):
        estimate = await DatabaseService.get_estimate(estimate_id, db=self.db)
        if estimate is None:
            raise NotFoundError("Estimate", estimate_id)
        return estimate

    async def _require_change_request(self, change_request_id: str) -> ChangeRequest:
        change_request = await DatabaseService.get_change_request(change_request_id, db=self.db)
        if change_request is None:
            raise NotFoundError("ChangeRequest", change_request_id)
        return change_request

    async def submit_change_request(
        self,
        estimate_id: str,
        requested_changes: Sequence[RequestedChange],
        request_type: ChangeRequestType = ChangeRequestType.OTHER,
        customer_email: Optional[str] = None,
        customer_comments: Optional[str] = None,
        priority: str = "medium",
    ) -> ChangeRequest:
        """
        Record a pending change request with its estimated cost change

        The estimate is not modified.
        """
        estimate = await self._require_estimate(estimate_id)
        decision = self.engine.evaluate(
            list(requested_changes), EstimateContext.from_estimate(estimate), request_type
        )

        change_request = ChangeRequest(
            estimate_id=estimate_id,
            customer_email=customer_email or estimate.customer_email,
            request_type=request_type,
            priority=priority,
            status=ChangeRequestStatus.PENDING,
            customer_comments=customer_comments,
            requested_changes=list(requested_changes),
            estimated_cost_change=decision.cost_impact or 0,
        )
        saved = await DatabaseService.save_change_request(change_request, db=self.db)
        logger.info(
            f"Change request {saved.id} submitted for estimate {estimate_id} "
            f"({saved.request_type.value}, estimated change {saved.estimated_cost_change})"
        )
        return saved

    async def list_change_requests(
        self,
        estimate_id: str,
        status: Optional[ChangeRequestStatus] = None,
    ) -> List[ChangeRequest]:
        return await DatabaseService.list_change_requests(
            estimate_id, status.value if status else None, db=self.db
        )

    async def evaluate_change_request(self, change_request_id: str) -> AutoApprovalDecision:
        """Run the auto-approval engine against the estimate's current items"""
        change_request = await self._require_change_request(change_request_id)
        estimate = await self._require_estimate(change_request.estimate_id)
        return self.engine.evaluate(
            change_request.requested_changes,
            EstimateContext.from_estimate(estimate),
            change_request.request_type,
        )

    async def _load_for_resolution(self, session: AsyncSession, change_request_id: str) -> ChangeRequestDB:
        result = await session.execute(
            select(ChangeRequestDB)
            .where(ChangeRequestDB.id == change_request_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError("ChangeRequest", change_request_id)
        if row.status != ChangeRequestStatus.PENDING.value:
            raise ConcurrencyConflict(
                f"Change request {change_request_id} is already {row.status}",
                estimate_id=row.estimate_id,
            )
        return row

    async def approve_change_request(
        self,
        change_request_id: str,
        admin_response: Optional[str] = None,
        reviewed_by: Optional[str] = None,
    ) -> Tuple[ChangeRequest, EstimateVersion]:
        """
        Approve a pending request and apply it as a new active version

        The status change, any reschedule of the event, the new version and
        the estimate's recalculated totals are committed together.

        Returns:
            (approved change request, new version)

        Raises:
            NotFoundError: request or estimate missing
            ConcurrencyConflict: request no longer pending, or the estimate's
                active version changed while approving
            ValidationError: requested changes no longer apply to the estimate
        """
        reviewer = reviewed_by or settings.DEFAULT_ACTOR

        async def work(session):
            row = await self._load_for_resolution(session, change_request_id)
            change_request = db_to_pydantic_change_request(row)
            estimate = await DatabaseService.get_estimate(row.estimate_id, db=session, include_line_items=False)
            if estimate is None:
                raise NotFoundError("Estimate", row.estimate_id)

            current_items = await get_line_items_from_table(session, row.estimate_id)
            proposed = apply_requested_changes(current_items, change_request.requested_changes)
            schedule = requested_schedule(change_request.requested_changes)
            final_cost_change = cost_delta(current_items, proposed)

            transitioned = await DatabaseService.transition_change_request(
                session,
                change_request_id,
                [ChangeRequestStatus.PENDING],
                ChangeRequestStatus.APPROVED,
                patch={
                    "admin_response": admin_response,
                    "final_cost_change": final_cost_change,
                    "reviewed_by": reviewer,
                    "reviewed_at": datetime.utcnow(),
                },
            )
            if not transitioned:
                raise ConcurrencyConflict(
                    f"Change request {change_request_id} was resolved concurrently",
                    estimate_id=row.estimate_id,
                )

            if schedule:
                await session.execute(
                    update(EstimateDB)
                    .where(EstimateDB.id == row.estimate_id)
                    .values(updated_at=datetime.utcnow(), **schedule)
                    .execution_options(synchronize_session=False)
                )
                logger.info(f"Estimate {row.estimate_id} rescheduled to {schedule}")

            version = await self.versions.create_version_in_transaction(
                session,
                row.estimate_id,
                proposed,
                notes=f"Applied change request {change_request_id}",
                change_request_id=change_request_id,
                created_by=reviewer,
                expected_active_version_id=estimate.active_version_id,
            )
            return version

        version = await self.versions.run_unit_of_work(
            "approve_change_request", f"change request {change_request_id}", work
        )
        approved = await self._require_change_request(change_request_id)
        logger.info(
            f"Change request {change_request_id} approved by {reviewer}; "
            f"estimate {version.estimate_id} now at version {version.version_number} "
            f"(change {approved.final_cost_change})"
        )
        return approved, version

    async def reject_change_request(
        self,
        change_request_id: str,
        admin_response: Optional[str] = None,
        reviewed_by: Optional[str] = None,
    ) -> ChangeRequest:
        """
        Reject a pending request; the estimate is left untouched

        Raises:
            NotFoundError: request missing
            ConcurrencyConflict: request no longer pending
        """
        reviewer = reviewed_by or settings.DEFAULT_ACTOR

        async def work(session):
            row = await self._load_for_resolution(session, change_request_id)
            transitioned = await DatabaseService.transition_change_request(
                session,
                change_request_id,
                [ChangeRequestStatus.PENDING],
                ChangeRequestStatus.REJECTED,
                patch={
                    "admin_response": admin_response,
                    "reviewed_by": reviewer,
                    "reviewed_at": datetime.utcnow(),
                },
            )
            if not transitioned:
                raise ConcurrencyConflict(
                    f"Change request {change_request_id} was resolved concurrently",
                    estimate_id=row.estimate_id,
                )

        await self.versions.run_unit_of_work(
            "reject_change_request", f"change request {change_request_id}", work
        )
        logger.info(f"Change request {change_request_id} rejected by {reviewer}")
        return await self._require_change_request(change_request_id)
