"""Tests for the change request workflow"""

from datetime import date
import pytest

from src.approval.auto_approval import AutoApprovalEngine
from src.exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from src.models.estimate import (
    ChangeRequestStatus,
    ChangeRequestType,
    ItemRemove,
    NoteOnly,
    QuantityChange,
    Reschedule,
    VersionStatus,
)
from src.services.change_request_service import ChangeRequestService
from src.services.db_service import DatabaseService
from src.services.pricing_service import PricingConsistencyService
from src.services.version_service import VersionStore


@pytest.fixture
def service(db_session, approval_policy):
    return ChangeRequestService(db=db_session, engine=AutoApprovalEngine(policy=approval_policy))


@pytest.mark.unit
class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit_records_pending_request(self, service, estimate_with_version):
        estimate, _ = estimate_with_version

        change_request = await service.submit_change_request(
            estimate.id,
            [QuantityChange(item_key="item-dessert", new_quantity=3)],
            request_type=ChangeRequestType.QUANTITY_CHANGE,
            customer_comments="Two guests cancelled",
        )

        assert change_request.id
        assert change_request.status == ChangeRequestStatus.PENDING
        assert change_request.estimated_cost_change == -500
        assert change_request.customer_email == "jordan@example.com"
        assert isinstance(change_request.requested_changes[0], QuantityChange)

    @pytest.mark.asyncio
    async def test_submit_does_not_change_estimate(self, db_session, service, estimate_with_version):
        estimate, v1 = estimate_with_version
        await service.submit_change_request(
            estimate.id, [ItemRemove(item_key="item-entree")], request_type=ChangeRequestType.REMOVE_ITEM
        )

        stored = await DatabaseService.get_estimate(estimate.id, db=db_session)
        assert stored.active_version_id == v1.id
        assert stored.total_amount == 5400

    @pytest.mark.asyncio
    async def test_inapplicable_request_has_zero_estimate(self, service, estimate_with_version):
        estimate, _ = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id, [ItemRemove(item_key="missing")], request_type=ChangeRequestType.REMOVE_ITEM
        )
        assert change_request.estimated_cost_change == 0

    @pytest.mark.asyncio
    async def test_unknown_estimate(self, service):
        with pytest.raises(NotFoundError):
            await service.submit_change_request("missing", [ItemRemove(item_key="x")])

    @pytest.mark.asyncio
    async def test_list_by_status(self, service, estimate_with_version):
        estimate, _ = estimate_with_version
        first = await service.submit_change_request(
            estimate.id, [Reschedule(event_date=date(2026, 5, 2))], request_type=ChangeRequestType.RESCHEDULE
        )
        await service.submit_change_request(
            estimate.id, [ItemRemove(item_key="item-entree")], request_type=ChangeRequestType.REMOVE_ITEM
        )
        await service.reject_change_request(first.id)

        assert len(await service.list_change_requests(estimate.id)) == 2
        pending = await service.list_change_requests(estimate.id, ChangeRequestStatus.PENDING)
        assert [cr.request_type for cr in pending] == [ChangeRequestType.REMOVE_ITEM]


@pytest.mark.unit
class TestEvaluate:

    @pytest.mark.asyncio
    async def test_evaluate_uses_current_items(self, service, estimate_with_version):
        estimate, _ = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id,
            [QuantityChange(item_key="item-dessert", new_quantity=3)],
            request_type=ChangeRequestType.QUANTITY_CHANGE,
        )

        decision = await service.evaluate_change_request(change_request.id)

        assert decision.can_auto_approve is True
        assert decision.cost_impact == -500

    @pytest.mark.asyncio
    async def test_evaluate_unknown_request(self, service):
        with pytest.raises(NotFoundError):
            await service.evaluate_change_request("missing")


@pytest.mark.unit
class TestApprove:

    @pytest.mark.asyncio
    async def test_approve_creates_version(self, db_session, service, estimate_with_version):
        estimate, v1 = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id,
            [QuantityChange(item_key="item-dessert", new_quantity=3)],
            request_type=ChangeRequestType.QUANTITY_CHANGE,
        )

        approved, version = await service.approve_change_request(
            change_request.id, admin_response="Updated, thank you", reviewed_by="manager"
        )

        assert approved.status == ChangeRequestStatus.APPROVED
        assert approved.final_cost_change == -500
        assert approved.reviewed_by == "manager"
        assert approved.reviewed_at is not None
        assert approved.admin_response == "Updated, thank you"

        assert version.version_number == 2
        assert version.change_request_id == change_request.id
        assert version.created_by == "manager"
        assert version.subtotal == 4500

        stored = await DatabaseService.get_estimate(estimate.id, db=db_session)
        assert stored.active_version_id == version.id
        assert stored.subtotal == 4500
        assert stored.total_amount == 4860
        assert (await VersionStore(db=db_session).get_version(v1.id)).status == VersionStatus.SUPERSEDED
        assert await PricingConsistencyService(db=db_session).validate(estimate.id) is True

    @pytest.mark.asyncio
    async def test_reschedule_approval_moves_event(self, db_session, service, estimate_with_version):
        estimate, _ = estimate_with_version
        assert estimate.event_date == date(2026, 4, 18)
        change_request = await service.submit_change_request(
            estimate.id,
            [Reschedule(event_date=date(2026, 5, 2), start_time="18:30")],
            request_type=ChangeRequestType.RESCHEDULE,
        )

        approved, version = await service.approve_change_request(change_request.id)

        assert approved.status == ChangeRequestStatus.APPROVED
        assert approved.final_cost_change == 0
        assert version.version_number == 2
        assert version.total_amount == 5400

        stored = await DatabaseService.get_estimate(estimate.id, db=db_session)
        assert stored.event_date == date(2026, 5, 2)
        assert stored.start_time == "18:30"
        assert stored.active_version_id == version.id

    @pytest.mark.asyncio
    async def test_note_only_approval_still_versions(self, db_session, service, estimate_with_version):
        estimate, _ = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id,
            [NoteOnly(note="Please seat the head table by the window")],
            request_type=ChangeRequestType.NOTE_ONLY,
        )

        approved, version = await service.approve_change_request(change_request.id)

        assert approved.final_cost_change == 0
        assert version.version_number == 2
        assert version.total_amount == 5400
        stored = await DatabaseService.get_estimate(estimate.id, db=db_session)
        assert stored.event_date == date(2026, 4, 18)

    @pytest.mark.asyncio
    async def test_rejected_reschedule_keeps_event_date(self, db_session, service, estimate_with_version):
        estimate, _ = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id,
            [Reschedule(event_date=date(2026, 5, 2))],
            request_type=ChangeRequestType.RESCHEDULE,
        )

        await service.reject_change_request(change_request.id)

        stored = await DatabaseService.get_estimate(estimate.id, db=db_session)
        assert stored.event_date == date(2026, 4, 18)

    @pytest.mark.asyncio
    async def test_second_approval_conflicts(self, db_session, service, estimate_with_version):
        estimate, _ = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id,
            [QuantityChange(item_key="item-dessert", new_quantity=3)],
            request_type=ChangeRequestType.QUANTITY_CHANGE,
        )
        await service.approve_change_request(change_request.id)

        with pytest.raises(ConcurrencyConflict):
            await service.approve_change_request(change_request.id)

        versions = await VersionStore(db=db_session).list_versions(estimate.id)
        assert len(versions) == 2

    @pytest.mark.asyncio
    async def test_approve_after_reject_conflicts(self, service, estimate_with_version):
        estimate, _ = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id, [ItemRemove(item_key="item-entree")], request_type=ChangeRequestType.REMOVE_ITEM
        )
        await service.reject_change_request(change_request.id)

        with pytest.raises(ConcurrencyConflict):
            await service.approve_change_request(change_request.id)

    @pytest.mark.asyncio
    async def test_stale_request_rolls_back(self, db_session, service, estimate_with_version, sample_line_items):
        """Changes that no longer apply leave the request pending and the estimate untouched"""
        estimate, _ = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id,
            [QuantityChange(item_key="item-dessert", new_quantity=3)],
            request_type=ChangeRequestType.QUANTITY_CHANGE,
        )
        # The dessert line disappears before the request is reviewed
        v2 = await VersionStore(db=db_session).create_version(estimate.id, sample_line_items[:1])

        with pytest.raises(ValidationError):
            await service.approve_change_request(change_request.id)

        current = await DatabaseService.get_change_request(change_request.id, db=db_session)
        assert current.status == ChangeRequestStatus.PENDING
        stored = await DatabaseService.get_estimate(estimate.id, db=db_session)
        assert stored.active_version_id == v2.id

    @pytest.mark.asyncio
    async def test_approve_unknown_request(self, service):
        with pytest.raises(NotFoundError):
            await service.approve_change_request("missing")


@pytest.mark.unit
class TestReject:

    @pytest.mark.asyncio
    async def test_reject_leaves_estimate(self, db_session, service, estimate_with_version):
        estimate, v1 = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id, [ItemRemove(item_key="item-entree")], request_type=ChangeRequestType.REMOVE_ITEM
        )

        rejected = await service.reject_change_request(
            change_request.id, admin_response="The entree is required", reviewed_by="manager"
        )

        assert rejected.status == ChangeRequestStatus.REJECTED
        assert rejected.reviewed_by == "manager"
        assert rejected.final_cost_change is None
        stored = await DatabaseService.get_estimate(estimate.id, db=db_session)
        assert stored.active_version_id == v1.id
        assert len(await VersionStore(db=db_session).list_versions(estimate.id)) == 1

    @pytest.mark.asyncio
    async def test_reject_twice_conflicts(self, service, estimate_with_version):
        estimate, _ = estimate_with_version
        change_request = await service.submit_change_request(
            estimate.id, [ItemRemove(item_key="item-entree")], request_type=ChangeRequestType.REMOVE_ITEM
        )
        await service.reject_change_request(change_request.id)

        with pytest.raises(ConcurrencyConflict):
            await service.reject_change_request(change_request.id)
