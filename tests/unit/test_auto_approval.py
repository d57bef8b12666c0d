"""Tests for the auto-approval decision engine"""

from datetime import date
import pytest

from src.approval.auto_approval import (
    ApprovalPolicy,
    AutoApprovalEngine,
    EstimateContext,
    apply_requested_changes,
    requested_schedule,
)
from src.exceptions import ValidationError
from src.models.estimate import (
    ChangeRequestType,
    ItemAdd,
    ItemRemove,
    LineItem,
    NoteOnly,
    QuantityChange,
    Reschedule,
)


@pytest.fixture
def context(sample_line_items):
    return EstimateContext(
        estimate_id="est-1",
        line_items=sample_line_items,
        total_amount=5400,
        is_government_contract=False,
    )


@pytest.fixture
def engine(approval_policy):
    return AutoApprovalEngine(policy=approval_policy)


@pytest.mark.unit
class TestApplyRequestedChanges:

    def test_quantity_change(self, sample_line_items):
        items = apply_requested_changes(
            sample_line_items, [QuantityChange(item_key="item-dessert", new_quantity=3)]
        )
        dessert = next(item for item in items if item.id == "item-dessert")
        assert dessert.quantity == 3
        assert dessert.total_price == 1500

    def test_zero_quantity_removes(self, sample_line_items):
        items = apply_requested_changes(
            sample_line_items, [QuantityChange(item_key="item-dessert", new_quantity=0)]
        )
        assert [item.id for item in items] == ["item-entree"]

    def test_add_and_remove(self, sample_line_items, extra_line_item):
        items = apply_requested_changes(
            sample_line_items,
            [ItemRemove(item_key="item-entree"), ItemAdd(item=extra_line_item)],
        )
        assert [item.description for item in items] == ["Lemon tart", "Bartender, four hours"]

    def test_reschedule_and_note_leave_items(self, sample_line_items):
        items = apply_requested_changes(
            sample_line_items,
            [Reschedule(event_date=date(2026, 5, 2)), NoteOnly(note="Gluten free please")],
        )
        assert items == sample_line_items

    def test_unknown_key(self, sample_line_items):
        with pytest.raises(ValidationError, match="Unknown line item"):
            apply_requested_changes(sample_line_items, [ItemRemove(item_key="nope")])

    def test_conflicting_edits(self, sample_line_items):
        with pytest.raises(ValidationError, match="Conflicting"):
            apply_requested_changes(
                sample_line_items,
                [
                    QuantityChange(item_key="item-entree", new_quantity=3),
                    ItemRemove(item_key="item-entree"),
                ],
            )

    def test_ambiguous_description_key(self):
        items = [
            LineItem(description="Napkins", quantity=1, unit_price=100, total_price=100),
            LineItem(description="Napkins", quantity=2, unit_price=100, total_price=200),
        ]
        with pytest.raises(ValidationError, match="ambiguous"):
            apply_requested_changes(items, [QuantityChange(item_key="Napkins", new_quantity=4)])

    def test_added_item_collides(self, sample_line_items):
        duplicate = LineItem(id="item-entree", description="Another entree", quantity=1, unit_price=100)
        with pytest.raises(ValidationError, match="collides"):
            apply_requested_changes(sample_line_items, [ItemAdd(item=duplicate)])

    def test_two_reschedules_conflict(self, sample_line_items):
        with pytest.raises(ValidationError, match="more than one reschedule"):
            apply_requested_changes(
                sample_line_items,
                [Reschedule(event_date=date(2026, 5, 2)), Reschedule(event_date=date(2026, 5, 9))],
            )


@pytest.mark.unit
class TestRequestedSchedule:

    def test_reschedule_sets_date_and_time(self):
        changes = [NoteOnly(note="Moving to Saturday"), Reschedule(event_date=date(2026, 5, 2), start_time="18:30")]
        assert requested_schedule(changes) == {"event_date": date(2026, 5, 2), "start_time": "18:30"}

    def test_start_time_optional(self):
        assert requested_schedule([Reschedule(event_date=date(2026, 5, 2))]) == {"event_date": date(2026, 5, 2)}

    def test_no_reschedule(self):
        assert requested_schedule([QuantityChange(item_key="item-entree", new_quantity=3)]) == {}


@pytest.mark.unit
class TestEvaluate:

    def test_small_quantity_reduction_auto_approves(self, engine, context):
        """Reducing a 500-cent item by one is -500, inside a 1,000-cent bound"""
        decision = engine.evaluate(
            [QuantityChange(item_key="item-dessert", new_quantity=3)],
            context,
            ChangeRequestType.QUANTITY_CHANGE,
        )

        assert decision.can_auto_approve is True
        assert decision.cost_impact == -500
        assert decision.suggested_response
        assert "-$5.00" in decision.suggested_response
        assert len(decision.proposed_line_items) == 2

    def test_no_changes(self, engine, context):
        decision = engine.evaluate([], context, ChangeRequestType.NOTE_ONLY)
        assert decision.can_auto_approve is False
        assert decision.suggested_response is None
        assert decision.cost_impact is None

    def test_kinds_inconsistent_with_tag(self, engine, context, extra_line_item):
        decision = engine.evaluate(
            [ItemAdd(item=extra_line_item)], context, ChangeRequestType.QUANTITY_CHANGE
        )
        assert decision.can_auto_approve is False
        assert "item_add" in decision.reason
        assert decision.suggested_response is None

    def test_inapplicable_changes(self, engine, context):
        decision = engine.evaluate(
            [QuantityChange(item_key="missing", new_quantity=1)],
            context,
            ChangeRequestType.QUANTITY_CHANGE,
        )
        assert decision.can_auto_approve is False
        assert "cannot be applied" in decision.reason
        assert decision.suggested_response is None

    def test_unsafe_type(self, engine, context):
        decision = engine.evaluate(
            [ItemRemove(item_key="item-dessert")], context, ChangeRequestType.REMOVE_ITEM
        )
        assert decision.can_auto_approve is False
        assert "requires review" in decision.reason
        assert decision.cost_impact == -2000
        assert decision.suggested_response is None

    def test_new_category(self, context, extra_line_item):
        policy = ApprovalPolicy(max_cost_delta_cents=100000, safe_request_types=frozenset({"add_item"}))
        decision = AutoApprovalEngine().evaluate(
            [ItemAdd(item=extra_line_item)], context, ChangeRequestType.ADD_ITEM, policy=policy
        )
        assert decision.can_auto_approve is False
        assert "service" in decision.reason
        assert decision.suggested_response is None

    def test_delta_over_bound(self, engine, context):
        decision = engine.evaluate(
            [QuantityChange(item_key="item-entree", new_quantity=4)],
            context,
            ChangeRequestType.QUANTITY_CHANGE,
        )
        assert decision.can_auto_approve is False
        assert decision.cost_impact == 3000
        assert "exceeds" in decision.reason
        assert decision.suggested_response is None

    def test_delta_at_bound_is_allowed(self, engine, context):
        decision = engine.evaluate(
            [QuantityChange(item_key="item-dessert", new_quantity=6)],
            context,
            ChangeRequestType.QUANTITY_CHANGE,
        )
        assert decision.cost_impact == 1000
        assert decision.can_auto_approve is True

    def test_reschedule_is_cost_neutral(self, engine, context):
        decision = engine.evaluate(
            [Reschedule(event_date=date(2026, 5, 2), start_time="18:00")],
            context,
            ChangeRequestType.RESCHEDULE,
        )
        assert decision.can_auto_approve is True
        assert decision.cost_impact == 0
        assert "2026-05-02 at 18:00" in decision.suggested_response

    def test_zero_bound_rejects_any_cost_change(self, context):
        policy = ApprovalPolicy(max_cost_delta_cents=0, safe_request_types=frozenset({"quantity_change"}))
        decision = AutoApprovalEngine(policy=policy).evaluate(
            [QuantityChange(item_key="item-dessert", new_quantity=3)],
            context,
            ChangeRequestType.QUANTITY_CHANGE,
        )
        assert decision.can_auto_approve is False

    def test_tag_accepted_as_string(self, engine, context):
        decision = engine.evaluate([NoteOnly(note="Thanks!")], context, "note_only")
        assert decision.can_auto_approve is True

    def test_pure(self, engine, context, sample_line_items):
        before = [item.model_copy() for item in sample_line_items]
        engine.evaluate(
            [QuantityChange(item_key="item-dessert", new_quantity=3)],
            context,
            ChangeRequestType.QUANTITY_CHANGE,
        )
        assert context.line_items == before


@pytest.mark.unit
class TestApprovalPolicy:

    def test_from_settings_defaults(self):
        policy = ApprovalPolicy.from_settings()
        assert policy.max_cost_delta_cents == 0
        assert policy.safe_request_types == frozenset({"quantity_change", "reschedule", "note_only"})
