"""Tests for Pydantic <-> database conversion helpers"""

from datetime import date
import pytest

from src.models.db_utils import (
    json_to_line_items,
    json_to_requested_changes,
    line_items_to_json,
    pydantic_to_db_estimate,
    requested_changes_to_json,
)
from src.models.estimate import Estimate, ItemRemove, LineItem, Reschedule


@pytest.mark.unit
class TestLineItemJson:

    def test_line_items_to_json_distinguishes_none_vs_empty(self):
        """None stays None (unset); [] stays [] (explicit empty)"""
        assert line_items_to_json(None) is None
        assert line_items_to_json([]) == []

        result = line_items_to_json([LineItem(id="a", description="Item 1", quantity=2, unit_price=50, total_price=100)])
        assert result[0]["description"] == "Item 1"
        assert result[0]["total_price"] == 100

    def test_unreadable_entries_skipped(self, caplog):
        data = [
            {"id": "ok", "description": "Chairs", "quantity": 10, "unit_price": 300, "total_price": 3000},
            "not an object",
            {"id": "bad", "description": "Tables", "quantity": 2, "unit_price": -5},
        ]
        items = json_to_line_items(data)

        assert [item.id for item in items] == ["ok"]
        assert "Skipping" in caplog.text

    def test_json_string_accepted(self):
        items = json_to_line_items('[{"id": "a", "description": "Tent", "quantity": 1, "unit_price": 9000}]')
        assert items[0].unit_price == 9000

    def test_empty(self):
        assert json_to_line_items(None) == []
        assert json_to_line_items([]) == []


@pytest.mark.unit
class TestRequestedChangesJson:

    def test_variants_restored_by_kind(self):
        changes = [ItemRemove(item_key="item-1"), Reschedule(event_date=date(2026, 6, 1))]
        restored = json_to_requested_changes(requested_changes_to_json(changes))

        assert isinstance(restored[0], ItemRemove)
        assert isinstance(restored[1], Reschedule)
        assert restored[1].event_date == date(2026, 6, 1)


@pytest.mark.unit
class TestEstimateConversion:

    def test_totals_never_copied(self):
        estimate = Estimate(id="e1", subtotal=100, tax_amount=8, total_amount=108, active_version_id="v9")
        row = pydantic_to_db_estimate(estimate)

        assert row.subtotal == 0
        assert row.total_amount == 0
        assert row.active_version_id is None
