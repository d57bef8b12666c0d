"""Tests for the line item diff engine"""

import logging
import pytest

from src.models.estimate import EstimateVersion, LineItem
from src.versioning.diff_engine import (
    DiffType,
    apply_diff,
    compare_versions,
    cost_delta,
    diff,
    item_key,
)


def make_version(number, items):
    return EstimateVersion(estimate_id="est-1", version_number=number, line_items=items)


def keyed(items):
    return {
        item_key(item): (item.quantity, item.unit_price, item.description, item.title, item.total_price)
        for item in items
    }


@pytest.fixture
def v1(sample_line_items):
    return make_version(1, sample_line_items)


@pytest.fixture
def v2(sample_line_items, extra_line_item):
    return make_version(2, sample_line_items + [extra_line_item])


@pytest.mark.unit
class TestItemKey:

    def test_id_preferred(self):
        assert item_key(LineItem(id="abc", description="Soup")) == "abc"

    def test_description_fallback(self):
        assert item_key(LineItem(description="Soup")) == "Soup"


@pytest.mark.unit
class TestDiff:

    def test_added_item_only(self, v1, v2):
        entries = diff(v1, v2)
        assert len(entries) == 1
        assert entries[0].type == DiffType.ADDED
        assert entries[0].item_key == "Bartender, four hours"
        assert entries[0].item.unit_price == 2500

        comparison = compare_versions(v1, v2)
        assert len(comparison.added) == 1
        assert comparison.removed == []
        assert comparison.modified == []
        assert comparison.price_change == 2500

    def test_identical_snapshots(self, v1):
        assert diff(v1, v1) == []
        assert compare_versions(v1, v1).has_changes is False

    def test_modified_fields(self, sample_line_items):
        new_items = [
            sample_line_items[0].model_copy(update={"quantity": 3, "title": "Main"}),
            sample_line_items[1],
        ]
        entries = diff(sample_line_items, new_items)

        assert len(entries) == 1
        entry = entries[0]
        assert entry.type == DiffType.MODIFIED
        assert entry.item_key == "item-entree"
        assert [(c.field, c.old_value, c.new_value) for c in entry.changes] == [
            ("quantity", 2, 3),
            ("title", "Entree", "Main"),
        ]

    def test_category_only_change_is_not_reported(self, sample_line_items):
        new_items = [sample_line_items[0].model_copy(update={"category": "buffet"}), sample_line_items[1]]
        assert diff(sample_line_items, new_items) == []

    def test_removed(self, sample_line_items):
        entries = diff(sample_line_items, sample_line_items[:1])
        assert [(e.type, e.item_key) for e in entries] == [(DiffType.REMOVED, "item-dessert")]

    def test_none_and_empty(self, sample_line_items):
        assert diff(None, None) == []
        assert {e.type for e in diff(None, sample_line_items)} == {DiffType.ADDED}
        assert {e.type for e in diff(sample_line_items, [])} == {DiffType.REMOVED}

    def test_order_independent(self, sample_line_items, extra_line_item):
        old = sample_line_items
        new = [extra_line_item, sample_line_items[1].model_copy(update={"unit_price": 600})]

        forward = {(e.item_key, e.type) for e in diff(old, new)}
        shuffled = {(e.item_key, e.type) for e in diff(list(reversed(old)), list(reversed(new)))}
        assert forward == shuffled

    def test_symmetry(self, sample_line_items, extra_line_item):
        a = sample_line_items
        b = [sample_line_items[1], extra_line_item]

        added_ab = {e.item_key for e in diff(a, b) if e.type == DiffType.ADDED}
        removed_ba = {e.item_key for e in diff(b, a) if e.type == DiffType.REMOVED}
        removed_ab = {e.item_key for e in diff(a, b) if e.type == DiffType.REMOVED}
        added_ba = {e.item_key for e in diff(b, a) if e.type == DiffType.ADDED}

        assert added_ab == removed_ba == {"Bartender, four hours"}
        assert removed_ab == added_ba == {"item-entree"}

    def test_description_collision_last_wins(self, caplog):
        old = [
            LineItem(description="Napkins", quantity=1, unit_price=100, total_price=100),
            LineItem(description="Napkins", quantity=5, unit_price=100, total_price=500),
        ]
        new = [LineItem(description="Napkins", quantity=5, unit_price=100, total_price=500)]

        with caplog.at_level(logging.WARNING):
            entries = diff(old, new)

        assert entries == []
        assert "Duplicate item key" in caplog.text


@pytest.mark.unit
class TestRoundTrip:

    def test_apply_diff_reconstructs_new_items(self, sample_line_items, extra_line_item):
        old = sample_line_items
        new = [
            sample_line_items[0].model_copy(update={"quantity": 5, "total_price": 7500}),
            extra_line_item,
        ]

        rebuilt = apply_diff(old, diff(old, new))
        assert keyed(rebuilt) == keyed(new)

    def test_apply_empty_diff(self, sample_line_items):
        assert keyed(apply_diff(sample_line_items, [])) == keyed(sample_line_items)


@pytest.mark.unit
class TestCostDelta:

    def test_quantity_reduction(self, sample_line_items):
        reduced = [sample_line_items[0], sample_line_items[1].model_copy(update={"quantity": 3})]
        assert cost_delta(sample_line_items, reduced) == -500

    def test_recomputes_instead_of_trusting_totals(self):
        old = [LineItem(id="x", quantity=2, unit_price=100, total_price=0)]
        new = [LineItem(id="x", quantity=2, unit_price=100, total_price=200)]
        assert cost_delta(old, new) == 0

    def test_versions_accepted(self, v1, v2):
        assert cost_delta(v1, v2) == 2500
