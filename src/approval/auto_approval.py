"""Change request auto-approval decisions

Pure decision logic: nothing here reads or writes the database. Approving or
rejecting a request is a separate administrative action (ChangeRequestService).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set
import logging

from src.config import settings
from src.exceptions import ValidationError
from src.models.estimate import (
    ChangeRequestType,
    Estimate,
    ItemAdd,
    ItemRemove,
    LineItem,
    NoteOnly,
    QuantityChange,
    RequestedChange,
    Reschedule,
)
from src.pricing.tax_calculator import calculate_tax, is_government_contract
from src.versioning.diff_engine import cost_delta, item_key

logger = logging.getLogger(__name__)

ITEM_KINDS = frozenset({"quantity_change", "item_add", "item_remove"})

# Change kinds each classification tag may carry; a note can ride along with any tag
ALLOWED_KINDS: Dict[ChangeRequestType, FrozenSet[str]] = {
    ChangeRequestType.QUANTITY_CHANGE: frozenset({"quantity_change", "note_only"}),
    ChangeRequestType.ADD_ITEM: frozenset({"item_add", "note_only"}),
    ChangeRequestType.REMOVE_ITEM: frozenset({"item_remove", "note_only"}),
    ChangeRequestType.RESCHEDULE: frozenset({"reschedule", "note_only"}),
    ChangeRequestType.NOTE_ONLY: frozenset({"note_only"}),
    ChangeRequestType.MENU_CHANGE: ITEM_KINDS | {"note_only"},
    ChangeRequestType.OTHER: ITEM_KINDS | {"reschedule", "note_only"},
}


@dataclass
class ApprovalPolicy:
    """Auto-approval policy constants"""
    max_cost_delta_cents: int = 0
    safe_request_types: FrozenSet[str] = frozenset()

    @classmethod
    def from_settings(cls) -> "ApprovalPolicy":
        return cls(
            max_cost_delta_cents=settings.AUTO_APPROVAL_MAX_COST_DELTA_CENTS,
            safe_request_types=frozenset(settings.safe_request_types),
        )


@dataclass
class EstimateContext:
    """Current state of the estimate a change request targets"""
    estimate_id: str
    line_items: List[LineItem] = field(default_factory=list)
    total_amount: int = 0
    is_government_contract: bool = False

    @classmethod
    def from_estimate(cls, estimate: Estimate) -> "EstimateContext":
        return cls(
            estimate_id=estimate.id,
            line_items=list(estimate.line_items),
            total_amount=estimate.total_amount,
            is_government_contract=is_government_contract(
                estimate.compliance_level, estimate.requires_po_number
            ),
        )


@dataclass
class AutoApprovalDecision:
    """Outcome of evaluating a change request"""
    can_auto_approve: bool
    reason: str
    cost_impact: Optional[int] = None
    suggested_response: Optional[str] = None
    proposed_line_items: Optional[List[LineItem]] = None


def format_cents(amount: int) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount) / 100:,.2f}"


def apply_requested_changes(
    line_items: Sequence[LineItem],
    requested_changes: Iterable[RequestedChange],
) -> List[LineItem]:
    """
    Apply structured changes to a line item set

    Items are addressed by their diff key (id, else description). Setting a
    quantity to zero removes the item. Reschedules and notes leave items as
    they are (see requested_schedule).

    Raises:
        ValidationError: unknown key, two edits on one key, a key that
            matches more than one current item, or more than one reschedule
    """
    items: Dict[str, LineItem] = {}
    duplicate_keys: Set[str] = set()
    for item in line_items:
        key = item_key(item)
        if key in items:
            duplicate_keys.add(key)
        items[key] = item

    touched: Set[str] = set()
    added: List[LineItem] = []
    reschedules = 0

    def resolve(key: str) -> str:
        if key in duplicate_keys:
            raise ValidationError(f"Line item key {key!r} is ambiguous; it matches more than one item")
        if key not in items:
            raise ValidationError(f"Unknown line item: {key!r}")
        if key in touched:
            raise ValidationError(f"Conflicting changes for line item {key!r}")
        touched.add(key)
        return key

    for change in requested_changes:
        if isinstance(change, QuantityChange):
            key = resolve(change.item_key)
            if change.new_quantity == 0:
                del items[key]
            else:
                items[key] = items[key].model_copy(update={"quantity": change.new_quantity}).normalized()
        elif isinstance(change, ItemRemove):
            del items[resolve(change.item_key)]
        elif isinstance(change, ItemAdd):
            new_item = change.item.normalized()
            key = item_key(new_item)
            if key in items or key in touched or any(item_key(a) == key for a in added):
                raise ValidationError(f"Added line item {key!r} collides with an existing item")
            added.append(new_item)
        elif isinstance(change, Reschedule):
            reschedules += 1
            if reschedules > 1:
                raise ValidationError("Conflicting changes: more than one reschedule requested")
        elif isinstance(change, NoteOnly):
            continue
        else:
            raise ValidationError(f"Unsupported change: {change!r}")

    return list(items.values()) + added


def requested_schedule(requested_changes: Iterable[RequestedChange]) -> Dict[str, Any]:
    """Estimate fields a reschedule sets (empty when none is requested)"""
    for change in requested_changes:
        if isinstance(change, Reschedule):
            schedule: Dict[str, Any] = {"event_date": change.event_date}
            if change.start_time:
                schedule["start_time"] = change.start_time
            return schedule
    return {}


def _describe(change: RequestedChange) -> str:
    if isinstance(change, QuantityChange):
        if change.new_quantity == 0:
            return f"removed {change.item_key}"
        return f"{change.item_key} quantity set to {change.new_quantity}"
    if isinstance(change, ItemAdd):
        return f"added {change.item.description or change.item.title}"
    if isinstance(change, ItemRemove):
        return f"removed {change.item_key}"
    if isinstance(change, Reschedule):
        when = change.event_date.isoformat()
        if change.start_time:
            when = f"{when} at {change.start_time}"
        return f"event moved to {when}"
    return "note added"


class AutoApprovalEngine:
    """Decides whether a change request can be approved without review"""

    def __init__(self, policy: Optional[ApprovalPolicy] = None):
        self.policy = policy

    def evaluate(
        self,
        requested_changes: Sequence[RequestedChange],
        estimate_context: EstimateContext,
        request_type: ChangeRequestType,
        policy: Optional[ApprovalPolicy] = None,
    ) -> AutoApprovalDecision:
        """
        Evaluate a change request against the current estimate

        Rules are checked in order and the first failing rule decides:
        no changes, change kinds inconsistent with the tag, changes that
        cannot be applied, unsafe tag, new category, cost delta above the
        policy bound. Manual decisions never carry a suggested response.

        Args:
            requested_changes: Structured changes from the customer
            estimate_context: Current line items and totals
            request_type: Classification tag supplied with the request
            policy: Overrides the engine's policy for this call

        Returns:
            AutoApprovalDecision
        """
        policy = policy or self.policy or ApprovalPolicy.from_settings()
        request_type = ChangeRequestType(request_type)
        estimate_id = estimate_context.estimate_id

        if not requested_changes:
            return self._manual(estimate_id, "No changes were requested")

        kinds = {change.kind for change in requested_changes}
        unexpected = kinds - ALLOWED_KINDS[request_type]
        if unexpected:
            return self._manual(
                estimate_id,
                f"Requested changes ({', '.join(sorted(unexpected))}) do not match "
                f"request type {request_type.value}",
            )

        try:
            proposed = apply_requested_changes(estimate_context.line_items, requested_changes)
        except ValidationError as e:
            return self._manual(estimate_id, f"Changes cannot be applied automatically: {e}")

        delta = cost_delta(estimate_context.line_items, proposed)

        if request_type.value not in policy.safe_request_types:
            return self._manual(
                estimate_id,
                f"Request type {request_type.value} requires review",
                cost_impact=delta,
                proposed=proposed,
            )

        existing_categories = {item.category for item in estimate_context.line_items}
        new_categories = sorted({item.category for item in proposed} - existing_categories)
        if new_categories:
            return self._manual(
                estimate_id,
                f"Introduces new categories: {', '.join(new_categories)}",
                cost_impact=delta,
                proposed=proposed,
            )

        if abs(delta) > policy.max_cost_delta_cents:
            return self._manual(
                estimate_id,
                f"Cost change of {format_cents(delta)} exceeds the auto-approval limit of "
                f"{format_cents(policy.max_cost_delta_cents)}",
                cost_impact=delta,
                proposed=proposed,
            )

        new_subtotal = sum(item.expected_total for item in proposed)
        new_total = calculate_tax(new_subtotal, estimate_context.is_government_contract).total_amount
        summary = "; ".join(_describe(change) for change in requested_changes)

        reason = (
            f"{request_type.value.replace('_', ' ').capitalize()} within existing categories, "
            f"cost change {format_cents(delta)} within the {format_cents(policy.max_cost_delta_cents)} limit"
        )
        if delta == 0:
            impact = "There is no change to your total."
        else:
            impact = f"Your new total is {format_cents(new_total)} ({'+' if delta > 0 else ''}{format_cents(delta)} before tax)."
        suggested = f"Thank you for your request. We've updated your estimate: {summary}. {impact}"

        logger.info(f"Change request on estimate {estimate_id} can be auto-approved (delta={delta})")
        return AutoApprovalDecision(
            can_auto_approve=True,
            reason=reason,
            cost_impact=delta,
            suggested_response=suggested,
            proposed_line_items=proposed,
        )

    @staticmethod
    def _manual(
        estimate_id: str,
        reason: str,
        cost_impact: Optional[int] = None,
        proposed: Optional[List[LineItem]] = None,
    ) -> AutoApprovalDecision:
        logger.info(f"Change request on estimate {estimate_id} needs manual review: {reason}")
        return AutoApprovalDecision(
            can_auto_approve=False,
            reason=reason,
            cost_impact=cost_impact,
            suggested_response=None,
            proposed_line_items=proposed,
        )
