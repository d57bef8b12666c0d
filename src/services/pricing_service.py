"""Pricing consistency service

Keeps an estimate's denormalized subtotal/tax/total in step with its line
items. This is the only code path that writes those three columns.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.exceptions import CalculationMismatchError, NotFoundError
from src.models.database import AsyncSessionLocal
from src.models.db_models import Estimate as EstimateDB, EstimateVersion as EstimateVersionDB
from src.models.db_utils_line_items import get_line_items_from_table
from src.models.estimate import CompletePricing, LineItem
from src.pricing.tax_calculator import (
    calculate_tax,
    calculate_deposit,
    calculate_balance_due,
    is_government_contract,
)

logger = logging.getLogger(__name__)

PRICED_FIELDS = ("subtotal", "tax_amount", "total_amount")


class PricingConsistencyService:
    """Recomputes, persists and validates estimate totals"""

    def __init__(self, db: Optional[AsyncSession] = None):
        """
        Initialize pricing service

        Args:
            db: Async database session (optional, creates new per call if not provided)
        """
        self.db = db

    @staticmethod
    def compute_pricing(line_items: Iterable[LineItem], is_exempt: bool = False) -> CompletePricing:
        """
        Compute complete pricing from line items

        The subtotal is always the sum of total_price over the supplied
        items; cached sums are never consulted.
        """
        subtotal = sum(item.total_price for item in line_items)
        tax = calculate_tax(subtotal, is_exempt)
        deposit = calculate_deposit(tax.total_amount)
        return CompletePricing(
            subtotal=tax.subtotal,
            tax_amount=tax.tax_amount,
            total_amount=tax.total_amount,
            tax_rate=tax.tax_rate,
            is_exempt=tax.is_exempt,
            deposit_required=deposit,
            balance_due=calculate_balance_due(tax.total_amount, deposit),
        )

    async def _load_estimate(self, session: AsyncSession, estimate_id: str) -> EstimateDB:
        result = await session.execute(
            select(EstimateDB)
            .where(EstimateDB.id == estimate_id)
            .execution_options(populate_existing=True)
        )
        estimate = result.scalar_one_or_none()
        if estimate is None:
            raise NotFoundError("Estimate", estimate_id)
        return estimate

    async def recalculate_in_transaction(self, session: AsyncSession, estimate_id: str) -> CompletePricing:
        """
        Recompute pricing from the current line items and write the totals

        Does not commit; used inside version activation so the projection
        changes in the same unit of work as the version.
        """
        estimate = await self._load_estimate(session, estimate_id)
        line_items = await get_line_items_from_table(session, estimate_id)
        is_exempt = is_government_contract(estimate.compliance_level, estimate.requires_po_number)
        pricing = self.compute_pricing(line_items, is_exempt)

        await session.execute(
            update(EstimateDB)
            .where(EstimateDB.id == estimate_id)
            .values(
                subtotal=pricing.subtotal,
                tax_amount=pricing.tax_amount,
                total_amount=pricing.total_amount,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.debug(
            f"Estimate {estimate_id} totals set: subtotal={pricing.subtotal} "
            f"tax={pricing.tax_amount} total={pricing.total_amount} exempt={is_exempt}"
        )
        return pricing

    async def recalculate(self, estimate_id: str) -> CompletePricing:
        """
        Recompute and persist totals for an estimate

        Returns:
            CompletePricing written to the estimate
        """
        if self.db:
            session = self.db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            pricing = await self.recalculate_in_transaction(session, estimate_id)
            await session.commit()
            logger.info(f"Estimate {estimate_id} recalculated: total={pricing.total_amount}")
            return pricing

        except Exception as e:
            await session.rollback()
            logger.error(f"Error recalculating estimate {estimate_id}: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    async def prepare_for_customer(self, estimate_id: str) -> CompletePricing:
        """
        Recalculate immediately before the estimate is transmitted

        Marks the estimate as sent in the same commit, so a customer-visible
        total can never be stale.
        """
        if self.db:
            session = self.db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            pricing = await self.recalculate_in_transaction(session, estimate_id)
            await session.execute(
                update(EstimateDB)
                .where(EstimateDB.id == estimate_id)
                .values(status="sent")
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            logger.info(f"Estimate {estimate_id} prepared for customer: total={pricing.total_amount}")
            return pricing

        except Exception as e:
            await session.rollback()
            logger.error(f"Error preparing estimate {estimate_id} for customer: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    async def find_discrepancies(self, estimate_id: str) -> Dict[str, Tuple[Any, Any]]:
        """
        Recompute independently and compare against persisted values

        Read-only. Returns a mapping of field -> (persisted, expected); empty
        when consistent. Checks the estimate totals, the active version's
        stored totals and every line's total_price identity.
        """
        if self.db:
            session = self.db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            estimate = await self._load_estimate(session, estimate_id)
            line_items = await get_line_items_from_table(session, estimate_id)
            is_exempt = is_government_contract(estimate.compliance_level, estimate.requires_po_number)
            expected = self.compute_pricing(line_items, is_exempt)

            discrepancies: Dict[str, Tuple[Any, Any]] = {}
            for field in PRICED_FIELDS:
                persisted = getattr(estimate, field)
                computed = getattr(expected, field)
                if persisted != computed:
                    discrepancies[field] = (persisted, computed)

            for item in line_items:
                if item.total_price != item.expected_total:
                    key = f"line_items[{item.id}].total_price"
                    discrepancies[key] = (item.total_price, item.expected_total)

            if estimate.active_version_id:
                result = await session.execute(
                    select(EstimateVersionDB)
                    .where(EstimateVersionDB.id == estimate.active_version_id)
                    .execution_options(populate_existing=True)
                )
                version = result.scalar_one_or_none()
                if version is None or version.status != "active":
                    discrepancies["active_version_id"] = (estimate.active_version_id, None)
                else:
                    for field in PRICED_FIELDS:
                        stored = getattr(version, field)
                        computed = getattr(expected, field)
                        if stored != computed:
                            discrepancies[f"active_version.{field}"] = (stored, computed)

            return discrepancies

        finally:
            if should_close:
                await session.close()

    async def validate(self, estimate_id: str) -> bool:
        """
        Check persisted totals against a fresh computation

        Logs every discrepant field. Detection only, no repair.

        Returns:
            True when every field matches
        """
        discrepancies = await self.find_discrepancies(estimate_id)
        for field, (persisted, expected) in discrepancies.items():
            logger.warning(
                f"Pricing mismatch on estimate {estimate_id}: {field} persisted={persisted} expected={expected}"
            )
        return not discrepancies

    async def ensure_consistent(self, estimate_id: str) -> None:
        """Raise CalculationMismatchError when validate() would return False"""
        discrepancies = await self.find_discrepancies(estimate_id)
        if discrepancies:
            error = CalculationMismatchError(estimate_id, discrepancies)
            logger.error(str(error))
            raise error

    async def get_validation_summary(self, estimate_id: str) -> Dict[str, Any]:
        """
        Summary of validation results

        Returns:
            Dictionary with all_valid, discrepancies and error messages
        """
        discrepancies = await self.find_discrepancies(estimate_id)
        errors = [
            f"{field} mismatch: persisted={persisted} expected={expected}"
            for field, (persisted, expected) in discrepancies.items()
        ]
        return {
            "estimate_id": estimate_id,
            "all_valid": not discrepancies,
            "discrepancies": {
                field: {"persisted": persisted, "expected": expected}
                for field, (persisted, expected) in discrepancies.items()
            },
            "errors": errors,
            "failed_validations": len(errors),
        }
