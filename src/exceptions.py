"""Error taxonomy for the estimate engine

Calculator and diff functions degrade to zero/empty results instead of raising.
Services surface these errors to their caller and never retry internally.
"""

from typing import Dict, Optional, Tuple, Any

from src.utils.retry import RetryableError


class EstimateEngineError(Exception):
    """Base class for estimate engine errors"""
    pass


class ValidationError(EstimateEngineError, ValueError):
    """Required inputs missing or malformed (e.g. unknown line item key)"""
    pass


class NotFoundError(EstimateEngineError, LookupError):
    """Referenced estimate, version or change request does not exist"""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class CalculationMismatchError(EstimateEngineError):
    """Persisted totals disagree with totals recomputed from line items"""

    def __init__(self, estimate_id: str, discrepancies: Dict[str, Tuple[Any, Any]]):
        fields = ", ".join(sorted(discrepancies))
        super().__init__(f"Estimate {estimate_id} has inconsistent pricing: {fields}")
        self.estimate_id = estimate_id
        self.discrepancies = discrepancies


class ConcurrencyConflict(EstimateEngineError, RetryableError):
    """A concurrent writer won the race; nothing was changed, safe to re-read and retry"""

    def __init__(self, message: str, estimate_id: Optional[str] = None):
        super().__init__(message)
        self.estimate_id = estimate_id


class PersistenceError(EstimateEngineError):
    """Opaque record store failure; state must be re-validated before retrying"""
    pass
