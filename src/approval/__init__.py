"""Change request auto-approval module"""

from .auto_approval import (
    AutoApprovalEngine,
    AutoApprovalDecision,
    ApprovalPolicy,
    EstimateContext,
    apply_requested_changes,
    requested_schedule,
)

__all__ = [
    "AutoApprovalEngine",
    "AutoApprovalDecision",
    "ApprovalPolicy",
    "EstimateContext",
    "apply_requested_changes",
    "requested_schedule",
]
