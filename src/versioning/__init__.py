"""Version comparison module"""

from .diff_engine import (
    DiffEntry,
    DiffType,
    FieldChange,
    VersionComparison,
    item_key,
    diff,
    compare_versions,
    cost_delta,
    apply_diff,
)

__all__ = [
    "DiffEntry",
    "DiffType",
    "FieldChange",
    "VersionComparison",
    "item_key",
    "diff",
    "compare_versions",
    "cost_delta",
    "apply_diff",
]
