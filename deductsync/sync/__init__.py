"""Deduction sync infrastructure.

Provides the duplicate-suppressing sync cache manager that mirrors the
remote deductions collection, case total maintenance, and exception-free
wrappers for callers that prefer result values.
"""

from .cases import CaseAggregator
from .manager import CacheEntry, DeductionsSyncManager
from .results import MutationResult
from .safe import add_deduction_safe, delete_deduction_safe, update_deduction_safe

__all__ = [
    "CacheEntry",
    "CaseAggregator",
    "DeductionsSyncManager",
    "MutationResult",
    "add_deduction_safe",
    "delete_deduction_safe",
    "update_deduction_safe",
]
