"""Model comparison by information criterion."""

from .criteria import Criterion, conditional_aic, criterion_for, waic
from .table import ComparisonEntry, ComparisonTable, compare

__all__ = [
    "ComparisonEntry",
    "ComparisonTable",
    "Criterion",
    "compare",
    "conditional_aic",
    "criterion_for",
    "waic",
]
