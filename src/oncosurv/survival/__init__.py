"""Cutoff search and survival comparison built on lifelines."""

from oncosurv.survival.comparator import (
    SurvivalComparator,
    SurvivalComparison,
    SurvivalData,
    apply_censoring,
)
from oncosurv.survival.cutoff import HIGH, LOW, CutoffOptimizer, CutoffResult

__all__ = [
    "HIGH",
    "LOW",
    "CutoffOptimizer",
    "CutoffResult",
    "SurvivalComparator",
    "SurvivalComparison",
    "SurvivalData",
    "apply_censoring",
]
