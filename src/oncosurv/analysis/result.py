"""
Result records for survival stratification runs.

One ``SurvivalStatistic`` row per analyzed (gene, cancer, subgroup) and
one ``SkipMarker`` per combination that could not be analyzed.
"""

from dataclasses import asdict, dataclass
from typing import Literal, Optional, Tuple

from oncosurv.cohort.model import Subgroup
from oncosurv.survival.comparator import SurvivalComparison
from oncosurv.survival.cutoff import CutoffResult

RowStatus = Literal["ok", "degenerate"]
SkipReason = Literal[
    "too_small",
    "empty",
    "gene_missing",
    "insufficient_data",
    "unavailable",
]

RESULT_COLUMNS = [
    "gene",
    "cancer",
    "annotation",
    "category",
    "n_low",
    "n_high",
    "n_events",
    "cutoff",
    "cutoff_method",
    "hazard_ratio",
    "hr_lower_95",
    "hr_upper_95",
    "logrank_statistic",
    "p_value",
    "cox_p_value",
    "adjusted_p_value",
    "status",
]

SKIP_COLUMNS = ["gene", "cancer", "annotation", "category", "reason", "message"]

ResultKey = Tuple[str, str, str, str]


@dataclass
class SurvivalStatistic:
    """One row of the results table."""

    gene: str
    cancer: str
    annotation: str
    category: str
    n_low: int
    n_high: int
    n_events: int
    cutoff: float
    cutoff_method: str
    hazard_ratio: Optional[float] = None
    hr_lower_95: Optional[float] = None
    hr_upper_95: Optional[float] = None
    logrank_statistic: Optional[float] = None
    p_value: Optional[float] = None
    cox_p_value: Optional[float] = None
    adjusted_p_value: Optional[float] = None
    status: RowStatus = "ok"

    @property
    def key(self) -> ResultKey:
        return (self.gene, self.cancer, self.annotation, self.category)

    @classmethod
    def from_comparison(
        cls,
        cutoff: CutoffResult,
        comparison: SurvivalComparison,
        cancer: str,
        subgroup: Subgroup,
    ) -> "SurvivalStatistic":
        return cls(
            gene=cutoff.gene,
            cancer=cancer,
            annotation=subgroup.annotation,
            category=subgroup.label,
            n_low=cutoff.n_low,
            n_high=cutoff.n_high,
            n_events=comparison.n_events,
            cutoff=cutoff.cutoff,
            cutoff_method=cutoff.method,
            hazard_ratio=comparison.hazard_ratio,
            hr_lower_95=comparison.hr_lower_95,
            hr_upper_95=comparison.hr_upper_95,
            logrank_statistic=comparison.logrank_statistic,
            p_value=comparison.logrank_p,
            cox_p_value=comparison.cox_p,
        )

    @classmethod
    def degenerate(
        cls,
        cutoff: CutoffResult,
        cancer: str,
        subgroup: Subgroup,
        n_events: int,
    ) -> "SurvivalStatistic":
        """Row for a split whose statistics are undefined; sizes only."""
        return cls(
            gene=cutoff.gene,
            cancer=cancer,
            annotation=subgroup.annotation,
            category=subgroup.label,
            n_low=cutoff.n_low,
            n_high=cutoff.n_high,
            n_events=n_events,
            cutoff=cutoff.cutoff,
            cutoff_method=cutoff.method,
            status="degenerate",
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SkipMarker:
    """A (gene, cancer, subgroup) combination that was not analyzed."""

    gene: str
    cancer: str
    annotation: str
    category: str
    reason: SkipReason
    message: str = ""

    @property
    def key(self) -> ResultKey:
        return (self.gene, self.cancer, self.annotation, self.category)

    def to_dict(self) -> dict:
        return asdict(self)
