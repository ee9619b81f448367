"""
Optimal expression cutoff search.

For one gene, every distinct observed expression value is a candidate
cutoff splitting samples into ``low`` (expression <= cutoff) and
``high`` (expression > cutoff). The candidate whose split maximizes the
log-rank statistic wins, subject to a minimum group size on both sides.
Ties go to the lowest cutoff, so the search is deterministic.

Samples are put into a canonical order (expression, time, event) before
searching, so the chosen cutoff does not depend on input order.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from lifelines.statistics import logrank_test

from oncosurv.cohort.model import Subgroup
from oncosurv.errors import InsufficientDataError

logger = logging.getLogger(__name__)

LOW = "low"
HIGH = "high"

# Relative tolerance under which two log-rank statistics count as tied.
TIE_RTOL = 1e-9


@dataclass
class CutoffResult:
    """Chosen split of one gene's expression within one cohort/subgroup."""

    gene: str
    cutoff: float
    labels: pd.Series  # "low" / "high" per sample id
    n_low: int
    n_high: int
    statistic: float
    p_value: float
    method: str  # "optimal" | "median"
    transformed: bool = False
    n_candidates: int = 0
    cancer: str = ""
    subgroup: Optional[Subgroup] = None

    @property
    def group_sizes(self) -> dict:
        return {LOW: self.n_low, HIGH: self.n_high}

    def __repr__(self) -> str:
        return (
            f"CutoffResult({self.gene}, cutoff={self.cutoff:.4g}, "
            f"low={self.n_low}, high={self.n_high}, method={self.method})"
        )


class CutoffOptimizer:
    """Finds the expression cutoff that best separates survival.

    Args:
        min_group_fraction: Each group must hold at least this fraction
            of the samples (rounded up).
        min_group_size: Absolute lower bound on either group's size.
        auto_cutoff: Search all candidates; when False the median
            expression is used as a fixed cutoff.
        transform_to_log2: Apply ``log2(x + 1)`` before any statistic.
            The reported cutoff is on the transformed scale.
    """

    def __init__(
        self,
        min_group_fraction: float = 0.1,
        min_group_size: int = 1,
        auto_cutoff: bool = True,
        transform_to_log2: bool = False,
    ):
        self.min_group_fraction = min_group_fraction
        self.min_group_size = min_group_size
        self.auto_cutoff = auto_cutoff
        self.transform_to_log2 = transform_to_log2

    def minimum_group_size(self, n_samples: int) -> int:
        return max(self.min_group_size, math.ceil(self.min_group_fraction * n_samples))

    def find_cutoff(
        self,
        expression: pd.Series,
        outcomes: pd.DataFrame,
        gene: Optional[str] = None,
        cancer: str = "",
        subgroup: Optional[Subgroup] = None,
    ) -> CutoffResult:
        """
        Find the cutoff for one gene.

        Args:
            expression: Expression per sample id; NaN entries are dropped
            outcomes: Frame indexed by sample id with ``time`` and ``event``
            gene: Gene name for the result (defaults to ``expression.name``)
            cancer: Cohort label carried on the result
            subgroup: Subgroup carried on the result

        Returns:
            CutoffResult with the chosen cutoff and per-sample labels

        Raises:
            InsufficientDataError: if no cutoff satisfies the group size policy
        """
        gene = gene or str(expression.name)
        data = (
            outcomes[["time", "event"]]
            .join(expression.astype(float).rename("x"), how="inner")
            .dropna(subset=["x"])
        )
        x = data["x"].to_numpy(dtype=float)
        if self.transform_to_log2:
            if (x <= -1).any():
                raise ValueError(
                    f"{gene}: log2(x + 1) undefined for expression values <= -1"
                )
            x = np.log2(x + 1.0)
        times = data["time"].to_numpy(dtype=float)
        events = data["event"].to_numpy(dtype=bool)
        ids = data.index.to_numpy()

        # Canonical order: expression first, then time, then event.
        order = np.lexsort((events, times, x))
        x, times, events, ids = x[order], times[order], events[order], ids[order]

        n = len(x)
        min_size = self.minimum_group_size(n)
        distinct = np.unique(x)
        if n < 2 or len(distinct) < 2:
            raise InsufficientDataError(
                f"{gene}: need at least two distinct expression values "
                f"(got {len(distinct)} over {n} samples)",
                gene=gene,
            )

        if self.auto_cutoff:
            split, n_low, stat, p_value, n_candidates = self._search(
                x, times, events, distinct, min_size, gene
            )
            method = "optimal"
        else:
            split, n_low, stat, p_value = self._median_split(x, times, events, min_size, gene)
            n_candidates = 1
            method = "median"

        cutoff = _threshold(split, distinct)
        labels = pd.Series(
            np.where(np.arange(n) < n_low, LOW, HIGH), index=ids, name=gene
        ).reindex(data.index)

        result = CutoffResult(
            gene=gene,
            cutoff=cutoff,
            labels=labels,
            n_low=n_low,
            n_high=n - n_low,
            statistic=stat,
            p_value=p_value,
            method=method,
            transformed=self.transform_to_log2,
            n_candidates=n_candidates,
            cancer=cancer,
            subgroup=subgroup,
        )
        logger.debug("%s %s: %r", cancer, subgroup.label if subgroup else "", result)
        return result

    def _search(
        self,
        x: np.ndarray,
        times: np.ndarray,
        events: np.ndarray,
        distinct: np.ndarray,
        min_size: int,
        gene: str,
    ):
        n = len(x)
        best = None
        n_candidates = 0
        # The largest value leaves the high group empty.
        for candidate in distinct[:-1]:
            n_low = int(np.searchsorted(x, candidate, side="right"))
            if n_low < min_size or n - n_low < min_size:
                continue
            result = logrank_test(
                times[:n_low], times[n_low:], events[:n_low], events[n_low:]
            )
            stat = float(result.test_statistic)
            if not np.isfinite(stat):
                continue
            n_candidates += 1
            if best is None or (
                stat > best[2] and not math.isclose(stat, best[2], rel_tol=TIE_RTOL)
            ):
                best = (float(candidate), n_low, stat, float(result.p_value))

        if best is None:
            raise InsufficientDataError(
                f"{gene}: no cutoff leaves at least {min_size} samples in both "
                f"groups with a defined log-rank statistic (n={n})",
                gene=gene,
            )
        return best + (n_candidates,)

    @staticmethod
    def _median_split(
        x: np.ndarray,
        times: np.ndarray,
        events: np.ndarray,
        min_size: int,
        gene: str,
    ):
        n = len(x)
        median = float(np.median(x))
        n_low = int(np.searchsorted(x, median, side="right"))
        if n_low < min_size or n - n_low < min_size:
            raise InsufficientDataError(
                f"{gene}: median cutoff {median:.4g} gives groups of {n_low} and "
                f"{n - n_low} (minimum {min_size})",
                gene=gene,
            )
        result = logrank_test(times[:n_low], times[n_low:], events[:n_low], events[n_low:])
        return median, n_low, float(result.test_statistic), float(result.p_value)


def _threshold(split: float, distinct: np.ndarray) -> float:
    """Report a threshold strictly between the two groups' values.

    A split at an observed value is reported as the midpoint to the next
    larger observed value; the partition is the same either way.
    """
    idx = int(np.searchsorted(distinct, split, side="right"))
    if idx > 0 and distinct[idx - 1] == split:
        return float((split + distinct[idx]) / 2.0)
    return float(split)
