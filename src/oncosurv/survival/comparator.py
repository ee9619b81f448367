"""
Survival comparison between expression groups.

Wraps the lifelines primitives used for every analyzed subgroup:
Kaplan-Meier curves per group, a (multi-group) log-rank test and a Cox
proportional-hazards fit with group membership as covariate.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter, KaplanMeierFitter
from lifelines.exceptions import ConvergenceError
from lifelines.statistics import multivariate_logrank_test

from oncosurv.errors import DegenerateGroupError

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_GROUP = "low"


def apply_censoring(
    times: np.ndarray,
    events: np.ndarray,
    max_time: Optional[float],
) -> Tuple[np.ndarray, np.ndarray]:
    """Right-censor survival data at ``max_time``.

    Samples observed beyond the horizon get the horizon as their time and
    no event. Applying the same horizon twice is a no-op.
    """
    times = np.asarray(times, dtype=float).copy()
    events = np.asarray(events, dtype=bool).copy()
    if max_time is None:
        return times, events
    beyond = times > max_time
    times[beyond] = float(max_time)
    events[beyond] = False
    return times, events


@dataclass
class SurvivalData:
    """Raw inputs of one comparison, kept for Kaplan-Meier rendering."""

    sample_ids: List[str]
    times: np.ndarray
    events: np.ndarray
    labels: np.ndarray

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "sample": self.sample_ids,
                "time": self.times,
                "event": self.events.astype(int),
                "group": self.labels,
            }
        )


@dataclass
class SurvivalComparison:
    """Statistics comparing survival across groups."""

    groups: List[str]
    reference_group: str
    group_sizes: Dict[str, int]
    group_events: Dict[str, int]
    logrank_statistic: float
    logrank_p: float
    hazard_ratios: Dict[str, float]
    hazard_ratio: Optional[float]
    hr_lower_95: Optional[float]
    hr_upper_95: Optional[float]
    cox_p: float
    curves: Dict[str, pd.DataFrame] = field(default_factory=dict)
    median_survival: Dict[str, float] = field(default_factory=dict)
    data: Optional[SurvivalData] = None

    @property
    def n_events(self) -> int:
        return int(sum(self.group_events.values()))

    def __repr__(self) -> str:
        hr = f"{self.hazard_ratio:.2f}" if self.hazard_ratio is not None else "N/A"
        return (
            f"SurvivalComparison(groups={self.group_sizes}, HR={hr}, "
            f"logrank_p={self.logrank_p:.2e})"
        )


class SurvivalComparator:
    """Compares survival between two or more labeled groups.

    Example:
        comparator = SurvivalComparator(max_time=5 * 365.25)
        comparison = comparator.compare(cutoff_result.labels, cohort.outcomes())
        print(comparison.hazard_ratio, comparison.logrank_p)
    """

    def __init__(
        self,
        max_time: Optional[float] = None,
        cox_penalizer: float = 0.0,
        reference_group: str = DEFAULT_REFERENCE_GROUP,
        compute_curves: bool = True,
    ):
        self.max_time = max_time
        self.cox_penalizer = cox_penalizer
        self.reference_group = reference_group
        self.compute_curves = compute_curves

    def compare(self, labels: pd.Series, outcomes: pd.DataFrame) -> SurvivalComparison:
        """
        Compare survival across the groups in ``labels``.

        Args:
            labels: Group label per sample, indexed by sample id
            outcomes: Frame indexed by sample id with ``time`` and ``event``

        Returns:
            SurvivalComparison with curves, log-rank and Cox statistics

        Raises:
            DegenerateGroupError: fewer than two groups, a group without
                events, or a Cox fit that does not converge
        """
        joined = outcomes[["time", "event"]].join(labels.rename("group"), how="inner")
        joined = joined.dropna(subset=["group"])
        times, events = apply_censoring(
            joined["time"].to_numpy(), joined["event"].to_numpy(), self.max_time
        )
        groups_arr = joined["group"].astype(str).to_numpy()
        data = SurvivalData(
            sample_ids=[str(s) for s in joined.index],
            times=times,
            events=events,
            labels=groups_arr,
        )

        groups = sorted(set(groups_arr))
        sizes = {g: int((groups_arr == g).sum()) for g in groups}
        n_events = {g: int(events[groups_arr == g].sum()) for g in groups}
        if len(groups) < 2:
            raise DegenerateGroupError(
                f"Need at least two groups, got {groups}", group_sizes=sizes
            )
        no_events = [g for g in groups if n_events[g] == 0]
        if no_events:
            raise DegenerateGroupError(
                f"Group(s) without events: {', '.join(no_events)}", group_sizes=sizes
            )

        reference = self.reference_group if self.reference_group in groups else groups[0]

        lr = multivariate_logrank_test(times, groups_arr, events)
        cox = self._fit_cox(times, events, groups_arr, groups, reference, sizes)

        curves: Dict[str, pd.DataFrame] = {}
        medians: Dict[str, float] = {}
        if self.compute_curves:
            curves, medians = self._kaplan_meier(times, events, groups_arr, groups)

        return SurvivalComparison(
            groups=groups,
            reference_group=reference,
            group_sizes=sizes,
            group_events=n_events,
            logrank_statistic=float(lr.test_statistic),
            logrank_p=float(lr.p_value),
            curves=curves,
            median_survival=medians,
            data=data,
            **cox,
        )

    @staticmethod
    def _kaplan_meier(
        times: np.ndarray,
        events: np.ndarray,
        groups_arr: np.ndarray,
        groups: List[str],
    ) -> Tuple[Dict[str, pd.DataFrame], Dict[str, float]]:
        curves = {}
        medians = {}
        for group in groups:
            mask = groups_arr == group
            kmf = KaplanMeierFitter()
            kmf.fit(times[mask], event_observed=events[mask], label=group)
            ci = kmf.confidence_interval_
            curve = pd.DataFrame(
                {
                    "survival": kmf.survival_function_.iloc[:, 0],
                    "ci_lower": ci.iloc[:, 0],
                    "ci_upper": ci.iloc[:, 1],
                }
            )
            curve.index.name = "time"
            curves[group] = curve
            medians[group] = float(kmf.median_survival_time_)
        return curves, medians

    def _fit_cox(
        self,
        times: np.ndarray,
        events: np.ndarray,
        groups_arr: np.ndarray,
        groups: List[str],
        reference: str,
        sizes: Dict[str, int],
    ) -> dict:
        """Fit a Cox model with one indicator per non-reference group."""
        design = pd.DataFrame({"time": times, "event": events.astype(int)})
        covariates = {}
        for i, group in enumerate(g for g in groups if g != reference):
            column = f"group_{i}"
            design[column] = (groups_arr == group).astype(float)
            covariates[column] = group

        cph = CoxPHFitter(penalizer=self.cox_penalizer)
        try:
            cph.fit(design, duration_col="time", event_col="event")
        except (ConvergenceError, np.linalg.LinAlgError) as exc:
            raise DegenerateGroupError(
                f"Cox model did not converge: {exc}", group_sizes=sizes
            ) from exc

        summary = cph.summary
        hazard_ratios = {
            covariates[col]: float(summary.loc[col, "exp(coef)"]) for col in covariates
        }
        if len(covariates) == 1:
            col = next(iter(covariates))
            return {
                "hazard_ratios": hazard_ratios,
                "hazard_ratio": float(summary.loc[col, "exp(coef)"]),
                "hr_lower_95": float(summary.loc[col, "exp(coef) lower 95%"]),
                "hr_upper_95": float(summary.loc[col, "exp(coef) upper 95%"]),
                "cox_p": float(summary.loc[col, "p"]),
            }
        return {
            "hazard_ratios": hazard_ratios,
            "hazard_ratio": None,
            "hr_lower_95": None,
            "hr_upper_95": None,
            "cox_p": float(cph.log_likelihood_ratio_test().p_value),
        }
