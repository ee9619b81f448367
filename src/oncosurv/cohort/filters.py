"""Cohort filters: sample subsetting, low-expression genes, censoring.

Every function returns a new ``Cohort``; inputs are left untouched.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from oncosurv.cohort.model import Cohort
from oncosurv.errors import EmptyResultError

logger = logging.getLogger(__name__)

DEFAULT_MINIMUM_NONZERO_FRACTION = 0.9


def _check_not_empty(cohort: Cohort, operation: str) -> Cohort:
    if cohort.n_samples == 0:
        raise EmptyResultError(f"{operation} left {cohort.cancer} with zero samples")
    if cohort.n_genes == 0:
        raise EmptyResultError(f"{operation} left {cohort.cancer} with zero genes")
    return cohort


def filter_low_expression(
    cohort: Cohort,
    minimum_nonzero_fraction: float = DEFAULT_MINIMUM_NONZERO_FRACTION,
) -> Cohort:
    """Drop genes expressed (non-missing, non-zero) in too few samples.

    Args:
        cohort: Cohort to filter
        minimum_nonzero_fraction: Minimum fraction of samples with a
            non-missing, non-zero value for a gene to be kept

    Returns:
        New cohort with the same samples and the surviving genes

    Raises:
        EmptyResultError: if no samples or no genes remain
    """
    _check_not_empty(cohort, "Input")
    values = cohort.expression.to_numpy(dtype=float)
    expressed = np.isfinite(values) & (values != 0)
    fraction = expressed.sum(axis=1) / cohort.n_samples
    keep = fraction >= minimum_nonzero_fraction

    n_removed = int((~keep).sum())
    if n_removed:
        logger.debug(
            "%s: low-expression filter removed %d of %d genes (nonzero fraction < %.2f)",
            cohort.cancer, n_removed, cohort.n_genes, minimum_nonzero_fraction,
        )
    filtered = cohort.with_expression(cohort.expression.loc[keep])
    return _check_not_empty(filtered, "Low-expression filter")


def subset(cohort: Cohort, sample_ids: Sequence[str]) -> Cohort:
    """Restrict a cohort to ``sample_ids``, preserving their order.

    Raises:
        ValueError: if an identifier is not part of the cohort
        EmptyResultError: if the subset is empty
    """
    by_id = {s.identifier: s for s in cohort.samples}
    unknown = [sid for sid in sample_ids if sid not in by_id]
    if unknown:
        raise ValueError(
            f"{len(unknown)} sample(s) not in {cohort.cancer} cohort: "
            f"{', '.join(unknown[:5])}"
        )
    ordered = list(dict.fromkeys(sample_ids))
    samples = [by_id[sid] for sid in ordered]
    result = cohort.with_samples(samples, cohort.expression[ordered])
    return _check_not_empty(result, "Subset")


def log2_transform(cohort: Cohort) -> Cohort:
    """Apply ``log2(x + 1)`` to the whole expression matrix."""
    if (cohort.expression.to_numpy(dtype=float) <= -1).any():
        raise ValueError(
            f"{cohort.cancer}: log2(x + 1) is undefined for values <= -1; "
            "the matrix already looks log-scaled"
        )
    return cohort.with_expression(np.log2(cohort.expression.astype(float) + 1.0))


def apply_censoring_to_cohort(cohort: Cohort, max_time: Optional[float]) -> Cohort:
    """Right-censor every sample at ``max_time`` days.

    Applied to the whole cohort before any grouping so censoring cannot
    change group composition.
    """
    if max_time is None:
        return cohort
    samples = [s.censored_at(max_time) for s in cohort.samples]
    n_censored = sum(1 for old, new in zip(cohort.samples, samples) if old is not new)
    if n_censored:
        logger.debug(
            "%s: censored %d samples at %.0f days", cohort.cancer, n_censored, max_time
        )
    return cohort.with_samples(samples, cohort.expression)
