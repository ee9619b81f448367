"""Cohort data model, loading and filtering.

Usage::

    from oncosurv.cohort import CohortStore, filter_low_expression, subset

    store = CohortStore(cache_dir="~/.oncosurv/cache")
    cohort = store.load("BRCA", "tcga", "HiSeqV2")
    cohort = filter_low_expression(cohort, minimum_nonzero_fraction=0.9)
"""

from oncosurv.cohort.filters import (
    apply_censoring_to_cohort,
    filter_low_expression,
    log2_transform,
    subset,
)
from oncosurv.cohort.model import ClinicalValue, Cohort, Sample, Subgroup
from oncosurv.cohort.parser import assemble_cohort, load_cohort_files
from oncosurv.cohort.signature import signature_score
from oncosurv.cohort.store import CohortStore

__all__ = [
    "ClinicalValue",
    "Cohort",
    "CohortStore",
    "Sample",
    "Subgroup",
    "apply_censoring_to_cohort",
    "assemble_cohort",
    "filter_low_expression",
    "load_cohort_files",
    "log2_transform",
    "signature_score",
    "subset",
]
