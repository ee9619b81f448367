"""Subgroup enumeration, result aggregation and the batch pipeline.

Usage::

    from oncosurv.analysis import run_survival_pipeline
    from oncosurv.config import AnalysisConfig

    result = run_survival_pipeline(
        cancers=["BRCA", "LUAD"],
        genes=["TP53", "ESR1"],
        output_dir="results/",
        config=AnalysisConfig(max_survival_days=3650),
    )
    print(result.table.head())
"""

from oncosurv.analysis.aggregator import ResultAggregator
from oncosurv.analysis.checkpoint import RunCheckpoint, run_fingerprint
from oncosurv.analysis.pipeline import PipelineResult, prepare_cohort, run_survival_pipeline
from oncosurv.analysis.result import SkipMarker, SurvivalStatistic
from oncosurv.analysis.subgroups import (
    SubgroupEnumerator,
    SubgroupTask,
    TaskOutcome,
    admissible_annotations,
    is_outcome_annotation,
)

__all__ = [
    "PipelineResult",
    "ResultAggregator",
    "RunCheckpoint",
    "SkipMarker",
    "SubgroupEnumerator",
    "SubgroupTask",
    "SurvivalStatistic",
    "TaskOutcome",
    "admissible_annotations",
    "is_outcome_annotation",
    "prepare_cohort",
    "run_fingerprint",
    "run_survival_pipeline",
]
