"""
Batch survival stratification pipeline.

Loads each requested cohort, adds gene signatures, applies censoring and
the gene filter, runs every subgroup through ``SubgroupEnumerator`` and
writes the run outputs:

    results.tsv       one row per analyzed (gene, cancer, subgroup)
    skipped.tsv       skip markers with reasons
    run_summary.json  counts, failed cohorts and timings
    km_data.tsv       raw (time, event, group) triples (optional)
    run.log           written by the CLI, not by this module

Completed subgroups are checkpointed under ``<output_dir>/.checkpoint``;
a rerun with the same genes and settings resumes where it stopped.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from oncosurv.analysis.aggregator import ResultAggregator
from oncosurv.analysis.checkpoint import RunCheckpoint, run_fingerprint
from oncosurv.analysis.result import SkipMarker
from oncosurv.analysis.subgroups import SubgroupEnumerator, TaskOutcome
from oncosurv.cohort.filters import apply_censoring_to_cohort, filter_low_expression
from oncosurv.cohort.model import FULL_COHORT, Cohort
from oncosurv.cohort.signature import SignatureMethod, signature_score
from oncosurv.cohort.store import DEFAULT_SOURCE, DEFAULT_SUBTYPE, CohortStore
from oncosurv.config import AnalysisConfig
from oncosurv.errors import DataUnavailableError, EmptyResultError

logger = logging.getLogger(__name__)

RESULTS_FILE = "results.tsv"
SKIPPED_FILE = "skipped.tsv"
SUMMARY_FILE = "run_summary.json"
KM_DATA_FILE = "km_data.tsv"
CHECKPOINT_DIR = ".checkpoint"


@dataclass
class CohortReport:
    """Per-cohort bookkeeping for the run summary."""

    cancer: str
    status: str = "ok"  # "ok" | "unavailable" | "empty"
    n_samples: int = 0
    n_genes: int = 0
    tasks_run: int = 0
    seconds: float = 0.0
    message: str = ""


@dataclass
class PipelineResult:
    """Outputs of one batch run."""

    table: pd.DataFrame
    summary: dict
    output_dir: Path
    files: Dict[str, Path] = field(default_factory=dict)


def prepare_cohort(
    cohort: Cohort,
    config: AnalysisConfig,
    signatures: Optional[Mapping[str, Sequence[str]]] = None,
    signature_method: SignatureMethod = "mean",
) -> Cohort:
    """Cohort-level steps that precede subgroup enumeration.

    Signatures are scored first (on unfiltered expression), then outcomes
    are censored, then the cohort-scope gene filter runs if selected.
    A signature with no members in the cohort is left out; its pseudo-gene
    is then reported missing in every subgroup like any absent gene.
    """
    for name, members in (signatures or {}).items():
        try:
            cohort = signature_score(cohort, name, members, method=signature_method)
        except EmptyResultError as exc:
            logger.warning("%s: signature %s not scored: %s", cohort.cancer, name, exc)
    cohort = apply_censoring_to_cohort(cohort, config.max_survival_days)
    if config.gene_filter_scope == "cohort":
        cohort = filter_low_expression(cohort, config.minimum_nonzero_fraction)
    return cohort


def _unavailable_markers(cancer: str, genes: Sequence[str], reason, message: str) -> List[SkipMarker]:
    return [SkipMarker(gene, cancer, FULL_COHORT, FULL_COHORT, reason, message) for gene in genes]


def run_survival_pipeline(
    cancers: Sequence[str],
    genes: Sequence[str],
    output_dir: Union[str, Path],
    config: Optional[AnalysisConfig] = None,
    store: Optional[CohortStore] = None,
    signatures: Optional[Mapping[str, Sequence[str]]] = None,
    source: str = DEFAULT_SOURCE,
    subtype: str = DEFAULT_SUBTYPE,
    restart: bool = False,
    signature_method: SignatureMethod = "mean",
) -> PipelineResult:
    """
    Main entry point for a batch survival run.

    A cohort that cannot be obtained is recorded as failed and the run
    moves on; every other recoverable error is handled per subgroup.

    Args:
        cancers: Cancer type codes (e.g. ``["BRCA", "LUAD"]``)
        genes: Genes to analyze
        output_dir: Directory for results, summary and checkpoint
        config: Analysis policy (defaults to ``AnalysisConfig()``)
        store: Cohort store (defaults to a store on the default cache)
        signatures: Signature name -> member genes, analyzed as pseudo-genes
        source: Data source passed to ``CohortStore.load``
        subtype: Data subtype passed to ``CohortStore.load``
        restart: Discard any checkpoint and recompute everything
        signature_method: ``"mean"`` or ``"zscore"``

    Returns:
        PipelineResult with the finalized table and summary
    """
    config = config or AnalysisConfig()
    store = store or CohortStore(time_column=config.time_column, event_column=config.event_column)
    signatures = dict(signatures or {})
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    analyzed = list(dict.fromkeys(list(genes) + list(signatures)))
    if not analyzed:
        raise ValueError("No genes or signatures to analyze")
    cancers = list(dict.fromkeys(cancers))
    if not cancers:
        raise ValueError("No cancer types given")

    fingerprint = run_fingerprint(
        analyzed,
        config,
        extra=[source, subtype, signature_method, json.dumps(signatures, sort_keys=True)],
    )
    checkpoint = RunCheckpoint(output_path / CHECKPOINT_DIR, fingerprint, restart=restart)
    aggregator = ResultAggregator()
    n_restored = checkpoint.restore_into(aggregator)
    completed = checkpoint.completed

    enumerator = SubgroupEnumerator(config)
    reports: List[CohortReport] = []
    start_time = time.time()

    logger.info(
        "Analyzing %d gene(s) across %d cohort(s): %s",
        len(analyzed), len(cancers), ", ".join(cancers),
    )

    for i, cancer in enumerate(cancers, 1):
        report = CohortReport(cancer=cancer)
        reports.append(report)
        cohort_start = time.time()
        logger.info("[%d/%d] %s", i, len(cancers), cancer)

        try:
            cohort = store.load(cancer, source, subtype)
            cohort = prepare_cohort(cohort, config, signatures, signature_method)
        except DataUnavailableError as exc:
            logger.warning("%s: cohort unavailable, skipping: %s", cancer, exc)
            report.status, report.message = "unavailable", str(exc)
            checkpoint.record_failed_cohort(cancer)
            for marker in _unavailable_markers(cancer, analyzed, "unavailable", str(exc)):
                aggregator.add_skip(marker)
            continue
        except EmptyResultError as exc:
            logger.warning("%s: nothing left to analyze: %s", cancer, exc)
            report.status, report.message = "empty", str(exc)
            for marker in _unavailable_markers(cancer, analyzed, "empty", str(exc)):
                aggregator.add_skip(marker)
            continue

        report.n_samples, report.n_genes = cohort.n_samples, cohort.n_genes
        logger.info("%r", cohort)

        def on_task_done(outcome: TaskOutcome) -> None:
            checkpoint.record(outcome)
            logger.debug(
                "%s %s=%s: %d row(s), %d skip(s)",
                cancer, outcome.task.subgroup.annotation, outcome.task.subgroup.label,
                len(outcome.rows), len(outcome.skips),
            )

        report.tasks_run = enumerator.run(
            cohort, analyzed, aggregator, completed=completed, on_task_done=on_task_done
        )
        report.seconds = round(time.time() - cohort_start, 2)
        logger.info(
            "%s: %d subgroup(s) analyzed in %.1fs", cancer, report.tasks_run, report.seconds
        )

    table = aggregator.finalize()
    files = {
        "results": aggregator.write_table(output_path / RESULTS_FILE),
        "skipped": aggregator.write_skipped(output_path / SKIPPED_FILE),
    }
    if config.save_km_data:
        files["km_data"] = aggregator.write_survival_data(output_path / KM_DATA_FILE)

    counts = aggregator.summary()
    summary = {
        "cancers": cancers,
        "genes": analyzed,
        "signatures": signatures,
        "source": source,
        "subtype": subtype,
        "config": {k: v for k, v in asdict(config).items() if k != "outcome_denylist"},
        **counts,
        "significant_fdr_05": int((table["adjusted_p_value"] < 0.05).sum()),
        "restored_rows": n_restored,
        "failed_cohorts": [r.cancer for r in reports if r.status != "ok"],
        "cohorts": [asdict(r) for r in reports],
        "elapsed_seconds": round(time.time() - start_time, 2),
    }
    summary_path = output_path / SUMMARY_FILE
    with summary_path.open("w", encoding="utf-8") as fh:
        json.dump(summary, fh, indent=2, default=str)
    files["summary"] = summary_path

    logger.info(
        "Run complete: %d row(s), %d skipped, %d failed cohort(s)",
        counts["rows"], counts["skipped"], len(summary["failed_cohorts"]),
    )
    return PipelineResult(table=table, summary=summary, output_dir=output_path, files=files)
