"""
Subgroup enumeration and the per-subgroup analysis loop.

``SubgroupEnumerator.enumerate_subgroups`` lazily describes *what* to
analyze: the full cohort, then every admissible clinical annotation's
categories (and optionally category combinations). ``analyze`` runs one
descriptor: subset, gene filter, cutoff search, survival comparison.
``run`` drives the two, sequentially or on a thread pool.

Recoverable errors are isolated per subgroup and per gene: they become
skip markers (or degenerate rows) and never stop the enumeration.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from itertools import combinations
from typing import Callable, Collection, Dict, Iterator, List, Optional, Sequence, Tuple

from oncosurv.analysis.aggregator import ResultAggregator
from oncosurv.analysis.result import SkipMarker, SkipReason, SurvivalStatistic
from oncosurv.cohort.filters import filter_low_expression, subset
from oncosurv.cohort.model import Cohort, Subgroup
from oncosurv.config import AnalysisConfig
from oncosurv.errors import DegenerateGroupError, EmptyResultError, InsufficientDataError
from oncosurv.survival.comparator import SurvivalComparator, SurvivalData
from oncosurv.survival.cutoff import CutoffOptimizer

logger = logging.getLogger(__name__)

TaskKey = Tuple[str, str, str]


@dataclass(frozen=True)
class SubgroupTask:
    """Descriptor of one subgroup to analyze within one cohort."""

    cancer: str
    subgroup: Subgroup
    sample_ids: Tuple[str, ...]
    skip_reason: Optional[SkipReason] = None

    @property
    def key(self) -> TaskKey:
        return (self.cancer, self.subgroup.annotation, self.subgroup.label)

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)


@dataclass
class TaskOutcome:
    """Rows and skip markers produced by one task."""

    task: SubgroupTask
    rows: List[SurvivalStatistic] = field(default_factory=list)
    skips: List[SkipMarker] = field(default_factory=list)
    data: Dict[str, SurvivalData] = field(default_factory=dict)


def is_outcome_annotation(
    name: str,
    denylist: Sequence[str],
    outcome_columns: Collection[str] = (),
) -> bool:
    """True if the annotation encodes survival time or outcome."""
    if name in outcome_columns:
        return True
    return any(re.search(pattern, name, flags=re.IGNORECASE) for pattern in denylist)


def admissible_annotations(cohort: Cohort, config: AnalysisConfig) -> List[str]:
    """Annotations eligible for subgroup analysis, in sorted order.

    An annotation qualifies when its number of distinct non-missing
    values lies in ``[min_distinct_categories, max_distinct_categories)``
    and its name is not an outcome field.
    """
    outcome_columns = {config.time_column, config.event_column}
    eligible = []
    for name in cohort.annotations:
        if is_outcome_annotation(name, config.outcome_denylist, outcome_columns):
            logger.debug("%s: annotation %r is an outcome field; excluded", cohort.cancer, name)
            continue
        distinct = {v.label for v in cohort.annotation_values(name).values() if not v.is_missing}
        if config.min_distinct_categories <= len(distinct) < config.max_distinct_categories:
            eligible.append(name)
    return eligible


class SubgroupEnumerator:
    """Drives cutoff search and survival comparison once per subgroup.

    Args:
        config: Analysis policy
        optimizer: Cutoff optimizer (built from ``config`` if omitted)
        comparator: Survival comparator (built from ``config`` if omitted)
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        optimizer: Optional[CutoffOptimizer] = None,
        comparator: Optional[SurvivalComparator] = None,
    ):
        self.config = config or AnalysisConfig()
        self.optimizer = optimizer or CutoffOptimizer(
            min_group_fraction=self.config.min_group_fraction,
            min_group_size=self.config.min_group_size,
            auto_cutoff=self.config.auto_cutoff,
            transform_to_log2=self.config.transform_to_log2,
        )
        # Censoring is applied to the whole cohort before enumeration;
        # the comparator re-applies the same horizon, which is a no-op.
        self.comparator = comparator or SurvivalComparator(
            max_time=self.config.max_survival_days,
            cox_penalizer=self.config.cox_penalizer,
        )

    # ------------------------------------------------------------------
    # What to analyze
    # ------------------------------------------------------------------

    def _task(self, cohort: Cohort, subgroup: Subgroup, sample_ids: List[str]) -> SubgroupTask:
        too_small = len(sample_ids) <= self.config.min_subgroup_size
        return SubgroupTask(
            cancer=cohort.cancer,
            subgroup=subgroup,
            sample_ids=tuple(sample_ids),
            skip_reason="too_small" if too_small else None,
        )

    def enumerate_subgroups(self, cohort: Cohort) -> Iterator[SubgroupTask]:
        """Lazily yield subgroup descriptors for a cohort."""
        if self.config.include_full_cohort:
            yield self._task(cohort, Subgroup.full_cohort(), cohort.sample_ids)
        if not self.config.analyze_subgroups:
            return

        for annotation in admissible_annotations(cohort, self.config):
            members: Dict[str, List[str]] = {}
            for sample_id, value in cohort.annotation_values(annotation).items():
                if not value.is_missing:
                    members.setdefault(value.label, []).append(sample_id)
            categories = sorted(members)

            max_size = min(self.config.max_category_combination, len(categories) - 1)
            for size in range(1, max_size + 1):
                for combo in combinations(categories, size):
                    chosen = set().union(*(members[c] for c in combo))
                    # Cohort order, not category order.
                    sample_ids = [sid for sid in cohort.sample_ids if sid in chosen]
                    yield self._task(cohort, Subgroup(annotation, combo), sample_ids)

    # ------------------------------------------------------------------
    # How to analyze one subgroup
    # ------------------------------------------------------------------

    def analyze(
        self,
        cohort: Cohort,
        task: SubgroupTask,
        genes: Sequence[str],
        aggregator: Optional[ResultAggregator] = None,
    ) -> TaskOutcome:
        """Analyze every gene within one subgroup.

        The outcome is written to ``aggregator`` (when given) in one step
        at the end, so an interrupted task leaves no partial rows.
        """
        outcome = TaskOutcome(task=task)
        subgroup = task.subgroup

        def skip(gene: str, reason: SkipReason, message: str) -> None:
            logger.info(
                "Skip (%s, %s, %s, %s): %s - %s",
                gene, task.cancer, subgroup.annotation, subgroup.label, reason, message,
            )
            outcome.skips.append(
                SkipMarker(gene, task.cancer, subgroup.annotation, subgroup.label, reason, message)
            )

        if task.skip_reason is not None:
            message = (
                f"{task.n_samples} samples (analysis requires more than "
                f"{self.config.min_subgroup_size})"
            )
            for gene in genes:
                skip(gene, task.skip_reason, message)
            return self._commit(outcome, aggregator)

        try:
            view = cohort if subgroup.is_full_cohort else subset(cohort, task.sample_ids)
            if self.config.gene_filter_scope == "subgroup":
                view = filter_low_expression(view, self.config.minimum_nonzero_fraction)
        except EmptyResultError as exc:
            for gene in genes:
                skip(gene, "empty", str(exc))
            return self._commit(outcome, aggregator)

        outcomes = view.outcomes()
        for gene in genes:
            if not view.has_gene(gene):
                where = "filtered out (low expression)" if cohort.has_gene(gene) else "not in cohort"
                skip(gene, "gene_missing", where)
                continue

            try:
                cutoff = self.optimizer.find_cutoff(
                    view.expression_for(gene), outcomes, gene=gene,
                    cancer=task.cancer, subgroup=subgroup,
                )
            except InsufficientDataError as exc:
                skip(gene, "insufficient_data", str(exc))
                continue

            try:
                comparison = self.comparator.compare(cutoff.labels, outcomes)
            except DegenerateGroupError as exc:
                logger.info(
                    "Degenerate (%s, %s, %s, %s): %s",
                    gene, task.cancer, subgroup.annotation, subgroup.label, exc,
                )
                n_events = int(outcomes.loc[cutoff.labels.index, "event"].sum())
                outcome.rows.append(
                    SurvivalStatistic.degenerate(cutoff, task.cancer, subgroup, n_events)
                )
                continue

            outcome.rows.append(
                SurvivalStatistic.from_comparison(cutoff, comparison, task.cancer, subgroup)
            )
            if comparison.data is not None:
                outcome.data[gene] = comparison.data

        return self._commit(outcome, aggregator)

    @staticmethod
    def _commit(outcome: TaskOutcome, aggregator: Optional[ResultAggregator]) -> TaskOutcome:
        if aggregator is not None:
            for row in outcome.rows:
                aggregator.add(row, outcome.data.get(row.gene))
            for marker in outcome.skips:
                aggregator.add_skip(marker)
        return outcome

    # ------------------------------------------------------------------
    # Driver loop
    # ------------------------------------------------------------------

    def run(
        self,
        cohort: Cohort,
        genes: Sequence[str],
        aggregator: ResultAggregator,
        completed: Collection[TaskKey] = frozenset(),
        on_task_done: Optional[Callable[[TaskOutcome], None]] = None,
    ) -> int:
        """Analyze every subgroup of ``cohort`` not listed in ``completed``.

        ``on_task_done`` is called on the calling thread after each task,
        which makes it safe to checkpoint from there.

        Returns:
            Number of tasks run
        """
        tasks = (t for t in self.enumerate_subgroups(cohort) if t.key not in completed)
        n_done = 0

        if self.config.workers == 1:
            for task in tasks:
                outcome = self.analyze(cohort, task, genes, aggregator)
                n_done += 1
                if on_task_done is not None:
                    on_task_done(outcome)
            return n_done

        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            futures = [pool.submit(self.analyze, cohort, task, genes, aggregator) for task in tasks]
            try:
                for future in as_completed(futures):
                    outcome = future.result()
                    n_done += 1
                    if on_task_done is not None:
                        on_task_done(outcome)
            except BaseException:
                # Tasks not yet started must not write uncheckpointed rows.
                for pending in futures:
                    pending.cancel()
                raise
        return n_done
