"""Tests for subgroup enumeration and per-subgroup analysis."""

import threading
from concurrent.futures import Future
from unittest.mock import patch

import pytest

from oncosurv.analysis.aggregator import ResultAggregator
from oncosurv.analysis.subgroups import (
    SubgroupEnumerator,
    admissible_annotations,
    is_outcome_annotation,
)
from oncosurv.cohort.model import FULL_COHORT
from oncosurv.config import DEFAULT_OUTCOME_DENYLIST, AnalysisConfig
from oncosurv.errors import DegenerateGroupError

GENES = ["PROG", "NOISE", "ZERO", "CONST", "MISSING"]


def _make_enumerator(**overrides):
    return SubgroupEnumerator(AnalysisConfig(**overrides))


class TestOutcomeDenylist:

    @pytest.mark.parametrize(
        "name",
        ["OS", "OS.time", "DSS.time", "_EVENT", "vital_status", "days_to_death",
         "days_to_last_followup", "_TIME_TO_EVENT", "new_tumor_event_after_initial_treatment"],
    )
    def test_outcome_fields(self, name):
        assert is_outcome_annotation(name, DEFAULT_OUTCOME_DENYLIST)

    @pytest.mark.parametrize(
        "name", ["gender", "pathologic_stage", "histological_type", "PAM50Call_RNAseq", "cosmic"]
    )
    def test_clinical_fields(self, name):
        assert not is_outcome_annotation(name, DEFAULT_OUTCOME_DENYLIST)

    def test_configured_columns(self):
        assert is_outcome_annotation("my_time", (), outcome_columns={"my_time"})


class TestAdmissibleAnnotations:

    def test_filters_outcomes_and_identifiers(self, cohort):
        assert admissible_annotations(cohort, AnalysisConfig()) == ["gender", "stage"]

    def test_category_bounds(self, cohort):
        config = AnalysisConfig(min_distinct_categories=3)
        assert admissible_annotations(cohort, config) == ["stage"]


class TestEnumerateSubgroups:

    def test_full_cohort_first(self, cohort):
        tasks = list(_make_enumerator().enumerate_subgroups(cohort))
        assert tasks[0].subgroup.is_full_cohort
        assert tasks[0].n_samples == cohort.n_samples

    def test_categories_and_size_policy(self, cohort):
        tasks = {t.key: t for t in _make_enumerator().enumerate_subgroups(cohort)}
        assert set(tasks) == {
            ("TEST", FULL_COHORT, FULL_COHORT),
            ("TEST", "gender", "female"),
            ("TEST", "gender", "male"),
            ("TEST", "stage", "I"),
            ("TEST", "stage", "II"),
            ("TEST", "stage", "III"),
        }
        assert tasks[("TEST", "stage", "I")].skip_reason is None
        assert tasks[("TEST", "stage", "II")].skip_reason == "too_small"
        assert tasks[("TEST", "stage", "III")].skip_reason == "too_small"

    def test_size_threshold_is_strict(self, cohort):
        tasks = {t.key: t for t in _make_enumerator(min_subgroup_size=50).enumerate_subgroups(cohort)}
        assert tasks[("TEST", "gender", "male")].skip_reason == "too_small"

    def test_combinations(self, cohort):
        enumerator = _make_enumerator(max_category_combination=2)
        labels = [t.subgroup.label for t in enumerator.enumerate_subgroups(cohort)
                  if t.subgroup.annotation == "stage"]
        assert labels == ["I", "II", "III", "I+II", "I+III", "II+III"]

    def test_combination_members(self, cohort):
        enumerator = _make_enumerator(max_category_combination=2)
        task = next(t for t in enumerator.enumerate_subgroups(cohort) if t.subgroup.label == "II+III")
        assert task.n_samples == 40
        assert list(task.sample_ids) == [s for s in cohort.sample_ids if s in task.sample_ids]

    def test_no_subgroups(self, cohort):
        tasks = list(_make_enumerator(analyze_subgroups=False).enumerate_subgroups(cohort))
        assert len(tasks) == 1

    def test_is_lazy(self, cohort):
        generator = _make_enumerator().enumerate_subgroups(cohort)
        assert next(generator).subgroup.is_full_cohort


class TestAnalyze:

    def test_full_cohort_rows_and_skips(self, cohort):
        enumerator = _make_enumerator(analyze_subgroups=False)
        aggregator = ResultAggregator()
        enumerator.run(cohort, GENES, aggregator)

        rows = {r.gene: r for r in aggregator.rows}
        skips = {s.gene: s for s in aggregator.skips}
        assert set(rows) == {"PROG", "NOISE"}
        assert rows["PROG"].status == "ok"
        assert rows["PROG"].hazard_ratio > 1
        assert skips["ZERO"].reason == "gene_missing"
        assert "filtered" in skips["ZERO"].message
        assert skips["MISSING"].reason == "gene_missing"
        assert skips["CONST"].reason == "insufficient_data"

    def test_too_small_subgroups_produce_markers(self, cohort):
        aggregator = ResultAggregator()
        _make_enumerator().run(cohort, ["PROG"], aggregator)

        too_small = {(s.annotation, s.category) for s in aggregator.skips if s.reason == "too_small"}
        assert too_small == {("stage", "II"), ("stage", "III")}
        analyzed = {(r.annotation, r.category) for r in aggregator.rows}
        assert ("stage", "I") in analyzed
        assert not any(r.annotation == "vital_status" for r in aggregator.rows)

    def test_degenerate_comparison_row(self, cohort):
        enumerator = _make_enumerator(analyze_subgroups=False)
        aggregator = ResultAggregator()
        with patch.object(
            enumerator.comparator, "compare", side_effect=DegenerateGroupError("no events")
        ):
            enumerator.run(cohort, ["PROG"], aggregator)
        (row,) = aggregator.rows
        assert row.status == "degenerate"
        assert row.p_value is None
        assert row.n_low + row.n_high == cohort.n_samples
        assert aggregator.skips == []

    def test_subgroup_local_filter(self, cohort):
        """A gene expressed only in one subgroup is filtered elsewhere."""
        expression = cohort.expression.copy()
        males = [s.identifier for s in cohort.samples if s.annotation("gender").label == "male"]
        expression.loc["ZERO"] = 0.0
        expression.loc["ZERO", males] = [float(i) for i in range(1, len(males) + 1)]
        local = cohort.with_expression(expression)

        aggregator = ResultAggregator()
        _make_enumerator(min_subgroup_size=10).run(local, ["ZERO"], aggregator)
        analyzed = {(r.annotation, r.category) for r in aggregator.rows}
        missing = {(s.annotation, s.category) for s in aggregator.skips if s.reason == "gene_missing"}
        assert ("gender", "male") in analyzed
        assert ("gender", "female") in missing
        assert (FULL_COHORT, FULL_COHORT) in missing

    def test_completed_tasks_skipped(self, cohort):
        enumerator = _make_enumerator()
        aggregator = ResultAggregator()
        done = {("TEST", FULL_COHORT, FULL_COHORT)}
        enumerator.run(cohort, ["PROG"], aggregator, completed=done)
        assert not any(r.annotation == FULL_COHORT for r in aggregator.rows)

    def test_callback_on_calling_thread(self, cohort):
        seen = []
        main = threading.get_ident()

        def on_done(outcome):
            seen.append((outcome.task.key, threading.get_ident()))

        n_run = _make_enumerator(workers=3).run(cohort, ["PROG"], ResultAggregator(), on_task_done=on_done)
        assert n_run == 6
        assert len(seen) == 6
        assert all(ident == main for _, ident in seen)

    def test_parallel_matches_sequential(self, cohort):
        sequential, parallel = ResultAggregator(), ResultAggregator()
        _make_enumerator().run(cohort, ["PROG", "NOISE"], sequential)
        _make_enumerator(workers=4).run(cohort, ["PROG", "NOISE"], parallel)
        assert sequential.finalize().equals(parallel.finalize())

    def test_failure_cancels_pending_tasks(self, cohort):
        submitted = []

        class _StalledPool:
            """Runs the first task inline and leaves the rest pending."""

            def __init__(self, max_workers):
                pass

            def __enter__(self):
                return self

            def __exit__(self, *exc_info):
                return False

            def submit(self, fn, *args):
                future = Future()
                if not submitted:
                    future.set_exception(RuntimeError("boom"))
                submitted.append(future)
                return future

        aggregator = ResultAggregator()
        with patch("oncosurv.analysis.subgroups.ThreadPoolExecutor", _StalledPool):
            with pytest.raises(RuntimeError, match="boom"):
                _make_enumerator(workers=2).run(cohort, ["PROG"], aggregator)

        assert len(submitted) == 6
        assert all(f.cancelled() for f in submitted[1:])
        assert aggregator.rows == []
