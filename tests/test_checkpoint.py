"""Tests for run checkpointing."""

import json

from oncosurv.analysis.aggregator import ResultAggregator
from oncosurv.analysis.checkpoint import RunCheckpoint, RunState, run_fingerprint
from oncosurv.analysis.result import SkipMarker, SurvivalStatistic
from oncosurv.analysis.subgroups import SubgroupTask, TaskOutcome
from oncosurv.cohort.model import Subgroup
from oncosurv.config import AnalysisConfig


def _make_outcome(category="I", gene="PROG"):
    task = SubgroupTask("TEST", Subgroup("stage", (category,)), ("S1", "S2"))
    row = SurvivalStatistic(
        gene=gene, cancer="TEST", annotation="stage", category=category,
        n_low=10, n_high=10, n_events=12, cutoff=2.5, cutoff_method="optimal",
        hazard_ratio=1.8, p_value=0.02,
    )
    marker = SkipMarker("OTHER", "TEST", "stage", category, "gene_missing", "not in cohort")
    return TaskOutcome(task=task, rows=[row], skips=[marker])


class TestRunFingerprint:

    def test_stable_across_gene_order(self):
        config = AnalysisConfig()
        assert run_fingerprint(["A", "B"], config) == run_fingerprint(["B", "A"], config)

    def test_changes_with_policy(self):
        assert run_fingerprint(["A"], AnalysisConfig()) != run_fingerprint(
            ["A"], AnalysisConfig(min_subgroup_size=10)
        )

    def test_ignores_worker_count(self):
        assert run_fingerprint(["A"], AnalysisConfig()) == run_fingerprint(
            ["A"], AnalysisConfig(workers=4)
        )


class TestRunCheckpoint:

    def test_record_and_resume(self, tmp_path):
        checkpoint = RunCheckpoint(tmp_path, "abc")
        checkpoint.record(_make_outcome("I"))
        checkpoint.record(_make_outcome("II"))

        resumed = RunCheckpoint(tmp_path, "abc")
        assert resumed.completed == {("TEST", "stage", "I"), ("TEST", "stage", "II")}

        aggregator = ResultAggregator()
        assert resumed.restore_into(aggregator) == 2
        assert {r.category for r in aggregator.rows} == {"I", "II"}
        assert len(aggregator.skips) == 2
        assert aggregator.rows[0].hazard_ratio == 1.8

    def test_different_fingerprint_starts_fresh(self, tmp_path):
        RunCheckpoint(tmp_path, "abc").record(_make_outcome())
        fresh = RunCheckpoint(tmp_path, "xyz")
        assert fresh.completed == set()
        aggregator = ResultAggregator()
        assert fresh.restore_into(aggregator) == 0

    def test_restart_discards_state(self, tmp_path):
        RunCheckpoint(tmp_path, "abc").record(_make_outcome())
        assert RunCheckpoint(tmp_path, "abc", restart=True).completed == set()

    def test_uncommitted_rows_ignored(self, tmp_path):
        """Rows written without their key being marked complete are dropped."""
        checkpoint = RunCheckpoint(tmp_path, "abc")
        checkpoint.record(_make_outcome("I"))
        orphan = _make_outcome("II").rows[0]
        with checkpoint.rows_path.open("a") as fh:
            fh.write(json.dumps(orphan.to_dict()) + "\n")

        aggregator = ResultAggregator()
        RunCheckpoint(tmp_path, "abc").restore_into(aggregator)
        assert {r.category for r in aggregator.rows} == {"I"}

    def test_rerun_rows_not_duplicated(self, tmp_path):
        checkpoint = RunCheckpoint(tmp_path, "abc")
        checkpoint.record(_make_outcome("I"))
        checkpoint.record(_make_outcome("I"))
        aggregator = ResultAggregator()
        RunCheckpoint(tmp_path, "abc").restore_into(aggregator)
        assert len(aggregator.rows) == 1

    def test_failed_cohorts_persisted(self, tmp_path):
        RunCheckpoint(tmp_path, "abc").record_failed_cohort("NOPE")
        assert RunCheckpoint(tmp_path, "abc").failed_cohorts == {"NOPE"}


class TestRunState:

    def test_corrupt_state_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        assert RunState.load(path) is None

    def test_roundtrip_keys_with_spaces(self, tmp_path):
        path = tmp_path / "state.json"
        state = RunState(fingerprint="f", completed={("BRCA", "pathologic_stage", "Stage IIA+Stage IIB")})
        state.save(path)
        assert RunState.load(path).completed == state.completed
