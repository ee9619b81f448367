"""Tests for cohort file parsing."""

import pandas as pd
import pytest

from oncosurv.cohort.parser import (
    load_cohort_files,
    parse_clinical_matrix,
    parse_expression_matrix,
    parse_survival_table,
)


class TestParseExpressionMatrix:

    def test_reads_gzip(self, cohort_files):
        expression_path, _, _ = cohort_files
        df = parse_expression_matrix(expression_path)
        assert list(df.index) == ["PROG", "NOISE"]
        assert df.shape[1] == 60

    def test_duplicate_genes_keep_first(self, tmp_path):
        path = tmp_path / "expr.tsv"
        path.write_text("gene\tS1\tS2\nA\t1\t2\nA\t3\t4\nB\tx\t5\n")
        df = parse_expression_matrix(path)
        assert list(df.index) == ["A", "B"]
        assert df.loc["A", "S1"] == 1
        assert pd.isna(df.loc["B", "S1"])


class TestParseSurvivalTable:

    def test_drops_unusable_rows(self, tmp_path):
        path = tmp_path / "survival.tsv"
        path.write_text(
            "sample\tOS\tOS.time\n"
            "S1\t1\t100\n"
            "S2\t\t200\n"
            "S3\t0\t-5\n"
            "S4\t2\t10\n"
            "S5\t0\t300\n"
        )
        outcomes = parse_survival_table(path)
        assert list(outcomes.index) == ["S1", "S5"]
        assert outcomes.loc["S1", "event"]
        assert outcomes["time"].dtype == float

    def test_missing_column(self, tmp_path):
        path = tmp_path / "survival.tsv"
        path.write_text("sample\tOS\nS1\t1\n")
        with pytest.raises(ValueError):
            parse_survival_table(path)

    def test_alternate_endpoint(self, cohort_files):
        _, survival_path, _ = cohort_files
        outcomes = parse_survival_table(survival_path, "DSS.time", "DSS")
        assert (outcomes["time"] == 100).all()
        assert not outcomes["event"].any()


class TestParseClinicalMatrix:

    def test_indexed_by_sample_id_column(self, cohort_files):
        _, _, clinical_path = cohort_files
        clinical = parse_clinical_matrix(clinical_path)
        assert clinical.index.name == "sample"
        assert "sampleID" not in clinical.columns
        assert clinical.iloc[0]["pathologic_stage"] == "[Not Available]"


class TestLoadCohortFiles:

    def test_assembles_cohort(self, cohort_files):
        expression_path, survival_path, clinical_path = cohort_files
        cohort = load_cohort_files("TEST", expression_path, survival_path, clinical_path)
        assert cohort.n_samples == 60
        assert cohort.genes == ["PROG", "NOISE"]
        first = cohort.samples[0]
        assert first.annotation("pathologic_stage").is_missing
        assert first.annotation("gender").label == "MALE"
        assert first.annotation("age_at_initial_pathologic_diagnosis").kind == "numeric"

    def test_without_clinical(self, cohort_files):
        expression_path, survival_path, _ = cohort_files
        cohort = load_cohort_files("TEST", expression_path, survival_path)
        assert cohort.annotations == []

    def test_samples_without_outcome_dropped(self, cohort_files, tmp_path):
        expression_path, survival_path, _ = cohort_files
        survival = pd.read_csv(survival_path, sep="\t")
        trimmed = tmp_path / "trimmed.tsv"
        survival.iloc[:50].to_csv(trimmed, sep="\t", index=False)
        cohort = load_cohort_files("TEST", expression_path, trimmed)
        assert cohort.n_samples == 50
