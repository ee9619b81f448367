"""Shared synthetic cohorts for the test suite."""

import numpy as np
import pandas as pd
import pytest

from oncosurv.cohort.model import ClinicalValue, Cohort, Sample


def _stage_labels(n_samples):
    """Stage I / II / III in a 60 / 30 / 10 split (scaled to ``n_samples``)."""
    n_one = int(round(n_samples * 0.6))
    n_two = int(round(n_samples * 0.3))
    labels = ["I"] * n_one + ["II"] * n_two
    return labels + ["III"] * (n_samples - len(labels))


def _make_cohort(n_samples=100, seed=0, cancer="TEST", with_clinical=True):
    """Synthetic cohort where high ``PROG`` expression shortens survival.

    Genes:
        PROG   ranks 1..n; the upper half has a six-fold hazard
        NOISE  uniform noise, unrelated to survival
        ZERO   zero in all but a handful of samples
        CONST  identical in every sample
    """
    rng = np.random.RandomState(seed)
    ids = [f"{cancer}-{i:03d}" for i in range(n_samples)]

    prog = np.arange(1, n_samples + 1, dtype=float)
    high = prog > n_samples / 2
    times = rng.exponential(scale=np.where(high, 200.0, 1200.0)) + 1.0
    events = rng.random_sample(n_samples) < 0.85

    zero = np.zeros(n_samples)
    zero[:5] = 3.0
    expression = pd.DataFrame(
        [prog, rng.uniform(1, 10, n_samples), zero, np.full(n_samples, 5.0)],
        index=["PROG", "NOISE", "ZERO", "CONST"],
        columns=ids,
    )

    # Interleave stages so they do not line up with PROG.
    stages = _stage_labels(n_samples)
    stages = [stages[i] for i in rng.permutation(n_samples)]
    samples = []
    for i, sample_id in enumerate(ids):
        clinical = {}
        if with_clinical:
            clinical = {
                "stage": ClinicalValue.categorical(stages[i]),
                "gender": ClinicalValue.categorical("female" if i % 2 else "male"),
                "vital_status": ClinicalValue.categorical("DECEASED" if events[i] else "LIVING"),
                "patient_id": ClinicalValue.categorical(f"P{i:04d}"),
            }
        samples.append(Sample(sample_id, float(times[i]), bool(events[i]), clinical))
    return Cohort(cancer=cancer, samples=tuple(samples), expression=expression, source="test")


@pytest.fixture
def make_cohort():
    """Factory fixture for synthetic cohorts."""
    return _make_cohort


@pytest.fixture
def cohort():
    return _make_cohort()


def _write_cohort_files(directory, n_samples=60, seed=1):
    """Write Xena-style expression, survival and clinical files."""
    rng = np.random.RandomState(seed)
    directory.mkdir(parents=True, exist_ok=True)
    ids = [f"TCGA-{i:02d}-0001-01" for i in range(n_samples)]

    expression = pd.DataFrame(
        {sid: [float(i + 1), rng.uniform(1, 5)] for i, sid in enumerate(ids)},
        index=pd.Index(["PROG", "NOISE"], name="gene"),
    )
    expression_path = directory / "expression.tsv.gz"
    expression.to_csv(expression_path, sep="\t", compression="gzip")

    prog = np.arange(1, n_samples + 1)
    survival = pd.DataFrame(
        {
            "sample": ids,
            "OS": (rng.random_sample(n_samples) < 0.8).astype(int),
            "OS.time": np.round(
                rng.exponential(np.where(prog > n_samples / 2, 200.0, 1200.0)) + 1
            ),
            "DSS": 0,
            "DSS.time": 100,
        }
    )
    survival_path = directory / "survival.tsv"
    survival.to_csv(survival_path, sep="\t", index=False)

    clinical = pd.DataFrame(
        {
            "sampleID": ids,
            "gender": ["FEMALE" if i % 2 else "MALE" for i in range(n_samples)],
            "pathologic_stage": ["Stage I" if i % 3 else "[Not Available]" for i in range(n_samples)],
            "age_at_initial_pathologic_diagnosis": [str(40 + i) for i in range(n_samples)],
        }
    )
    clinical_path = directory / "clinical.tsv"
    clinical.to_csv(clinical_path, sep="\t", index=False)
    return expression_path, survival_path, clinical_path


@pytest.fixture
def cohort_files(tmp_path):
    return _write_cohort_files(tmp_path / "files")


@pytest.fixture
def write_cohort_files():
    return _write_cohort_files
