"""Tests for the cohort cache and Xena download path."""

import shutil
from unittest.mock import MagicMock

import pytest
import requests

from oncosurv.cohort.store import CohortStore, exclusive_lock
from oncosurv.errors import DataUnavailableError


def _make_response(status_code=200, content=b""):
    response = MagicMock()
    response.status_code = status_code
    response.iter_content.return_value = [content]
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


def _make_hub_session(files_by_suffix):
    """Session whose GET answers from ``{url_suffix: bytes}``; anything else is 404."""
    session = MagicMock()

    def get(url, **kwargs):
        for suffix, content in files_by_suffix.items():
            if url.endswith(suffix):
                return _make_response(200, content)
        return _make_response(404)

    session.get.side_effect = get
    return session


def _hub_files(cohort_files):
    expression_path, survival_path, clinical_path = cohort_files
    return {
        "TCGA.TEST.sampleMap/HiSeqV2.gz": expression_path.read_bytes(),
        "survival/TEST_survival.txt": survival_path.read_bytes(),
        "TCGA.TEST.sampleMap/TEST_clinicalMatrix": clinical_path.read_bytes(),
    }


class TestCohortStoreDownload:

    def test_fetch_and_load(self, tmp_path, cohort_files):
        session = _make_hub_session(_hub_files(cohort_files))
        store = CohortStore(cache_dir=tmp_path / "cache", session=session)

        cohort = store.load("TEST", "tcga", "HiSeqV2")

        assert cohort.n_samples == 60
        assert cohort.source == "tcga"
        assert session.get.call_count == 3
        entry = store.entry("TEST", "tcga", "HiSeqV2")
        assert entry.exists()
        assert entry.clinical.exists()

    def test_cached_entry_not_downloaded_again(self, tmp_path, cohort_files):
        session = _make_hub_session(_hub_files(cohort_files))
        store = CohortStore(cache_dir=tmp_path / "cache", session=session)
        store.load("TEST")
        store.load("TEST")
        assert session.get.call_count == 3

    def test_cached_files_never_rewritten(self, tmp_path, cohort_files):
        session = _make_hub_session(_hub_files(cohort_files))
        store = CohortStore(cache_dir=tmp_path / "cache", session=session)
        entry = store.fetch("TEST")
        before = entry.survival.stat().st_mtime_ns
        store.fetch("TEST")
        assert entry.survival.stat().st_mtime_ns == before

    def test_missing_cohort_raises(self, tmp_path):
        store = CohortStore(cache_dir=tmp_path / "cache", session=_make_hub_session({}))
        with pytest.raises(DataUnavailableError) as excinfo:
            store.load("NOPE")
        assert excinfo.value.cancer == "NOPE"

    def test_missing_clinical_is_tolerated(self, tmp_path, cohort_files):
        files = _hub_files(cohort_files)
        del files["TCGA.TEST.sampleMap/TEST_clinicalMatrix"]
        store = CohortStore(cache_dir=tmp_path / "cache", session=_make_hub_session(files))
        cohort = store.load("TEST")
        assert cohort.annotations == []

    def test_network_error_wrapped(self, tmp_path):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("unreachable")
        store = CohortStore(cache_dir=tmp_path / "cache", session=session)
        with pytest.raises(DataUnavailableError):
            store.fetch("TEST")

    def test_failed_download_leaves_no_partial_file(self, tmp_path):
        session = MagicMock()
        session.get.return_value = _make_response(500)
        store = CohortStore(cache_dir=tmp_path / "cache", session=session)
        with pytest.raises(DataUnavailableError):
            store.fetch("TEST")
        entry = store.entry("TEST")
        assert not entry.expression.exists()
        assert not list(entry.expression.parent.glob("*.part"))

    def test_unknown_source(self, tmp_path):
        store = CohortStore(cache_dir=tmp_path / "cache", session=MagicMock())
        with pytest.raises(DataUnavailableError):
            store.fetch("TEST", "gdc")


class TestLocalSource:

    def test_local_requires_cache(self, tmp_path):
        store = CohortStore(cache_dir=tmp_path / "cache", session=MagicMock())
        with pytest.raises(DataUnavailableError):
            store.load("TEST", "local")

    def test_local_reads_cache(self, tmp_path, cohort_files):
        store = CohortStore(cache_dir=tmp_path / "cache", session=MagicMock())
        entry = store.entry("TEST", "local")
        for src, dest in zip(cohort_files, (entry.expression, entry.survival, entry.clinical)):
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy(src, dest)
        cohort = store.load("TEST", "local")
        assert cohort.n_samples == 60
        store.session.get.assert_not_called()


class TestExclusiveLock:

    def test_lock_file_created_beside_target(self, tmp_path):
        target = tmp_path / "sub" / "data.tsv"
        with exclusive_lock(target):
            assert (tmp_path / "sub" / "data.tsv.lock").exists()
