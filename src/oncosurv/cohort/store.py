"""
Cohort store: download and cache cohort files, then load them.

Cached files live under ``<cache_dir>/<source>/<cancer>/<subtype>/``.
The cache is append-only: an entry that already exists is never
rewritten. Writers hold an exclusive ``flock`` on a sibling ``.lock``
file, download into a temporary file and atomically rename it into
place, so readers only ever see complete files.
"""

import fcntl
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from oncosurv.cohort.model import Cohort
from oncosurv.cohort.parser import load_cohort_files
from oncosurv.config import DEFAULT_CACHE_DIR, DEFAULT_XENA_HUB
from oncosurv.errors import DataUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "tcga"
DEFAULT_SUBTYPE = "HiSeqV2"
CHUNK_SIZE = 1 << 20

CLINICAL_SUBTYPE = "clinical"
SURVIVAL_SUBTYPE = "survival"


@dataclass(frozen=True)
class XenaLayout:
    """Dataset path templates on a Xena hub (relative to ``/download/``)."""

    expression: str
    clinical: str
    survival: str


# Data sources served from a Xena hub. ``local`` reads the cache only.
XENA_LAYOUTS: Dict[str, XenaLayout] = {
    "tcga": XenaLayout(
        expression="TCGA.{cancer}.sampleMap/{subtype}.gz",
        clinical="TCGA.{cancer}.sampleMap/{cancer}_clinicalMatrix",
        survival="survival/{cancer}_survival.txt",
    ),
}
LOCAL_SOURCE = "local"


@dataclass(frozen=True)
class CacheEntry:
    """Paths of the cached files that make up one cohort."""

    expression: Path
    survival: Path
    clinical: Path

    def exists(self) -> bool:
        return self.expression.exists() and self.survival.exists()


def create_session(
    max_retries: int = 5,
    backoff_factor: float = 1.0,
    status_forcelist: tuple = (429, 500, 502, 503, 504),
    user_agent: str = "oncosurv/0.1",
) -> requests.Session:
    """Create a requests Session with retry logic for hub downloads."""
    session = requests.Session()
    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=("GET",),
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": user_agent})
    return session


@contextmanager
def exclusive_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``<path>.lock`` for the block."""
    lock_path = path.with_name(path.name + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "w") as lock:
        fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock.fileno(), fcntl.LOCK_UN)


class CohortStore:
    """Loads cohorts from a local cache, downloading missing files.

    Args:
        cache_dir: Root of the cache. Defaults to ``~/.oncosurv/cache``.
        hub_url: Base URL of the Xena hub.
        session: Optional preconfigured requests session.
        time_column: Survival table column holding the time in days.
        event_column: Survival table column holding the 0/1 event flag.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        cache_dir: Union[str, Path, None] = None,
        hub_url: str = DEFAULT_XENA_HUB,
        session: Optional[requests.Session] = None,
        time_column: str = "OS.time",
        event_column: str = "OS",
        timeout: int = 120,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else DEFAULT_CACHE_DIR
        self.hub_url = hub_url.rstrip("/")
        self._session = session
        self.time_column = time_column
        self.event_column = event_column
        self.timeout = timeout

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = create_session()
        return self._session

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def entry(
        self,
        cancer_code: str,
        data_source: str = DEFAULT_SOURCE,
        data_subtype: str = DEFAULT_SUBTYPE,
    ) -> CacheEntry:
        """Cache paths for a cohort (files may not exist yet)."""
        base = self.cache_dir / data_source / cancer_code
        return CacheEntry(
            expression=base / data_subtype / "expression.tsv.gz",
            survival=base / SURVIVAL_SUBTYPE / "survival.tsv",
            clinical=base / CLINICAL_SUBTYPE / "clinical.tsv",
        )

    def fetch(
        self,
        cancer_code: str,
        data_source: str = DEFAULT_SOURCE,
        data_subtype: str = DEFAULT_SUBTYPE,
    ) -> CacheEntry:
        """Make sure the cohort's files are cached, downloading as needed.

        Raises:
            DataUnavailableError: if a required file is neither cached
                nor available from the hub
        """
        entry = self.entry(cancer_code, data_source, data_subtype)
        if data_source == LOCAL_SOURCE:
            if not entry.exists():
                raise DataUnavailableError(
                    f"No cached cohort for {cancer_code} ({data_subtype}) under "
                    f"{entry.expression.parent.parent}",
                    cancer=cancer_code,
                )
            return entry

        layout = XENA_LAYOUTS.get(data_source)
        if layout is None:
            raise DataUnavailableError(
                f"Unknown data source {data_source!r}; expected one of "
                f"{sorted(XENA_LAYOUTS) + [LOCAL_SOURCE]}",
                cancer=cancer_code,
            )

        fmt = {"cancer": cancer_code, "subtype": data_subtype}
        self._ensure(entry.expression, layout.expression.format(**fmt), cancer_code)
        self._ensure(entry.survival, layout.survival.format(**fmt), cancer_code)
        try:
            self._ensure(entry.clinical, layout.clinical.format(**fmt), cancer_code)
        except DataUnavailableError as exc:
            # Clinical annotations are optional: only the full cohort is analyzable.
            logger.warning("%s: clinical matrix unavailable (%s)", cancer_code, exc)
        return entry

    def load(
        self,
        cancer_code: str,
        data_source: str = DEFAULT_SOURCE,
        data_subtype: str = DEFAULT_SUBTYPE,
    ) -> Cohort:
        """Load a cohort, fetching it into the cache first if necessary.

        Raises:
            DataUnavailableError: if the cohort cannot be obtained
        """
        entry = self.fetch(cancer_code, data_source, data_subtype)
        return load_cohort_files(
            cancer=cancer_code,
            expression_path=entry.expression,
            survival_path=entry.survival,
            clinical_path=entry.clinical if entry.clinical.exists() else None,
            time_column=self.time_column,
            event_column=self.event_column,
            source=data_source,
            subtype=data_subtype,
        )

    # -----------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------

    def _ensure(self, path: Path, dataset: str, cancer_code: str) -> None:
        """Download ``dataset`` to ``path`` unless it is already cached."""
        if path.exists():
            return
        with exclusive_lock(path):
            # Another writer may have finished while we waited for the lock.
            if path.exists():
                return
            self._download(f"{self.hub_url}/download/{dataset}", path, cancer_code)

    def _download(self, url: str, path: Path, cancer_code: str) -> None:
        logger.info("Downloading %s", url)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.part")
        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
            if response.status_code == 404:
                raise DataUnavailableError(f"Not found on hub: {url}", cancer=cancer_code)
            response.raise_for_status()
            with open(tmp_path, "wb") as fh:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        fh.write(chunk)
            os.replace(tmp_path, path)
        except requests.RequestException as exc:
            raise DataUnavailableError(
                f"Failed to download {url}: {exc}", cancer=cancer_code
            ) from exc
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        logger.info("Cached %s (%d bytes)", path, path.stat().st_size)
