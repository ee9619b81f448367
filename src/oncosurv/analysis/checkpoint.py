"""
Resumable run state for batch survival analyses.

A checkpoint directory holds ``state.json`` (completed task keys plus a
fingerprint of the run's genes and configuration) and ``rows.jsonl`` /
``skips.jsonl`` with every row produced by a completed task. A resumed
run restores those rows into a fresh aggregator and skips the keys.
"""

import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Set, Union

from oncosurv.analysis.aggregator import ResultAggregator
from oncosurv.analysis.result import SkipMarker, SurvivalStatistic
from oncosurv.analysis.subgroups import TaskKey, TaskOutcome
from oncosurv.config import AnalysisConfig

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
ROWS_FILE = "rows.jsonl"
SKIPS_FILE = "skips.jsonl"

_KEY_SEP = "\t"


def run_fingerprint(genes: Iterable[str], config: AnalysisConfig, extra: Iterable[str] = ()) -> str:
    """Stable digest of everything that changes a run's rows."""
    payload = {
        "genes": sorted(genes),
        "config": {k: v for k, v in asdict(config).items() if k not in ("workers", "save_km_data")},
        "extra": list(extra),
    }
    blob = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16]


def _encode_key(key: TaskKey) -> str:
    return _KEY_SEP.join(key)


def _decode_key(raw: str) -> TaskKey:
    cancer, annotation, category = raw.split(_KEY_SEP)
    return (cancer, annotation, category)


@dataclass
class RunState:
    """Completed tasks of one run, persisted as JSON."""

    fingerprint: str
    completed: Set[TaskKey] = field(default_factory=set)
    failed_cohorts: Set[str] = field(default_factory=set)

    def save(self, path: Path) -> None:
        data = {
            "fingerprint": self.fingerprint,
            "completed": sorted(_encode_key(k) for k in self.completed),
            "failed_cohorts": sorted(self.failed_cohorts),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp, path)

    @classmethod
    def load(cls, path: Path) -> Optional["RunState"]:
        if not path.exists():
            return None
        try:
            with path.open(encoding="utf-8") as fh:
                data = json.load(fh)
            return cls(
                fingerprint=data["fingerprint"],
                completed={_decode_key(k) for k in data.get("completed", [])},
                failed_cohorts=set(data.get("failed_cohorts", [])),
            )
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load checkpoint %s: %s. Starting fresh.", path, e)
            return None


class RunCheckpoint:
    """Checkpoint directory for one batch run.

    Args:
        directory: Where the state and row files live
        fingerprint: ``run_fingerprint`` of the current run; a stored
            state with a different fingerprint is discarded
        restart: Ignore any stored state
    """

    def __init__(self, directory: Union[str, Path], fingerprint: str, restart: bool = False):
        self.directory = Path(directory)
        self.fingerprint = fingerprint
        self.state_path = self.directory / STATE_FILE
        self.rows_path = self.directory / ROWS_FILE
        self.skips_path = self.directory / SKIPS_FILE

        stored = None if restart else RunState.load(self.state_path)
        if stored is not None and stored.fingerprint != fingerprint:
            logger.warning(
                "Checkpoint in %s belongs to a different run (genes or settings changed); "
                "starting fresh",
                self.directory,
            )
            stored = None

        if stored is None:
            self.state = RunState(fingerprint=fingerprint)
            self._reset_files()
        else:
            self.state = stored
            logger.info(
                "Resuming from checkpoint: %d subgroups already analyzed",
                len(self.state.completed),
            )

    def _reset_files(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        for path in (self.rows_path, self.skips_path):
            path.write_text("", encoding="utf-8")
        self.state.save(self.state_path)

    @property
    def completed(self) -> Set[TaskKey]:
        return set(self.state.completed)

    @property
    def failed_cohorts(self) -> Set[str]:
        return set(self.state.failed_cohorts)

    def record(self, outcome: TaskOutcome) -> None:
        """Persist one completed task. Rows are written before the key."""
        with self.rows_path.open("a", encoding="utf-8") as fh:
            for row in outcome.rows:
                fh.write(json.dumps(row.to_dict()) + "\n")
        with self.skips_path.open("a", encoding="utf-8") as fh:
            for marker in outcome.skips:
                fh.write(json.dumps(marker.to_dict()) + "\n")
        self.state.completed.add(outcome.task.key)
        self.state.save(self.state_path)

    def record_failed_cohort(self, cancer: str) -> None:
        self.state.failed_cohorts.add(cancer)
        self.state.save(self.state_path)

    def restore_into(self, aggregator: ResultAggregator) -> int:
        """Replay rows of completed tasks into ``aggregator``.

        Rows whose task key is not marked completed (a crash between the
        row write and the state write) are dropped; that task reruns.
        A rerun task appends its rows again, so the last copy wins.

        Returns:
            Number of rows restored
        """
        completed = self.state.completed
        rows = {}
        for record in _read_jsonl(self.rows_path):
            row = SurvivalStatistic(**record)
            if (row.cancer, row.annotation, row.category) in completed:
                rows[row.key] = row
        skips = {}
        for record in _read_jsonl(self.skips_path):
            marker = SkipMarker(**record)
            if (marker.cancer, marker.annotation, marker.category) in completed:
                skips[marker.key] = marker
        for row in rows.values():
            aggregator.add(row)
        for marker in skips.values():
            aggregator.add_skip(marker)
        return len(rows)


def _read_jsonl(path: Path):
    if not path.exists():
        return
    with path.open(encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if line:
                yield json.loads(line)
