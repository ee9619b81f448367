"""Collects result rows across a run and applies FDR correction.

Benjamini-Hochberg correction is a function of the full set of p-values,
so it runs once in ``finalize`` after every row has been added.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from oncosurv.analysis.result import (
    RESULT_COLUMNS,
    SKIP_COLUMNS,
    ResultKey,
    SkipMarker,
    SurvivalStatistic,
)
from oncosurv.survival.comparator import SurvivalData

logger = logging.getLogger(__name__)


class ResultAggregator:
    """Thread-safe accumulator of ``SurvivalStatistic`` rows and skip markers.

    Example:
        aggregator = ResultAggregator()
        aggregator.add(row)
        table = aggregator.finalize()
        aggregator.write_table("results.tsv")
    """

    def __init__(self):
        self._rows: List[SurvivalStatistic] = []
        self._skips: List[SkipMarker] = []
        self._data: Dict[ResultKey, SurvivalData] = {}
        self._lock = threading.Lock()
        self._table: Optional[pd.DataFrame] = None

    def add(self, row: SurvivalStatistic, data: Optional[SurvivalData] = None) -> None:
        with self._lock:
            self._check_open()
            self._rows.append(row)
            if data is not None:
                self._data[row.key] = data

    def add_skip(self, marker: SkipMarker) -> None:
        with self._lock:
            self._check_open()
            self._skips.append(marker)

    def _check_open(self) -> None:
        if self._table is not None:
            raise RuntimeError("ResultAggregator already finalized; cannot add rows")

    @property
    def rows(self) -> List[SurvivalStatistic]:
        with self._lock:
            return list(self._rows)

    @property
    def skips(self) -> List[SkipMarker]:
        with self._lock:
            return list(self._skips)

    @property
    def is_finalized(self) -> bool:
        return self._table is not None

    def survival_data(self, key: ResultKey) -> Optional[SurvivalData]:
        """Raw (times, events, labels) of an analyzed row, if retained."""
        return self._data.get(key)

    def finalize(self) -> pd.DataFrame:
        """Apply BH correction and return the table sorted by p-value.

        Rows without a p-value (degenerate comparisons) are kept with no
        adjusted value and sort last. Calling again returns the same table.
        """
        with self._lock:
            if self._table is None:
                self._table = self._build_table()
                logger.info(
                    "Finalized %d rows (%d with p-values), %d skipped",
                    len(self._table),
                    int(self._table["p_value"].notna().sum()),
                    len(self._skips),
                )
            return self._table.copy()

    def _build_table(self) -> pd.DataFrame:
        table = pd.DataFrame([r.to_dict() for r in self._rows], columns=RESULT_COLUMNS)
        table["p_value"] = pd.to_numeric(table["p_value"], errors="coerce")
        table["adjusted_p_value"] = np.nan

        tested = table["p_value"].notna()
        if tested.any():
            _, adjusted, _, _ = multipletests(
                table.loc[tested, "p_value"].to_numpy(), method="fdr_bh"
            )
            table.loc[tested, "adjusted_p_value"] = np.clip(adjusted, 0.0, 1.0)

        table = table.sort_values(
            ["p_value", "gene", "cancer", "annotation", "category"],
            na_position="last",
            kind="mergesort",
        )
        return table.reset_index(drop=True)

    def skipped(self) -> pd.DataFrame:
        return pd.DataFrame([s.to_dict() for s in self.skips], columns=SKIP_COLUMNS)

    def summary(self) -> dict:
        rows = self.rows
        skips = self.skips
        reasons: Dict[str, int] = {}
        for marker in skips:
            reasons[marker.reason] = reasons.get(marker.reason, 0) + 1
        return {
            "rows": len(rows),
            "rows_degenerate": sum(1 for r in rows if r.status == "degenerate"),
            "skipped": len(skips),
            "skipped_by_reason": reasons,
        }

    def write_table(self, path: Union[str, Path]) -> Path:
        """Write the finalized table as TSV."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.finalize().to_csv(path, sep="\t", index=False)
        return path

    def write_skipped(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.skipped().to_csv(path, sep="\t", index=False)
        return path

    def write_survival_data(self, path: Union[str, Path]) -> Path:
        """Write retained (time, event, group) triples in long format."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        frames = []
        for (gene, cancer, annotation, category), data in sorted(self._data.items()):
            frame = data.to_frame()
            frame.insert(0, "category", category)
            frame.insert(0, "annotation", annotation)
            frame.insert(0, "cancer", cancer)
            frame.insert(0, "gene", gene)
            frames.append(frame)
        columns = ["gene", "cancer", "annotation", "category", "sample", "time", "event", "group"]
        combined = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=columns)
        combined.to_csv(path, sep="\t", index=False)
        return path
