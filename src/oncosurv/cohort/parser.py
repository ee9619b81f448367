"""
Parsers for cached cohort files.

Handles the three tab-delimited files a cohort is assembled from:
- expression matrix: genes in rows, samples in columns, first column
  holds the gene identifier (Xena ``HiSeqV2`` style, optionally gzipped)
- clinical matrix: samples in rows, first column holds the sample id
- survival table: samples in rows with time and event columns
  (Xena ``{cancer}_survival.txt`` style: ``sample``, ``OS``, ``OS.time``)
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Union

import pandas as pd

from oncosurv.cohort.model import Cohort, build_samples

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

SAMPLE_ID_COLUMNS = ("sample", "sampleID", "sample_id", "Sample", "SampleID")


def parse_expression_matrix(path: PathLike) -> pd.DataFrame:
    """
    Parse a genes x samples expression matrix.

    Duplicate gene identifiers keep their first occurrence. Non-numeric
    cells become NaN.

    Args:
        path: Path to the TSV (``.gz`` is decompressed transparently)

    Returns:
        DataFrame indexed by gene id with one column per sample
    """
    df = pd.read_csv(path, sep="\t", index_col=0, low_memory=False)
    df.index = df.index.astype(str)
    df.columns = [str(c) for c in df.columns]
    df.index.name = "gene"

    if not df.index.is_unique:
        n_dup = int(df.index.duplicated().sum())
        logger.info("%s: dropping %d duplicate gene rows", Path(path).name, n_dup)
        df = df[~df.index.duplicated(keep="first")]
    if not df.columns.is_unique:
        df = df.loc[:, ~df.columns.duplicated(keep="first")]

    return df.apply(pd.to_numeric, errors="coerce")


def _index_by_sample(df: pd.DataFrame, path: PathLike) -> pd.DataFrame:
    for column in SAMPLE_ID_COLUMNS:
        if column in df.columns:
            df = df.set_index(column)
            break
    else:
        df = df.set_index(df.columns[0])
    df.index = df.index.astype(str)
    df.index.name = "sample"
    if not df.index.is_unique:
        logger.info("%s: dropping duplicate sample rows", Path(path).name)
        df = df[~df.index.duplicated(keep="first")]
    return df


def parse_clinical_matrix(path: PathLike) -> pd.DataFrame:
    """Parse a samples x annotations clinical matrix as raw strings."""
    df = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)
    return _index_by_sample(df, path)


def parse_survival_table(
    path: PathLike,
    time_column: str = "OS.time",
    event_column: str = "OS",
) -> pd.DataFrame:
    """
    Parse a survival table into an outcomes frame.

    Rows with a missing or negative time, or a missing event, are dropped.

    Returns:
        DataFrame indexed by sample id with ``time`` (float) and
        ``event`` (bool) columns
    """
    df = _index_by_sample(pd.read_csv(path, sep="\t", dtype=str), path)
    for column in (time_column, event_column):
        if column not in df.columns:
            raise ValueError(f"{Path(path).name}: missing survival column {column!r}")

    outcomes = pd.DataFrame(
        {
            "time": pd.to_numeric(df[time_column], errors="coerce"),
            "event": pd.to_numeric(df[event_column], errors="coerce"),
        },
        index=df.index,
    )
    valid = outcomes["time"].notna() & (outcomes["time"] >= 0) & outcomes["event"].isin([0, 1])
    n_dropped = int((~valid).sum())
    if n_dropped:
        logger.info(
            "%s: dropped %d samples without usable %s/%s",
            Path(path).name, n_dropped, time_column, event_column,
        )
    outcomes = outcomes[valid].copy()
    outcomes["time"] = outcomes["time"].astype(float)
    outcomes["event"] = outcomes["event"].astype(int).astype(bool)
    return outcomes


def assemble_cohort(
    cancer: str,
    expression: pd.DataFrame,
    outcomes: pd.DataFrame,
    clinical: Optional[pd.DataFrame] = None,
    source: str = "",
    subtype: str = "",
    exclude_columns: Iterable[str] = (),
) -> Cohort:
    """
    Join expression, outcomes and clinical annotations into a ``Cohort``.

    Only samples present in both the expression matrix and the outcomes
    frame are kept, in expression-column order.
    """
    common = [sid for sid in expression.columns if sid in outcomes.index]
    n_expr_only = len(expression.columns) - len(common)
    if n_expr_only:
        logger.info(
            "%s: %d expression samples have no survival outcome", cancer, n_expr_only
        )

    samples = build_samples(outcomes.loc[common], clinical, exclude_columns=exclude_columns)
    return Cohort(
        cancer=cancer,
        samples=tuple(samples),
        expression=expression[common],
        source=source,
        subtype=subtype,
    )


def load_cohort_files(
    cancer: str,
    expression_path: PathLike,
    survival_path: PathLike,
    clinical_path: Optional[PathLike] = None,
    time_column: str = "OS.time",
    event_column: str = "OS",
    source: str = "",
    subtype: str = "",
) -> Cohort:
    """Parse cached files and assemble the cohort."""
    expression = parse_expression_matrix(expression_path)
    outcomes = parse_survival_table(survival_path, time_column, event_column)
    clinical = parse_clinical_matrix(clinical_path) if clinical_path else None

    # Survival tables carry extra endpoint columns (DSS, PFI, ...); the
    # clinical matrix is the only annotation source.
    cohort = assemble_cohort(
        cancer, expression, outcomes, clinical, source, subtype,
        exclude_columns=(time_column, event_column),
    )
    logger.info("Loaded %r", cohort)
    return cohort
