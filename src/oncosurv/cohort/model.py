"""Immutable data model for cohorts, samples and subgroups.

Clinical annotations are parsed once at load time into tagged
``ClinicalValue`` objects; every later stage works on those rather than
re-inspecting raw cells. Cohorts are never modified in place: every
derivation returns a new ``Cohort``.
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

ValueKind = Literal["numeric", "categorical", "missing"]

# Missing-value encodings found in TCGA / Xena clinical matrices.
MISSING_SENTINELS = frozenset({
    "",
    "na",
    "n/a",
    "nan",
    "null",
    "none",
    "-",
    "--",
    ".",
    "[not available]",
    "[not applicable]",
    "[unknown]",
    "[not evaluated]",
    "[not reported]",
    "[discrepancy]",
    "[completed]",
    "not reported",
    "not available",
    "unknown",
})

FULL_COHORT = "ALL"


@dataclass(frozen=True)
class ClinicalValue:
    """A tagged clinical annotation value: numeric, categorical or missing."""

    kind: ValueKind
    value: Union[float, str, None] = None

    @classmethod
    def numeric(cls, value: float) -> "ClinicalValue":
        return cls("numeric", float(value))

    @classmethod
    def categorical(cls, value: str) -> "ClinicalValue":
        return cls("categorical", str(value))

    @classmethod
    def missing(cls) -> "ClinicalValue":
        return _MISSING

    @classmethod
    def parse(cls, raw) -> "ClinicalValue":
        """Classify a raw clinical cell."""
        if raw is None:
            return _MISSING
        if isinstance(raw, (bool, np.bool_)):
            return cls.categorical(str(bool(raw)))
        if isinstance(raw, (int, float, np.integer, np.floating)):
            value = float(raw)
            return cls.numeric(value) if math.isfinite(value) else _MISSING
        text = str(raw).strip()
        if text.lower() in MISSING_SENTINELS:
            return _MISSING
        try:
            value = float(text)
        except ValueError:
            return cls.categorical(text)
        return cls.numeric(value) if math.isfinite(value) else _MISSING

    @property
    def is_missing(self) -> bool:
        return self.kind == "missing"

    @property
    def label(self) -> str:
        """Category label used in result rows."""
        if self.kind == "numeric":
            number = float(self.value)
            if number.is_integer():
                return str(int(number))
            return repr(number)
        if self.kind == "categorical":
            return str(self.value)
        return ""


_MISSING = ClinicalValue("missing", None)


@dataclass(frozen=True)
class Sample:
    """One patient specimen with its outcome and clinical annotations."""

    identifier: str
    time: float
    event: bool
    clinical: Mapping[str, ClinicalValue] = field(default_factory=dict)

    def __post_init__(self):
        if self.time < 0 or not math.isfinite(self.time):
            raise ValueError(
                f"Sample {self.identifier}: survival time must be finite and "
                f"non-negative, got {self.time}"
            )
        object.__setattr__(self, "event", bool(self.event))
        object.__setattr__(self, "clinical", MappingProxyType(dict(self.clinical)))

    def annotation(self, name: str) -> ClinicalValue:
        return self.clinical.get(name, _MISSING)

    def censored_at(self, max_time: float) -> "Sample":
        """Return this sample right-censored at ``max_time``."""
        if self.time <= max_time:
            return self
        return Sample(self.identifier, float(max_time), False, self.clinical)


@dataclass(frozen=True)
class Subgroup:
    """A named partition criterion: an annotation and one or more categories."""

    annotation: str
    categories: Tuple[str, ...]

    @classmethod
    def full_cohort(cls) -> "Subgroup":
        return cls(FULL_COHORT, (FULL_COHORT,))

    @property
    def is_full_cohort(self) -> bool:
        return self.annotation == FULL_COHORT

    @property
    def label(self) -> str:
        return "+".join(self.categories)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.annotation, self.label)


@dataclass(frozen=True, eq=False)
class Cohort:
    """Samples plus a genes x samples expression matrix for one cancer type.

    The expression frame's columns are the sample identifiers in the same
    order as ``samples``; gene identifiers (the index) are unique.
    """

    cancer: str
    samples: Tuple[Sample, ...]
    expression: pd.DataFrame
    source: str = ""
    subtype: str = ""

    def __post_init__(self):
        samples = tuple(self.samples)
        object.__setattr__(self, "samples", samples)
        ids = [s.identifier for s in samples]
        if len(set(ids)) != len(ids):
            raise ValueError(f"{self.cancer}: sample identifiers must be unique")
        if list(self.expression.columns) != ids:
            raise ValueError(
                f"{self.cancer}: expression columns do not match sample identifiers"
            )
        if not self.expression.index.is_unique:
            raise ValueError(f"{self.cancer}: gene identifiers must be unique")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def sample_ids(self) -> List[str]:
        return [s.identifier for s in self.samples]

    @property
    def genes(self) -> List[str]:
        return [str(g) for g in self.expression.index]

    @property
    def n_samples(self) -> int:
        return len(self.samples)

    @property
    def n_genes(self) -> int:
        return len(self.expression.index)

    @property
    def annotations(self) -> List[str]:
        """Sorted names of all clinical annotations present on any sample."""
        names = set()
        for sample in self.samples:
            names.update(sample.clinical.keys())
        return sorted(names)

    def has_gene(self, gene: str) -> bool:
        return gene in self.expression.index

    def expression_for(self, gene: str) -> pd.Series:
        """Expression vector of one gene, indexed by sample id."""
        if gene not in self.expression.index:
            raise KeyError(f"Gene {gene!r} not present in {self.cancer} cohort")
        return self.expression.loc[gene].astype(float).copy()

    def outcomes(self) -> pd.DataFrame:
        """Survival outcomes indexed by sample id (columns ``time``, ``event``)."""
        return pd.DataFrame(
            {
                "time": [s.time for s in self.samples],
                "event": [s.event for s in self.samples],
            },
            index=pd.Index(self.sample_ids, name="sample"),
        )

    def annotation_values(self, name: str) -> Dict[str, ClinicalValue]:
        return {s.identifier: s.annotation(name) for s in self.samples}

    # ------------------------------------------------------------------
    # Derivations
    # ------------------------------------------------------------------

    def with_expression(self, expression: pd.DataFrame) -> "Cohort":
        """New cohort with the same samples and a replacement matrix."""
        return Cohort(
            cancer=self.cancer,
            samples=self.samples,
            expression=expression,
            source=self.source,
            subtype=self.subtype,
        )

    def with_samples(
        self, samples: Sequence[Sample], expression: Optional[pd.DataFrame] = None
    ) -> "Cohort":
        """New cohort with replacement samples (and optionally a new matrix)."""
        if expression is None:
            expression = self.expression[[s.identifier for s in samples]]
        return Cohort(
            cancer=self.cancer,
            samples=tuple(samples),
            expression=expression,
            source=self.source,
            subtype=self.subtype,
        )

    def __repr__(self) -> str:
        return (
            f"Cohort({self.cancer}, samples={self.n_samples}, genes={self.n_genes}, "
            f"source={self.source or '-'}, subtype={self.subtype or '-'})"
        )


def build_samples(
    outcomes: pd.DataFrame,
    clinical: Optional[pd.DataFrame] = None,
    exclude_columns: Iterable[str] = (),
) -> List[Sample]:
    """Build ``Sample`` objects from an outcomes frame and a raw clinical frame.

    Args:
        outcomes: Frame indexed by sample id with ``time`` and ``event``
        clinical: Optional raw clinical frame indexed by sample id
        exclude_columns: Clinical columns not carried as annotations

    Returns:
        Samples in the order of ``outcomes.index``
    """
    excluded = set(exclude_columns)
    columns: List[str] = []
    if clinical is not None:
        columns = [c for c in clinical.columns if c not in excluded]

    samples = []
    for sample_id, row in outcomes.iterrows():
        annotations: Dict[str, ClinicalValue] = {}
        if clinical is not None and sample_id in clinical.index:
            raw = clinical.loc[sample_id]
            for column in columns:
                value = ClinicalValue.parse(raw[column])
                if not value.is_missing:
                    annotations[str(column)] = value
        samples.append(
            Sample(
                identifier=str(sample_id),
                time=float(row["time"]),
                event=bool(row["event"]),
                clinical=annotations,
            )
        )
    return samples
