"""Analysis policy and environment settings.

``AnalysisConfig`` holds every policy constant used by the cutoff
search, the subgroup enumeration and the batch pipeline. ``load_settings``
reads machine-level paths from the environment (and a ``.env`` file).

Usage::

    from oncosurv.config import AnalysisConfig, load_settings

    config = AnalysisConfig(transform_to_log2=True, max_survival_days=1825)
    settings = load_settings()
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional, Tuple

from dotenv import load_dotenv

GeneFilterScope = Literal["subgroup", "cohort"]

DEFAULT_CACHE_DIR = Path.home() / ".oncosurv" / "cache"
DEFAULT_XENA_HUB = "https://tcga.xenahubs.net"

# Annotation names that encode survival time or outcome. Matched
# case-insensitively against the full annotation name.
DEFAULT_OUTCOME_DENYLIST: Tuple[str, ...] = (
    r"^_?(os|dss|dfi|pfi|pfs|rfs|efs|dfs)([._]?(time|ind|unit|event|status))?$",
    r"days_to",
    r"vital_status",
    r"survival",
    r"_event",
    r"^_?event",
    r"^death",
    r"follow_?up",
    r"last_contact",
    r"time_to",
    r"^_?os_",
    r"new_tumor_event",
    r"recurrence_status",
    r"person_neoplasm_cancer_status",
)


@dataclass
class AnalysisConfig:
    """Policy constants for a survival stratification run."""

    # Low-expression gene filter
    minimum_nonzero_fraction: float = 0.9
    # "subgroup" recomputes the filter inside every subgroup;
    # "cohort" filters once on the full cohort and inherits the result.
    gene_filter_scope: GeneFilterScope = "subgroup"

    # Cutoff search
    auto_cutoff: bool = True
    transform_to_log2: bool = False
    min_group_fraction: float = 0.1
    min_group_size: int = 1

    # Outcomes
    time_column: str = "OS.time"
    event_column: str = "OS"
    max_survival_days: Optional[float] = None
    cox_penalizer: float = 0.0

    # Subgroups
    analyze_subgroups: bool = True
    include_full_cohort: bool = True
    min_subgroup_size: int = 40
    min_distinct_categories: int = 2
    max_distinct_categories: int = 10
    max_category_combination: int = 1
    outcome_denylist: Tuple[str, ...] = field(
        default_factory=lambda: DEFAULT_OUTCOME_DENYLIST
    )

    # Execution
    workers: int = 1
    save_km_data: bool = False

    def __post_init__(self):
        """Validate configuration."""
        if not 0.0 <= self.minimum_nonzero_fraction <= 1.0:
            raise ValueError("minimum_nonzero_fraction must be within [0, 1]")
        if self.gene_filter_scope not in ("subgroup", "cohort"):
            raise ValueError(
                f"gene_filter_scope must be 'subgroup' or 'cohort', "
                f"got {self.gene_filter_scope!r}"
            )
        if not 0.0 <= self.min_group_fraction < 0.5:
            raise ValueError("min_group_fraction must be within [0, 0.5)")
        if self.min_group_size < 1:
            raise ValueError("min_group_size must be at least 1")
        if self.max_survival_days is not None and self.max_survival_days <= 0:
            raise ValueError("max_survival_days must be positive")
        if self.cox_penalizer < 0:
            raise ValueError("cox_penalizer must be non-negative")
        if self.min_subgroup_size < 0:
            raise ValueError("min_subgroup_size must be non-negative")
        if not 2 <= self.min_distinct_categories < self.max_distinct_categories:
            raise ValueError(
                "distinct category bounds must satisfy 2 <= min < max"
            )
        if self.max_category_combination < 1:
            raise ValueError("max_category_combination must be at least 1")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        self.outcome_denylist = tuple(self.outcome_denylist)


@dataclass
class Settings:
    """Machine-level paths and endpoints."""

    cache_dir: Path = DEFAULT_CACHE_DIR
    xena_hub: str = DEFAULT_XENA_HUB
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Load ``.env`` and return environment-derived settings.

    Recognized variables:
        ONCOSURV_CACHE_DIR: cohort cache directory
        ONCOSURV_XENA_HUB: base URL of the Xena hub serving TCGA cohorts
        ONCOSURV_LOG_LEVEL: default log level for the CLI
    """
    load_dotenv()
    return Settings(
        cache_dir=Path(os.environ.get("ONCOSURV_CACHE_DIR", str(DEFAULT_CACHE_DIR))),
        xena_hub=os.environ.get("ONCOSURV_XENA_HUB", DEFAULT_XENA_HUB).rstrip("/"),
        log_level=os.environ.get("ONCOSURV_LOG_LEVEL", "INFO").upper(),
    )
