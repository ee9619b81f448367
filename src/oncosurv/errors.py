"""Exception taxonomy for survival stratification runs.

All four concrete errors are recoverable at the subgroup level: the
enumerator catches them, logs the identifying tuple and records a skip
marker. Anything else propagates and aborts the run.
"""

from typing import Optional


class OncosurvError(Exception):
    """Base class for recoverable analysis errors."""


class DataUnavailableError(OncosurvError):
    """A cohort could not be loaded from the cache or the remote hub."""

    def __init__(self, message: str, cancer: Optional[str] = None):
        super().__init__(message)
        self.cancer = cancer


class EmptyResultError(OncosurvError):
    """A filter or subset produced zero samples or zero genes."""


class InsufficientDataError(OncosurvError):
    """No cutoff satisfies the minimum group size policy."""

    def __init__(self, message: str, gene: Optional[str] = None):
        super().__init__(message)
        self.gene = gene


class DegenerateGroupError(OncosurvError):
    """A comparison group has no events, so the hazard ratio is undefined."""

    def __init__(self, message: str, group_sizes: Optional[dict] = None):
        super().__init__(message)
        self.group_sizes = dict(group_sizes or {})
