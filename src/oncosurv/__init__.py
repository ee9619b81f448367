"""Expression-based cutoff search and survival stratification for cancer cohorts.

Splits patients into high/low expression groups at the cutoff that best
separates their survival, evaluates the split with Kaplan-Meier,
log-rank and Cox statistics, and repeats this across cancers and
clinical subgroups with Benjamini-Hochberg correction over the run.
"""

__version__ = "0.1.0"
