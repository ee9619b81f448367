"""Gene signature scores as pseudo-genes.

A signature is scored per sample and appended to the expression matrix
under the signature's name, so the cutoff search treats it like any
other gene.
"""

import logging
from typing import Literal, Sequence

import numpy as np
import pandas as pd
from scipy.stats import zscore

from oncosurv.cohort.model import Cohort
from oncosurv.errors import EmptyResultError

logger = logging.getLogger(__name__)

SignatureMethod = Literal["mean", "zscore"]


def signature_score(
    cohort: Cohort,
    name: str,
    genes: Sequence[str],
    method: SignatureMethod = "mean",
) -> Cohort:
    """Append a signature score row to the cohort's expression matrix.

    Args:
        cohort: Source cohort
        name: Row name for the score; must not clash with a gene
        genes: Member genes; members absent from the cohort are ignored
        method: ``"mean"`` averages ``log2(x + 1)`` over members,
            ``"zscore"`` averages per-gene z-scores across samples

    Returns:
        New cohort with the extra row
    """
    if cohort.has_gene(name):
        raise ValueError(f"Signature name {name!r} clashes with a gene in {cohort.cancer}")

    present = [g for g in dict.fromkeys(genes) if cohort.has_gene(g)]
    missing = [g for g in genes if not cohort.has_gene(g)]
    if missing:
        logger.warning(
            "%s: signature %s is missing %d of %d genes: %s",
            cohort.cancer, name, len(missing), len(genes), ", ".join(missing[:10]),
        )
    if not present:
        raise EmptyResultError(f"No genes of signature {name!r} found in {cohort.cancer}")

    values = cohort.expression.loc[present].astype(float)
    if method == "mean":
        if (values.to_numpy() <= -1).any():
            raise ValueError(f"Signature {name!r}: log2(x + 1) undefined for values <= -1")
        score = np.log2(values + 1.0).mean(axis=0, skipna=True)
    elif method == "zscore":
        scaled = zscore(values.to_numpy(), axis=1, nan_policy="omit")
        # Constant genes yield NaN rows; they carry no information.
        score = pd.DataFrame(scaled, index=values.index, columns=values.columns).mean(
            axis=0, skipna=True
        )
    else:
        raise ValueError(f"Unknown signature method: {method!r}")

    row = pd.DataFrame([score.to_numpy()], index=[name], columns=cohort.expression.columns)
    return cohort.with_expression(pd.concat([cohort.expression, row]))
