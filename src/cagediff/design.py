# src/cagediff/design.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from .models import DesignMatrix, SampleSheet

LOGGER = logging.getLogger(__name__)

BATCH_PREFIX = "batch_"


def build_design(
    samples: SampleSheet,
    *,
    use_batch: bool = True,
    group_order: Optional[Sequence[str]] = None,
) -> DesignMatrix:
    """
    Cell-means design: one indicator column per group, plus treatment-coded
    batch columns (first batch level is the reference).

    With group means as coefficients every group comparison is a contrast
    whose weights sum to zero, e.g. {"B": 1, "A": -1}.

    Raises RankDeficientDesignError (from DesignMatrix) when batch is fully
    confounded with group.
    """
    groups = samples.group_levels if group_order is None else [str(g) for g in group_order]
    unknown = sorted(set(samples.groups) - set(groups))
    if unknown:
        raise ValueError(f"group_order is missing group(s) present in the sample sheet: {unknown}")
    groups = [g for g in groups if g in set(samples.groups)]

    cols = []
    names = []
    g_arr = np.asarray(samples.groups, dtype=object)
    for g in groups:
        cols.append((g_arr == g).astype(np.float64))
        names.append(g)

    batch_levels = samples.batch_levels
    if use_batch and len(batch_levels) > 1:
        b_arr = np.asarray(samples.batches, dtype=object)
        for b in batch_levels[1:]:
            cols.append((b_arr == b).astype(np.float64))
            names.append(f"{BATCH_PREFIX}{b}")
    elif use_batch:
        LOGGER.info("Single batch level '%s': no batch columns in design.", batch_levels[0])

    design = DesignMatrix(np.column_stack(cols), tuple(names), samples)
    LOGGER.info(
        "Design: %d samples x %d coefficients (%s); residual df = %d",
        len(samples), design.n_coefs, ", ".join(design.coef_names), design.df_residual,
    )
    return design


def group_columns(design: DesignMatrix) -> list[int]:
    """Indices of the group (non-batch) coefficients."""
    return [i for i, n in enumerate(design.coef_names) if not n.startswith(BATCH_PREFIX)]
