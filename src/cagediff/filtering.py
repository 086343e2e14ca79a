# src/cagediff/filtering.py
from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .models import CountMatrix

LOGGER = logging.getLogger(__name__)


def cpm(counts: CountMatrix, lib_sizes: Optional[np.ndarray] = None) -> np.ndarray:
    """Counts per million; raw column sums unless lib_sizes is given."""
    lib = counts.library_sizes() if lib_sizes is None else np.asarray(lib_sizes, dtype=np.float64)
    if lib.shape != (counts.n_samples,):
        raise ValueError("lib_sizes must have one entry per sample")
    if np.any(lib <= 0):
        empty = [s for s, l in zip(counts.samples.ids, lib) if l <= 0]
        raise ValueError(f"Samples with zero library size cannot be normalised: {empty}")
    return counts.counts / lib[None, :] * 1e6


def expression_mask(
    counts: CountMatrix,
    *,
    cpm_low: float = 1.0,
    cpm_high: float = 3.0,
    min_samples_low: int = 3,
    min_samples_high: int = 1,
) -> np.ndarray:
    """
    Row predicate: CPM >= cpm_low in at least min_samples_low samples AND
    CPM >= cpm_high in at least min_samples_high samples.

    Each row is judged on its own values only.
    """
    c = cpm(counts)
    n_low = (c >= cpm_low).sum(axis=1)
    n_high = (c >= cpm_high).sum(axis=1)
    return (n_low >= int(min_samples_low)) & (n_high >= int(min_samples_high))


def filter_by_cpm(
    counts: CountMatrix,
    *,
    cpm_low: float = 1.0,
    cpm_high: float = 3.0,
    min_samples_low: int = 3,
    min_samples_high: int = 1,
) -> CountMatrix:
    keep = expression_mask(
        counts,
        cpm_low=cpm_low,
        cpm_high=cpm_high,
        min_samples_low=min_samples_low,
        min_samples_high=min_samples_high,
    )
    if min_samples_low > counts.n_samples or min_samples_high > counts.n_samples:
        LOGGER.warning(
            "Filter asks for more samples (%d / %d) than available (%d): no feature can pass.",
            min_samples_low, min_samples_high, counts.n_samples,
        )
    LOGGER.info(
        "CPM filter (>=%g in >=%d, >=%g in >=%d): kept %d / %d features",
        cpm_low, min_samples_low, cpm_high, min_samples_high, int(keep.sum()), counts.n_features,
    )
    return counts.subset(keep)

