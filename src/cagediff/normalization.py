# src/cagediff/normalization.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from .models import CountMatrix

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# TMM scale factors
# -----------------------------------------------------------------------------
def _upper_quartile_fraction(counts: np.ndarray, lib: np.ndarray) -> np.ndarray:
    return np.quantile(counts, 0.75, axis=0) / lib


def choose_reference_sample(counts: np.ndarray, lib: np.ndarray) -> int:
    """
    Reference = sample whose upper-quartile fraction is closest to the
    geometric mean of all upper-quartile fractions.
    """
    f75 = _upper_quartile_fraction(counts, lib)
    if np.median(f75) < 1e-20:
        # mostly-zero libraries: fall back to the deepest sqrt-count profile
        return int(np.argmax(np.sqrt(counts).sum(axis=0)))
    pos = f75 > 0
    center = np.exp(np.mean(np.log(f75[pos])))
    return int(np.argmin(np.abs(f75 - center)))


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    *,
    logratio_trim: float,
    sum_trim: float,
    do_weighting: bool,
    a_cutoff: float,
) -> float:
    obs = obs.astype(np.float64)
    ref = ref.astype(np.float64)

    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2.0
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    r_l = rankdata(log_r, method="average")
    r_s = rankdata(abs_e, method="average")
    keep = (r_l >= lo_l) & (r_l <= hi_l) & (r_s >= lo_s) & (r_s <= hi_s)
    if not np.any(keep):
        return 1.0

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def calc_norm_factors(
    counts: CountMatrix,
    *,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
    ref_column: Optional[int] = None,
) -> np.ndarray:
    """
    Trimmed mean of M-values scale factors, one per sample.

    For each sample, log2 CPM ratios against the reference are computed over
    features expressed in both, ``logratio_trim`` of the ratios are trimmed
    from each end, ``sum_trim`` of the average abundances from each end, and
    the remaining ratios are averaged with inverse-variance weights.

    Factors are rescaled so that sum(log2(factors)) == 0.
    """
    if not (0 <= logratio_trim < 0.5 and 0 <= sum_trim < 0.5):
        raise ValueError("trim fractions must lie in [0, 0.5)")

    x = counts.counts.astype(np.float64)
    lib = counts.library_sizes()
    if np.any(lib <= 0):
        empty = [s for s, l in zip(counts.samples.ids, lib) if l <= 0]
        raise ValueError(f"Samples with zero library size cannot be normalised: {empty}")

    # rows that are zero everywhere carry no information
    x = x[(x > 0).any(axis=1)]
    if x.shape[0] == 0:
        return np.ones(counts.n_samples)

    ref = choose_reference_sample(x, lib) if ref_column is None else int(ref_column)
    if not 0 <= ref < counts.n_samples:
        raise ValueError(f"ref_column {ref} out of range")

    f = np.array(
        [
            _tmm_factor(
                x[:, i], x[:, ref], lib[i], lib[ref],
                logratio_trim=logratio_trim,
                sum_trim=sum_trim,
                do_weighting=do_weighting,
                a_cutoff=a_cutoff,
            )
            for i in range(counts.n_samples)
        ]
    )
    f = f / np.exp(np.mean(np.log(f)))

    LOGGER.info(
        "TMM factors (reference %s): %s",
        counts.samples.ids[ref],
        ", ".join(f"{s}={v:.3f}" for s, v in zip(counts.samples.ids, f)),
    )
    return f


def effective_library_sizes(counts: CountMatrix, factors: np.ndarray) -> np.ndarray:
    factors = np.asarray(factors, dtype=np.float64)
    if factors.shape != (counts.n_samples,):
        raise ValueError("one normalisation factor per sample is required")
    return counts.library_sizes() * factors


# -----------------------------------------------------------------------------
# log-CPM views
# -----------------------------------------------------------------------------
def log_cpm(
    counts: CountMatrix,
    lib_sizes: np.ndarray,
    *,
    prior_count: float = 2.0,
) -> pd.DataFrame:
    """
    log2 counts per million with a library-size scaled prior count.

    The prior added to a sample is prior_count * lib / mean(lib) and the
    library is enlarged by twice that amount.
    """
    lib = np.asarray(lib_sizes, dtype=np.float64)
    if lib.shape != (counts.n_samples,):
        raise ValueError("lib_sizes must have one entry per sample")
    prior = prior_count * lib / lib.mean()
    lib_adj = lib + 2.0 * prior
    values = np.log2((counts.counts + prior[None, :]) / lib_adj[None, :] * 1e6)
    return pd.DataFrame(
        values,
        index=counts.feature_ids,
        columns=pd.Index(counts.samples.ids, name="sample_id"),
    )


def ave_log_cpm(counts: np.ndarray, lib_sizes: np.ndarray, *, prior_count: float = 2.0) -> np.ndarray:
    """
    Average log2 CPM per feature: log2 of the pooled (prior-augmented)
    count rate, i.e. the intercept-only Poisson fit on the CPM scale.
    """
    counts = np.asarray(counts, dtype=np.float64)
    lib = np.asarray(lib_sizes, dtype=np.float64)
    prior = prior_count * lib / lib.mean()
    lib_adj = lib + 2.0 * prior
    rate = (counts + prior[None, :]).sum(axis=1) / lib_adj.sum()
    return np.log2(rate * 1e6)


# -----------------------------------------------------------------------------
# Batch-adjusted view (reporting only)
# -----------------------------------------------------------------------------
def _contr_sum(n: int) -> np.ndarray:
    if n < 2:
        return np.zeros((n, 0), dtype=np.float64)
    z = np.zeros((n, n - 1), dtype=np.float64)
    z[: n - 1, :] = np.eye(n - 1)
    z[n - 1, :] = -1.0
    return z


def remove_batch_effect(
    log_expr: pd.DataFrame,
    batch: Sequence[str],
    design: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    """
    Subtract fitted batch effects from a log-expression matrix.

    Batch is coded sum-to-zero and fitted jointly with ``design`` (the
    biological part of the design, e.g. group indicators), so group
    differences and residual variation are left untouched. The result is
    for inspection only and must not be fed back into model fitting.
    """
    y = log_expr.to_numpy(dtype=np.float64)
    n = y.shape[1]
    batch = pd.Categorical([str(b) for b in batch], categories=list(dict.fromkeys(str(b) for b in batch)))
    if len(batch) != n:
        raise ValueError("batch must have one entry per sample column")

    X_batch = _contr_sum(len(batch.categories))[batch.codes]
    if X_batch.shape[1] == 0:
        return log_expr.copy()

    X_bio = np.ones((n, 1)) if design is None else np.asarray(design, dtype=np.float64)
    if X_bio.shape[0] != n:
        raise ValueError("design must have one row per sample column")

    X = np.column_stack([X_bio, X_batch])
    beta, *_ = np.linalg.lstsq(X, y.T, rcond=None)
    beta_batch = beta[X_bio.shape[1]:, :]
    adjusted = y - (X_batch @ beta_batch).T
    return pd.DataFrame(adjusted, index=log_expr.index, columns=log_expr.columns)
