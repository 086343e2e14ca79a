# src/cagediff/ebayes.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.special import digamma, polygamma

LOGGER = logging.getLogger(__name__)

# below this many usable features a covariate trend is not attempted
MIN_FEATURES_FOR_TREND = 20


# -----------------------------------------------------------------------------
# Smoothing
# -----------------------------------------------------------------------------
def choose_span(n: int, small_n: int = 50, min_span: float = 0.3, power: float = 1 / 3) -> float:
    """Smoothing span that shrinks with the number of features."""
    if n <= 0:
        return 1.0
    return float(min(min_span + (1 - min_span) * (small_n / n) ** power, 1.0))


def weighted_moving_average(
    values: np.ndarray,
    covariate: np.ndarray,
    *,
    span: float,
    weights: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Moving average of ``values`` rows along ``covariate``.

    values may be (n,) or (n, k); each output row is the weighted mean of the
    ``ceil(span * n)`` rows nearest in covariate rank. Output is returned in
    the input row order.
    """
    v = np.asarray(values, dtype=np.float64)
    flat = v.ndim == 1
    if flat:
        v = v[:, None]
    n = v.shape[0]
    if n == 0:
        return v[:, 0] if flat else v

    w = np.ones(n) if weights is None else np.asarray(weights, dtype=np.float64)
    width = int(min(n, max(1, np.ceil(span * n))))

    order = np.argsort(np.asarray(covariate, dtype=np.float64), kind="mergesort")
    vs, ws = v[order], w[order]

    cs = np.vstack([np.zeros((1, v.shape[1])), np.cumsum(vs * ws[:, None], axis=0)])
    cw = np.concatenate([[0.0], np.cumsum(ws)])

    pos = np.arange(n)
    lo = np.clip(pos - (width - 1) // 2, 0, n - width)
    hi = lo + width
    denom = cw[hi] - cw[lo]
    denom = np.where(denom > 0, denom, np.nan)
    sm = (cs[hi] - cs[lo]) / denom[:, None]
    # windows with zero total weight fall back to the unweighted mean
    if np.any(~np.isfinite(denom)):
        cs0 = np.vstack([np.zeros((1, v.shape[1])), np.cumsum(vs, axis=0)])
        bad = ~np.isfinite(denom)
        sm[bad] = (cs0[hi[bad]] - cs0[lo[bad]]) / width

    out = np.empty_like(sm)
    out[order] = sm
    return out[:, 0] if flat else out


def huber_weights(u: np.ndarray, k: float = 1.345) -> np.ndarray:
    """Huber psi(u)/u weights."""
    u = np.asarray(u, dtype=np.float64)
    out = np.ones_like(u)
    big = np.abs(u) > k
    out[big] = k / np.abs(u[big])
    out[~np.isfinite(out)] = 1.0
    return out


# -----------------------------------------------------------------------------
# Scaled F-distribution fit (variance prior)
# -----------------------------------------------------------------------------
def trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y > 0 by Newton iteration."""
    x = float(x)
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = float(polygamma(1, y))
        dif = tri * (1.0 - tri / x) / float(polygamma(2, y))
        y = y + dif
        if -dif / y < 1e-8:
            break
    return float(y)


@dataclass(frozen=True)
class SqueezedVariances:
    var_prior: np.ndarray
    df_prior: float
    var_post: np.ndarray


def fit_f_dist(
    x: np.ndarray,
    df1,
    *,
    covariate: Optional[np.ndarray] = None,
    robust: bool = False,
    winsor_tail_p: Tuple[float, float] = (0.05, 0.1),
) -> Tuple[np.ndarray, float]:
    """
    Moment estimates of a scaled F prior for variances ``x`` with ``df1``
    residual degrees of freedom.

    Returns (scale per feature, prior df). With ``robust`` the log-variance
    residuals are winsorised at the given lower / upper tail proportions
    before the moments are taken, so a handful of extreme features cannot
    deflate the prior df.
    """
    x = np.asarray(x, dtype=np.float64).copy()
    n_all = x.shape[0]
    df1 = np.broadcast_to(np.asarray(df1, dtype=np.float64), (n_all,)).copy()

    ok = np.isfinite(x) & np.isfinite(df1) & (df1 > 1e-15)
    n = int(ok.sum())
    if n == 0:
        return np.full(n_all, np.nan), float("inf")
    if n == 1:
        return np.full(n_all, float(x[ok][0])), 0.0

    x = np.where(ok, np.maximum(x, 0.0), np.nan)
    m = float(np.median(x[ok]))
    if m == 0:
        LOGGER.warning("More than half of the variances are exactly zero: using ad hoc offset.")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    with np.errstate(divide="ignore", invalid="ignore"):
        e = np.log(x) - digamma(df1 / 2.0) + np.log(df1 / 2.0)
    e_ok = e[ok]
    if robust and n >= 3:
        lo, hi = np.quantile(e_ok, [winsor_tail_p[0], 1.0 - winsor_tail_p[1]])
        e_ok = np.clip(e_ok, lo, hi)

    if covariate is not None and n >= MIN_FEATURES_FOR_TREND:
        cov = np.asarray(covariate, dtype=np.float64)
        emean_ok = weighted_moving_average(e_ok, cov[ok], span=choose_span(n))
        emean = np.interp(cov, np.sort(cov[ok]), emean_ok[np.argsort(cov[ok], kind="mergesort")])
        emean[ok] = emean_ok
    else:
        emean_ok = np.full(n, float(np.mean(e_ok)))
        emean = np.full(n_all, float(np.mean(e_ok)))

    evar = float(np.sum((e_ok - emean_ok) ** 2) / (n - 1))
    evar = evar - float(np.mean(polygamma(1, df1[ok] / 2.0)))

    if evar > 0:
        df2 = 2.0 * trigamma_inverse(evar)
        scale = np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = float("inf")
        scale = np.exp(emean)
    return scale, float(df2)


def squeeze_var(
    var: np.ndarray,
    df,
    *,
    covariate: Optional[np.ndarray] = None,
    robust: bool = False,
    winsor_tail_p: Tuple[float, float] = (0.05, 0.1),
) -> SqueezedVariances:
    """Empirical-Bayes posterior means of per-feature variances."""
    var = np.asarray(var, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), var.shape)

    scale, df_prior = fit_f_dist(
        var, df, covariate=covariate, robust=robust, winsor_tail_p=winsor_tail_p
    )
    if np.isinf(df_prior):
        post = np.array(scale, dtype=np.float64)
    else:
        post = (df * var + df_prior * scale) / (df + df_prior)
    return SqueezedVariances(var_prior=scale, df_prior=df_prior, var_post=post)
