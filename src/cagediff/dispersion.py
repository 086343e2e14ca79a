# src/cagediff/dispersion.py
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from .ebayes import choose_span, huber_weights, squeeze_var, weighted_moving_average
from .errors import InsufficientResidualDFError
from .glm_utils import apl_grid, fit_nb_glm_chunked
from .models import CountMatrix, DesignMatrix, DispersionModel
from .normalization import ave_log_cpm

LOGGER = logging.getLogger(__name__)

MIN_RESIDUAL_DF = 2
# prior weights above this are treated as "use the trend"
_MAX_PRIOR_N = 1e6


def maximize_interpolant(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """
    Location of the maximum of each row of ``y`` sampled on the uniform grid
    ``x``, refined by a parabola through the best point and its neighbours.
    Maxima on the grid boundary are returned as the boundary value.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.atleast_2d(np.asarray(y, dtype=np.float64))
    k = x.shape[0]
    h = x[1] - x[0]

    i = np.argmax(y, axis=1)
    out = x[i].astype(np.float64)

    rows = np.flatnonzero((i > 0) & (i < k - 1))
    if rows.size:
        ii = i[rows]
        f0, f1, f2 = y[rows, ii - 1], y[rows, ii], y[rows, ii + 1]
        denom = f0 - 2.0 * f1 + f2
        with np.errstate(divide="ignore", invalid="ignore"):
            shift = np.where(denom < 0, 0.5 * (f0 - f2) / denom, 0.0)
        out[rows] = x[ii] + h * np.clip(shift, -0.5, 0.5)
    return out


def _to_dispersion(grid_pts: np.ndarray) -> np.ndarray:
    return 0.1 * 2.0 ** np.asarray(grid_pts, dtype=np.float64)


def estimate_dispersion(
    counts: CountMatrix,
    design: DesignMatrix,
    lib_sizes: np.ndarray,
    *,
    grid_length: int = 21,
    grid_range: Tuple[float, float] = (-10.0, 10.0),
    robust: bool = True,
    span: Optional[float] = None,
    prior_count: float = 2.0,
    max_iter: int = 50,
    tol: float = 1e-6,
    n_jobs: int = 1,
) -> DispersionModel:
    """
    Common, trended and empirical-Bayes tagwise NB dispersions.

    1. Cox-Reid adjusted profile likelihood l_i(phi) of every feature on a
       log2 grid phi = 0.1 * 2^t.
    2. Common dispersion maximises sum_i l_i.
    3. The trend is a moving average m_i(phi) of the likelihood curves of
       neighbouring features in average log-CPM. In robust mode features
       whose own maximiser sits far from the trend get Huber weights and the
       trend is refitted.
    4. Prior df comes from squeezing the residual deviances of a fit at the
       trended dispersion; tagwise dispersion maximises
       l_i + (prior_df / residual_df) * m_i.
    """
    counts.samples.require_order(design.samples.ids, stage="DispersionEstimator")
    if design.df_residual < MIN_RESIDUAL_DF:
        raise InsufficientResidualDFError(len(design.samples), design.n_coefs, MIN_RESIDUAL_DF)

    lib = np.asarray(lib_sizes, dtype=np.float64)
    if lib.shape != (counts.n_samples,) or np.any(lib <= 0):
        raise ValueError("lib_sizes must be positive with one entry per sample")

    y = counts.counts.astype(np.float64)
    X = np.array(design.matrix)
    offset = np.log(lib)
    n_feat = counts.n_features
    df_res = design.df_residual

    if n_feat == 0:
        LOGGER.warning("No features left for dispersion estimation.")
        empty = np.zeros(0)
        return DispersionModel(counts.feature_ids, float("nan"), empty, empty, empty,
                               float("inf"), float("inf"), empty, 1.0)

    grid_pts = np.linspace(grid_range[0], grid_range[1], int(grid_length))
    grid = _to_dispersion(grid_pts)

    # data-parallel over features
    l0 = apl_grid(y, X, offset, grid, max_iter=max_iter, tol=tol, n_jobs=n_jobs)

    common = float(_to_dispersion(maximize_interpolant(grid_pts, l0.sum(axis=0)))[0])
    ave = ave_log_cpm(y, lib, prior_count=prior_count)

    # barrier: the trend needs every feature's likelihood curve
    span = choose_span(n_feat) if span is None else float(span)
    weights = np.ones(n_feat)
    m0 = weighted_moving_average(l0, ave, span=span)

    if robust and n_feat >= 3:
        resid = maximize_interpolant(grid_pts, l0) - maximize_interpolant(grid_pts, m0)
        center = np.median(resid)
        mad = 1.4826 * np.median(np.abs(resid - center))
        if mad > 0:
            weights = huber_weights((resid - center) / mad)
            m0 = weighted_moving_average(l0, ave, span=span, weights=weights)
            LOGGER.info(
                "Robust dispersion trend: %d feature(s) down-weighted as outliers",
                int((weights < 1).sum()),
            )

    trended = _to_dispersion(maximize_interpolant(grid_pts, m0))

    fit = fit_nb_glm_chunked(y, X, offset, trended, max_iter=max_iter, tol=tol, n_jobs=n_jobs)
    s2 = fit.deviance / df_res
    sq = squeeze_var(s2, df_res, covariate=ave, robust=robust)
    prior_df = sq.df_prior
    prior_n = prior_df / df_res

    if np.isfinite(prior_n) and prior_n < _MAX_PRIOR_N:
        tagwise = _to_dispersion(maximize_interpolant(grid_pts, l0 + prior_n * m0))
    else:
        tagwise = trended.copy()

    LOGGER.info(
        "Dispersion: common=%.4g, trended range=[%.4g, %.4g], prior df=%.3g, span=%.3f",
        common, float(trended.min()), float(trended.max()), prior_df, span,
    )
    return DispersionModel(
        feature_ids=counts.feature_ids,
        common=common,
        trended=trended,
        tagwise=tagwise,
        ave_log_cpm=ave,
        prior_df=float(prior_df),
        prior_n=float(prior_n),
        robust_weights=weights,
        span=span,
    )
