# src/cagediff/fitting.py
from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np

from .ebayes import squeeze_var
from .glm_utils import fit_nb_glm_chunked, pearson_chisq, unscaled_covariance
from .logging_utils import log_feature_failures
from .models import CountMatrix, DesignMatrix, DispersionModel, FittedModel

LOGGER = logging.getLogger(__name__)

ZERO_VARIANCE = "zero_variance"
NOT_CONVERGED = "not_converged"
NON_FINITE = "non_finite"


def _failure_reasons(
    y: np.ndarray, lib: np.ndarray, converged: np.ndarray, finite: np.ndarray
) -> List[Optional[str]]:
    # zero variance takes precedence: a profile that is flat after scaling by
    # library size carries no information on any contrast
    flat = np.ptp(y / lib[None, :], axis=1) == 0
    reasons: List[Optional[str]] = []
    for i in range(y.shape[0]):
        if flat[i]:
            reasons.append(ZERO_VARIANCE)
        elif not finite[i]:
            reasons.append(NON_FINITE)
        elif not converged[i]:
            reasons.append(NOT_CONVERGED)
        else:
            reasons.append(None)
    return reasons


def fit_ql_model(
    counts: CountMatrix,
    design: DesignMatrix,
    dispersion_model: DispersionModel,
    lib_sizes: np.ndarray,
    *,
    dispersion: str = "tagwise",
    max_iter: int = 50,
    tol: float = 1e-6,
    robust: bool = True,
    n_jobs: int = 1,
) -> FittedModel:
    """
    Quasi-likelihood NB GLM fit of every feature.

    Each feature is fitted by IRLS with log(lib_sizes) as offset and its own
    dispersion from ``dispersion_model``. The QL scale is the Pearson
    statistic over residual df, squeezed towards a trend in average log-CPM.

    Features that do not converge, produce non-finite estimates or have a
    constant profile of counts per library size are kept in the output but
    marked unavailable (coefficients NaN); they never abort the fit.
    """
    counts.samples.require_order(design.samples.ids, stage="ModelFitter")
    if not counts.feature_ids.equals(dispersion_model.feature_ids):
        raise ValueError("dispersion model and count matrix have different features")

    lib = np.asarray(lib_sizes, dtype=np.float64)
    if lib.shape != (counts.n_samples,) or np.any(lib <= 0):
        raise ValueError("lib_sizes must be positive with one entry per sample")

    y = counts.counts.astype(np.float64)
    X = np.array(design.matrix)
    df_res = design.df_residual
    phi = dispersion_model.select(dispersion)
    n_feat, n_coef = counts.n_features, design.n_coefs

    LOGGER.info(
        "Fitting QL NB GLM: %d features x %d samples, %s dispersion, n_jobs=%d",
        n_feat, counts.n_samples, dispersion, n_jobs,
    )
    fit = fit_nb_glm_chunked(y, X, np.log(lib), phi, max_iter=max_iter, tol=tol, n_jobs=n_jobs)

    if n_feat:
        cov = unscaled_covariance(X, fit.fitted, phi)
        chisq = pearson_chisq(y, fit.fitted, phi)
    else:
        cov = np.zeros((0, n_coef, n_coef))
        chisq = np.zeros(0)
    s2 = chisq / df_res if df_res > 0 else np.full(n_feat, np.nan)

    finite = (
        np.all(np.isfinite(fit.coefficients), axis=1)
        & np.all(np.isfinite(cov.reshape(n_feat, n_coef * n_coef)), axis=1)
        & np.isfinite(s2)
    )
    reasons = _failure_reasons(y, lib, fit.converged, finite)
    available = np.array([r is None for r in reasons], dtype=bool)
    log_feature_failures("ModelFitter", reasons, logger=LOGGER)

    coefficients = np.where(available[:, None], fit.coefficients, np.nan)
    cov = np.where(available[:, None, None], cov, np.nan)
    s2 = np.where(available, s2, np.nan)

    # barrier: the variance prior needs every available feature's scale
    s2_prior = np.full(n_feat, np.nan)
    s2_post = np.full(n_feat, np.nan)
    df_prior = 0.0
    if available.any():
        sq = squeeze_var(
            s2[available],
            df_res,
            covariate=dispersion_model.ave_log_cpm[available],
            robust=robust,
        )
        s2_prior[available] = sq.var_prior
        s2_post[available] = sq.var_post
        df_prior = sq.df_prior
        LOGGER.info(
            "QL scale: median raw=%.3g, median squeezed=%.3g, prior df=%.3g",
            float(np.median(s2[available])), float(np.median(sq.var_post)), df_prior,
        )
    else:
        LOGGER.warning("No feature could be fitted; every contrast will be empty.")

    return FittedModel(
        feature_ids=counts.feature_ids,
        design=design,
        coefficients=coefficients,
        fitted_values=fit.fitted,
        unscaled_cov=cov,
        deviance=fit.deviance,
        dispersion=phi,
        ave_log_cpm=dispersion_model.ave_log_cpm,
        df_residual=df_res,
        s2=s2,
        s2_prior=s2_prior,
        df_prior=float(df_prior),
        s2_post=s2_post,
        available=available,
        failure_reason=reasons,
        n_iter=fit.n_iter,
    )
