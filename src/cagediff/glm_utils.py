# src/cagediff/glm_utils.py
from __future__ import annotations

import logging
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from typing import Dict, List

import numpy as np
from scipy.special import gammaln, xlogy

LOGGER = logging.getLogger(__name__)

# Poisson limit below this dispersion
_MIN_DISPERSION = 1e-8
_MU_FLOOR = 1e-10
_ETA_CAP = 50.0


# -----------------------------------------------------------------------------
# Negative binomial building blocks (vectorised over features x samples)
# -----------------------------------------------------------------------------
def per_feature(x, shape) -> np.ndarray:
    """Expand a scalar / per-feature vector / full matrix to (features, samples)."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 2:
        if x.shape != tuple(shape):
            raise ValueError(f"expected shape {tuple(shape)}, got {x.shape}")
        return x
    x = np.broadcast_to(x, (shape[0],))
    return np.repeat(x[:, None], shape[1], axis=1)


def per_sample(x, shape) -> np.ndarray:
    """Expand a scalar / per-sample vector / full matrix to (features, samples)."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 2:
        if x.shape != tuple(shape):
            raise ValueError(f"expected shape {tuple(shape)}, got {x.shape}")
        return x
    x = np.broadcast_to(x, (shape[1],))
    return np.repeat(x[None, :], shape[0], axis=0)


def nb_unit_deviance(y: np.ndarray, mu: np.ndarray, phi: np.ndarray) -> np.ndarray:
    y = np.asarray(y, dtype=np.float64)
    mu = np.maximum(np.asarray(mu, dtype=np.float64), _MU_FLOOR)
    phi = per_feature(phi, y.shape)
    pois = phi < _MIN_DISPERSION
    phi_s = np.where(pois, 1.0, phi)

    d_pois = 2.0 * (xlogy(y, y / mu) - (y - mu))
    d_nb = 2.0 * (
        xlogy(y, y / mu)
        - (y + 1.0 / phi_s) * (np.log1p(phi_s * y) - np.log1p(phi_s * mu))
    )
    return np.maximum(np.where(pois, d_pois, d_nb), 0.0)


def nb_deviance(y, mu, phi) -> np.ndarray:
    return nb_unit_deviance(y, mu, phi).sum(axis=1)


def nb_loglik(y, mu, phi) -> np.ndarray:
    """Row sums of the NB log-likelihood (Poisson where phi is ~0)."""
    y = np.asarray(y, dtype=np.float64)
    mu = np.maximum(np.asarray(mu, dtype=np.float64), _MU_FLOOR)
    phi = per_feature(phi, y.shape)
    pois = phi < _MIN_DISPERSION
    r = 1.0 / np.where(pois, 1.0, phi)

    ll_pois = xlogy(y, mu) - mu - gammaln(y + 1.0)
    ll_nb = (
        gammaln(y + r) - gammaln(r) - gammaln(y + 1.0)
        + r * (np.log(r) - np.log(r + mu))
        + xlogy(y, mu) - y * np.log(r + mu)
    )
    return np.where(pois, ll_pois, ll_nb).sum(axis=1)


def working_weights(mu: np.ndarray, phi) -> np.ndarray:
    phi = per_feature(phi, mu.shape)
    return mu / (1.0 + phi * mu)


def information_matrix(X: np.ndarray, w: np.ndarray) -> np.ndarray:
    """X' W X for every feature: (features, p, p)."""
    return np.einsum("gn,np,nq->gpq", w, X, X)


# -----------------------------------------------------------------------------
# IRLS
# -----------------------------------------------------------------------------
@dataclass
class GLMFitResult:
    coefficients: np.ndarray   # (G, p)
    fitted: np.ndarray         # (G, N)
    deviance: np.ndarray       # (G,)
    converged: np.ndarray      # (G,) bool
    n_iter: np.ndarray         # (G,) int


def _initial_coefficients(y: np.ndarray, X: np.ndarray, offset: np.ndarray) -> np.ndarray:
    z = np.log(y + 0.5) - offset
    beta, *_ = np.linalg.lstsq(X, z.T, rcond=None)
    return beta.T


def fit_nb_glm(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    dispersion,
    *,
    max_iter: int = 50,
    tol: float = 1e-6,
) -> GLMFitResult:
    """
    Fit log-link NB GLMs, one per row of y, by iteratively reweighted least
    squares.

    Rows are independent; they are iterated together only for speed, and
    each row stops updating once its relative deviance change drops below
    ``tol``. Rows still moving after ``max_iter`` iterations are reported
    with converged=False.
    """
    y = np.asarray(y, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    G = y.shape[0]
    offset = per_sample(offset, y.shape)
    phi = per_feature(dispersion, y.shape)

    beta = _initial_coefficients(y, X, offset)
    eta = np.clip(beta @ X.T + offset, -_ETA_CAP, _ETA_CAP)
    mu = np.maximum(np.exp(eta), _MU_FLOOR)
    dev = nb_deviance(y, mu, phi)

    converged = np.zeros(G, dtype=bool)
    n_iter = np.zeros(G, dtype=np.int64)
    active = np.ones(G, dtype=bool)

    for it in range(1, int(max_iter) + 1):
        idx = np.flatnonzero(active)
        if idx.size == 0:
            break

        ya, Xo, pa = y[idx], offset[idx], phi[idx]
        mua, etaa, deva = mu[idx], eta[idx], dev[idx]

        w = working_weights(mua, pa)
        z = (etaa - Xo) + (ya - mua) / mua
        XtWX = information_matrix(X, w)
        XtWz = np.einsum("gn,np,gn->gp", w, X, z)
        beta_new = np.einsum("gpq,gq->gp", np.linalg.pinv(XtWX), XtWz)

        eta_new = np.clip(beta_new @ X.T + Xo, -_ETA_CAP, _ETA_CAP)
        mu_new = np.maximum(np.exp(eta_new), _MU_FLOOR)
        dev_new = nb_deviance(ya, mu_new, pa)

        # step halving where the deviance went up or became non-finite
        bad = ~np.isfinite(dev_new) | (dev_new > deva * (1 + 1e-10) + 1e-10)
        halvings = 0
        while np.any(bad) and halvings < 10:
            beta_new[bad] = 0.5 * (beta_new[bad] + beta[idx][bad])
            eta_new[bad] = np.clip(beta_new[bad] @ X.T + Xo[bad], -_ETA_CAP, _ETA_CAP)
            mu_new[bad] = np.maximum(np.exp(eta_new[bad]), _MU_FLOOR)
            dev_new[bad] = nb_deviance(ya[bad], mu_new[bad], pa[bad])
            bad = bad & (~np.isfinite(dev_new) | (dev_new > deva * (1 + 1e-10) + 1e-10))
            halvings += 1

        rel = np.abs(dev_new - deva) / (np.abs(dev_new) + 0.1)
        done = np.isfinite(dev_new) & (rel < tol)

        beta[idx], eta[idx], mu[idx], dev[idx] = beta_new, eta_new, mu_new, dev_new
        n_iter[idx] = it
        converged[idx[done]] = True
        active[idx[done]] = False

    return GLMFitResult(
        coefficients=beta,
        fitted=mu,
        deviance=dev,
        converged=converged & np.all(np.isfinite(beta), axis=1),
        n_iter=n_iter,
    )


def adjusted_profile_loglik(y, X, offset, dispersion, *, max_iter: int = 50, tol: float = 1e-6) -> np.ndarray:
    """Cox-Reid adjusted profile log-likelihood per row at a given dispersion."""
    fit = fit_nb_glm(y, X, offset, dispersion, max_iter=max_iter, tol=tol)
    phi = per_feature(dispersion, np.shape(y))
    ll = nb_loglik(y, fit.fitted, phi)
    w = working_weights(fit.fitted, phi)
    sign, logdet = np.linalg.slogdet(information_matrix(np.asarray(X, dtype=np.float64), w))
    logdet = np.where(sign > 0, logdet, 0.0)
    return ll - 0.5 * logdet


def pearson_chisq(y: np.ndarray, mu: np.ndarray, phi) -> np.ndarray:
    mu = np.maximum(mu, _MU_FLOOR)
    var = mu * (1.0 + per_feature(phi, mu.shape) * mu)
    return ((y - mu) ** 2 / var).sum(axis=1)


def unscaled_covariance(X: np.ndarray, mu: np.ndarray, phi) -> np.ndarray:
    """(X' W X)^-1 per feature."""
    return np.linalg.pinv(information_matrix(X, working_weights(mu, phi)))


# -----------------------------------------------------------------------------
# Feature-chunked parallel execution
# -----------------------------------------------------------------------------
def feature_chunks(n_features: int, n_jobs: int, min_chunk: int = 500) -> List[np.ndarray]:
    n_jobs = int(max(1, n_jobs))
    n_chunks = max(1, min(n_jobs, int(np.ceil(n_features / float(min_chunk)))))
    return [c for c in np.array_split(np.arange(n_features), n_chunks) if c.size > 0]


def _glm_chunk_worker(payload: Dict) -> Dict:
    """Worker: fit one chunk of features (must stay importable at top level)."""
    fit = fit_nb_glm(
        payload["y"],
        payload["X"],
        payload["offset"],
        payload["dispersion"],
        max_iter=payload["max_iter"],
        tol=payload["tol"],
    )
    return {
        "coefficients": fit.coefficients,
        "fitted": fit.fitted,
        "deviance": fit.deviance,
        "converged": fit.converged,
        "n_iter": fit.n_iter,
    }


def _apl_chunk_worker(payload: Dict) -> np.ndarray:
    y, X, offset = payload["y"], payload["X"], payload["offset"]
    return np.column_stack(
        [
            adjusted_profile_loglik(y, X, offset, d, max_iter=payload["max_iter"], tol=payload["tol"])
            for d in payload["grid"]
        ]
    )


def _run_chunked(worker, payloads: List[Dict], n_jobs: int) -> list:
    if n_jobs <= 1 or len(payloads) == 1:
        return [worker(p) for p in payloads]
    ctx = mp.get_context("spawn")
    # results are collected in submission order so output is independent of n_jobs
    with ProcessPoolExecutor(max_workers=min(n_jobs, len(payloads)), mp_context=ctx) as ex:
        return list(ex.map(worker, payloads))


def fit_nb_glm_chunked(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    dispersion: np.ndarray,
    *,
    max_iter: int = 50,
    tol: float = 1e-6,
    n_jobs: int = 1,
) -> GLMFitResult:
    y = np.asarray(y, dtype=np.float64)
    if y.shape[0] == 0:
        p = np.shape(X)[1]
        return GLMFitResult(
            coefficients=np.zeros((0, p)),
            fitted=np.zeros(y.shape),
            deviance=np.zeros(0),
            converged=np.zeros(0, dtype=bool),
            n_iter=np.zeros(0, dtype=np.int64),
        )
    offset = per_sample(offset, y.shape)
    dispersion = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), (y.shape[0],))

    chunks = feature_chunks(y.shape[0], n_jobs)
    payloads = [
        {
            "y": y[c],
            "X": X,
            "offset": offset[c],
            "dispersion": np.array(dispersion[c]),
            "max_iter": max_iter,
            "tol": tol,
        }
        for c in chunks
    ]
    parts = _run_chunked(_glm_chunk_worker, payloads, n_jobs)
    return GLMFitResult(
        coefficients=np.vstack([p["coefficients"] for p in parts]),
        fitted=np.vstack([p["fitted"] for p in parts]),
        deviance=np.concatenate([p["deviance"] for p in parts]),
        converged=np.concatenate([p["converged"] for p in parts]),
        n_iter=np.concatenate([p["n_iter"] for p in parts]),
    )


def apl_grid(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    grid: np.ndarray,
    *,
    max_iter: int = 50,
    tol: float = 1e-6,
    n_jobs: int = 1,
) -> np.ndarray:
    """Adjusted profile log-likelihood, features x grid points."""
    y = np.asarray(y, dtype=np.float64)
    if y.shape[0] == 0:
        return np.zeros((0, len(grid)))
    offset = per_sample(offset, y.shape)
    chunks = feature_chunks(y.shape[0], n_jobs)
    payloads = [
        {"y": y[c], "X": X, "offset": offset[c], "grid": list(grid), "max_iter": max_iter, "tol": tol}
        for c in chunks
    ]
    return np.vstack(_run_chunked(_apl_chunk_worker, payloads, n_jobs))
