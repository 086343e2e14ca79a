# src/cagediff/contrasts.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .design import group_columns
from .errors import UnknownCoefficientError
from .models import Contrast, DEResult, DesignMatrix, FittedModel

LOGGER = logging.getLogger(__name__)

CONTRAST_SEP = ".vs."
REST = "rest"
DE_COLUMNS = ["logFC", "logCPM", "SE", "PValue", "FDR", "significant"]


# -----------------------------------------------------------------------------
# Building contrasts
# -----------------------------------------------------------------------------
def _split_contrast(spec: str) -> tuple[str, str]:
    s = str(spec).strip()
    if CONTRAST_SEP not in s:
        raise ValueError(f"Invalid contrast spec {s!r}. Use 'B.vs.A' or 'B.vs.rest'.")
    a, b = (x.strip() for x in s.split(CONTRAST_SEP, 1))
    if not a or not b:
        raise ValueError(f"Invalid contrast spec {s!r}. Use 'B.vs.A' or 'B.vs.rest'.")
    if a == b:
        raise ValueError(f"Invalid contrast spec {s!r}: both sides name the same group.")
    return a, b


def group_vs_rest(group: str, groups: Sequence[str]) -> Contrast:
    """Group mean against the unweighted mean of all other groups."""
    others = [g for g in groups if g != group]
    if not others:
        raise ValueError(f"'{group}.vs.rest' needs at least one other group")
    weights = {group: 1.0}
    weights.update({g: -1.0 / len(others) for g in others})
    return Contrast(f"{group}{CONTRAST_SEP}{REST}", weights)


def parse_contrast(spec: str, design: DesignMatrix) -> Contrast:
    """
    'B.vs.A' -> B - A ; 'B.vs.rest' -> B - mean(other groups).

    Names are resolved against the design coefficients, so a typo raises
    UnknownCoefficientError instead of silently producing a zero contrast.
    """
    a, b = _split_contrast(spec)
    if b == REST:
        groups = [design.coef_names[i] for i in group_columns(design)]
        if a not in groups:
            raise UnknownCoefficientError(spec, [a], groups)
        contrast = group_vs_rest(a, groups)
    else:
        contrast = Contrast(f"{a}{CONTRAST_SEP}{b}", {a: 1.0, b: -1.0})
    contrast.vector(design)
    return contrast


def pairwise_contrasts(groups: Sequence[str]) -> List[Contrast]:
    """Every later group against every earlier one ('B.vs.A', 'C.vs.A', 'C.vs.B', ...)."""
    lv = [str(g) for g in groups]
    return [
        Contrast(f"{lv[j]}{CONTRAST_SEP}{lv[i]}", {lv[j]: 1.0, lv[i]: -1.0})
        for i in range(len(lv))
        for j in range(i + 1, len(lv))
    ]


def group_vs_rest_contrasts(groups: Sequence[str]) -> List[Contrast]:
    lv = [str(g) for g in groups]
    return [group_vs_rest(g, lv) for g in lv]


def average_contrast(name: str, contrasts: Sequence[Contrast]) -> Contrast:
    """Arithmetic mean of several contrasts (e.g. each treated group vs control)."""
    if not contrasts:
        raise ValueError("average_contrast needs at least one contrast")
    k = float(len(contrasts))
    weights: Dict[str, float] = {}
    for c in contrasts:
        for coef, w in c.weights.items():
            weights[coef] = weights.get(coef, 0.0) + w / k
    return Contrast(name, weights)


# -----------------------------------------------------------------------------
# TREAT test
# -----------------------------------------------------------------------------
def treat_pvalues(estimate: np.ndarray, se: np.ndarray, df, threshold: float) -> np.ndarray:
    """
    Two-sided p-values for H0: |effect| <= threshold.

    p = P(T > (|b| - tau) / se) + P(T > (|b| + tau) / se); with tau = 0 this
    is the usual two-sided t-test. Infinite df uses the normal distribution.
    """
    b = np.abs(np.asarray(estimate, dtype=np.float64))
    se = np.asarray(se, dtype=np.float64)
    tau = float(threshold)
    if tau < 0:
        raise ValueError("threshold must be non-negative")

    right = (b - tau) / se
    left = (b + tau) / se
    df = float(df)
    if np.isinf(df):
        p = stats.norm.sf(right) + stats.norm.sf(left)
    else:
        p = stats.t.sf(right, df) + stats.t.sf(left, df)
    return np.minimum(p, 1.0)


def _bh(p: np.ndarray) -> np.ndarray:
    q = np.full(p.shape, np.nan)
    ok = np.isfinite(p)
    if ok.any():
        q[ok] = multipletests(p[ok], method="fdr_bh")[1]
    return q


def test_contrast(
    fit: FittedModel,
    contrast: Contrast,
    *,
    min_log_fold_change: float = 0.5,
    max_fdr: float = 0.05,
    only_significant: bool = False,
) -> DEResult:
    """
    Fold-change aware QL test of one contrast.

    logFC is reported on the log2 scale; the standard error combines the
    unscaled coefficient covariance with the squeezed QL scale, and the test
    uses residual + prior df. BH q-values are computed over the features that
    could be fitted; unavailable features keep NaN statistics and sort last.
    """
    c = contrast.vector(fit.design)

    beta = np.asarray(fit.coefficients) @ c
    var_unscaled = np.einsum("p,gpq,q->g", c, np.asarray(fit.unscaled_cov), c)
    se = np.sqrt(np.maximum(var_unscaled, 0.0) * np.asarray(fit.s2_post))

    ok = np.asarray(fit.available) & np.isfinite(beta) & np.isfinite(se) & (se > 0)
    p = np.full(beta.shape, np.nan)
    if ok.any():
        p[ok] = treat_pvalues(beta[ok], se[ok], fit.df_total, min_log_fold_change * np.log(2.0))
    q = _bh(p)

    ln2 = np.log(2.0)
    table = pd.DataFrame(
        {
            "logFC": np.where(ok, beta / ln2, np.nan),
            "logCPM": np.asarray(fit.ave_log_cpm),
            "SE": np.where(ok, se / ln2, np.nan),
            "PValue": p,
            "FDR": q,
        },
        index=fit.feature_ids,
    )
    table["significant"] = (table["FDR"] <= float(max_fdr)).to_numpy() & ok
    table = table.sort_values("PValue", kind="mergesort", na_position="last")[DE_COLUMNS]

    n_sig = int(table["significant"].sum())
    if n_sig == 0:
        LOGGER.info(
            "[%s] no features pass FDR <= %g at |logFC| > %g (%d tested); contrast is empty.",
            contrast.name, max_fdr, min_log_fold_change, int(ok.sum()),
        )
    else:
        LOGGER.info(
            "[%s] %d significant feature(s) (%d up, %d down) of %d tested",
            contrast.name, n_sig,
            int((table["significant"] & (table["logFC"] > 0)).sum()),
            int((table["significant"] & (table["logFC"] < 0)).sum()),
            int(ok.sum()),
        )

    if only_significant:
        table = table.loc[table["significant"]]
    return DEResult(
        contrast, table, float(min_log_fold_change), float(max_fdr), n_tested=int(ok.sum())
    )


def test_contrasts(
    fit: FittedModel,
    contrasts: Sequence[Contrast],
    *,
    min_log_fold_change: float = 0.5,
    max_fdr: float = 0.05,
    only_significant: bool = False,
    n_jobs: int = 1,
) -> Dict[str, DEResult]:
    """
    Test several contrasts against one fit.

    The fit is read-only, so contrasts are evaluated on a thread pool without
    locking. Results come back keyed by contrast name in input order.
    """
    names = [c.name for c in contrasts]
    dup = sorted({n for n in names if names.count(n) > 1})
    if dup:
        raise ValueError(f"Duplicate contrast names: {dup}")

    # fail on unknown coefficients before any work is scheduled
    for c in contrasts:
        c.vector(fit.design)

    def _one(c: Contrast) -> DEResult:
        return test_contrast(
            fit,
            c,
            min_log_fold_change=min_log_fold_change,
            max_fdr=max_fdr,
            only_significant=only_significant,
        )

    n_workers = int(max(1, min(n_jobs, len(contrasts))))
    if n_workers == 1:
        results = [_one(c) for c in contrasts]
    else:
        with ThreadPoolExecutor(max_workers=n_workers) as ex:
            results = list(ex.map(_one, contrasts))
    return {r.name: r for r in results}


def resolve_contrasts(specs: Optional[Sequence[str]], design: DesignMatrix) -> List[Contrast]:
    """Contrasts requested by name, or all pairwise group comparisons."""
    if specs:
        return [parse_contrast(s, design) for s in specs]
    groups = [design.coef_names[i] for i in group_columns(design)]
    return pairwise_contrasts(groups)
