# tests/test_fitting.py
import numpy as np
import pandas as pd
import pytest

from cagediff.design import build_design
from cagediff.dispersion import estimate_dispersion
from cagediff.errors import RankDeficientDesignError, SampleOrderError
from cagediff.fitting import NOT_CONVERGED, ZERO_VARIANCE, fit_ql_model
from cagediff.models import CountMatrix, DesignMatrix, Sample, SampleSheet
from cagediff.normalization import calc_norm_factors, effective_library_sizes


# ----------------------------------------------------------------------
# Synthetic NB data with a known fold change
# ----------------------------------------------------------------------
def simulate(n_features=300, n_de=50, fold=4.0, phi=0.05, seed=0):
    rng = np.random.default_rng(seed)
    groups = ["A", "A", "A", "B", "B", "B"]
    samples = SampleSheet(tuple(Sample(f"S{i}", g, "L1") for i, g in enumerate(groups)))
    base = rng.gamma(2.0, 100.0, size=n_features)
    mu = np.repeat(base[:, None], 6, axis=1)
    mu[:n_de, 3:] *= fold
    r = 1.0 / phi
    y = rng.negative_binomial(r, r / (r + mu))
    return CountMatrix(y, pd.Index([f"f{i}" for i in range(n_features)]), samples)


def fit_all(counts, **kwargs):
    design = build_design(counts.samples)
    lib = effective_library_sizes(counts, calc_norm_factors(counts))
    disp = estimate_dispersion(counts, design, lib)
    return fit_ql_model(counts, design, disp, lib, **kwargs)


# ----------------------------------------------------------------------
# Design checks
# ----------------------------------------------------------------------
def test_confounded_batch_is_rank_deficient():
    samples = SampleSheet(
        (
            Sample("S0", "A", "L1"),
            Sample("S1", "A", "L1"),
            Sample("S2", "B", "L2"),
            Sample("S3", "B", "L2"),
        )
    )
    with pytest.raises(RankDeficientDesignError) as exc:
        build_design(samples)
    assert exc.value.dependent == ["batch_L2"]

    # without batch the same samples are fine
    assert build_design(samples, use_batch=False).n_coefs == 2


def test_design_with_batch_has_treatment_coded_columns():
    samples = SampleSheet(
        (
            Sample("S0", "A", "L1"),
            Sample("S1", "A", "L2"),
            Sample("S2", "B", "L1"),
            Sample("S3", "B", "L2"),
            Sample("S4", "B", "L2"),
        )
    )
    design = build_design(samples)
    assert design.coef_names == ("A", "B", "batch_L2")
    np.testing.assert_array_equal(design.matrix[:, 2], [0, 1, 0, 1, 1])
    assert design.df_residual == 2


def test_duplicate_design_column_is_rank_deficient():
    samples = SampleSheet(tuple(Sample(f"S{i}", "A", "L1") for i in range(4)))
    X = np.column_stack([np.ones(4), np.ones(4)])
    with pytest.raises(RankDeficientDesignError):
        DesignMatrix(X, ("a", "b"), samples)


# ----------------------------------------------------------------------
# QL fit
# ----------------------------------------------------------------------
def test_fit_recovers_fold_change():
    counts = simulate(seed=1)
    fit = fit_all(counts)

    lfc = fit.coefficient_frame(log2=True)
    diff = (lfc["B"] - lfc["A"]).to_numpy()
    assert np.mean(diff[:50]) == pytest.approx(2.0, abs=0.3)
    assert abs(np.mean(diff[50:])) < 0.3
    assert fit.available.all()
    assert np.all(fit.s2_post > 0)
    assert fit.df_total >= fit.df_residual


def fit_with_lib(counts, lib, **kwargs):
    design = build_design(counts.samples)
    disp = estimate_dispersion(counts, design, lib)
    return fit_ql_model(counts, design, disp, lib, **kwargs)


def test_zero_variance_feature_is_unavailable_not_fatal():
    counts = simulate(seed=2)
    y = np.array(counts.counts)
    y[0] = 20
    counts = CountMatrix(y, counts.feature_ids, counts.samples)

    # equal library sizes: a constant count profile is flat after scaling
    lib = np.full(6, counts.library_sizes().mean())
    fit = fit_with_lib(counts, lib)

    assert not fit.available[0]
    assert fit.failure_reason[0] == ZERO_VARIANCE
    assert np.all(np.isnan(fit.coefficients[0]))
    assert np.isnan(fit.s2_post[0])
    assert fit.available[1:].mean() > 0.95
    assert fit.n_unavailable >= 1


def test_equal_counts_at_unequal_depth_are_fitted():
    counts = simulate(seed=2)
    y = np.array(counts.counts)
    y[0] = 50
    counts = CountMatrix(y, counts.feature_ids, counts.samples)

    # B libraries twice as deep: the same raw count is half the abundance
    lib = np.array([1.0, 1.0, 1.0, 2.0, 2.0, 2.0]) * counts.library_sizes().mean()
    fit = fit_with_lib(counts, lib)

    assert fit.available[0]
    assert fit.failure_reason[0] is None
    lfc = fit.coefficient_frame(log2=True)
    assert lfc["B"].iloc[0] - lfc["A"].iloc[0] == pytest.approx(-1.0, abs=1e-3)


def test_non_convergence_is_reported_per_feature():
    counts = simulate(n_features=60, seed=3)
    fit = fit_all(counts, max_iter=1)
    assert NOT_CONVERGED in fit.failure_reason
    assert fit.n_unavailable == sum(r is not None for r in fit.failure_reason)


def test_fitted_model_is_read_only():
    fit = fit_all(simulate(n_features=60, seed=4))
    for arr in (fit.coefficients, fit.fitted_values, fit.s2_post, fit.unscaled_cov):
        with pytest.raises(ValueError):
            arr.flat[0] = 0.0
    with pytest.raises(AttributeError):
        fit.df_prior = 1.0


def test_fit_checks_sample_order_and_features():
    counts = simulate(n_features=40, seed=5)
    design = build_design(counts.samples)
    lib = counts.library_sizes()
    disp = estimate_dispersion(counts, design, lib)

    reordered = SampleSheet(tuple(reversed(counts.samples.samples)))
    with pytest.raises(SampleOrderError):
        fit_ql_model(counts, build_design(reordered), disp, lib)

    subset = counts.subset(np.arange(40) < 20)
    with pytest.raises(ValueError):
        fit_ql_model(subset, design, disp, lib)


# ----------------------------------------------------------------------
# Parallel execution
# ----------------------------------------------------------------------
def test_process_pool_uses_spawn_context(monkeypatch):
    from cagediff import glm_utils

    seen = {}

    class SerialPool:
        def __init__(self, max_workers=None, mp_context=None):
            seen["max_workers"] = max_workers
            seen["start_method"] = mp_context.get_start_method()

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def map(self, fn, items):
            return map(fn, items)

    monkeypatch.setattr(glm_utils, "ProcessPoolExecutor", SerialPool)

    counts = simulate(n_features=1100, seed=6)
    y = counts.counts.astype(float)
    X = np.array(build_design(counts.samples).matrix)
    offset = np.log(counts.library_sizes())

    chunked = glm_utils.fit_nb_glm_chunked(y, X, offset, 0.05, n_jobs=2)
    serial = glm_utils.fit_nb_glm(y, X, offset, 0.05)

    assert seen == {"max_workers": 2, "start_method": "spawn"}
    np.testing.assert_allclose(chunked.coefficients, serial.coefficients, rtol=1e-6, atol=1e-8)
