# tests/test_normalization.py
import numpy as np
import pandas as pd
import pytest

from cagediff.models import CountMatrix, Sample, SampleSheet
from cagediff.normalization import (
    _tmm_factor,
    ave_log_cpm,
    calc_norm_factors,
    choose_reference_sample,
    effective_library_sizes,
    log_cpm,
    remove_batch_effect,
)


# ----------------------------------------------------------------------
# Synthetic data generator
# ----------------------------------------------------------------------
def make_samples(n=6, n_batches=1):
    return SampleSheet(
        tuple(
            Sample(f"S{i}", "A" if i < n // 2 else "B", f"L{i % n_batches}")
            for i in range(n)
        )
    )


def synthetic_counts(n_features=500, n=6, seed=0, depth=None):
    rng = np.random.default_rng(seed)
    base = rng.gamma(1.0, 50.0, size=n_features)
    depth = np.ones(n) if depth is None else np.asarray(depth, dtype=float)
    m = rng.poisson(base[:, None] * depth[None, :])
    return CountMatrix(m, pd.Index([f"f{i}" for i in range(n_features)]), make_samples(n))


# ----------------------------------------------------------------------
# TMM
# ----------------------------------------------------------------------
@pytest.mark.parametrize("seed", [0, 1, 2])
def test_factors_are_centered(seed):
    counts = synthetic_counts(seed=seed, depth=[1, 2, 0.5, 1, 3, 1])
    f = calc_norm_factors(counts)
    assert f.shape == (6,)
    assert np.all(f > 0)
    assert abs(np.sum(np.log2(f))) < 1e-10


def test_self_reference_gives_unit_factor():
    counts = synthetic_counts(seed=3)
    x = counts.counts[:, 0]
    lib = float(x.sum())
    assert _tmm_factor(
        x, x, lib, lib, logratio_trim=0.3, sum_trim=0.05, do_weighting=True, a_cutoff=-1e10
    ) == 1.0


def test_identical_samples_give_unit_factors():
    counts = synthetic_counts(n=4, seed=4)
    col = counts.counts[:, :1]
    same = CountMatrix(np.repeat(col, 4, axis=1), counts.feature_ids, make_samples(4))
    np.testing.assert_allclose(calc_norm_factors(same), np.ones(4))


def test_sequencing_depth_alone_does_not_change_factors():
    counts = synthetic_counts(n=2, seed=5)
    x = counts.counts[:, :1]
    scaled = CountMatrix(np.hstack([x, 3 * x]), counts.feature_ids, make_samples(2))
    np.testing.assert_allclose(calc_norm_factors(scaled), np.ones(2), atol=1e-8)


def test_composition_shift_is_corrected():
    rng = np.random.default_rng(6)
    base = rng.gamma(2.0, 50.0, size=400)
    a = rng.poisson(base)
    b_mu = base.copy()
    b_mu[:40] *= 20  # a few features take over library B
    b = rng.poisson(b_mu)
    counts = CountMatrix(np.column_stack([a, b]), pd.Index([f"f{i}" for i in range(400)]), make_samples(2))

    f = calc_norm_factors(counts)
    # B's library is inflated by the 40 features: its effective size must shrink
    assert f[1] < f[0]

    lib = effective_library_sizes(counts, f)
    ratio = (counts.counts[40:, 1] / lib[1]).sum() / (counts.counts[40:, 0] / lib[0]).sum()
    assert abs(np.log2(ratio)) < 0.2


def test_reference_is_closest_to_geometric_mean():
    counts = synthetic_counts(seed=7, depth=[1, 1, 1, 1, 1, 1]).counts.astype(float)
    lib = counts.sum(axis=0)
    ref = choose_reference_sample(counts, lib)
    f75 = np.quantile(counts, 0.75, axis=0) / lib
    center = np.exp(np.mean(np.log(f75)))
    assert ref == int(np.argmin(np.abs(f75 - center)))


def test_bad_trim_fractions():
    with pytest.raises(ValueError):
        calc_norm_factors(synthetic_counts(), logratio_trim=0.6)


# ----------------------------------------------------------------------
# log-CPM
# ----------------------------------------------------------------------
def test_log_cpm_frame_and_prior():
    counts = synthetic_counts(n_features=50)
    lib = counts.library_sizes()
    lc = log_cpm(counts, lib, prior_count=2)
    assert lc.shape == (50, 6)
    assert list(lc.columns) == counts.samples.ids
    assert np.all(np.isfinite(lc.to_numpy()))

    zero = CountMatrix(np.zeros((1, 6), dtype=int), pd.Index(["z"]), counts.samples)
    lz = log_cpm(zero, lib, prior_count=2)
    # zero counts are lifted to a finite floor by the prior
    assert np.all(np.isfinite(lz.to_numpy()))


def test_ave_log_cpm_orders_by_abundance():
    counts = np.array([[1, 1, 1, 1], [100, 100, 100, 100]])
    ave = ave_log_cpm(counts, np.array([1e4, 1e4, 1e4, 1e4]))
    assert ave[1] > ave[0]


# ----------------------------------------------------------------------
# Batch-adjusted view
# ----------------------------------------------------------------------
def test_remove_batch_effect_keeps_group_difference():
    samples = ["A1", "A2", "B1", "B2"]
    batch = ["L1", "L2", "L1", "L2"]
    group = np.array([[1, 0], [1, 0], [0, 1], [0, 1]], dtype=float)

    rng = np.random.default_rng(8)
    group_mean = rng.normal(5, 1, size=(20, 2))
    shift = np.array([0.0, 1.5, 0.0, 1.5])
    y = group_mean @ group.T + shift[None, :]
    log_expr = pd.DataFrame(y, index=[f"f{i}" for i in range(20)], columns=samples)

    adj = remove_batch_effect(log_expr, batch, design=group)

    np.testing.assert_allclose(adj["A1"], adj["A2"], atol=1e-10)
    np.testing.assert_allclose(adj["B1"], adj["B2"], atol=1e-10)
    np.testing.assert_allclose(
        adj["B1"] - adj["A1"], group_mean[:, 1] - group_mean[:, 0], atol=1e-10
    )
    # the input is left untouched
    np.testing.assert_array_equal(log_expr.to_numpy(), y)


def test_remove_batch_effect_single_batch_is_copy():
    log_expr = pd.DataFrame(np.arange(6.0).reshape(2, 3), columns=["a", "b", "c"])
    out = remove_batch_effect(log_expr, ["x", "x", "x"])
    pd.testing.assert_frame_equal(out, log_expr)
    assert out is not log_expr
