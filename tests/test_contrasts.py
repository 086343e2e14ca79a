# tests/test_contrasts.py
import numpy as np
import pandas as pd
import pytest
from scipy import stats

from cagediff import contrasts as ct
from cagediff.design import build_design
from cagediff.dispersion import estimate_dispersion
from cagediff.errors import UnknownCoefficientError
from cagediff.fitting import fit_ql_model
from cagediff.models import Contrast, CountMatrix, Sample, SampleSheet
from cagediff.normalization import calc_norm_factors, effective_library_sizes


# ----------------------------------------------------------------------
# Synthetic three-group experiment
# ----------------------------------------------------------------------
def three_group_fit(n_features=240, seed=0):
    rng = np.random.default_rng(seed)
    groups = ["A"] * 3 + ["B"] * 3 + ["C"] * 3
    samples = SampleSheet(tuple(Sample(f"S{i}", g, "L1") for i, g in enumerate(groups)))
    base = rng.gamma(2.0, 80.0, size=n_features)
    mu = np.repeat(base[:, None], len(groups), axis=1)
    mu[:30, 3:6] *= 5.0     # B up
    mu[30:60, 6:9] *= 0.2   # C down
    r = 1.0 / 0.05
    y = rng.negative_binomial(r, r / (r + mu))
    counts = CountMatrix(y, pd.Index([f"f{i}" for i in range(n_features)]), samples)

    design = build_design(samples)
    lib = effective_library_sizes(counts, calc_norm_factors(counts))
    disp = estimate_dispersion(counts, design, lib)
    return fit_ql_model(counts, design, disp, lib)


@pytest.fixture(scope="module")
def fit():
    return three_group_fit()


# ----------------------------------------------------------------------
# Contrast construction
# ----------------------------------------------------------------------
def test_parse_pairwise_and_rest(fit):
    c = ct.parse_contrast("B.vs.A", fit.design)
    assert c.name == "B.vs.A"
    np.testing.assert_allclose(c.vector(fit.design), [-1, 1, 0])

    rest = ct.parse_contrast("C.vs.rest", fit.design)
    np.testing.assert_allclose(rest.vector(fit.design), [-0.5, -0.5, 1])


@pytest.mark.parametrize("spec", ["D.vs.A", "A.vs.D", "D.vs.rest"])
def test_unknown_coefficient_is_fatal(fit, spec):
    with pytest.raises(UnknownCoefficientError) as exc:
        ct.parse_contrast(spec, fit.design)
    assert "D" in exc.value.unknown


@pytest.mark.parametrize("spec", ["B-A", "B.vs.", "A.vs.A"])
def test_malformed_contrast(fit, spec):
    with pytest.raises(ValueError):
        ct.parse_contrast(spec, fit.design)


def test_contrast_weights_must_sum_to_zero(fit):
    with pytest.raises(ValueError, match="sum to zero"):
        Contrast("bad", {"A": 1.0, "B": -0.5}).vector(fit.design)


def test_default_contrasts_are_all_pairs(fit):
    names = [c.name for c in ct.resolve_contrasts(None, fit.design)]
    assert names == ["B.vs.A", "C.vs.A", "C.vs.B"]
    assert [c.name for c in ct.group_vs_rest_contrasts(["A", "B", "C"])] == [
        "A.vs.rest", "B.vs.rest", "C.vs.rest",
    ]


# ----------------------------------------------------------------------
# TREAT p-values
# ----------------------------------------------------------------------
def test_treat_without_threshold_is_two_sided_t():
    b = np.array([-2.0, 0.1, 1.5])
    se = np.array([0.5, 0.5, 1.0])
    p = ct.treat_pvalues(b, se, 7, 0.0)
    np.testing.assert_allclose(p, 2 * stats.t.sf(np.abs(b) / se, 7))


def test_treat_infinite_df_uses_normal():
    p = ct.treat_pvalues(np.array([1.0]), np.array([0.5]), np.inf, 0.2)
    expected = stats.norm.sf(0.8 / 0.5) + stats.norm.sf(1.2 / 0.5)
    assert p[0] == pytest.approx(expected)


def test_threshold_monotonicity(fit):
    c = ct.parse_contrast("B.vs.A", fit.design)
    tables = [
        ct.test_contrast(fit, c, min_log_fold_change=t).table.sort_index()
        for t in (0.0, 0.5, 1.0, 2.0)
    ]
    for lo, hi in zip(tables, tables[1:]):
        ok = lo["PValue"].notna()
        assert np.all(hi.loc[ok, "PValue"].to_numpy() >= lo.loc[ok, "PValue"].to_numpy() - 1e-12)
        # significance only ever goes away as the threshold grows
        assert not np.any(hi["significant"] & ~lo["significant"])


# ----------------------------------------------------------------------
# DE tables
# ----------------------------------------------------------------------
def test_de_table_layout_and_calls(fit):
    res = ct.test_contrast(fit, ct.parse_contrast("B.vs.A", fit.design))
    t = res.table

    assert list(t.columns) == ["logFC", "logCPM", "SE", "PValue", "FDR", "significant"]
    tested = t.dropna(subset=["PValue"])
    assert tested["PValue"].is_monotonic_increasing
    assert t["PValue"].iloc[: len(tested)].notna().all()
    assert np.all(tested["FDR"] >= tested["PValue"] - 1e-15)
    assert set(t.index) == set(fit.feature_ids)

    up = set(res.up_ids())
    true_up = {f"f{i}" for i in range(30)}
    assert len(up & true_up) >= 20
    assert len(up - true_up) <= 2
    assert res.n_significant == int(t["significant"].sum())
    assert not res.is_empty


def test_only_significant_restricts_rows(fit):
    c = ct.parse_contrast("C.vs.A", fit.design)
    full = ct.test_contrast(fit, c)
    sig = ct.test_contrast(fit, c, only_significant=True)
    assert sig.table["significant"].all()
    assert list(sig.table.index) == list(full.significant().index)
    down = set(sig.down_ids())
    assert len(down & {f"f{i}" for i in range(30, 60)}) >= 20

    # the summary reports what was tested, not what was kept
    assert sig.summary()["n_tested"] == full.summary()["n_tested"] == int(fit.available.sum())
    assert sig.summary()["n_significant"] == sig.table.shape[0]


def test_average_contrast_is_linear(fit):
    b = ct.parse_contrast("B.vs.A", fit.design)
    c = ct.parse_contrast("C.vs.A", fit.design)
    avg = ct.average_contrast("BC.vs.A", [b, c])
    np.testing.assert_allclose(avg.vector(fit.design), [-1.0, 0.5, 0.5])

    res = ct.test_contrasts(fit, [b, c, avg])
    lfc_b = res["B.vs.A"].table["logFC"].sort_index()
    lfc_c = res["C.vs.A"].table["logFC"].sort_index()
    lfc_avg = res["BC.vs.A"].table["logFC"].sort_index()
    np.testing.assert_allclose(lfc_avg, (lfc_b + lfc_c) / 2, rtol=1e-10, atol=1e-12)


def test_parallel_contrasts_match_serial(fit):
    cs = ct.resolve_contrasts(None, fit.design)
    serial = ct.test_contrasts(fit, cs, n_jobs=1)
    threaded = ct.test_contrasts(fit, cs, n_jobs=3)
    assert list(serial) == list(threaded) == ["B.vs.A", "C.vs.A", "C.vs.B"]
    for name in serial:
        pd.testing.assert_frame_equal(serial[name].table, threaded[name].table)


def test_duplicate_contrast_names_rejected(fit):
    c = ct.parse_contrast("B.vs.A", fit.design)
    with pytest.raises(ValueError):
        ct.test_contrasts(fit, [c, c])
