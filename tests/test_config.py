import pytest
from pathlib import Path

from cagediff.config import AggregateConfig, DifferentialConfig


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def inputs(tmp_path):
    return dict(
        counts_path=tmp_path / "counts.tsv",
        samples_path=tmp_path / "samples.tsv",
        merge_map_path=tmp_path / "merge_map.tsv",
    )


# -------------------------------------------------------------------------
# AggregateConfig
# -------------------------------------------------------------------------
def test_aggregate_defaults(tmp_path):
    cfg = AggregateConfig(**inputs(tmp_path))
    assert cfg.enhancer_map_path is None
    assert cfg.cluster_id_col == "cluster_id"
    assert cfg.merged_id_col == "merged_id"
    assert cfg.output_path == Path("merged_counts.tsv")
    assert cfg.sep is None


def test_aggregate_requires_inputs(tmp_path):
    with pytest.raises(ValueError):
        AggregateConfig(counts_path=tmp_path / "counts.tsv")


def test_sep_must_be_single_character(tmp_path):
    assert AggregateConfig(**inputs(tmp_path), sep=",").sep == ","
    with pytest.raises(ValueError):
        AggregateConfig(**inputs(tmp_path), sep="\t\t")


def test_metadata_cols_are_normalized(tmp_path):
    assert AggregateConfig(**inputs(tmp_path)).metadata_cols is None
    cfg = AggregateConfig(**inputs(tmp_path), metadata_cols=[" chrom ", "", "chrom", "strand"])
    assert cfg.metadata_cols == ["chrom", "strand"]


# -------------------------------------------------------------------------
# DifferentialConfig
# -------------------------------------------------------------------------
def test_differential_defaults(tmp_path):
    cfg = DifferentialConfig(**inputs(tmp_path))
    assert cfg.contrasts == []
    assert cfg.min_log_fold_change == 0.5
    assert cfg.max_fdr == 0.05
    assert cfg.filter_cpm_low == 1.0
    assert cfg.filter_cpm_high == 3.0
    assert cfg.filter_min_samples_low == 3
    assert cfg.filter_min_samples_high == 1
    assert cfg.logratio_trim == 0.3
    assert cfg.sum_trim == 0.05
    assert cfg.prior_count == 2.0
    assert cfg.use_batch is True
    assert cfg.robust is True
    assert cfg.dispersion_kind == "tagwise"
    assert cfg.n_jobs == 1


def test_contrasts_are_normalized(tmp_path):
    cfg = DifferentialConfig(**inputs(tmp_path), contrasts=[" B.vs.A ", "", "C.vs.rest"])
    assert cfg.contrasts == ["B.vs.A", "C.vs.rest"]

    with pytest.raises(ValueError):
        DifferentialConfig(**inputs(tmp_path), contrasts=["B.vs.A", "B.vs.A "])


@pytest.mark.parametrize(
    "field, value",
    [
        ("min_log_fold_change", -0.1),
        ("max_fdr", 0.0),
        ("max_fdr", 1.5),
        ("filter_cpm_low", -1.0),
        ("prior_count", -2.0),
        ("tol", 0.0),
        ("n_jobs", 0),
        ("max_iter", 0),
        ("filter_min_samples_low", 0),
        ("trim_fractions", (0.5, 0.05)),
        ("dispersion_kind", "bogus"),
    ],
)
def test_invalid_parameters_rejected(tmp_path, field, value):
    with pytest.raises(ValueError):
        DifferentialConfig(**inputs(tmp_path), **{field: value})


def test_dump_is_json_friendly(tmp_path):
    cfg = DifferentialConfig(**inputs(tmp_path), contrasts=["B.vs.A"])
    dumped = cfg.model_dump(mode="json")
    assert dumped["counts_path"] == str(tmp_path / "counts.tsv")
    assert dumped["trim_fractions"] == [0.3, 0.05]
    assert dumped["contrasts"] == ["B.vs.A"]
