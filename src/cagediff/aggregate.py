# src/cagediff/aggregate.py
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .models import CountMatrix, IdentityMap, SampleSheet

if TYPE_CHECKING:
    from .config import AggregateConfig

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Indicator-matrix aggregation
# -----------------------------------------------------------------------------
def _sum_by_key(X: sp.csr_matrix, keys: np.ndarray) -> Tuple[sp.csr_matrix, np.ndarray]:
    """
    Sum rows of X sharing a key.

    Uses a sparse indicator matrix G (rows x unique keys) so that
    OUT = G.T @ X; row order of OUT follows sorted unique keys.
    """
    codes, uniques = pd.factorize(pd.Index(keys), sort=True)
    n = X.shape[0]
    G = sp.csr_matrix(
        (np.ones(n, dtype=np.int64), (np.arange(n, dtype=np.int64), codes.astype(np.int64))),
        shape=(n, len(uniques)),
    )
    return (G.T @ X).tocsr(), np.asarray(uniques, dtype=object)


def aggregate_clusters(
    raw_counts: pd.DataFrame,
    samples: SampleSheet,
    identity_map: IdentityMap,
) -> CountMatrix:
    """
    Collapse raw tag-cluster counts into merged-cluster counts.

    raw_counts: raw cluster id x sample DataFrame, columns in canonical order.

    Rows are summed within enhancer groups first, then enhancer groups and
    standalone clusters sharing a merged id are summed. Raises
    UnmappedClusterError if any raw id cannot be resolved.
    """
    samples.require_order(raw_counts.columns, stage="ClusterAggregator")

    values = raw_counts.to_numpy()
    if values.size and (not np.all(np.isfinite(values.astype(np.float64))) or np.any(values < 0)):
        raise ValueError("raw counts must be finite and non-negative")
    if values.size and not np.all(np.equal(np.mod(values, 1), 0)):
        raise ValueError("raw counts must be integers")
    if raw_counts.index.has_duplicates:
        dup = raw_counts.index[raw_counts.index.duplicated()].unique().tolist()[:10]
        raise ValueError(f"raw cluster ids must be unique, duplicated e.g. {dup}")

    resolved = identity_map.resolve(raw_counts.index.astype(str).tolist())

    X = sp.csr_matrix(values.astype(np.int64))

    # Step 1: raw clusters -> enhancer groups / standalone clusters
    X_unit, units = _sum_by_key(X, resolved["unit"].to_numpy())
    unit_to_merged = (
        resolved.drop_duplicates("unit").set_index("unit")["merged_id"].reindex(units).to_numpy()
    )

    # Step 2: units -> merged clusters
    X_merged, merged_ids = _sum_by_key(X_unit, unit_to_merged)

    counts = np.asarray(X_merged.todense(), dtype=np.int64)

    raw_mass = values.astype(np.int64).sum(axis=0)
    merged_mass = counts.sum(axis=0)
    if not np.array_equal(raw_mass, merged_mass):
        raise RuntimeError(
            f"Count mass not conserved during aggregation: raw={raw_mass.tolist()} merged={merged_mass.tolist()}"
        )

    n_enh = int(resolved["unit"].ne(resolved.index.to_series()).sum())
    LOGGER.info(
        "Aggregated %d raw clusters (%d via enhancer groups) into %d merged clusters",
        raw_counts.shape[0], n_enh, counts.shape[0],
    )
    return CountMatrix(counts, pd.Index(merged_ids), samples)


def merged_annotation(identity_map: IdentityMap, feature_ids) -> pd.DataFrame:
    """Annotation rows for the given merged ids (missing ids give empty rows)."""
    ann = identity_map.annotation
    idx = pd.Index([str(f) for f in feature_ids], name="feature_id")
    if ann is None or ann.empty:
        return pd.DataFrame(index=idx)
    out = ann.reindex(idx)
    out.index.name = "feature_id"
    return out


# -----------------------------------------------------------------------------
# CLI entry
# -----------------------------------------------------------------------------
def run_aggregate(cfg: "AggregateConfig") -> CountMatrix:
    from . import io_utils

    samples = io_utils.read_sample_sheet(
        cfg.samples_path,
        sample_col=cfg.sample_col,
        group_col=cfg.group_col,
        batch_col=cfg.batch_col,
        barcode_col=cfg.barcode_col,
        sep=cfg.sep,
    )
    raw_counts, _ = io_utils.read_count_table(
        cfg.counts_path,
        samples,
        id_col=cfg.cluster_id_col,
        metadata_cols=cfg.metadata_cols,
        sep=cfg.sep,
    )
    identity_map = io_utils.read_identity_map(
        cfg.merge_map_path,
        enhancer_map=cfg.enhancer_map_path,
        cluster_id_col=cfg.cluster_id_col,
        merged_id_col=cfg.merged_id_col,
        enhancer_id_col=cfg.enhancer_id_col,
        sep=cfg.sep,
    )

    counts = aggregate_clusters(raw_counts, samples, identity_map)
    io_utils.write_merged_counts(
        counts,
        merged_annotation(identity_map, counts.feature_ids),
        cfg.output_path,
    )
    LOGGER.info("Wrote merged counts to %s", cfg.output_path)
    return counts
