# src/cagediff/differential.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from . import io_utils
from .aggregate import aggregate_clusters, merged_annotation
from .config import DifferentialConfig
from .contrasts import resolve_contrasts, test_contrasts
from .design import group_columns, build_design
from .dispersion import estimate_dispersion
from .filtering import filter_by_cpm
from .fitting import fit_ql_model
from .models import (
    Contrast,
    CountMatrix,
    DEResult,
    DesignMatrix,
    DispersionModel,
    FittedModel,
    IdentityMap,
    SampleSheet,
)
from .normalization import calc_norm_factors, effective_library_sizes, log_cpm, remove_batch_effect

LOGGER = logging.getLogger(__name__)


@dataclass
class DifferentialResults:
    samples: SampleSheet
    merged: CountMatrix
    filtered: CountMatrix
    design: DesignMatrix
    norm_factors: np.ndarray
    lib_sizes: np.ndarray
    dispersion: DispersionModel
    fit: FittedModel
    contrasts: List[Contrast]
    results: Dict[str, DEResult]
    log_abundance: pd.DataFrame
    annotation: pd.DataFrame
    written: Dict[str, Optional[Path]] = field(default_factory=dict)

    @property
    def empty_contrasts(self) -> List[str]:
        return [name for name, r in self.results.items() if r.is_empty]


def batch_adjusted_log_cpm(
    counts: CountMatrix,
    design: DesignMatrix,
    lib_sizes: np.ndarray,
    *,
    prior_count: float = 2.0,
    use_batch: bool = True,
) -> pd.DataFrame:
    """log2-CPM on effective library sizes, batch effects removed for display."""
    lc = log_cpm(counts, lib_sizes, prior_count=prior_count)
    if not use_batch or len(counts.samples.batch_levels) < 2:
        return lc
    groups = np.array(design.matrix)[:, group_columns(design)]
    return remove_batch_effect(lc, counts.samples.batches, design=groups)


def run_analysis(
    raw_counts: pd.DataFrame,
    samples: SampleSheet,
    identity_map: IdentityMap,
    cfg: DifferentialConfig,
) -> DifferentialResults:
    """
    Aggregate -> filter -> normalise -> dispersion -> QL fit -> contrasts.

    Everything is in memory; nothing is written. Structural problems raise
    before any per-feature work starts.
    """
    # structural checks first: design rank and contrast names
    design = build_design(samples, use_batch=cfg.use_batch)
    contrasts = resolve_contrasts(cfg.contrasts, design)
    LOGGER.info("Contrasts: %s", ", ".join(c.name for c in contrasts))

    merged = aggregate_clusters(raw_counts, samples, identity_map)
    filtered = filter_by_cpm(
        merged,
        cpm_low=cfg.filter_cpm_low,
        cpm_high=cfg.filter_cpm_high,
        min_samples_low=cfg.filter_min_samples_low,
        min_samples_high=cfg.filter_min_samples_high,
    )

    factors = calc_norm_factors(filtered, logratio_trim=cfg.logratio_trim, sum_trim=cfg.sum_trim)
    lib = effective_library_sizes(filtered, factors)

    dispersion = estimate_dispersion(
        filtered,
        design,
        lib,
        robust=cfg.robust,
        prior_count=cfg.prior_count,
        max_iter=cfg.max_iter,
        tol=cfg.tol,
        n_jobs=cfg.n_jobs,
    )
    fit = fit_ql_model(
        filtered,
        design,
        dispersion,
        lib,
        dispersion=cfg.dispersion_kind,
        max_iter=cfg.max_iter,
        tol=cfg.tol,
        robust=cfg.robust,
        n_jobs=cfg.n_jobs,
    )
    results = test_contrasts(
        fit,
        contrasts,
        min_log_fold_change=cfg.min_log_fold_change,
        max_fdr=cfg.max_fdr,
        only_significant=cfg.only_significant,
        n_jobs=cfg.n_jobs,
    )

    # reporting branch only; never fed back into the fit
    log_abundance = batch_adjusted_log_cpm(
        filtered, design, lib, prior_count=cfg.prior_count, use_batch=cfg.use_batch
    )

    return DifferentialResults(
        samples=samples,
        merged=merged,
        filtered=filtered,
        design=design,
        norm_factors=factors,
        lib_sizes=lib,
        dispersion=dispersion,
        fit=fit,
        contrasts=contrasts,
        results=results,
        log_abundance=log_abundance,
        annotation=merged_annotation(identity_map, filtered.feature_ids),
    )


def write_outputs(res: DifferentialResults, cfg: DifferentialConfig) -> Dict[str, Optional[Path]]:
    out_dir = Path(cfg.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    written: Dict[str, Optional[Path]] = {
        "log_abundance": io_utils.write_log_abundance_table(
            res.log_abundance, res.annotation, out_dir / cfg.log_abundance_name
        ),
    }
    for name, r in res.results.items():
        written[f"DE:{name}"] = io_utils.write_de_table(r, res.annotation, out_dir)

    written["gene_catalog"] = io_utils.write_gene_catalog(
        out_dir / cfg.catalog_name,
        res.filtered.feature_ids.tolist(),
        res.results,
        res.annotation,
        gene_id_col=cfg.gene_id_col,
    )
    return written


def run_differential(cfg: DifferentialConfig) -> DifferentialResults:
    from . import __version__
    from .reporting import write_run_summary

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

    res = run_analysis(raw_counts, samples, identity_map, cfg)
    res.written = write_outputs(res, cfg)

    summary_path = write_run_summary(Path(cfg.output_dir), cfg=cfg, version=__version__, results=res)
    LOGGER.info(
        "Finished: %d contrast(s), %d empty; summary in %s",
        len(res.results), len(res.empty_contrasts), summary_path,
    )
    return res
