from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


class AggregateConfig(BaseModel):

    # ---- Input ----
    counts_path: Path
    samples_path: Path
    merge_map_path: Path
    enhancer_map_path: Optional[Path] = None

    # ---- Column names ----
    sample_col: str = "sample_id"
    group_col: str = "group"
    batch_col: str = "batch"
    barcode_col: Optional[str] = None
    cluster_id_col: str = "cluster_id"
    merged_id_col: str = "merged_id"
    enhancer_id_col: str = "enhancer_id"
    # non-sample columns of the count table; any other column must be a sample
    metadata_cols: Optional[List[str]] = None
    sep: Optional[str] = None

    # ---- Output ----
    output_path: Path = Path("merged_counts.tsv")

    # ---- Logging ----
    logfile: Optional[Path] = None

    @field_validator("sep")
    @classmethod
    def check_sep(cls, v):
        if v is not None and len(v) != 1:
            raise ValueError("sep must be a single character")
        return v

    @field_validator("metadata_cols")
    @classmethod
    def normalize_metadata_cols(cls, v):
        if v is None:
            return v
        return list(dict.fromkeys(str(x).strip() for x in v if str(x).strip()))


class DifferentialConfig(AggregateConfig):

    # ---- Output ----
    output_dir: Path = Path("results")
    log_abundance_name: str = "log_cpm_batch_adjusted.tsv"
    catalog_name: str = "gene_catalog.json"
    gene_id_col: Optional[str] = "entrez_id"

    # ---- Compute ----
    n_jobs: int = 1

    # ---- Contrasts ----
    contrasts: List[str] = Field(default_factory=list)
    min_log_fold_change: float = 0.5
    max_fdr: float = 0.05
    only_significant: bool = False

    # ---- Filter ----
    filter_cpm_low: float = 1.0
    filter_cpm_high: float = 3.0
    filter_min_samples_low: int = 3
    filter_min_samples_high: int = 1

    # ---- Normalization ----
    trim_fractions: Tuple[float, float] = (0.3, 0.05)
    prior_count: float = 2.0

    # ---- Model ----
    use_batch: bool = True
    robust: bool = True
    dispersion_kind: Literal["tagwise", "trended", "common"] = "tagwise"
    max_iter: int = 50
    tol: float = 1e-6

    @property
    def logratio_trim(self) -> float:
        return self.trim_fractions[0]

    @property
    def sum_trim(self) -> float:
        return self.trim_fractions[1]

    # ---- Validators ----
    @field_validator("contrasts")
    @classmethod
    def normalize_contrasts(cls, v):
        out = [str(x).strip() for x in v if str(x).strip()]
        if len(set(out)) != len(out):
            raise ValueError(f"contrasts contain duplicates: {out}")
        return out

    @field_validator("trim_fractions")
    @classmethod
    def check_trim(cls, v):
        for f in v:
            if not (0.0 <= f < 0.5):
                raise ValueError("trim_fractions must each lie in [0, 0.5)")
        return v

    @field_validator("filter_min_samples_low", "filter_min_samples_high", "n_jobs", "max_iter")
    @classmethod
    def check_positive_int(cls, v, info):
        if v < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return v

    @model_validator(mode="after")
    def check_thresholds(self):
        if self.min_log_fold_change < 0:
            raise ValueError("min_log_fold_change must be >= 0")
        if not (0 < self.max_fdr <= 1):
            raise ValueError("max_fdr must be in (0, 1]")
        if self.filter_cpm_low < 0 or self.filter_cpm_high < 0:
            raise ValueError("CPM filter thresholds must be >= 0")
        if self.prior_count < 0:
            raise ValueError("prior_count must be >= 0")
        if not (0 < self.tol < 1):
            raise ValueError("tol must be in (0, 1)")
        return self
