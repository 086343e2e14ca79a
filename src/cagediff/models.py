# src/cagediff/models.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import (
    RankDeficientDesignError,
    SampleOrderError,
    SampleSheetError,
    UnknownCoefficientError,
    UnmappedClusterError,
)

LOGGER = logging.getLogger(__name__)


def _frozen(a, dtype=None) -> np.ndarray:
    """Copy into a read-only array."""
    out = np.array(a, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


# -----------------------------------------------------------------------------
# Samples
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Sample:
    sample_id: str
    group: str
    batch: str
    barcode: Optional[str] = None


@dataclass(frozen=True)
class SampleSheet:
    """
    Ordered, validated sample metadata.

    The order of ``samples`` is the canonical column order of every matrix
    built from it. Stages call ``require_order`` on their inputs instead of
    silently realigning columns.
    """
    samples: Tuple[Sample, ...]

    def __post_init__(self):
        samples = tuple(self.samples)
        object.__setattr__(self, "samples", samples)
        if not samples:
            raise SampleSheetError("Sample sheet is empty.")
        ids = [s.sample_id for s in samples]
        dup = sorted({i for i in ids if ids.count(i) > 1})
        if dup:
            raise SampleSheetError(f"Duplicate sample ids in sample sheet: {dup}")
        for s in samples:
            if not s.sample_id or not s.group or not s.batch:
                raise SampleSheetError(f"Sample {s!r} has an empty id, group or batch.")

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        *,
        sample_col: str = "sample_id",
        group_col: str = "group",
        batch_col: str = "batch",
        barcode_col: Optional[str] = None,
    ) -> "SampleSheet":
        required = [sample_col, group_col, batch_col]
        missing = [c for c in required if c not in df.columns]
        if missing:
            raise SampleSheetError(
                f"Sample metadata is missing column(s) {missing}. Found columns: {list(df.columns)}"
            )
        if barcode_col is not None and barcode_col not in df.columns:
            raise SampleSheetError(f"Barcode column '{barcode_col}' not found in sample metadata.")

        samples = []
        for _, row in df.iterrows():
            barcode = None
            if barcode_col is not None and pd.notna(row[barcode_col]):
                barcode = str(row[barcode_col])
            samples.append(
                Sample(
                    sample_id=str(row[sample_col]).strip(),
                    group=str(row[group_col]).strip(),
                    batch=str(row[batch_col]).strip(),
                    barcode=barcode,
                )
            )
        return cls(tuple(samples))

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self):
        return iter(self.samples)

    @property
    def ids(self) -> List[str]:
        return [s.sample_id for s in self.samples]

    @property
    def groups(self) -> List[str]:
        return [s.group for s in self.samples]

    @property
    def batches(self) -> List[str]:
        return [s.batch for s in self.samples]

    @property
    def group_levels(self) -> List[str]:
        # first-appearance order
        return list(dict.fromkeys(self.groups))

    @property
    def batch_levels(self) -> List[str]:
        return list(dict.fromkeys(self.batches))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "group": self.groups,
                "batch": self.batches,
                "barcode": [s.barcode for s in self.samples],
            },
            index=pd.Index(self.ids, name="sample_id"),
        )

    def require_order(self, columns: Iterable[str], *, stage: str) -> None:
        found = [str(c) for c in columns]
        if found != self.ids:
            raise SampleOrderError(stage, self.ids, found)


# -----------------------------------------------------------------------------
# Identity map
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class IdentityMap:
    """
    Many-to-one map from raw tag clusters to merged clusters.

    cluster_to_enhancer: raw cluster id -> enhancer group id (optional step)
    to_merged:           raw cluster id or enhancer group id -> merged id
    annotation:          descriptive columns, one row per merged id
    """
    cluster_to_enhancer: pd.Series
    to_merged: pd.Series
    annotation: pd.DataFrame = field(default_factory=pd.DataFrame)

    def __post_init__(self):
        c2e = self.cluster_to_enhancer.astype(str)
        c2e.index = c2e.index.astype(str)
        t2m = self.to_merged.astype(str)
        t2m.index = t2m.index.astype(str)
        for name, s in (("cluster_to_enhancer", c2e), ("to_merged", t2m)):
            if s.index.has_duplicates:
                dup = s.index[s.index.duplicated()].unique().tolist()[:10]
                raise ValueError(f"IdentityMap.{name} has duplicated keys, e.g. {dup}")
        object.__setattr__(self, "cluster_to_enhancer", c2e)
        object.__setattr__(self, "to_merged", t2m)

    @classmethod
    def identity(cls, ids: Sequence[str]) -> "IdentityMap":
        ids = [str(i) for i in ids]
        return cls(
            cluster_to_enhancer=pd.Series(dtype=str),
            to_merged=pd.Series(ids, index=ids),
        )

    def resolve(self, raw_ids: Sequence[str]) -> pd.DataFrame:
        """
        Place every raw id in its aggregation unit and merged cluster.

        Returns a frame indexed by raw id with columns ``unit`` (enhancer
        group id, or the raw id itself) and ``merged_id``. Raises
        UnmappedClusterError listing every raw id that cannot be resolved.
        """
        raw = pd.Index([str(r) for r in raw_ids])
        unit = pd.Series(raw, index=raw)
        in_enh = raw.isin(self.cluster_to_enhancer.index)
        unit[in_enh] = self.cluster_to_enhancer.reindex(raw[in_enh]).to_numpy()

        merged = self.to_merged.reindex(unit.to_numpy())
        missing = raw[merged.isna().to_numpy()]
        if len(missing) > 0:
            raise UnmappedClusterError(missing.tolist(), len(raw))

        return pd.DataFrame(
            {"unit": unit.to_numpy(), "merged_id": merged.to_numpy()},
            index=raw,
        )


# -----------------------------------------------------------------------------
# Count matrix
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class CountMatrix:
    counts: np.ndarray
    feature_ids: pd.Index
    samples: SampleSheet

    def __post_init__(self):
        counts = np.asarray(self.counts)
        if counts.ndim != 2:
            raise ValueError("counts must be a 2-D feature x sample matrix")
        if counts.size and (not np.all(np.isfinite(counts)) or np.any(counts < 0)):
            raise ValueError("counts must be finite and non-negative")
        if counts.size and not np.all(np.equal(np.mod(counts, 1), 0)):
            raise ValueError("counts must be integers")
        feature_ids = pd.Index([str(f) for f in self.feature_ids], name="feature_id")
        if feature_ids.has_duplicates:
            dup = feature_ids[feature_ids.duplicated()].unique().tolist()[:10]
            raise ValueError(f"feature ids must be unique, duplicated e.g. {dup}")
        if counts.shape != (len(feature_ids), len(self.samples)):
            raise ValueError(
                f"counts shape {counts.shape} does not match "
                f"{len(feature_ids)} features x {len(self.samples)} samples"
            )
        object.__setattr__(self, "counts", _frozen(counts, dtype=np.int64))
        object.__setattr__(self, "feature_ids", feature_ids)

    @classmethod
    def from_frame(cls, df: pd.DataFrame, samples: SampleSheet) -> "CountMatrix":
        samples.require_order(df.columns, stage="CountMatrix")
        return cls(df.to_numpy(), df.index, samples)

    @property
    def n_features(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    def library_sizes(self) -> np.ndarray:
        return self.counts.sum(axis=0).astype(np.float64)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            np.array(self.counts),
            index=self.feature_ids,
            columns=pd.Index(self.samples.ids, name="sample_id"),
        )

    def subset(self, keep: np.ndarray) -> "CountMatrix":
        keep = np.asarray(keep, dtype=bool)
        if keep.shape != (self.n_features,):
            raise ValueError("row mask has wrong shape")
        return CountMatrix(self.counts[keep], self.feature_ids[keep], self.samples)


# -----------------------------------------------------------------------------
# Design / contrasts
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DesignMatrix:
    matrix: np.ndarray
    coef_names: Tuple[str, ...]
    samples: SampleSheet

    def __post_init__(self):
        X = np.asarray(self.matrix, dtype=np.float64)
        names = tuple(str(c) for c in self.coef_names)
        if X.ndim != 2 or X.shape != (len(self.samples), len(names)):
            raise ValueError(
                f"design shape {X.shape} does not match {len(self.samples)} samples x {len(names)} coefficients"
            )
        if len(set(names)) != len(names):
            raise ValueError(f"design coefficient names must be unique: {names}")
        if not np.all(np.isfinite(X)):
            raise ValueError("design matrix contains non-finite values")

        rank = int(np.linalg.matrix_rank(X))
        if rank < X.shape[1]:
            dependent = []
            kept = np.zeros((X.shape[0], 0))
            for j, name in enumerate(names):
                trial = np.column_stack([kept, X[:, j]])
                if np.linalg.matrix_rank(trial) == trial.shape[1]:
                    kept = trial
                else:
                    dependent.append(name)
            raise RankDeficientDesignError(rank, names, dependent)

        object.__setattr__(self, "matrix", _frozen(X))
        object.__setattr__(self, "coef_names", names)

    @classmethod
    def from_frame(cls, df: pd.DataFrame, samples: SampleSheet) -> "DesignMatrix":
        samples.require_order(df.index, stage="DesignMatrix")
        return cls(df.to_numpy(dtype=np.float64), tuple(df.columns), samples)

    @property
    def n_coefs(self) -> int:
        return self.matrix.shape[1]

    @property
    def df_residual(self) -> int:
        return self.matrix.shape[0] - self.matrix.shape[1]

    def coef_index(self, name: str) -> int:
        return self.coef_names.index(name)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            np.array(self.matrix),
            index=pd.Index(self.samples.ids, name="sample_id"),
            columns=list(self.coef_names),
        )


@dataclass(frozen=True)
class Contrast:
    """Named linear combination of design coefficients."""
    name: str
    weights: Mapping[str, float]

    def __post_init__(self):
        w = {str(k): float(v) for k, v in dict(self.weights).items() if float(v) != 0.0}
        if not w:
            raise ValueError(f"Contrast '{self.name}' has no non-zero weights")
        object.__setattr__(self, "weights", w)

    def vector(self, design: DesignMatrix) -> np.ndarray:
        unknown = [k for k in self.weights if k not in design.coef_names]
        if unknown:
            raise UnknownCoefficientError(self.name, unknown, design.coef_names)
        if abs(sum(self.weights.values())) > 1e-8:
            raise ValueError(
                f"Contrast '{self.name}' weights must sum to zero, got {sum(self.weights.values()):g}"
            )
        c = np.zeros(design.n_coefs, dtype=np.float64)
        for k, v in self.weights.items():
            c[design.coef_index(k)] = v
        return c


# -----------------------------------------------------------------------------
# Model artifacts
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DispersionModel:
    feature_ids: pd.Index
    common: float
    trended: np.ndarray
    tagwise: np.ndarray
    ave_log_cpm: np.ndarray
    prior_df: float
    prior_n: float
    robust_weights: np.ndarray
    span: float

    def __post_init__(self):
        n = len(self.feature_ids)
        for name in ("trended", "tagwise", "ave_log_cpm", "robust_weights"):
            arr = np.asarray(getattr(self, name), dtype=np.float64)
            if arr.shape != (n,):
                raise ValueError(f"DispersionModel.{name} must have one value per feature")
            object.__setattr__(self, name, _frozen(arr))

    def trend_at(self, ave_log_cpm) -> np.ndarray:
        """Evaluate the dispersion trend at arbitrary average log-CPM values."""
        order = np.argsort(self.ave_log_cpm, kind="mergesort")
        x = self.ave_log_cpm[order]
        y = np.log(self.trended[order])
        return np.exp(np.interp(np.asarray(ave_log_cpm, dtype=np.float64), x, y))

    def select(self, kind: str) -> np.ndarray:
        if kind == "tagwise":
            return np.array(self.tagwise)
        if kind == "trended":
            return np.array(self.trended)
        if kind == "common":
            return np.full(len(self.feature_ids), self.common)
        raise ValueError(f"Unknown dispersion kind '{kind}'")


@dataclass(frozen=True)
class FittedModel:
    """
    Per-feature quasi-likelihood NB GLM fit.

    Never mutated after construction, so several contrasts can be tested
    against the same instance concurrently.
    """
    feature_ids: pd.Index
    design: DesignMatrix
    coefficients: np.ndarray      # features x coefs (natural log scale)
    fitted_values: np.ndarray     # features x samples
    unscaled_cov: np.ndarray      # features x coefs x coefs, (X'WX)^-1
    deviance: np.ndarray
    dispersion: np.ndarray
    ave_log_cpm: np.ndarray
    df_residual: int
    s2: np.ndarray                # Pearson X^2 / df_residual
    s2_prior: np.ndarray
    df_prior: float
    s2_post: np.ndarray
    available: np.ndarray
    failure_reason: Tuple[Optional[str], ...]
    n_iter: np.ndarray

    def __post_init__(self):
        for name in (
            "coefficients", "fitted_values", "unscaled_cov", "deviance",
            "dispersion", "ave_log_cpm", "s2", "s2_prior", "s2_post", "n_iter",
        ):
            object.__setattr__(self, name, _frozen(getattr(self, name), dtype=np.float64))
        object.__setattr__(self, "available", _frozen(self.available, dtype=bool))
        object.__setattr__(self, "failure_reason", tuple(self.failure_reason))

    @property
    def df_total(self) -> float:
        return float(self.df_residual) + float(self.df_prior)

    @property
    def n_unavailable(self) -> int:
        return int((~self.available).sum())

    def coefficient_frame(self, log2: bool = True) -> pd.DataFrame:
        scale = np.log(2.0) if log2 else 1.0
        return pd.DataFrame(
            self.coefficients / scale,
            index=self.feature_ids,
            columns=list(self.design.coef_names),
        )


@dataclass(frozen=True)
class DEResult:
    contrast: Contrast
    table: pd.DataFrame
    min_log_fold_change: float
    max_fdr: float
    # features with a test statistic, counted before any row restriction
    n_tested: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "table", self.table.copy())
        if self.n_tested is None:
            object.__setattr__(self, "n_tested", int(self.table["PValue"].notna().sum()))

    @property
    def name(self) -> str:
        return self.contrast.name

    @property
    def is_empty(self) -> bool:
        return int(self.table["significant"].sum()) == 0

    @property
    def n_significant(self) -> int:
        return int(self.table["significant"].sum())

    def significant(self) -> pd.DataFrame:
        return self.table.loc[self.table["significant"]].copy()

    def up_ids(self) -> List[str]:
        sig = self.significant()
        return sig.index[sig["logFC"] > 0].astype(str).tolist()

    def down_ids(self) -> List[str]:
        sig = self.significant()
        return sig.index[sig["logFC"] < 0].astype(str).tolist()

    def summary(self) -> Dict[str, object]:
        return {
            "contrast": self.name,
            "n_tested": int(self.n_tested),
            "n_significant": self.n_significant,
            "n_up": len(self.up_ids()),
            "n_down": len(self.down_ids()),
            "min_log_fold_change": float(self.min_log_fold_change),
            "max_fdr": float(self.max_fdr),
        }
