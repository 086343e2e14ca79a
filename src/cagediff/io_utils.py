from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import SampleSheetError
from .models import CountMatrix, DEResult, IdentityMap, Sample, SampleSheet

LOGGER = logging.getLogger(__name__)

_SEP_BY_SUFFIX = {".csv": ",", ".tsv": "\t", ".txt": "\t", ".tab": "\t"}


# -----------------------------------------------------------------------------
# Generic table helpers
# -----------------------------------------------------------------------------
def sniff_sep(path: Path, sep: Optional[str] = None) -> str:
    """Separator from an explicit value or the file suffix (.gz is ignored)."""
    if sep is not None:
        return sep
    suffixes = [s.lower() for s in Path(path).suffixes if s.lower() != ".gz"]
    if suffixes and suffixes[-1] in _SEP_BY_SUFFIX:
        return _SEP_BY_SUFFIX[suffixes[-1]]
    raise ValueError(
        f"Cannot infer the separator of {path}: use a .csv/.tsv/.txt suffix or pass sep explicitly."
    )


def read_table(path: Path, sep: Optional[str] = None, **kwargs) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input table not found: {path}")
    return pd.read_csv(path, sep=sniff_sep(path, sep), **kwargs)


def write_table(df: pd.DataFrame, path: Path, sep: Optional[str] = None, **kwargs) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep=sniff_sep(path, sep), **kwargs)
    return path


# -----------------------------------------------------------------------------
# Samples
# -----------------------------------------------------------------------------
def read_sample_sheet(
    path: Path,
    *,
    sample_col: str = "sample_id",
    group_col: str = "group",
    batch_col: str = "batch",
    barcode_col: Optional[str] = None,
    sep: Optional[str] = None,
) -> SampleSheet:
    """One row per sample; row order becomes the canonical sample order."""
    df = read_table(path, sep, dtype=str, keep_default_na=False)
    samples = SampleSheet.from_frame(
        df,
        sample_col=sample_col,
        group_col=group_col,
        batch_col=batch_col,
        barcode_col=barcode_col,
    )
    LOGGER.info(
        "Sample sheet: %d samples, groups=%s, batches=%s",
        len(samples), samples.group_levels, samples.batch_levels,
    )
    return samples


def sample_sheet_from_headers(
    headers: Sequence[str],
    pattern: str,
    *,
    default_batch: str = "1",
) -> SampleSheet:
    """
    Build a sample sheet from count-table header strings.

    ``pattern`` is a regular expression with named groups ``group`` and
    optionally ``sample``, ``batch`` and ``barcode``; headers that do not
    match are ignored (metadata columns). The whole header is the sample id
    unless a ``sample`` group is captured.

    Meant as a one-off ingestion step: write the result with
    ``SampleSheet.to_frame()`` and review it before analysis.
    """
    rx = re.compile(pattern)
    if "group" not in rx.groupindex:
        raise ValueError("header pattern must define a named group 'group'")

    samples = []
    for h in headers:
        m = rx.search(str(h))
        if m is None:
            continue
        parts = m.groupdict()
        samples.append(
            Sample(
                sample_id=parts.get("sample") or str(h),
                group=parts["group"],
                batch=parts.get("batch") or default_batch,
                barcode=parts.get("barcode"),
            )
        )
    if not samples:
        raise SampleSheetError(f"No header matched the pattern {pattern!r}")
    LOGGER.info("Parsed %d sample(s) from %d header(s)", len(samples), len(headers))
    return SampleSheet(tuple(samples))


# -----------------------------------------------------------------------------
# Counts
# -----------------------------------------------------------------------------
def read_count_table(
    path: Path,
    samples: SampleSheet,
    *,
    id_col: str = "cluster_id",
    metadata_cols: Optional[Sequence[str]] = None,
    sep: Optional[str] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Read a raw count table and split it into (counts, metadata).

    Sample columns are selected by exact sample id and returned in the
    canonical sample order. Every sample of the sheet must be present. When
    ``metadata_cols`` is given, any other column is an unmatched sample
    column and is rejected instead of being silently dropped; without it the
    extra columns are kept as metadata and listed in a warning.
    """
    df = read_table(path, sep, dtype={id_col: str})
    if id_col not in df.columns:
        raise KeyError(f"id column '{id_col}' not found in {path}. Found columns: {list(df.columns)}")
    df.columns = [str(c).strip() for c in df.columns]
    df = df.set_index(id_col)
    df.index = df.index.astype(str)
    df.index.name = id_col

    missing = [s for s in samples.ids if s not in df.columns]
    if missing:
        raise KeyError(f"Sample(s) {missing} from the sample sheet have no column in {path}")

    extra = [c for c in df.columns if c not in set(samples.ids)]
    if metadata_cols is not None:
        unmatched = [c for c in extra if c not in set(metadata_cols)]
        if unmatched:
            raise KeyError(
                f"Column(s) {unmatched} in {path} are neither samples of the sheet nor declared metadata"
            )
    elif extra:
        LOGGER.warning(
            "Column(s) %s of %s are not in the sample sheet and are kept as metadata; "
            "declare metadata columns to reject unmatched sample columns.",
            extra, path,
        )

    counts = df[samples.ids].apply(pd.to_numeric, errors="coerce")
    bad = counts.isna().any(axis=1)
    if bad.any():
        raise ValueError(
            f"{int(bad.sum())} row(s) of {path} have missing or non-numeric counts, "
            f"e.g. {counts.index[bad].tolist()[:5]}"
        )
    counts.columns.name = "sample_id"

    LOGGER.info(
        "Read %d clusters x %d samples from %s (%d metadata column(s))",
        counts.shape[0], counts.shape[1], path, len(extra),
    )
    return counts, df[extra].copy()


def write_merged_counts(counts: CountMatrix, annotation: pd.DataFrame, path: Path) -> Path:
    out = pd.concat([annotation, counts.to_frame()], axis=1)
    out.index.name = "feature_id"
    return write_table(out, path)


# -----------------------------------------------------------------------------
# Identity map
# -----------------------------------------------------------------------------
def read_identity_map(
    merge_map: Path,
    enhancer_map: Optional[Path] = None,
    *,
    cluster_id_col: str = "cluster_id",
    merged_id_col: str = "merged_id",
    enhancer_id_col: str = "enhancer_id",
    sep: Optional[str] = None,
) -> IdentityMap:
    """
    merge_map:    one row per raw cluster or enhancer group id
                  (``cluster_id_col``) with its ``merged_id_col``; any other
                  column is annotation of the merged cluster.
    enhancer_map: optional raw cluster id -> ``enhancer_id_col``.
    """
    mm = read_table(merge_map, sep, dtype=str)
    for c in (cluster_id_col, merged_id_col):
        if c not in mm.columns:
            raise KeyError(f"Column '{c}' not found in {merge_map}. Found columns: {list(mm.columns)}")
    if mm[[cluster_id_col, merged_id_col]].isna().any().any():
        raise ValueError(f"{merge_map} has empty cluster or merged ids")

    to_merged = pd.Series(mm[merged_id_col].to_numpy(), index=mm[cluster_id_col].to_numpy())

    ann_cols = [c for c in mm.columns if c not in (cluster_id_col, merged_id_col)]
    annotation = pd.DataFrame(index=pd.Index([], name="feature_id"))
    if ann_cols:
        annotation = mm[[merged_id_col] + ann_cols].groupby(merged_id_col, sort=False).first()
        annotation.index = annotation.index.astype(str)
        annotation.index.name = "feature_id"

    cluster_to_enhancer = pd.Series(dtype=str)
    if enhancer_map is not None:
        em = read_table(enhancer_map, sep, dtype=str)
        for c in (cluster_id_col, enhancer_id_col):
            if c not in em.columns:
                raise KeyError(f"Column '{c}' not found in {enhancer_map}. Found columns: {list(em.columns)}")
        em = em.dropna(subset=[cluster_id_col, enhancer_id_col])
        cluster_to_enhancer = pd.Series(em[enhancer_id_col].to_numpy(), index=em[cluster_id_col].to_numpy())

    LOGGER.info(
        "Identity map: %d keys -> %d merged clusters, %d raw clusters in enhancer groups",
        len(to_merged), to_merged.nunique(), len(cluster_to_enhancer),
    )
    return IdentityMap(cluster_to_enhancer, to_merged, annotation)


# -----------------------------------------------------------------------------
# Result tables
# -----------------------------------------------------------------------------
def write_log_abundance_table(log_expr: pd.DataFrame, annotation: pd.DataFrame, path: Path) -> Path:
    out = pd.concat([annotation.reindex(log_expr.index), log_expr], axis=1)
    out.index.name = "feature_id"
    return write_table(out, path, float_format="%.6g")


def de_table_path(out_dir: Path, contrast_name: str, suffix: str = ".tsv") -> Path:
    safe = re.sub(r"[^A-Za-z0-9_.\-]+", "_", contrast_name)
    return Path(out_dir) / f"DE_{safe}{suffix}"


def write_de_table(result: DEResult, annotation: pd.DataFrame, out_dir: Path) -> Optional[Path]:
    """
    Write one contrast's table, or nothing when no feature is significant.

    An empty contrast is a normal outcome; no placeholder file is produced.
    """
    if result.is_empty:
        LOGGER.info("[%s] no significant features; no DE table written.", result.name)
        return None
    table = result.table
    out = pd.concat([annotation.reindex(table.index), table], axis=1)
    out.index.name = "feature_id"
    path = write_table(out, de_table_path(out_dir, result.name))
    LOGGER.info("[%s] wrote %d row(s) to %s", result.name, out.shape[0], path)
    return path


def _gene_ids(feature_ids: Sequence[str], annotation: pd.DataFrame, gene_id_col: Optional[str]) -> List[str]:
    if gene_id_col is None or gene_id_col not in annotation.columns:
        return [str(f) for f in feature_ids]
    ids = annotation[gene_id_col].reindex(pd.Index(feature_ids)).dropna().astype(str)
    return list(dict.fromkeys(i for i in ids if i.strip()))


def write_gene_catalog(
    path: Path,
    universe: Sequence[str],
    results: Mapping[str, DEResult],
    annotation: pd.DataFrame,
    *,
    gene_id_col: Optional[str] = "entrez_id",
) -> Path:
    """
    JSON catalog for enrichment tools: the tested gene universe plus the
    up- and down-regulated gene ids of every contrast (empty contrasts have
    empty lists).
    """
    if gene_id_col is not None and gene_id_col not in annotation.columns:
        LOGGER.warning(
            "Gene id column '%s' not in annotation; catalog uses merged cluster ids.", gene_id_col
        )

    catalog: Dict[str, object] = {
        "gene_id_column": gene_id_col if gene_id_col in annotation.columns else None,
        "universe": _gene_ids(list(universe), annotation, gene_id_col),
        "contrasts": {
            name: {
                "up": _gene_ids(res.up_ids(), annotation, gene_id_col),
                "down": _gene_ids(res.down_ids(), annotation, gene_id_col),
            }
            for name, res in results.items()
        },
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as fh:
        json.dump(catalog, fh, indent=2)
    return path


def to_jsonable(x):
    """numpy scalars/arrays -> plain Python for json.dump."""
    if isinstance(x, np.generic):
        return x.item()
    if isinstance(x, np.ndarray):
        return x.tolist()
    if isinstance(x, Path):
        return str(x)
    return str(x)
