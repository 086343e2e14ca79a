from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import logging

from pydantic import ValidationError

from .aggregate import run_aggregate
from .differential import run_differential
from .config import AggregateConfig, DifferentialConfig
from .errors import CageDiffError
from .logging_utils import init_logging


LOGGER = logging.getLogger(__name__)
app = typer.Typer(help="cagediff CLI: differential TSS-cluster activity from CAGE tag counts.")


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _normalize_list(values: Optional[List[str]]) -> List[str]:
    """Supports --contrast B.vs.A,C.vs.A --contrast D.vs.rest."""
    if not values:
        return []
    out = []
    for c in values:
        out.extend([x.strip() for x in c.split(",") if x.strip()])
    return out


def _build_config(cls, **kwargs):
    try:
        return cls(**kwargs)
    except ValidationError as e:
        raise typer.BadParameter(str(e))


def _run_or_exit(fn, cfg) -> None:
    """Fatal errors are logged and turned into a non-zero exit code."""
    try:
        fn(cfg)
    except CageDiffError as e:
        LOGGER.error("Run aborted: %s", e)
        raise typer.Exit(code=1)
    except (FileNotFoundError, KeyError, ValueError) as e:
        LOGGER.error("Invalid input: %s", e)
        raise typer.Exit(code=1)


# ======================================================================
#  aggregate
# ======================================================================
@app.command("aggregate", help="Collapse raw tag-cluster counts into merged-cluster counts.")
def aggregate(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    counts_path: Path = typer.Option(
        ..., "--counts", "-c", exists=True,
        help="[I/O] Raw count table (cluster id + metadata + one column per sample).",
    ),
    samples_path: Path = typer.Option(
        ..., "--samples", "-s", exists=True,
        help="[I/O] Sample sheet (sample id, group, batch, optional barcode).",
    ),
    merge_map_path: Path = typer.Option(
        ..., "--merge-map", "-m", exists=True,
        help="[I/O] Raw cluster / enhancer group -> merged cluster map, with annotation.",
    ),
    enhancer_map_path: Optional[Path] = typer.Option(
        None, "--enhancer-map", "-e", exists=True,
        help="[I/O] Raw cluster -> enhancer group map.",
    ),
    output_path: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output merged count table (.tsv or .csv).",
    ),

    # -------------------------------------------------------------
    # Columns
    # -------------------------------------------------------------
    sample_col: str = typer.Option("sample_id", help="[Columns] Sample id column of the sample sheet."),
    group_col: str = typer.Option("group", help="[Columns] Group column of the sample sheet."),
    batch_col: str = typer.Option("batch", help="[Columns] Batch column of the sample sheet."),
    barcode_col: Optional[str] = typer.Option(None, help="[Columns] Optional barcode column."),
    cluster_id_col: str = typer.Option("cluster_id", help="[Columns] Raw cluster id column."),
    merged_id_col: str = typer.Option("merged_id", help="[Columns] Merged cluster id column."),
    enhancer_id_col: str = typer.Option("enhancer_id", help="[Columns] Enhancer group id column."),
    metadata_col: Optional[List[str]] = typer.Option(
        None, "--metadata-col",
        help="[Columns] Non-sample column of the count table (repeatable). When given, any other "
             "column that is not a sample id is an error.",
    ),
    sep: Optional[str] = typer.Option(None, help="[I/O] Input separator (default: from suffix)."),
):
    logfile = output_path.parent / "aggregate.log"
    init_logging(logfile)
    LOGGER.info("Logging initialized")

    cfg = _build_config(
        AggregateConfig,
        counts_path=counts_path,
        samples_path=samples_path,
        merge_map_path=merge_map_path,
        enhancer_map_path=enhancer_map_path,
        output_path=output_path,
        sample_col=sample_col,
        group_col=group_col,
        batch_col=batch_col,
        barcode_col=barcode_col,
        cluster_id_col=cluster_id_col,
        merged_id_col=merged_id_col,
        enhancer_id_col=enhancer_id_col,
        metadata_cols=_normalize_list(metadata_col) or None,
        sep=sep,
        logfile=logfile,
    )
    _run_or_exit(run_aggregate, cfg)


# ======================================================================
#  differential
# ======================================================================
@app.command("differential", help="Full pipeline: aggregate, filter, normalise, fit and test contrasts.")
def differential(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    counts_path: Path = typer.Option(
        ..., "--counts", "-c", exists=True,
        help="[I/O] Raw count table (cluster id + metadata + one column per sample).",
    ),
    samples_path: Path = typer.Option(
        ..., "--samples", "-s", exists=True,
        help="[I/O] Sample sheet (sample id, group, batch, optional barcode).",
    ),
    merge_map_path: Path = typer.Option(
        ..., "--merge-map", "-m", exists=True,
        help="[I/O] Raw cluster / enhancer group -> merged cluster map, with annotation.",
    ),
    enhancer_map_path: Optional[Path] = typer.Option(
        None, "--enhancer-map", "-e", exists=True,
        help="[I/O] Raw cluster -> enhancer group map.",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory for tables, gene catalog and run summary.",
    ),
    n_jobs: int = typer.Option(1, "--n-jobs", help="Number of CPU cores to use."),

    # -------------------------------------------------------------
    # Columns
    # -------------------------------------------------------------
    sample_col: str = typer.Option("sample_id", help="[Columns] Sample id column of the sample sheet."),
    group_col: str = typer.Option("group", help="[Columns] Group column of the sample sheet."),
    batch_col: str = typer.Option("batch", help="[Columns] Batch column of the sample sheet."),
    barcode_col: Optional[str] = typer.Option(None, help="[Columns] Optional barcode column."),
    cluster_id_col: str = typer.Option("cluster_id", help="[Columns] Raw cluster id column."),
    merged_id_col: str = typer.Option("merged_id", help="[Columns] Merged cluster id column."),
    enhancer_id_col: str = typer.Option("enhancer_id", help="[Columns] Enhancer group id column."),
    metadata_col: Optional[List[str]] = typer.Option(
        None, "--metadata-col",
        help="[Columns] Non-sample column of the count table (repeatable). When given, any other "
             "column that is not a sample id is an error.",
    ),
    gene_id_col: Optional[str] = typer.Option(
        "entrez_id", help="[Columns] Annotation column with gene ids for the gene catalog."
    ),
    sep: Optional[str] = typer.Option(None, help="[I/O] Input separator (default: from suffix)."),

    # -------------------------------------------------------------
    # Contrasts
    # -------------------------------------------------------------
    contrast: Optional[List[str]] = typer.Option(
        None, "--contrast", "-C",
        help="[DE] Contrast like B.vs.A or B.vs.rest (repeatable; default: all pairs).",
    ),
    min_log_fold_change: float = typer.Option(0.5, help="[DE] log2 fold-change threshold of the test."),
    max_fdr: float = typer.Option(0.05, help="[DE] BH FDR cutoff."),
    only_significant: bool = typer.Option(
        False, "--only-significant/--all-features", help="[DE] Write only significant rows."
    ),

    # -------------------------------------------------------------
    # Filter / normalisation / model
    # -------------------------------------------------------------
    filter_cpm_low: float = typer.Option(1.0, help="[Filter] Low CPM threshold."),
    filter_cpm_high: float = typer.Option(3.0, help="[Filter] High CPM threshold."),
    filter_min_samples_low: int = typer.Option(3, help="[Filter] Samples required above the low threshold."),
    filter_min_samples_high: int = typer.Option(1, help="[Filter] Samples required above the high threshold."),
    logratio_trim: float = typer.Option(0.3, help="[TMM] Fraction of log-ratios trimmed from each end."),
    sum_trim: float = typer.Option(0.05, help="[TMM] Fraction of abundances trimmed from each end."),
    prior_count: float = typer.Option(2.0, help="[Model] Prior count for log-CPM values."),
    use_batch: bool = typer.Option(True, "--use-batch/--no-batch", help="[Model] Include batch in the design."),
    robust: bool = typer.Option(True, "--robust/--no-robust", help="[Model] Robust empirical Bayes."),
    dispersion_kind: str = typer.Option(
        "tagwise", "--dispersion", help="[Model] Dispersion used by the QL fit: tagwise | trended | common"
    ),
):
    output_dir.mkdir(parents=True, exist_ok=True)
    logfile = output_dir / "differential.log"
    init_logging(logfile)
    LOGGER.info("Logging initialized")

    cfg = _build_config(
        DifferentialConfig,
        counts_path=counts_path,
        samples_path=samples_path,
        merge_map_path=merge_map_path,
        enhancer_map_path=enhancer_map_path,
        output_dir=output_dir,
        n_jobs=n_jobs,
        sample_col=sample_col,
        group_col=group_col,
        batch_col=batch_col,
        barcode_col=barcode_col,
        cluster_id_col=cluster_id_col,
        merged_id_col=merged_id_col,
        enhancer_id_col=enhancer_id_col,
        metadata_cols=_normalize_list(metadata_col) or None,
        gene_id_col=gene_id_col,
        sep=sep,
        contrasts=_normalize_list(contrast),
        min_log_fold_change=min_log_fold_change,
        max_fdr=max_fdr,
        only_significant=only_significant,
        filter_cpm_low=filter_cpm_low,
        filter_cpm_high=filter_cpm_high,
        filter_min_samples_low=filter_min_samples_low,
        filter_min_samples_high=filter_min_samples_high,
        trim_fractions=(logratio_trim, sum_trim),
        prior_count=prior_count,
        use_batch=use_batch,
        robust=robust,
        dispersion_kind=dispersion_kind,
        logfile=logfile,
    )
    _run_or_exit(run_differential, cfg)


# ======================================================================
#  sample-sheet
# ======================================================================
@app.command("sample-sheet", help="Draft a sample sheet from count-table headers (review before use).")
def sample_sheet(
    counts_path: Path = typer.Option(..., "--counts", "-c", exists=True, help="[I/O] Raw count table."),
    pattern: str = typer.Option(
        ..., "--pattern", "-p",
        help="[I/O] Regex with named groups 'group' and optionally 'sample', 'batch', 'barcode'.",
    ),
    output_path: Path = typer.Option(..., "--out", "-o", help="[I/O] Output sample sheet (.tsv or .csv)."),
    sep: Optional[str] = typer.Option(None, help="[I/O] Input separator (default: from suffix)."),
):
    from .io_utils import read_table, sample_sheet_from_headers, write_table

    init_logging(None)
    try:
        headers = list(read_table(counts_path, sep, nrows=0).columns)
        sheet = sample_sheet_from_headers(headers, pattern)
    except (CageDiffError, ValueError) as e:
        LOGGER.error("Cannot build sample sheet: %s", e)
        raise typer.Exit(code=1)
    write_table(sheet.to_frame(), output_path)
    typer.echo(f"Wrote {len(sheet)} samples to {output_path}")


if __name__ == "__main__":
    app()
