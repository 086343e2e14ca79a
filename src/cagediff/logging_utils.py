import logging
from collections import Counter
from pathlib import Path
from typing import Optional, Sequence

LOGGER = logging.getLogger("cagediff")


def init_logging(logfile: Optional[Path] = None, level: int = logging.INFO) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed to avoid duplicates.
    """

    # Remove any pre-configured handlers (important for Typer)
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )

    # numerical warnings from scipy/numpy are routed through logging
    logging.captureWarnings(True)


def log_feature_failures(
    stage: str,
    reasons: Sequence[Optional[str]],
    *,
    logger: Optional[logging.Logger] = None,
    warn_fraction: float = 0.05,
) -> dict:
    """
    Summarise per-feature failures of a stage (None = success).

    Failures are a quality signal, not an error: the count, the proportion
    and the breakdown by reason are logged, at WARNING once the failed
    fraction exceeds ``warn_fraction``.
    """
    logger = logger or LOGGER
    n = len(reasons)
    counts = Counter(r for r in reasons if r is not None)
    n_failed = sum(counts.values())
    frac = (n_failed / n) if n else 0.0

    summary = {"stage": stage, "n_features": n, "n_unavailable": n_failed,
               "fraction_unavailable": frac, "reasons": dict(counts)}

    if n_failed == 0:
        logger.info("[%s] all %d features fitted", stage, n)
        return summary

    breakdown = ", ".join(f"{k}={v}" for k, v in counts.most_common())
    level = logging.WARNING if frac > warn_fraction else logging.INFO
    logger.log(
        level,
        "[%s] %d / %d features (%.1f%%) unavailable: %s",
        stage, n_failed, n, 100.0 * frac, breakdown,
    )
    return summary
