# src/cagediff/errors.py
"""
Fatal error taxonomy.

Anything raised from here aborts the run: once the design or the identity
map is broken no downstream statistic can be trusted. Per-feature problems
(IRLS non-convergence, zero-variance rows) are never raised; they are
recorded on the fitted model and summarised in the log instead.
"""
from __future__ import annotations

from typing import Sequence


class CageDiffError(Exception):
    """Base class for structural failures of a run."""


class SampleSheetError(CageDiffError, ValueError):
    """Sample metadata is malformed (duplicate ids, missing columns, ...)."""


class SampleOrderError(CageDiffError, ValueError):
    """A matrix does not carry the canonical sample order."""

    def __init__(self, stage: str, expected: Sequence[str], found: Sequence[str]):
        self.stage = stage
        self.expected = list(expected)
        self.found = list(found)
        super().__init__(
            f"[{stage}] sample columns do not match the canonical sample order.\n"
            f"  expected: {self.expected}\n"
            f"  found:    {self.found}"
        )


class UnmappedClusterError(CageDiffError, KeyError):
    """Raw clusters that the identity map cannot place in any merged cluster."""

    def __init__(self, missing: Sequence[str], n_total: int):
        self.missing = list(missing)
        preview = ", ".join(self.missing[:10])
        more = f" (+{len(self.missing) - 10} more)" if len(self.missing) > 10 else ""
        super().__init__(
            f"{len(self.missing)} of {n_total} raw clusters are absent from the identity map: "
            f"{preview}{more}"
        )

    def __str__(self) -> str:
        return str(self.args[0])


class RankDeficientDesignError(CageDiffError, ValueError):
    """Design matrix columns are linearly dependent."""

    def __init__(self, rank: int, coef_names: Sequence[str], dependent: Sequence[str]):
        self.rank = int(rank)
        self.coef_names = list(coef_names)
        self.dependent = list(dependent)
        super().__init__(
            f"Design matrix is not of full column rank (rank {self.rank} < "
            f"{len(self.coef_names)} columns). Linearly dependent column(s): {self.dependent}. "
            "Check for batch levels confounded with groups."
        )


class InsufficientResidualDFError(CageDiffError, ValueError):
    """Not enough residual degrees of freedom to estimate dispersion."""

    def __init__(self, n_samples: int, n_coefs: int, required: int = 2):
        self.n_samples = int(n_samples)
        self.n_coefs = int(n_coefs)
        self.required = int(required)
        super().__init__(
            f"Dispersion estimation needs at least {self.required} residual degrees of freedom; "
            f"{self.n_samples} samples and {self.n_coefs} coefficients leave "
            f"{self.n_samples - self.n_coefs}."
        )


class UnknownCoefficientError(CageDiffError, KeyError):
    """A contrast names a coefficient the design matrix does not have."""

    def __init__(self, contrast: str, unknown: Sequence[str], available: Sequence[str]):
        self.contrast = contrast
        self.unknown = list(unknown)
        self.available = list(available)
        super().__init__(
            f"Contrast '{contrast}' references unknown coefficient(s) {self.unknown}. "
            f"Design coefficients: {self.available}"
        )

    def __str__(self) -> str:
        return str(self.args[0])
