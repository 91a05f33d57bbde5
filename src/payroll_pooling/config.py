"""Static configuration: dataset schema, default paths and numeric tolerances."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Tuple, TypedDict


class ColumnMap(TypedDict):
    hourly_rate: str
    tenure_years: str
    job_group: str
    gender_group: str


@dataclass(frozen=True)
class Schema:
    """Field roles known to the model specification layer."""

    response: Tuple[str, ...]
    continuous: Tuple[str, ...]
    categorical: Tuple[str, ...]

    def role_of(self, name: str) -> str | None:
        if name in self.response:
            return "response"
        if name in self.continuous:
            return "continuous"
        if name in self.categorical:
            return "categorical"
        return None


PAYROLL_SCHEMA = Schema(
    response=("hourly_rate",),
    continuous=("tenure_years",),
    categorical=("job_group", "gender_group"),
)

# Column names produced by the upstream cleaning notebooks; callers may override.
DEFAULT_COLUMNS: ColumnMap = {
    "hourly_rate": "hourly_rate",
    "tenure_years": "tenure_years",
    "job_group": "job_group",
    "gender_group": "gender_group",
}

# Label emitted by the gender collaborator when a name could not be classified.
UNKNOWN_GENDER = "unknown"

# Default directories used by the Typer CLI; callers may override these.
DEFAULT_CACHE_ROOT = Path("data/fits")
DEFAULT_OUTPUT_ROOT = Path("data/reports")

# ---------------------------------------------------------------------------
# Numeric defaults.

DEFAULT_CREDIBLE_INTERVAL = 0.90
# Relative Cholesky diagonals below this count as a collapsed variance component.
SINGULAR_TOLERANCE = 1e-4
# A posterior group scale is collapsed when its HDI reaches below this fraction of sigma.
POSTERIOR_SINGULAR_RATIO = 1e-2
# Maximum spread of fixed-effect estimates across independent runs.
AGREEMENT_TOLERANCE = 1e-3
MAX_RHAT = 1.05

STRATEGY_LABELS: Dict[str, str] = {
    "likelihood": "REML/ML with conditional modes",
    "posterior": "NUTS posterior sampling",
}


__all__ = [
    "AGREEMENT_TOLERANCE",
    "ColumnMap",
    "DEFAULT_CACHE_ROOT",
    "DEFAULT_COLUMNS",
    "DEFAULT_CREDIBLE_INTERVAL",
    "DEFAULT_OUTPUT_ROOT",
    "MAX_RHAT",
    "PAYROLL_SCHEMA",
    "POSTERIOR_SINGULAR_RATIO",
    "SINGULAR_TOLERANCE",
    "STRATEGY_LABELS",
    "Schema",
    "UNKNOWN_GENDER",
]
