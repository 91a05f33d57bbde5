"""Rank fitted models by information criterion."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..estimation.results import FitFailure, FitResult
from .criteria import CRITERION_FOR_METHOD, Criterion, criterion_for


@dataclass(frozen=True)
class ComparisonEntry:
    rank: int
    model: str
    method: str
    criterion: str
    value: float
    delta: float
    weight: float
    effective_parameters: float
    literal_parameters: int
    std_error: Optional[float]
    delta_std_error: Optional[float]
    singular: bool
    runs_agree: bool


@dataclass(frozen=True)
class ComparisonTable:
    """Models sorted ascending by criterion; failed fits listed apart and never ranked."""

    criterion: str
    entries: Tuple[ComparisonEntry, ...]
    failures: Tuple[FitFailure, ...] = ()

    @property
    def best(self) -> ComparisonEntry:
        return self.entries[0]

    @property
    def models(self) -> Tuple[str, ...]:
        return tuple(entry.model for entry in self.entries)

    def entry(self, model: str) -> ComparisonEntry:
        for entry in self.entries:
            if entry.model == model:
                return entry
        raise KeyError(f"Model {model!r} is not ranked in this table")

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(entry) for entry in self.entries])

    def failures_frame(self) -> pd.DataFrame:
        columns = ["model", "error_type", "message"]
        return pd.DataFrame([[f.model, f.error_type, f.message] for f in self.failures], columns=columns)

    def to_records(self) -> Dict[str, Any]:
        return {
            "criterion": self.criterion,
            "entries": [asdict(entry) for entry in self.entries],
            "failures": [asdict(failure) for failure in self.failures],
        }


def compare(fits: Sequence[Union[FitResult, FitFailure]]) -> ComparisonTable:
    """Rank the successful fits by WAIC (posterior) or conditional AIC (likelihood).

    Scores come from the pointwise log-likelihood already stored on each fit;
    nothing is refitted. Ties keep input order.
    """
    successes: List[FitResult] = [item for item in fits if isinstance(item, FitResult)]
    failures = tuple(item for item in fits if isinstance(item, FitFailure))
    if not successes:
        raise ValueError("No successful fits to compare.")

    methods = {fit.method for fit in successes}
    if len(methods) > 1:
        raise ValueError(f"Cannot rank fits scored by different criteria: {sorted(methods)}")
    datasets = {fit.dataset_fingerprint for fit in successes}
    if len(datasets) > 1:
        raise ValueError("Fits were estimated on different datasets and cannot be compared.")

    scored: List[Tuple[FitResult, Criterion]] = [(fit, criterion_for(fit)) for fit in successes]
    order = sorted(range(len(scored)), key=lambda position: scored[position][1].value)
    best = scored[order[0]][1]

    deltas = np.asarray([scored[position][1].value - best.value for position in order])
    raw_weights = np.exp(-0.5 * deltas)
    weights = raw_weights / raw_weights.sum()

    entries: List[ComparisonEntry] = []
    for rank, (position, delta, weight) in enumerate(zip(order, deltas, weights), start=1):
        fit, score = scored[position]
        entries.append(
            ComparisonEntry(
                rank=rank,
                model=fit.model,
                method=fit.method,
                criterion=score.name,
                value=score.value,
                delta=float(delta),
                weight=float(weight),
                effective_parameters=score.effective_parameters,
                literal_parameters=fit.literal_parameters,
                std_error=score.std_error,
                delta_std_error=_difference_se(score, best) if rank > 1 else None,
                singular=fit.singular,
                runs_agree=fit.diagnostics.runs_agree,
            )
        )
    return ComparisonTable(criterion=CRITERION_FOR_METHOD[methods.pop()], entries=tuple(entries), failures=failures)


def _difference_se(score: Criterion, best: Criterion) -> Optional[float]:
    if score.std_error is None or score.pointwise.shape != best.pointwise.shape:
        return None
    difference = score.pointwise - best.pointwise
    return float(np.sqrt(difference.size * np.var(difference)))


__all__ = ["ComparisonEntry", "ComparisonTable", "compare"]
