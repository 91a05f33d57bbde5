"""Read-only records produced by the estimation engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from arviz import InferenceData

from ..data.dataset import Scaling
from ..data.indexing import GroupIndex
from ..modeling.spec import INTERCEPT, ModelSpec


@dataclass(frozen=True)
class FixedEffect:
    name: str
    estimate: float
    std_error: float
    lower: float
    upper: float


@dataclass(frozen=True)
class GroupEffect:
    """One group's deviation from the population value of one term."""

    factor: str
    term: str
    label: str
    index: int
    estimate: float
    std_error: float
    lower: float
    upper: float
    n_obs: int


@dataclass(frozen=True)
class VarianceComponent:
    """Across-group standard deviation of one term, with its correlation to the first term."""

    factor: str
    term: str
    std_dev: float
    corr: Optional[float] = None


@dataclass(frozen=True)
class Diagnostics:
    converged: bool
    n_iter: int
    runs: int
    runs_agree: bool
    max_disagreement: float
    singular: bool = False
    singular_factors: Tuple[str, ...] = ()
    objective: Optional[float] = None
    max_rhat: Optional[float] = None
    min_ess: Optional[float] = None
    divergences: Optional[int] = None
    messages: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FitResult:
    """Estimates for one ModelSpec on one dataset.

    ``pointwise_log_likelihood`` has shape (samples, n_obs): one row per
    posterior draw for sampled fits, a single conditional row for likelihood
    fits. ``effective_parameters`` is stored for likelihood fits (hat-matrix
    trace plus the residual variance) and derived from the draws otherwise.
    """

    spec: ModelSpec
    method: str
    dataset_fingerprint: str
    n_obs: int
    fixed_effects: Tuple[FixedEffect, ...]
    group_effects: Tuple[GroupEffect, ...]
    variance_components: Tuple[VarianceComponent, ...]
    residual_sd: float
    pointwise_log_likelihood: np.ndarray
    literal_parameters: int
    diagnostics: Diagnostics
    credible_interval: float
    indexes: Mapping[str, GroupIndex]
    effective_parameters: Optional[float] = None
    scaling: Optional[Scaling] = None
    issues: Tuple[str, ...] = ()
    posterior: Optional[InferenceData] = field(default=None, compare=False, repr=False)

    @property
    def model(self) -> str:
        return self.spec.name

    @property
    def singular(self) -> bool:
        return self.diagnostics.singular

    def fixed_effect(self, name: str) -> FixedEffect:
        for effect in self.fixed_effects:
            if effect.name == name:
                return effect
        raise KeyError(f"{self.model} has no fixed effect {name!r}")

    def group_effects_for(self, factor: str, term: str = INTERCEPT) -> Tuple[GroupEffect, ...]:
        effects = tuple(effect for effect in self.group_effects if effect.factor == factor and effect.term == term)
        if not effects:
            raise KeyError(f"{self.model} has no group-level {term!r} for {factor!r}")
        return effects

    def group_estimates(self, factor: str, term: str = INTERCEPT) -> Dict[str, float]:
        """Population value plus each group's deviation, keyed by group label."""
        population = self.fixed_effect(term).estimate
        return {effect.label: population + effect.estimate for effect in self.group_effects_for(factor, term)}

    def coefficients(self) -> Dict[str, float]:
        return {effect.name: effect.estimate for effect in self.fixed_effects}

    def fixed_effects_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(effect) for effect in self.fixed_effects])

    def group_effects_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(effect) for effect in self.group_effects])

    def to_records(self) -> Dict[str, Any]:
        """Plain serialisable payload for reporting layers."""
        return {
            "model": self.model,
            "formula": self.spec.formula(),
            "method": self.method,
            "n_obs": self.n_obs,
            "residual_sd": self.residual_sd,
            "credible_interval": self.credible_interval,
            "fixed_effects": [asdict(effect) for effect in self.fixed_effects],
            "group_effects": [asdict(effect) for effect in self.group_effects],
            "variance_components": [asdict(component) for component in self.variance_components],
            "diagnostics": asdict(self.diagnostics),
            "issues": list(self.issues),
        }


@dataclass(frozen=True)
class FitFailure:
    """A fit that raised; kept out of comparison tables and reported on its own."""

    model: str
    error_type: str
    message: str
    diagnostics: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, model: str, exc: BaseException) -> "FitFailure":
        return cls(
            model=model,
            error_type=type(exc).__name__,
            message=str(exc),
            diagnostics=dict(getattr(exc, "diagnostics", {}) or {}),
        )


__all__ = [
    "Diagnostics",
    "FitFailure",
    "FitResult",
    "FixedEffect",
    "GroupEffect",
    "VarianceComponent",
]
