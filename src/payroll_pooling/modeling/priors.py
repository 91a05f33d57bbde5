"""Prior families used by model specifications and their PyMC counterparts."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, Sequence, Type, Union

import numpy as np
import pymc as pm

from ..errors import SpecificationError


class _Prior:
    """Shared plumbing: parameter validation and PyMC construction."""

    family: ClassVar[str] = ""
    pymc_cls: ClassVar[Type[pm.Distribution]]

    def params(self) -> Dict[str, float]:
        return {item.name: float(getattr(self, item.name)) for item in fields(self)}  # type: ignore[arg-type]

    def to_pymc(self, name: str, **kwargs: Any):
        """Register this prior as a named random variable in the active model."""
        return self.pymc_cls(name, **self.params(), **kwargs)

    def dist(self, **kwargs: Any):
        """Return an unregistered distribution, e.g. for `sd_dist` arguments."""
        return self.pymc_cls.dist(**self.params(), **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {"family": self.family, **self.params()}

    def _require_positive(self, *names: str) -> None:
        for name in names:
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                raise SpecificationError(f"{self.family} prior needs {name} > 0, got {value!r}")


# ---------------------------------------------------------------------------
# Location-scale families for fixed-effect coefficients.


@dataclass(frozen=True)
class Normal(_Prior):
    mu: float = 0.0
    sigma: float = 1.0

    family: ClassVar[str] = "Normal"
    pymc_cls: ClassVar[Type[pm.Distribution]] = pm.Normal

    def __post_init__(self) -> None:
        if not np.isfinite(self.mu):
            raise SpecificationError("Normal prior needs a finite mu.")
        self._require_positive("sigma")


@dataclass(frozen=True)
class StudentT(_Prior):
    nu: float = 3.0
    mu: float = 0.0
    sigma: float = 1.0

    family: ClassVar[str] = "StudentT"
    pymc_cls: ClassVar[Type[pm.Distribution]] = pm.StudentT

    def __post_init__(self) -> None:
        if not np.isfinite(self.mu):
            raise SpecificationError("StudentT prior needs a finite mu.")
        self._require_positive("nu", "sigma")


# ---------------------------------------------------------------------------
# Half families for standard deviations.


@dataclass(frozen=True)
class HalfNormal(_Prior):
    sigma: float = 1.0

    family: ClassVar[str] = "HalfNormal"
    pymc_cls: ClassVar[Type[pm.Distribution]] = pm.HalfNormal

    def __post_init__(self) -> None:
        self._require_positive("sigma")


@dataclass(frozen=True)
class HalfCauchy(_Prior):
    beta: float = 1.0

    family: ClassVar[str] = "HalfCauchy"
    pymc_cls: ClassVar[Type[pm.Distribution]] = pm.HalfCauchy

    def __post_init__(self) -> None:
        self._require_positive("beta")


@dataclass(frozen=True)
class Exponential(_Prior):
    lam: float = 1.0

    family: ClassVar[str] = "Exponential"
    pymc_cls: ClassVar[Type[pm.Distribution]] = pm.Exponential

    def __post_init__(self) -> None:
        self._require_positive("lam")


# ---------------------------------------------------------------------------
# Correlation matrices.


@dataclass(frozen=True)
class LKJ:
    """LKJ prior over correlation matrices; eta=1 is uniform, larger favours identity."""

    eta: float = 2.0

    family: ClassVar[str] = "LKJ"

    def __post_init__(self) -> None:
        if not np.isfinite(self.eta) or self.eta <= 0:
            raise SpecificationError(f"LKJ prior needs eta > 0, got {self.eta!r}")

    def params(self) -> Dict[str, float]:
        return {"eta": float(self.eta)}

    def to_dict(self) -> Dict[str, Any]:
        return {"family": self.family, "eta": float(self.eta)}


CoefficientPrior = Union[Normal, StudentT]
ScalePrior = Union[HalfNormal, HalfCauchy, Exponential]
COEFFICIENT_PRIORS = (Normal, StudentT)
SCALE_PRIORS = (HalfNormal, HalfCauchy, Exponential)


def stacked_scale_dist(priors: Sequence[ScalePrior]):
    """Combine per-term scale priors of one family into a single vector distribution."""
    if not priors:
        raise SpecificationError("At least one scale prior is required.")
    families = {type(prior) for prior in priors}
    if len(families) != 1:
        names = ", ".join(sorted(prior.family for prior in priors))
        raise SpecificationError(f"Joint covariance needs scale priors from one family, got: {names}")
    prior_cls = families.pop()
    stacked = {
        name: np.asarray([prior.params()[name] for prior in priors], dtype=float)
        for name in priors[0].params()
    }
    return prior_cls.pymc_cls.dist(**stacked, shape=len(priors))


__all__ = [
    "COEFFICIENT_PRIORS",
    "CoefficientPrior",
    "Exponential",
    "HalfCauchy",
    "HalfNormal",
    "LKJ",
    "Normal",
    "SCALE_PRIORS",
    "ScalePrior",
    "StudentT",
    "stacked_scale_dist",
]
