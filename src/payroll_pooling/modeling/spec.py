"""Declarative model specifications built through a typed builder.

A specification names the response, the fixed-effect terms with their priors,
and the group-level terms. Group-level terms that share a grouping factor are
collected into one `GroupStructure`; when it holds more than one term the
prior is multivariate, with per-term scale priors and an LKJ correlation
prior over the Cholesky-factored covariance.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from ..config import PAYROLL_SCHEMA, Schema
from ..errors import SpecificationError
from .priors import (
    COEFFICIENT_PRIORS,
    LKJ,
    SCALE_PRIORS,
    CoefficientPrior,
    Exponential,
    HalfCauchy,
    Normal,
    ScalePrior,
)

INTERCEPT = "(Intercept)"
TermKind = Literal["intercept", "continuous", "categorical"]


@dataclass(frozen=True)
class FixedTerm:
    predictor: str
    kind: TermKind
    prior: CoefficientPrior


@dataclass(frozen=True)
class VaryingIntercept:
    factor: str
    scale_prior: ScalePrior


@dataclass(frozen=True)
class VaryingSlope:
    factor: str
    predictor: str
    scale_prior: ScalePrior


VaryingTerm = Union[VaryingIntercept, VaryingSlope]


@dataclass(frozen=True)
class GroupStructure:
    """All group-level terms sharing one grouping factor."""

    factor: str
    terms: Tuple[str, ...]
    scale_priors: Tuple[ScalePrior, ...]
    correlation_prior: Optional[LKJ] = None

    @property
    def size(self) -> int:
        return len(self.terms)

    @property
    def is_multivariate(self) -> bool:
        return len(self.terms) > 1

    @property
    def n_covariance_params(self) -> int:
        return self.size * (self.size + 1) // 2


@dataclass(frozen=True)
class ModelSpec:
    """Frozen description of one model variant; fully determines estimation inputs."""

    name: str
    response: str
    fixed: Tuple[FixedTerm, ...]
    groups: Tuple[GroupStructure, ...]
    residual_prior: ScalePrior

    @property
    def has_intercept(self) -> bool:
        return any(term.kind == "intercept" for term in self.fixed)

    @property
    def factors(self) -> Tuple[str, ...]:
        """Every categorical field the model reads, fixed or varying."""
        names = [term.predictor for term in self.fixed if term.kind == "categorical"]
        names.extend(group.factor for group in self.groups)
        return tuple(dict.fromkeys(names))

    def group(self, factor: str) -> GroupStructure:
        for group in self.groups:
            if group.factor == factor:
                return group
        raise KeyError(f"Model {self.name!r} has no group-level terms for {factor!r}")

    def formula(self) -> str:
        """Readable lme4-style rendering, for reports only."""
        parts = ["1" if self.has_intercept else "0"]
        parts.extend(term.predictor for term in self.fixed if term.kind != "intercept")
        for group in self.groups:
            inner = " + ".join("1" if term == INTERCEPT else term for term in group.terms)
            if INTERCEPT not in group.terms:
                inner = "0 + " + inner
            parts.append(f"({inner} | {group.factor})")
        return f"{self.response} ~ " + " + ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "response": self.response,
            "fixed": [
                {"predictor": term.predictor, "kind": term.kind, "prior": term.prior.to_dict()}
                for term in self.fixed
            ],
            "groups": [
                {
                    "factor": group.factor,
                    "terms": list(group.terms),
                    "scale_priors": [prior.to_dict() for prior in group.scale_priors],
                    "correlation_prior": group.correlation_prior.to_dict() if group.correlation_prior else None,
                }
                for group in self.groups
            ],
            "residual_prior": self.residual_prior.to_dict(),
        }

    @property
    def fingerprint(self) -> str:
        """Stable content hash; the name is excluded so renamed copies share cache entries."""
        payload = self.to_dict()
        payload.pop("name")
        return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class ModelSpecBuilder:
    """Accumulate terms and priors, then validate them into a `ModelSpec`."""

    def __init__(self, response: str, schema: Schema = PAYROLL_SCHEMA) -> None:
        self.schema = schema
        self.response = response
        self._intercept: Optional[CoefficientPrior] = Normal(0.0, 10.0)
        self._fixed: List[Tuple[str, CoefficientPrior]] = []
        self._varying: List[VaryingTerm] = []
        self._correlations: Dict[str, LKJ] = {}
        self._residual: ScalePrior = Exponential(1.0)

    def intercept(self, prior: CoefficientPrior = Normal(0.0, 10.0)) -> "ModelSpecBuilder":
        self._intercept = prior
        return self

    def no_intercept(self) -> "ModelSpecBuilder":
        self._intercept = None
        return self

    def fixed(self, predictor: str, prior: CoefficientPrior = Normal(0.0, 1.0)) -> "ModelSpecBuilder":
        """Add a fixed effect; categorical predictors are treatment-coded against index 1."""
        self._fixed.append((predictor, prior))
        return self

    def varying_intercept(self, factor: str, scale_prior: ScalePrior = HalfCauchy(1.0)) -> "ModelSpecBuilder":
        self._varying.append(VaryingIntercept(factor, scale_prior))
        return self

    def varying_slope(
        self,
        factor: str,
        predictor: str,
        scale_prior: ScalePrior = HalfCauchy(1.0),
    ) -> "ModelSpecBuilder":
        self._varying.append(VaryingSlope(factor, predictor, scale_prior))
        return self

    def correlation(self, factor: str, prior: LKJ) -> "ModelSpecBuilder":
        self._correlations[factor] = prior
        return self

    def residual(self, prior: ScalePrior) -> "ModelSpecBuilder":
        self._residual = prior
        return self

    def build(self, name: str) -> ModelSpec:
        if self.schema.role_of(self.response) != "response":
            raise SpecificationError(f"{self.response!r} is not a response field of the dataset.")
        if not isinstance(self._residual, SCALE_PRIORS):
            raise SpecificationError("The residual prior must be a half/positive family.")

        fixed_terms = self._build_fixed()
        groups = self._build_groups(fixed_terms)
        return ModelSpec(
            name=name,
            response=self.response,
            fixed=tuple(fixed_terms),
            groups=tuple(groups),
            residual_prior=self._residual,
        )

    # --- internals -----------------------------------------------------

    def _build_fixed(self) -> List[FixedTerm]:
        terms: List[FixedTerm] = []
        if self._intercept is not None:
            terms.append(FixedTerm(INTERCEPT, "intercept", self._check_coefficient_prior(INTERCEPT, self._intercept)))
        seen = set()
        for predictor, prior in self._fixed:
            if predictor in seen:
                raise SpecificationError(f"Fixed effect {predictor!r} declared twice.")
            seen.add(predictor)
            role = self.schema.role_of(predictor)
            if role not in ("continuous", "categorical"):
                raise SpecificationError(f"Unknown fixed-effect predictor {predictor!r}.")
            kind: TermKind = "continuous" if role == "continuous" else "categorical"
            terms.append(FixedTerm(predictor, kind, self._check_coefficient_prior(predictor, prior)))
        if not terms:
            raise SpecificationError("A model needs at least one fixed-effect term.")
        return terms

    def _build_groups(self, fixed_terms: List[FixedTerm]) -> List[GroupStructure]:
        continuous = {term.predictor for term in fixed_terms if term.kind == "continuous"}
        categorical = {term.predictor for term in fixed_terms if term.kind == "categorical"}

        collected: Dict[str, Dict[str, ScalePrior]] = {}
        for term in self._varying:
            if self.schema.role_of(term.factor) != "categorical":
                raise SpecificationError(f"Unknown grouping factor {term.factor!r}.")
            if term.factor in categorical:
                raise SpecificationError(f"{term.factor!r} cannot be both a fixed categorical term and a grouping factor.")
            if not isinstance(term.scale_prior, SCALE_PRIORS):
                raise SpecificationError(f"Scale prior for {term.factor!r} must be a half/positive family.")
            if isinstance(term, VaryingSlope):
                if term.predictor not in continuous:
                    raise SpecificationError(
                        f"Varying slope on {term.predictor!r} requires it as a continuous fixed-effect predictor."
                    )
                name = term.predictor
            else:
                name = INTERCEPT
            slot = collected.setdefault(term.factor, {})
            if name in slot:
                raise SpecificationError(f"Group-level term {name!r} for {term.factor!r} declared twice.")
            slot[name] = term.scale_prior

        stray = set(self._correlations) - set(collected)
        if stray:
            raise SpecificationError(f"Correlation priors given for factors without group terms: {sorted(stray)}")

        groups: List[GroupStructure] = []
        for factor, slot in collected.items():
            names = sorted(slot, key=lambda item: (item != INTERCEPT,))
            priors = tuple(slot[item] for item in names)
            correlation: Optional[LKJ] = None
            if len(names) > 1:
                families = {type(prior) for prior in priors}
                if len(families) != 1:
                    raise SpecificationError(f"Joint covariance for {factor!r} needs scale priors from one family.")
                correlation = self._correlations.get(factor, LKJ(2.0))
            elif factor in self._correlations:
                raise SpecificationError(f"{factor!r} has a single group-level term; a correlation prior does not apply.")
            groups.append(GroupStructure(factor, tuple(names), priors, correlation))
        return groups

    @staticmethod
    def _check_coefficient_prior(name: str, prior: CoefficientPrior) -> CoefficientPrior:
        if not isinstance(prior, COEFFICIENT_PRIORS):
            raise SpecificationError(f"Prior for {name!r} must be a location-scale family.")
        return prior


__all__ = [
    "FixedTerm",
    "GroupStructure",
    "INTERCEPT",
    "ModelSpec",
    "ModelSpecBuilder",
    "VaryingIntercept",
    "VaryingSlope",
]
