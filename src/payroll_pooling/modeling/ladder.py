"""The nested family of models fitted to the payroll data.

Each rung adds structure to the previous one: tenure only, job class as a
fixed effect, then job class as varying intercepts, then gender intercepts,
then correlated job-level intercepts and tenure slopes. Default priors assume
a standardized response and tenure.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Literal, Tuple

from ..config import PAYROLL_SCHEMA, Schema
from .priors import LKJ, Exponential, HalfNormal, Normal
from .spec import ModelSpec, ModelSpecBuilder

LadderKey = Literal["fixed_tenure", "fixed_job", "varying_job", "varying_job_gender", "varying_slope_job"]


@dataclass(frozen=True)
class LadderPriors:
    """Prior hyper-parameters shared by every rung."""

    intercept_mean: float = 0.0
    intercept_sd: float = 1.5
    coefficient_sd: float = 1.0
    group_scale: float = 1.0
    residual_rate: float = 1.0
    lkj_eta: float = 2.0

    def validate(self) -> None:
        if (
            self.intercept_sd <= 0
            or self.coefficient_sd <= 0
            or self.group_scale <= 0
            or self.residual_rate <= 0
            or self.lkj_eta <= 0
        ):
            raise ValueError("Prior scales must be strictly positive.")


def _base(priors: LadderPriors, schema: Schema) -> ModelSpecBuilder:
    return (
        ModelSpecBuilder("hourly_rate", schema=schema)
        .intercept(Normal(priors.intercept_mean, priors.intercept_sd))
        .fixed("tenure_years", Normal(0.0, priors.coefficient_sd))
        .residual(Exponential(priors.residual_rate))
    )


def _fixed_tenure(priors: LadderPriors, schema: Schema) -> ModelSpec:
    return _base(priors, schema).build("fixed_tenure")


def _fixed_job(priors: LadderPriors, schema: Schema) -> ModelSpec:
    return _base(priors, schema).fixed("job_group", Normal(0.0, priors.coefficient_sd)).build("fixed_job")


def _varying_job(priors: LadderPriors, schema: Schema) -> ModelSpec:
    return _base(priors, schema).varying_intercept("job_group", HalfNormal(priors.group_scale)).build("varying_job")


def _varying_job_gender(priors: LadderPriors, schema: Schema) -> ModelSpec:
    return (
        _base(priors, schema)
        .varying_intercept("job_group", HalfNormal(priors.group_scale))
        .varying_intercept("gender_group", HalfNormal(priors.group_scale))
        .build("varying_job_gender")
    )


def _varying_slope_job(priors: LadderPriors, schema: Schema) -> ModelSpec:
    return (
        _base(priors, schema)
        .varying_intercept("job_group", HalfNormal(priors.group_scale))
        .varying_slope("job_group", "tenure_years", HalfNormal(priors.group_scale))
        .correlation("job_group", LKJ(priors.lkj_eta))
        .build("varying_slope_job")
    )


REGISTRY: Dict[LadderKey, Callable[[LadderPriors, Schema], ModelSpec]] = {
    "fixed_tenure": _fixed_tenure,
    "fixed_job": _fixed_job,
    "varying_job": _varying_job,
    "varying_job_gender": _varying_job_gender,
    "varying_slope_job": _varying_slope_job,
}


def get_model(key: LadderKey, priors: LadderPriors | None = None, schema: Schema = PAYROLL_SCHEMA) -> ModelSpec:
    """Return the ModelSpec registered under ``key``."""
    settings = priors or LadderPriors()
    settings.validate()
    try:
        factory = REGISTRY[key]
    except KeyError as exc:
        raise ValueError(f"Unknown model '{key}'. Available: {list(REGISTRY)}") from exc
    return factory(settings, schema)


def build_ladder(priors: LadderPriors | None = None, schema: Schema = PAYROLL_SCHEMA) -> Tuple[ModelSpec, ...]:
    """Every rung, in order of increasing complexity."""
    return tuple(get_model(key, priors, schema) for key in REGISTRY)


def list_available_models() -> Tuple[str, ...]:
    return tuple(REGISTRY)


__all__ = ["LadderKey", "LadderPriors", "REGISTRY", "build_ladder", "get_model", "list_available_models"]
