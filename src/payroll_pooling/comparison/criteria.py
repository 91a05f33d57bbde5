"""Information criteria computed from stored pointwise log-likelihoods."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.special import logsumexp

from ..estimation.results import FitResult


@dataclass(frozen=True)
class Criterion:
    """One model's score on the deviance scale (lower is better)."""

    name: str
    value: float
    effective_parameters: float
    log_score: float
    pointwise: np.ndarray
    std_error: Optional[float] = None


def waic(log_likelihood: np.ndarray) -> Criterion:
    """Widely applicable information criterion.

    Args:
        log_likelihood: Array of shape (draws, observations) holding the
            log-density of each observation under each posterior draw.

    Returns:
        Criterion with ``value = -2 * (lppd - p_waic)`` and its standard error.
    """
    values = np.asarray(log_likelihood, dtype=float)
    if values.ndim != 2 or values.shape[0] < 2:
        raise ValueError("WAIC needs a (draws, observations) matrix with at least two draws.")
    n_draws, n_obs = values.shape
    lppd = logsumexp(values, axis=0) - np.log(n_draws)
    penalty = np.var(values, axis=0, ddof=1)
    pointwise = -2.0 * (lppd - penalty)
    return Criterion(
        name="waic",
        value=float(pointwise.sum()),
        effective_parameters=float(penalty.sum()),
        log_score=float(lppd.sum()),
        pointwise=pointwise,
        std_error=float(np.sqrt(n_obs * np.var(pointwise))),
    )


def conditional_aic(log_likelihood: np.ndarray, effective_parameters: float) -> Criterion:
    """Conditional AIC of a likelihood fit given the trace of its hat matrix plus one."""
    values = np.asarray(log_likelihood, dtype=float).reshape(-1)
    if effective_parameters <= 0 or not np.isfinite(effective_parameters):
        raise ValueError("effective_parameters must be positive and finite.")
    penalty = 2.0 * effective_parameters / values.size
    pointwise = -2.0 * values + penalty
    return Criterion(
        name="caic",
        value=float(pointwise.sum()),
        effective_parameters=float(effective_parameters),
        log_score=float(values.sum()),
        pointwise=pointwise,
    )


def criterion_for(fit: FitResult) -> Criterion:
    """Score a fit with the criterion matching how it was estimated."""
    if fit.method == "posterior":
        return waic(fit.pointwise_log_likelihood)
    if fit.effective_parameters is None:
        raise ValueError(f"Likelihood fit {fit.model!r} carries no effective parameter count.")
    return conditional_aic(fit.pointwise_log_likelihood, fit.effective_parameters)


CRITERION_FOR_METHOD = {"posterior": "waic", "likelihood": "caic"}


__all__ = ["CRITERION_FOR_METHOD", "Criterion", "conditional_aic", "criterion_for", "waic"]
