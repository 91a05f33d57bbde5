"""Entry point turning (ModelSpec, dataset, options) into a FitResult."""

from __future__ import annotations

import warnings
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from pymc.exceptions import SamplingError

from ..data.dataset import PayrollDataset
from ..errors import ConvergenceWarning, DegenerateVarianceError, NonConvergenceError, SingularFitWarning
from ..modeling.design import DesignMatrices, build_design, check_full_rank
from ..modeling.spec import ModelSpec
from .likelihood import LikelihoodEstimator, conditional_log_likelihood, normal_interval
from .options import FitOptions, Method, Watchdog
from .posterior import chain_diagnostics, collapsed_scale, pointwise_log_likelihood, sample_posterior, summarize
from .results import Diagnostics, FitResult, FixedEffect, GroupEffect, VarianceComponent

Strategy = Callable[[ModelSpec, PayrollDataset, DesignMatrices, FitOptions, Watchdog], FitResult]


def fit(spec: ModelSpec, dataset: PayrollDataset, options: Optional[FitOptions] = None) -> FitResult:
    """Estimate ``spec`` on ``dataset`` with the strategy named in ``options.method``."""
    opts = options or FitOptions()
    opts.validate()
    try:
        strategy = STRATEGIES[opts.method]
    except KeyError as exc:
        raise ValueError(f"No estimation strategy registered for '{opts.method}'.") from exc

    design = build_design(spec, dataset)
    check_full_rank(design)
    try:
        return strategy(spec, dataset, design, opts, opts.watchdog())
    except (np.linalg.LinAlgError, SamplingError, FloatingPointError) as exc:
        raise NonConvergenceError(
            f"{opts.method} estimation of {spec.name!r} failed: {exc}",
            {"reason": type(exc).__name__, "method": opts.method},
        ) from exc


def literal_parameter_count(spec: ModelSpec, design: DesignMatrices) -> int:
    """Fixed coefficients, every group-level effect, covariance parameters and sigma."""
    covariance = sum(group.n_covariance_params for group in spec.groups)
    return design.n_fixed + design.n_random + covariance + 1


# ---------------------------------------------------------------------------
# Likelihood strategy


def _fit_likelihood(
    spec: ModelSpec,
    dataset: PayrollDataset,
    design: DesignMatrices,
    options: FitOptions,
    watchdog: Watchdog,
) -> FitResult:
    estimator = LikelihoodEstimator(design, reml=options.reml, fixed_scales=options.scale_overrides)
    outcome = estimator.fit(
        n_starts=options.n_starts,
        max_iter=options.max_iter,
        tolerance=options.tolerance,
        agreement_tolerance=options.agreement_tolerance,
        random_seed=options.random_seed,
        watchdog=watchdog,
    )
    solution = outcome.solution
    level = options.credible_interval

    fixed_se = np.sqrt(np.diag(outcome.fixed_cov))
    fixed_lower, fixed_upper = normal_interval(solution.beta, fixed_se, level)
    fixed_effects = tuple(
        FixedEffect(name, float(est), float(se), float(lo), float(hi))
        for name, est, se, lo, hi in zip(design.coef_names, solution.beta, fixed_se, fixed_lower, fixed_upper)
    )

    random_se = np.sqrt(np.clip(outcome.random_var, 0.0, None))
    random_lower, random_upper = normal_interval(solution.b, random_se, level)
    group_effects: List[GroupEffect] = []
    offset = 0
    for group in design.groups:
        sizes = np.bincount(group.codes, minlength=group.n_groups)
        for g, label in enumerate(group.index.labels):
            for t, term in enumerate(group.structure.terms):
                column = offset + g * group.n_terms + t
                group_effects.append(
                    GroupEffect(
                        factor=group.factor,
                        term=term,
                        label=label,
                        index=g + 1,
                        estimate=float(solution.b[column]),
                        std_error=float(random_se[column]),
                        lower=float(random_lower[column]),
                        upper=float(random_upper[column]),
                        n_obs=int(sizes[g]),
                    )
                )
        offset += group.width

    sigma = float(np.sqrt(solution.sigma2))
    components: List[VarianceComponent] = []
    for group in design.groups:
        covariance = solution.sigma2 * outcome.factor_cholesky[group.factor] @ outcome.factor_cholesky[group.factor].T
        components.extend(_components(group.factor, group.structure.terms, covariance))

    issues = apply_singular_policy(outcome.singular_factors, options)
    diagnostics = Diagnostics(
        converged=True,
        n_iter=outcome.n_iter,
        runs=outcome.runs,
        runs_agree=outcome.max_disagreement <= options.agreement_tolerance,
        max_disagreement=outcome.max_disagreement,
        singular=bool(outcome.singular_factors),
        singular_factors=outcome.singular_factors,
        objective=solution.deviance,
        messages=outcome.messages,
    )
    log_lik = conditional_log_likelihood(design.y, solution.fitted, solution.sigma2)

    return FitResult(
        spec=spec,
        method="likelihood",
        dataset_fingerprint=dataset.fingerprint,
        n_obs=design.n_obs,
        fixed_effects=fixed_effects,
        group_effects=tuple(group_effects),
        variance_components=tuple(components),
        residual_sd=sigma,
        pointwise_log_likelihood=log_lik[np.newaxis, :],
        literal_parameters=literal_parameter_count(spec, design),
        diagnostics=diagnostics,
        credible_interval=level,
        indexes={factor: dataset.indexes[factor] for factor in spec.factors},
        effective_parameters=outcome.hat_trace + 1.0,
        scaling=dataset.scaling,
        issues=issues,
    )


# ---------------------------------------------------------------------------
# Posterior strategy


def _fit_posterior(
    spec: ModelSpec,
    dataset: PayrollDataset,
    design: DesignMatrices,
    options: FitOptions,
    watchdog: Watchdog,
) -> FitResult:
    idata = sample_posterior(design, spec, options, watchdog)
    level = options.credible_interval

    beta = summarize(idata, "beta", level)
    fixed_effects = tuple(
        FixedEffect(name, float(beta.mean[i]), float(beta.sd[i]), float(beta.lower[i]), float(beta.upper[i]))
        for i, name in enumerate(design.coef_names)
    )

    group_effects: List[GroupEffect] = []
    components: List[VarianceComponent] = []
    watched: List[str] = ["beta", "sigma"]
    singular: List[str] = []
    residual = summarize(idata, "sigma", level)
    for group in design.groups:
        factor = group.factor
        watched.extend([f"b_{factor}", f"sigma_{factor}"])
        effects = summarize(idata, f"b_{factor}", level)
        sizes = np.bincount(group.codes, minlength=group.n_groups)
        for g, label in enumerate(group.index.labels):
            for t, term in enumerate(group.structure.terms):
                group_effects.append(
                    GroupEffect(
                        factor=factor,
                        term=term,
                        label=label,
                        index=g + 1,
                        estimate=float(effects.mean[g, t]),
                        std_error=float(effects.sd[g, t]),
                        lower=float(effects.lower[g, t]),
                        upper=float(effects.upper[g, t]),
                        n_obs=int(sizes[g]),
                    )
                )
        scales = summarize(idata, f"sigma_{factor}", level).mean
        if collapsed_scale(idata, factor, level):
            singular.append(factor)
        correlation = None
        if group.structure.is_multivariate:
            correlation = np.asarray(idata.posterior[f"corr_{factor}"].mean(dim=("chain", "draw")), dtype=float)
        components.extend(_components_from_scales(factor, group.structure.terms, scales, correlation))

    checks = chain_diagnostics(idata, tuple(watched))
    max_rhat = checks["max_rhat"]
    runs_agree = max_rhat is None or max_rhat <= options.max_rhat
    messages: List[str] = []
    if not runs_agree:
        note = f"chains disagree: max R-hat {max_rhat:.3f} exceeds {options.max_rhat:.3f}"
        messages.append(note)
        warnings.warn(note, ConvergenceWarning, stacklevel=2)
    if checks["divergences"]:
        messages.append(f"{checks['divergences']} divergent transitions")

    issues = apply_singular_policy(tuple(singular), options)
    diagnostics = Diagnostics(
        converged=True,
        n_iter=options.tune + options.draws,
        runs=options.chains,
        runs_agree=runs_agree,
        max_disagreement=float(checks["chain_spread"] or 0.0),
        singular=bool(singular),
        singular_factors=tuple(singular),
        max_rhat=max_rhat,
        min_ess=checks["min_ess"],
        divergences=None if checks["divergences"] is None else int(checks["divergences"]),
        messages=tuple(messages),
    )

    return FitResult(
        spec=spec,
        method="posterior",
        dataset_fingerprint=dataset.fingerprint,
        n_obs=design.n_obs,
        fixed_effects=fixed_effects,
        group_effects=tuple(group_effects),
        variance_components=tuple(components),
        residual_sd=float(residual.mean),
        pointwise_log_likelihood=pointwise_log_likelihood(idata, spec.response),
        literal_parameters=literal_parameter_count(spec, design),
        diagnostics=diagnostics,
        credible_interval=level,
        indexes={factor: dataset.indexes[factor] for factor in spec.factors},
        scaling=dataset.scaling,
        issues=issues,
        posterior=idata,
    )


# ---------------------------------------------------------------------------
# Shared helpers


def _components(factor: str, terms: Tuple[str, ...], covariance: np.ndarray) -> List[VarianceComponent]:
    scales = np.sqrt(np.clip(np.diag(covariance), 0.0, None))
    correlation = None
    if len(terms) > 1:
        with np.errstate(invalid="ignore", divide="ignore"):
            correlation = covariance / np.outer(scales, scales)
    return _components_from_scales(factor, terms, scales, correlation)


def _components_from_scales(
    factor: str,
    terms: Tuple[str, ...],
    scales: np.ndarray,
    correlation: Optional[np.ndarray],
) -> List[VarianceComponent]:
    components: List[VarianceComponent] = []
    for t, term in enumerate(terms):
        corr = None
        if correlation is not None and t > 0 and np.isfinite(correlation[t, 0]):
            corr = float(correlation[t, 0])
        components.append(VarianceComponent(factor=factor, term=term, std_dev=float(scales[t]), corr=corr))
    return components


def apply_singular_policy(factors: Tuple[str, ...], options: FitOptions) -> Tuple[str, ...]:
    """Raise or warn about collapsed factors per ``options.on_singular``; return the issue notes."""
    if not factors:
        return ()
    message = (
        "singular fit: group-level variance collapsed for "
        + ", ".join(factors)
        + "; the model reduces to a simpler one for this data"
    )
    if options.on_singular == "raise":
        raise DegenerateVarianceError(message, factors)
    warnings.warn(message, SingularFitWarning, stacklevel=3)
    return (f"DegenerateVarianceError: {message}",)


STRATEGIES: Dict[Method, Strategy] = {
    "likelihood": _fit_likelihood,
    "posterior": _fit_posterior,
}


__all__ = ["STRATEGIES", "apply_singular_policy", "fit", "literal_parameter_count"]
