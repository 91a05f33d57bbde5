"""PyMC model construction and NUTS sampling for a ModelSpec."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple, cast

import arviz as az
import numpy as np
import pymc as pm
import pytensor.tensor as pt
import xarray as xr
from arviz import InferenceData

from ..config import POSTERIOR_SINGULAR_RATIO
from ..errors import NonConvergenceError
from ..modeling.design import DesignMatrices
from ..modeling.priors import stacked_scale_dist
from ..modeling.spec import ModelSpec
from .options import FitOptions, Watchdog


@dataclass(frozen=True)
class ParameterSummary:
    mean: np.ndarray
    sd: np.ndarray
    lower: np.ndarray
    upper: np.ndarray


def term_dim(factor: str) -> str:
    return f"{factor}__term"


def build_model(design: DesignMatrices, spec: ModelSpec) -> pm.Model:
    """Create the PyMC model; group-level effects use a non-centred parameterisation."""
    coords: Dict[str, object] = {"obs": np.arange(design.n_obs), "coef": list(design.coef_names)}
    for group in design.groups:
        coords[group.factor] = list(group.index.labels)
        coords[term_dim(group.factor)] = list(group.structure.terms)
        coords[f"{term_dim(group.factor)}_bis"] = list(group.structure.terms)

    with pm.Model(coords=coords) as model:
        coefficients = [
            prior.to_pymc(f"beta[{name}]") for name, prior in zip(design.coef_names, design.coef_priors)
        ]
        beta = pm.Deterministic("beta", pt.stack(coefficients), dims="coef")
        mu = pt.dot(design.X, beta)

        for group in design.groups:
            structure = group.structure
            factor = group.factor
            z = pm.Normal(f"z_{factor}", mu=0.0, sigma=1.0, dims=(factor, term_dim(factor)))
            if structure.is_multivariate:
                chol, corr, stds = pm.LKJCholeskyCov(
                    f"chol_{factor}",
                    n=structure.size,
                    eta=structure.correlation_prior.eta if structure.correlation_prior else 2.0,
                    sd_dist=stacked_scale_dist(structure.scale_priors),
                    compute_corr=True,
                    store_in_trace=False,
                )
                pm.Deterministic(f"sigma_{factor}", stds, dims=term_dim(factor))
                pm.Deterministic(
                    f"corr_{factor}", corr, dims=(term_dim(factor), f"{term_dim(factor)}_bis")
                )
                offsets = pt.dot(z, chol.T)
            else:
                scale = structure.scale_priors[0].to_pymc(f"sd_{factor}")
                pm.Deterministic(f"sigma_{factor}", pt.stack([scale]), dims=term_dim(factor))
                offsets = z * scale
            b = pm.Deterministic(f"b_{factor}", offsets, dims=(factor, term_dim(factor)))
            mu = mu + pt.sum(b[group.codes] * group.columns, axis=1)

        sigma = spec.residual_prior.to_pymc("sigma")
        pm.Normal(spec.response, mu=mu, sigma=sigma, observed=design.y, dims="obs")
    return model


def sample_posterior(
    design: DesignMatrices,
    spec: ModelSpec,
    options: FitOptions,
    watchdog: Optional[Watchdog] = None,
) -> InferenceData:
    """Draw from the joint posterior, retaining the pointwise log-likelihood."""
    guard = watchdog or Watchdog()
    model = build_model(design, spec)

    def checkpoint(trace, draw) -> None:
        guard.check("posterior sampling")

    with model:
        try:
            guard.check("posterior sampling")
            idata = pm.sample(
                draws=options.draws,
                tune=options.tune,
                chains=options.chains,
                cores=options.cores,
                target_accept=options.target_accept,
                random_seed=options.random_seed,
                return_inferencedata=True,
                progressbar=False,
                compute_convergence_checks=False,
                idata_kwargs={"log_likelihood": True},
                callback=checkpoint,
            )
        except NonConvergenceError as exc:
            exc.diagnostics.update({"draws": options.draws, "tune": options.tune, "chains": options.chains})
            raise
    return idata


def summarize(idata: InferenceData, var_name: str, credible_interval: float) -> ParameterSummary:
    """Posterior mean, sd and HDI bounds for one variable, with draws reduced away."""
    posterior_group = getattr(idata, "posterior", None)
    if posterior_group is None or var_name not in posterior_group:
        raise RuntimeError(f"Posterior does not contain the expected {var_name!r} variable.")

    posterior = cast(xr.Dataset, posterior_group)[var_name]
    mean_da = cast(xr.DataArray, posterior.mean(dim=("chain", "draw")))
    sd_da = cast(xr.DataArray, posterior.std(dim=("chain", "draw"), ddof=1))
    hdi = az.hdi(posterior, hdi_prob=credible_interval)

    if isinstance(hdi, xr.Dataset):
        if var_name in hdi:
            hdi = hdi[var_name]
        else:
            hdi = hdi.to_array().squeeze()
            if "variable" in hdi.dims:
                hdi = hdi.isel(variable=0, drop=True)
    hdi_da = cast(xr.DataArray, hdi)

    return ParameterSummary(
        mean=np.asarray(mean_da, dtype=float),
        sd=np.asarray(sd_da, dtype=float),
        lower=np.asarray(hdi_da.sel(hdi="lower"), dtype=float),
        upper=np.asarray(hdi_da.sel(hdi="higher"), dtype=float),
    )


def collapsed_scale(
    idata: InferenceData,
    factor: str,
    credible_interval: float,
    ratio: float = POSTERIOR_SINGULAR_RATIO,
) -> bool:
    """True when the HDI of any group scale, relative to sigma, reaches down to ``ratio``.

    Half-family scales keep a positive posterior mean even when the data carry no
    group-level variation, so the test looks at posterior mass near zero instead.
    """
    posterior = cast(xr.Dataset, idata.posterior)
    relative = xr.Dataset({"relative_scale": posterior[f"sigma_{factor}"] / posterior["sigma"]})
    hdi = az.hdi(relative, hdi_prob=credible_interval)["relative_scale"]
    lower = np.atleast_1d(np.asarray(hdi.sel(hdi="lower"), dtype=float))
    return bool(np.any(lower < ratio))


def pointwise_log_likelihood(idata: InferenceData, response: str) -> np.ndarray:
    """Stack chains so the result has shape (draws, observations)."""
    group = getattr(idata, "log_likelihood", None)
    if group is None or response not in group:
        raise RuntimeError("Sampling did not retain the pointwise log-likelihood.")
    values = np.asarray(group[response].transpose("chain", "draw", ...), dtype=float)
    return values.reshape(-1, values.shape[-1])


def chain_diagnostics(idata: InferenceData, var_names: Tuple[str, ...]) -> Dict[str, Optional[float]]:
    """Largest R-hat, smallest bulk ESS, divergence count and per-chain spread of means."""
    names = list(var_names)
    rhat = az.rhat(idata, var_names=names)
    ess = az.ess(idata, var_names=names)
    rhat_values = np.concatenate([np.ravel(rhat[name].values) for name in names])
    ess_values = np.concatenate([np.ravel(ess[name].values) for name in names])

    stats_group = getattr(idata, "sample_stats", None)
    divergences = None
    if stats_group is not None and "diverging" in stats_group:
        divergences = int(np.asarray(stats_group["diverging"]).sum())

    posterior = cast(xr.Dataset, idata.posterior)
    spread = 0.0
    for name in names:
        values = posterior[name]
        chain_means = values.mean(dim="draw")
        pooled_sd = values.std(dim=("chain", "draw"))
        ratio = (chain_means.max(dim="chain") - chain_means.min(dim="chain")) / xr.where(pooled_sd > 0, pooled_sd, 1.0)
        spread = max(spread, float(np.nanmax(np.asarray(ratio))))

    finite_rhat = rhat_values[np.isfinite(rhat_values)]
    finite_ess = ess_values[np.isfinite(ess_values)]
    return {
        "max_rhat": float(finite_rhat.max()) if finite_rhat.size else None,
        "min_ess": float(finite_ess.min()) if finite_ess.size else None,
        "divergences": divergences,
        "chain_spread": spread,
    }


__all__ = [
    "ParameterSummary",
    "build_model",
    "chain_diagnostics",
    "collapsed_scale",
    "pointwise_log_likelihood",
    "sample_posterior",
    "summarize",
    "term_dim",
]
