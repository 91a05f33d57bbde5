"""Tests for REML estimation, conditional modes and their pooling behaviour."""

from __future__ import annotations

from pathlib import Path
import sys
from typing import Dict, Sequence

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
for path in (PROJECT_ROOT, PROJECT_ROOT / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from payroll_pooling.data import CompensationRecord, PayrollDataset, build_dataset
from payroll_pooling.errors import DegenerateVarianceError, NonConvergenceError, SingularFitWarning
from payroll_pooling.estimation import CancellationToken, FitOptions, fit
from payroll_pooling.modeling import INTERCEPT, HalfNormal, ModelSpec, ModelSpecBuilder, get_model


def _dataset(groups: Dict[str, Sequence[float]], tenure: float = 1.0) -> PayrollDataset:
    records = [
        CompensationRecord(float(rate), tenure, job, "unknown")
        for job, rates in groups.items()
        for rate in rates
    ]
    return build_dataset(records)


def _intercept_model() -> ModelSpec:
    return ModelSpecBuilder("hourly_rate").varying_intercept("job_group", HalfNormal(1.0)).build("intercepts")


def _group_means(groups: Dict[str, Sequence[float]]) -> Dict[str, float]:
    return {job: float(np.mean(rates)) for job, rates in groups.items()}


ANCHORS = {
    "anchor_low": [14.0, 15.0, 16.0, 15.0],
    "anchor_mid": [25.0, 26.0, 27.0, 26.0],
    "anchor_high": [20.0, 19.0, 21.0, 20.0],
}


# ---------------------------------------------------------------------------
# Conditional modes


def test_conditional_modes_match_precision_weighted_average() -> None:
    groups = {**ANCHORS, "small": [30.0, 32.0, 34.0, 36.0], "large": [31.0, 35.0] * 6}
    result = fit(_intercept_model(), _dataset(groups), FitOptions(random_seed=1))

    beta0 = result.fixed_effect(INTERCEPT).estimate
    sigma = result.residual_sd
    tau = result.variance_components[0].std_dev
    means = _group_means(groups)
    for effect in result.group_effects_for("job_group"):
        n = len(groups[effect.label])
        weight = n * tau**2 / (n * tau**2 + sigma**2)
        assert effect.estimate == pytest.approx(weight * (means[effect.label] - beta0), rel=1e-6, abs=1e-9)
        assert effect.n_obs == n
        assert effect.lower < effect.estimate < effect.upper


def test_shrinkage_decreases_with_group_size() -> None:
    values = [30.0, 32.0, 34.0, 36.0]
    groups = {**ANCHORS, "small": values, "large": values * 10}
    result = fit(_intercept_model(), _dataset(groups), FitOptions(random_seed=1))

    estimates = result.group_estimates("job_group")
    target = float(np.mean(values))
    population = result.fixed_effect(INTERCEPT).estimate
    assert population < estimates["small"] < estimates["large"] < target
    assert abs(estimates["large"] - target) < abs(estimates["small"] - target)


def test_pooling_limits_follow_pinned_scale() -> None:
    groups = {**ANCHORS, "small": [30.0, 32.0, 34.0, 36.0]}
    dataset = _dataset(groups)
    means = _group_means(groups)

    complete = fit(_intercept_model(), dataset, FitOptions(fixed_scales={"job_group": 0.0}))
    grand_mean = float(np.mean(dataset.column("hourly_rate")))
    assert complete.fixed_effect(INTERCEPT).estimate == pytest.approx(grand_mean)
    for effect in complete.group_effects_for("job_group"):
        assert effect.estimate == pytest.approx(0.0, abs=1e-10)
    assert not complete.singular

    separate = fit(_intercept_model(), dataset, FitOptions(fixed_scales={"job_group": 1e2}))
    for label, estimate in separate.group_estimates("job_group").items():
        assert estimate == pytest.approx(means[label], rel=1e-3)


def test_fit_is_idempotent_under_seed() -> None:
    groups = {**ANCHORS, "small": [30.0, 32.0, 34.0, 36.0]}
    dataset = _dataset(groups)
    before = dataset.column("hourly_rate").copy()

    first = fit(_intercept_model(), dataset, FitOptions(random_seed=7))
    second = fit(_intercept_model(), dataset, FitOptions(random_seed=7))

    assert first.coefficients() == second.coefficients()
    assert [e.estimate for e in first.group_effects] == [e.estimate for e in second.group_effects]
    np.testing.assert_array_equal(dataset.column("hourly_rate"), before)
    assert first.diagnostics.runs == 3
    assert first.diagnostics.runs_agree


def test_three_group_scenario_shrinks_small_group_most() -> None:
    rng = np.random.default_rng(2024)
    offsets = {"alpha": 5.0, "beta": -5.0, "gamma": 20.0}
    sizes = {"alpha": 100, "beta": 100, "gamma": 5}
    groups = {job: 30.0 + offsets[job] + rng.normal(0.0, 6.0, size=sizes[job]) for job in offsets}
    result = fit(_intercept_model(), _dataset(groups), FitOptions(random_seed=3))

    means = _group_means(groups)
    population = result.fixed_effect(INTERCEPT).estimate
    estimates = result.group_estimates("job_group")
    shrink = {job: (estimates[job] - population) / (means[job] - population) for job in offsets}

    assert not result.singular
    assert all(0.0 < value < 1.0 for value in shrink.values())
    assert shrink["gamma"] < shrink["alpha"]
    assert shrink["gamma"] < shrink["beta"]
    assert estimates["gamma"] > population
    assert estimates["gamma"] < means["gamma"]
    assert estimates["alpha"] == pytest.approx(35.0, abs=2.0)
    assert estimates["beta"] == pytest.approx(25.0, abs=2.0)
    errors = {effect.label: effect.std_error for effect in result.group_effects_for("job_group")}
    assert errors["gamma"] > errors["alpha"]


@pytest.mark.filterwarnings("ignore::UserWarning")
def test_varying_slope_model_reports_correlation() -> None:
    rng = np.random.default_rng(11)
    records = []
    for job, (base, slope) in {"a": (20.0, 1.5), "b": (30.0, 0.5), "c": (25.0, 2.0), "d": (35.0, 1.0)}.items():
        tenure = rng.uniform(0.0, 20.0, size=30)
        rates = base + slope * tenure + rng.normal(0.0, 1.0, size=30)
        records.extend(CompensationRecord(float(r), float(t), job, "unknown") for r, t in zip(rates, tenure))
    result = fit(get_model("varying_slope_job"), build_dataset(records), FitOptions(random_seed=5))

    components = {component.term: component for component in result.variance_components}
    assert components[INTERCEPT].corr is None
    assert components["tenure_years"].corr is not None
    assert -1.0 <= components["tenure_years"].corr <= 1.0
    assert len(result.group_effects) == 8
    assert result.effective_parameters < result.literal_parameters


# ---------------------------------------------------------------------------
# Failure modes


def _flat_groups() -> Dict[str, Sequence[float]]:
    # Identical group means: the between-group variance estimate is exactly zero.
    return {job: [20.0, 22.0, 24.0, 26.0] for job in ("a", "b", "c", "d")}


def test_singular_fit_warns_by_default() -> None:
    with pytest.warns(SingularFitWarning):
        result = fit(_intercept_model(), _dataset(_flat_groups()), FitOptions(random_seed=1))

    assert result.singular
    assert result.diagnostics.singular_factors == ("job_group",)
    assert result.issues and result.issues[0].startswith("DegenerateVarianceError")


def test_singular_fit_raises_on_request() -> None:
    with pytest.raises(DegenerateVarianceError) as excinfo:
        fit(_intercept_model(), _dataset(_flat_groups()), FitOptions(on_singular="raise"))
    assert excinfo.value.factors == ("job_group",)


def test_cancelled_fit_raises_non_convergence() -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(NonConvergenceError) as excinfo:
        fit(_intercept_model(), _dataset({**ANCHORS}), FitOptions(cancel_token=token))
    assert excinfo.value.diagnostics["reason"] == "cancelled"


def test_iteration_budget_exhaustion_raises() -> None:
    rng = np.random.default_rng(8)
    groups = {f"job{i}": 40.0 + 6.0 * i + rng.normal(0.0, 2.0, size=8) for i in range(6)}

    with pytest.raises(NonConvergenceError) as excinfo:
        fit(_intercept_model(), _dataset(groups), FitOptions(max_iter=1, n_starts=2, random_seed=0))
    assert excinfo.value.diagnostics["runs"] == 2


def test_invalid_options_rejected() -> None:
    with pytest.raises(ValueError):
        fit(_intercept_model(), _dataset(ANCHORS), FitOptions(method="bootstrap"))  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        fit(_intercept_model(), _dataset(ANCHORS), FitOptions(fixed_scales={"gender_group": 1.0}))
