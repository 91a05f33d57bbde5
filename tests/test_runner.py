"""Tests for the fit cache, batch runner and prediction."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys
import threading

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
for path in (PROJECT_ROOT, PROJECT_ROOT / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from payroll_pooling.data import CompensationRecord, build_dataset, standardize
from payroll_pooling.errors import DegenerateVarianceError, NonConvergenceError, SingularFitWarning, UnknownCategoryError
from payroll_pooling.estimation import (
    CancellationToken,
    FitCache,
    FitJob,
    FitOptions,
    cache_key,
    fit,
    fit_cached,
    fit_many,
    predict,
)
from payroll_pooling.estimation.likelihood import LikelihoodEstimator
from payroll_pooling.estimation.results import FitResult
from payroll_pooling.modeling import INTERCEPT, HalfNormal, ModelSpecBuilder, get_model


def _dataset():
    rng = np.random.default_rng(9)
    records = []
    for position, job in enumerate(["clerk", "engineer", "manager", "analyst", "driver"]):
        tenure = rng.uniform(0.0, 12.0, size=10)
        rates = 30.0 + 5.0 * position + 0.5 * tenure + rng.normal(0.0, 1.5, size=10)
        records.extend(
            CompensationRecord(float(r), float(t), job, "female" if i % 2 else "male")
            for i, (r, t) in enumerate(zip(rates, tenure))
        )
    return build_dataset(records)


def _flat_dataset():
    # Identical group means collapse the job-level variance to zero.
    records = [
        CompensationRecord(rate, 1.0, job, "unknown") for job in ("a", "b", "c", "d") for rate in (20.0, 22.0, 24.0, 26.0)
    ]
    return build_dataset(records)


# ---------------------------------------------------------------------------
# Cache


def test_cache_key_tracks_seed_and_options() -> None:
    dataset = _dataset()
    spec = get_model("varying_job")

    base = cache_key(spec, dataset, FitOptions(random_seed=1))
    assert base == cache_key(spec, dataset, FitOptions(random_seed=1, timeout=30.0))
    assert base != cache_key(spec, dataset, FitOptions(random_seed=2))
    assert base != cache_key(spec, dataset, FitOptions(random_seed=1, reml=False))
    assert base != cache_key(get_model("fixed_tenure"), dataset, FitOptions(random_seed=1))


def test_cache_round_trip_and_tamper_detection(tmp_path: Path) -> None:
    cache = FitCache(tmp_path)
    job = FitJob(get_model("varying_job"), _dataset(), FitOptions(random_seed=1))

    first = fit_cached(job, cache)
    cached = cache.get(job.key)
    assert isinstance(cached, FitResult)
    assert cached.coefficients() == first.coefficients()

    payload = next(tmp_path.rglob("*.pkl"))
    metadata = payload.with_name(payload.name.replace(".pkl", ".meta.json"))
    assert metadata.exists()
    assert not list(tmp_path.rglob("*.tmp"))

    payload.write_bytes(payload.read_bytes() + b"corrupt")
    assert cache.get(job.key) is None


def test_cached_result_takes_requesting_name(tmp_path: Path) -> None:
    cache = FitCache(tmp_path)
    dataset = _dataset()
    spec = get_model("varying_job")
    fit_cached(FitJob(spec, dataset), cache)

    renamed = replace(spec, name="job_intercepts")
    outcome = fit_many([FitJob(renamed, dataset)], cache=cache)
    assert outcome.cache_hits == ("job_intercepts",)
    assert outcome.results[0].model == "job_intercepts"


def test_cache_hit_applies_requested_singular_policy(tmp_path: Path) -> None:
    cache = FitCache(tmp_path)
    dataset = _flat_dataset()
    spec = ModelSpecBuilder("hourly_rate").varying_intercept("job_group", HalfNormal(1.0)).build("flat")
    lenient = FitJob(spec, dataset, FitOptions(random_seed=1))
    strict = FitJob(spec, dataset, FitOptions(random_seed=1, on_singular="raise"))

    with pytest.warns(SingularFitWarning):
        stored = fit_cached(lenient, cache)
    assert stored.singular
    assert cache.contains(strict.key)

    with pytest.raises(DegenerateVarianceError):
        fit_cached(strict, cache)

    outcome = fit_many([strict], cache=cache)
    assert outcome.results == ()
    assert outcome.cache_hits == ("flat",)
    assert outcome.failures[0].error_type == DegenerateVarianceError.__name__

    with pytest.warns(SingularFitWarning):
        reused = fit_cached(lenient, cache)
    assert reused.issues and reused.issues[0].startswith("DegenerateVarianceError")


# ---------------------------------------------------------------------------
# Batch runner


def test_fit_many_collects_failures_in_order() -> None:
    dataset = _dataset()
    jobs = [
        FitJob(get_model("fixed_tenure"), dataset, FitOptions(random_seed=0)),
        FitJob(get_model("varying_job"), dataset, FitOptions(random_seed=0, max_iter=1, n_starts=1)),
        FitJob(get_model("fixed_job"), dataset, FitOptions(random_seed=0)),
    ]

    outcome = fit_many(jobs)

    assert [result.model for result in outcome.results] == ["fixed_tenure", "fixed_job"]
    assert len(outcome.failures) == 1
    failure = outcome.failures[0]
    assert failure.model == "varying_job"
    assert failure.error_type == NonConvergenceError.__name__
    with pytest.raises(KeyError):
        outcome.result("varying_job")


def test_fit_many_in_worker_processes_matches_serial() -> None:
    dataset = _dataset()
    jobs = [FitJob(get_model(key), dataset, FitOptions(random_seed=0)) for key in ("fixed_tenure", "varying_job")]

    parallel = fit_many(jobs, max_workers=2)
    serial = [fit(job.spec, job.dataset, job.options) for job in jobs]

    assert [result.model for result in parallel.results] == ["fixed_tenure", "varying_job"]
    for left, right in zip(parallel.results, serial):
        assert left.coefficients() == pytest.approx(right.coefficients())
    with pytest.raises(ValueError):
        fit_many(jobs, max_workers=0)


def test_cancelled_token_stops_serial_and_worker_fits() -> None:
    dataset = _dataset()
    token = CancellationToken()
    token.cancel()
    jobs = [
        FitJob(get_model(key), dataset, FitOptions(random_seed=0, cancel_token=token))
        for key in ("fixed_tenure", "varying_job")
    ]

    for outcome in (fit_many(jobs), fit_many(jobs, max_workers=2)):
        assert outcome.results == ()
        assert [failure.model for failure in outcome.failures] == ["fixed_tenure", "varying_job"]
        assert {failure.error_type for failure in outcome.failures} == {NonConvergenceError.__name__}


def test_cancellation_token_mirrors_onto_linked_events() -> None:
    token = CancellationToken()
    first, second = threading.Event(), threading.Event()
    token.link(first)
    token.link(second)
    token.unlink(second)

    token.cancel()

    assert token.cancelled
    assert first.is_set()
    assert not second.is_set()

    late = threading.Event()
    token.link(late)
    assert late.is_set()


def test_numerical_breakdown_becomes_fit_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(self, **_):
        raise np.linalg.LinAlgError("Singular matrix")

    monkeypatch.setattr(LikelihoodEstimator, "fit", broken)
    dataset = _dataset()

    with pytest.raises(NonConvergenceError) as excinfo:
        fit(get_model("varying_job"), dataset, FitOptions(random_seed=0))
    assert excinfo.value.diagnostics["reason"] == "LinAlgError"

    outcome = fit_many([FitJob(get_model("varying_job"), dataset)])
    assert outcome.results == ()
    assert outcome.failures[0].error_type == NonConvergenceError.__name__


# ---------------------------------------------------------------------------
# Prediction


def test_predict_combines_population_and_group_effects() -> None:
    dataset = _dataset()
    result = fit(get_model("varying_job"), dataset, FitOptions(random_seed=0))
    rows = [
        {"tenure_years": 4.0, "job_group": "manager", "gender_group": "male"},
        CompensationRecord(50.0, 0.0, "clerk", "female"),
    ]

    predicted = predict(result, rows)

    coefficients = result.coefficients()
    effects = {effect.label: effect.estimate for effect in result.group_effects_for("job_group")}
    expected = [
        coefficients[INTERCEPT] + 4.0 * coefficients["tenure_years"] + effects["manager"],
        coefficients[INTERCEPT] + effects["clerk"],
    ]
    np.testing.assert_allclose(predicted, expected)


def test_predict_unknown_job_label() -> None:
    result = fit(get_model("varying_job"), _dataset(), FitOptions(random_seed=0))
    row = {"tenure_years": 2.0, "job_group": "astronaut", "gender_group": "male"}

    with pytest.raises(UnknownCategoryError):
        predict(result, [row])

    population = predict(result, [row], allow_unknown="population")
    coefficients = result.coefficients()
    assert population[0] == pytest.approx(coefficients[INTERCEPT] + 2.0 * coefficients["tenure_years"])


def test_predict_fixed_categorical_always_rejects_unknown() -> None:
    result = fit(get_model("fixed_job"), _dataset(), FitOptions(random_seed=0))

    with pytest.raises(UnknownCategoryError):
        predict(result, [{"tenure_years": 1.0, "job_group": "astronaut"}], allow_unknown="population")


def test_predict_undoes_standardization() -> None:
    raw = _dataset()
    scaled, _ = standardize(raw, ["hourly_rate", "tenure_years"])
    result = fit(get_model("varying_job"), scaled, FitOptions(random_seed=0))

    codes, index = raw.factor("job_group")
    rows = [
        {"tenure_years": float(t), "job_group": index.labels[c]}
        for t, c in zip(raw.column("tenure_years"), codes)
    ]
    predicted = predict(result, rows)

    residual = raw.column("hourly_rate") - predicted
    assert abs(residual.mean()) < 0.5
    assert residual.std() < 3.0
