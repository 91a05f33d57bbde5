"""Tests for information criteria and model ranking."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
for path in (PROJECT_ROOT, PROJECT_ROOT / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from payroll_pooling.comparison import compare, conditional_aic, waic
from payroll_pooling.data import CompensationRecord, build_dataset
from payroll_pooling.estimation import FitFailure, FitOptions, fit
from payroll_pooling.modeling import get_model


def _records(group_spread: float, seed: int = 0) -> list[CompensationRecord]:
    rng = np.random.default_rng(seed)
    records = []
    for position in range(8):
        job = f"job{position}"
        tenure = rng.uniform(0.0, 15.0, size=12)
        rates = 40.0 + group_spread * (position - 3.5) + 0.4 * tenure + rng.normal(0.0, 2.0, size=12)
        gender = ["female", "male", "unknown"]
        records.extend(
            CompensationRecord(float(r), float(t), job, gender[i % 3]) for i, (r, t) in enumerate(zip(rates, tenure))
        )
    return records


# ---------------------------------------------------------------------------
# Criteria


def test_waic_of_constant_log_likelihood() -> None:
    score = waic(np.full((10, 5), -1.0))

    assert score.value == pytest.approx(10.0)
    assert score.effective_parameters == pytest.approx(0.0)
    assert score.log_score == pytest.approx(-5.0)
    assert score.std_error == pytest.approx(0.0)


def test_waic_penalises_draw_variance() -> None:
    rng = np.random.default_rng(0)
    steady = np.full((200, 4), -1.0)
    noisy = steady + rng.normal(0.0, 0.5, size=steady.shape)

    assert waic(noisy).effective_parameters > waic(steady).effective_parameters
    with pytest.raises(ValueError):
        waic(np.zeros((1, 4)))


def test_conditional_aic_adds_twice_effective_parameters() -> None:
    score = conditional_aic(np.full(4, -2.0), effective_parameters=3.5)

    assert score.value == pytest.approx(16.0 + 7.0)
    assert score.pointwise.sum() == pytest.approx(score.value)
    with pytest.raises(ValueError):
        conditional_aic(np.zeros(3), 0.0)


# ---------------------------------------------------------------------------
# Ranking


def test_compare_ranks_ascending_with_deltas() -> None:
    dataset = build_dataset(_records(group_spread=6.0))
    fits = [fit(get_model(key), dataset, FitOptions(random_seed=0)) for key in ("fixed_tenure", "varying_job")]

    table = compare(fits)

    assert table.criterion == "caic"
    assert table.models == ("varying_job", "fixed_tenure")
    values = [entry.value for entry in table.entries]
    assert values == sorted(values)
    assert table.best.delta == 0.0
    assert table.entries[1].delta > 0.0
    assert sum(entry.weight for entry in table.entries) == pytest.approx(1.0)
    assert [entry.rank for entry in table.entries] == [1, 2]


@pytest.mark.filterwarnings("ignore::UserWarning")
def test_effective_parameters_below_literal_count_without_group_structure() -> None:
    dataset = build_dataset(_records(group_spread=0.0, seed=4))
    result = fit(get_model("varying_job_gender"), dataset, FitOptions(random_seed=0))

    entry = compare([result]).best
    assert entry.literal_parameters == 2 + 8 + 3 + 2 + 1
    assert entry.effective_parameters < entry.literal_parameters
    assert entry.effective_parameters >= 3.0


def test_compare_keeps_input_order_for_ties() -> None:
    dataset = build_dataset(_records(group_spread=6.0))
    result = fit(get_model("fixed_tenure"), dataset)
    twin = replace(result, spec=replace(result.spec, name="fixed_tenure_copy"))

    table = compare([twin, result])
    assert table.models == ("fixed_tenure_copy", "fixed_tenure")


def test_compare_rejects_mixed_criteria_and_lists_failures() -> None:
    dataset = build_dataset(_records(group_spread=6.0))
    result = fit(get_model("fixed_tenure"), dataset)
    sampled = replace(
        result,
        method="posterior",
        pointwise_log_likelihood=np.repeat(result.pointwise_log_likelihood, 4, axis=0),
    )
    failure = FitFailure(model="varying_slope_job", error_type="NonConvergenceError", message="budget exhausted")

    with pytest.raises(ValueError, match="different criteria"):
        compare([result, sampled])

    table = compare([result, failure])
    assert table.models == ("fixed_tenure",)
    assert table.failures == (failure,)
    assert table.failures_frame()["model"].tolist() == ["varying_slope_job"]
    assert table.to_records()["failures"][0]["error_type"] == "NonConvergenceError"
    with pytest.raises(ValueError):
        compare([failure])


def test_comparison_frame_has_one_row_per_model() -> None:
    dataset = build_dataset(_records(group_spread=6.0))
    fits = [fit(get_model(key), dataset, FitOptions(random_seed=0)) for key in ("fixed_tenure", "fixed_job")]

    frame = compare(fits).to_frame()
    assert set(frame["model"]) == {"fixed_tenure", "fixed_job"}
    assert {"value", "delta", "effective_parameters", "literal_parameters"} <= set(frame.columns)
