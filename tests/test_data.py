"""Tests for records, group indexing, table loading and dataset assembly."""

from __future__ import annotations

from pathlib import Path
import sys

import numpy as np
import pandas as pd
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
for path in (PROJECT_ROOT, PROJECT_ROOT / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from payroll_pooling.data import CompensationRecord, GroupIndex, build_dataset, load_records, records_from_rows, standardize
from payroll_pooling.errors import InvalidInputError, UnknownCategoryError


def _records() -> list[CompensationRecord]:
    return [
        CompensationRecord(hourly_rate=31.0, tenure_years=2.0, job_group="clerk", gender_group="female"),
        CompensationRecord(hourly_rate=45.5, tenure_years=10.0, job_group="engineer", gender_group="male"),
        CompensationRecord(hourly_rate=29.0, tenure_years=0.0, job_group="clerk", gender_group="unknown"),
        CompensationRecord(hourly_rate=52.0, tenure_years=7.5, job_group="manager", gender_group="female"),
    ]


# ---------------------------------------------------------------------------
# GroupIndex


def test_group_index_first_appearance_order() -> None:
    index = GroupIndex.from_values("job_group", ["clerk", "engineer", "clerk", "manager"])

    assert index.labels == ("clerk", "engineer", "manager")
    assert index.reference == "clerk"
    assert [index.index_of(label) for label in index.labels] == [1, 2, 3]


def test_group_index_covers_one_to_k() -> None:
    values = ["b", "a", "c", "a", "b", "d"]
    index = GroupIndex.from_values("job_group", values)
    encoded = index.encode(values)

    assert set(encoded.tolist()) == set(range(1, index.size + 1))
    assert [index.label_of(i) for i in encoded] == values
    assert index.codes(values).min() == 0


def test_group_index_reference_forced_first() -> None:
    index = GroupIndex.from_values("job_group", ["clerk", "engineer", "manager"], reference="manager")

    assert index.labels == ("manager", "clerk", "engineer")
    assert index.index_of("manager") == 1


def test_group_index_rejects_unknown_label() -> None:
    index = GroupIndex.from_values("job_group", ["clerk", "engineer"])

    with pytest.raises(UnknownCategoryError) as excinfo:
        index.index_of("astronaut")
    assert isinstance(excinfo.value, KeyError)
    assert "astronaut" in str(excinfo.value)
    with pytest.raises(UnknownCategoryError):
        GroupIndex.from_values("job_group", ["clerk"], reference="astronaut")
    with pytest.raises(IndexError):
        index.label_of(3)


# ---------------------------------------------------------------------------
# Records and loading


def test_negative_tenure_rejected() -> None:
    records = _records() + [
        CompensationRecord(hourly_rate=40.0, tenure_years=-1.0, job_group="clerk", gender_group="male")
    ]

    with pytest.raises(InvalidInputError, match="row 4"):
        build_dataset(records)


def test_non_positive_rate_rejected() -> None:
    record = CompensationRecord(hourly_rate=0.0, tenure_years=1.0, job_group="clerk", gender_group="male")

    with pytest.raises(InvalidInputError):
        record.validate()


def test_load_records_maps_columns() -> None:
    frame = pd.DataFrame(
        {
            "rate": [31.0, 45.5],
            "years": [2, 10],
            "job": ["clerk", "engineer"],
            "gender": ["female", "unknown"],
        }
    )
    columns = {"hourly_rate": "rate", "tenure_years": "years", "job_group": "job", "gender_group": "gender"}

    records = load_records(frame, columns=columns)

    assert records[1] == CompensationRecord(
        hourly_rate=45.5, tenure_years=10.0, job_group="engineer", gender_group="unknown"
    )


def test_load_records_reports_missing_columns_and_values(tmp_path: Path) -> None:
    with pytest.raises(InvalidInputError, match="missing required columns"):
        load_records(pd.DataFrame({"hourly_rate": [1.0]}))

    path = tmp_path / "payroll.csv"
    pd.DataFrame(
        {
            "hourly_rate": [31.0, None],
            "tenure_years": [1.0, 2.0],
            "job_group": ["clerk", "clerk"],
            "gender_group": ["male", "female"],
        }
    ).to_csv(path, index=False)
    with pytest.raises(InvalidInputError):
        load_records(path)


def test_unreadable_year_names_the_row() -> None:
    rows = [
        {"hourly_rate": 31.0, "tenure_years": 1.0, "job_group": "clerk", "gender_group": "male", "year": 2019},
        {"hourly_rate": 33.0, "tenure_years": 2.0, "job_group": "clerk", "gender_group": "female", "year": "n/a"},
    ]

    with pytest.raises(InvalidInputError, match=r"row 1: cannot read year from 'n/a'"):
        records_from_rows(rows)

    assert records_from_rows(rows[:1])[0].year == 2019


# ---------------------------------------------------------------------------
# Dataset


def test_build_dataset_preserves_unknown_gender() -> None:
    dataset = build_dataset(_records(), reference_levels={"gender_group": "male"})

    index = dataset.indexes["gender_group"]
    assert index.labels == ("male", "female", "unknown")
    np.testing.assert_array_equal(dataset.codes["gender_group"], [1, 0, 2, 1])
    np.testing.assert_array_equal(dataset.group_sizes("job_group"), [2, 1, 1])
    assert dataset.n_obs == 4


def test_dataset_is_read_only_and_fingerprinted() -> None:
    first = build_dataset(_records())
    second = build_dataset(_records())

    assert first.fingerprint == second.fingerprint
    with pytest.raises(ValueError):
        first.numeric["hourly_rate"][0] = 1.0


def test_standardize_returns_invertible_scaling() -> None:
    dataset = build_dataset(_records())
    scaled, scaling = standardize(dataset, ["hourly_rate", "tenure_years"])

    assert scaled.fingerprint != dataset.fingerprint
    assert scaled.column("hourly_rate").mean() == pytest.approx(0.0, abs=1e-12)
    assert scaled.column("tenure_years").std() == pytest.approx(1.0)
    np.testing.assert_allclose(
        scaling.backward("hourly_rate", scaled.column("hourly_rate")), dataset.column("hourly_rate")
    )
    np.testing.assert_array_equal(dataset.column("hourly_rate"), [31.0, 45.5, 29.0, 52.0])
