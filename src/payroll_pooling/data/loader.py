"""Read the cleaned payroll table into validated CompensationRecord rows."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Union

import pandas as pd

from ..config import DEFAULT_COLUMNS, ColumnMap
from ..errors import InvalidInputError
from .records import CompensationRecord

TableSource = Union[str, Path, pd.DataFrame]


def read_table(source: TableSource) -> pd.DataFrame:
    """Load a CSV or Parquet file, or pass a DataFrame through untouched."""
    if isinstance(source, pd.DataFrame):
        return source
    path = Path(source)
    if not path.exists():
        raise InvalidInputError(f"Dataset file {path} does not exist.")
    if path.suffix.lower() in {".parquet", ".pq"}:
        return pd.read_parquet(path)
    return pd.read_csv(path)


def load_records(
    source: TableSource,
    columns: Optional[ColumnMap] = None,
    id_column: Optional[str] = None,
    year_column: Optional[str] = None,
) -> List[CompensationRecord]:
    """Convert the cleaned table into records, rejecting malformed rows."""
    frame = read_table(source)
    mapping = columns or DEFAULT_COLUMNS
    missing = [column for column in mapping.values() if column not in frame.columns]
    if missing:
        raise InvalidInputError(f"Dataset is missing required columns: {', '.join(missing)}")
    if frame.empty:
        raise InvalidInputError("Dataset contains no rows.")

    rows: List[Mapping[str, Any]] = []
    for row in frame.to_dict(orient="records"):
        payload = {field: row[column] for field, column in mapping.items()}
        if id_column is not None:
            payload["employee_id"] = row.get(id_column)
        if year_column is not None:
            payload["year"] = row.get(year_column)
        rows.append(payload)
    return records_from_rows(rows)


def records_from_rows(rows: Iterable[Mapping[str, Any]]) -> List[CompensationRecord]:
    """Build records from plain mappings keyed by record field names."""
    records: List[CompensationRecord] = []
    for position, row in enumerate(rows):
        record = CompensationRecord(
            hourly_rate=_to_float(row.get("hourly_rate"), "hourly_rate", position),
            tenure_years=_to_float(row.get("tenure_years"), "tenure_years", position),
            job_group=_to_label(row.get("job_group")),
            gender_group=_to_label(row.get("gender_group")),
            employee_id=_optional_label(row.get("employee_id")),
            year=_optional_int(row.get("year"), "year", position),
        )
        record.validate(row=position)
        records.append(record)
    if not records:
        raise InvalidInputError("Dataset contains no rows.")
    return records


def _to_float(value: Any, name: str, position: int) -> float:
    if value is None or isinstance(value, bool):
        raise InvalidInputError(f"row {position}: {name} is missing")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"row {position}: cannot read {name} from {value!r}") from exc


def _to_label(value: Any) -> str:
    # Missing labels (None/NaN) are left empty so validate() reports them.
    if value is None or _is_missing(value):
        return ""
    return str(value).strip()


def _optional_label(value: Any) -> Optional[str]:
    if value is None or _is_missing(value):
        return None
    return str(value)


def _optional_int(value: Any, name: str, position: int) -> Optional[int]:
    if value is None or _is_missing(value):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"row {position}: cannot read {name} from {value!r}") from exc


def _is_missing(value: Any) -> bool:
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


__all__ = ["load_records", "read_table", "records_from_rows", "TableSource"]
