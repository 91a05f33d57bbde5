"""Shared data records for employee-year compensation observations."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from ..errors import InvalidInputError


@dataclass(frozen=True)
class CompensationRecord:
    """Single cleaned employee-year observation."""

    hourly_rate: float
    tenure_years: float
    job_group: str
    gender_group: str
    employee_id: Optional[str] = None
    year: Optional[int] = None

    def validate(self, row: Optional[int] = None) -> None:
        """Raise InvalidInputError if any required field is missing or out of range."""
        where = f"row {row}" if row is not None else "record"
        if not _is_finite(self.hourly_rate) or self.hourly_rate <= 0:
            raise InvalidInputError(f"{where}: hourly_rate must be a positive finite number, got {self.hourly_rate!r}")
        if not _is_finite(self.tenure_years) or self.tenure_years < 0:
            raise InvalidInputError(
                f"{where}: tenure_years must be a non-negative finite number, got {self.tenure_years!r}"
            )
        for name in ("job_group", "gender_group"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise InvalidInputError(f"{where}: {name} must be a non-empty label, got {value!r}")


def _is_finite(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
