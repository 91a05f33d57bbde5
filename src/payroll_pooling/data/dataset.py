"""Array-backed dataset assembled from compensation records."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..config import PAYROLL_SCHEMA, Schema
from ..errors import InvalidInputError
from .indexing import GroupIndex
from .records import CompensationRecord


@dataclass(frozen=True)
class Scaling:
    """Centre/scale pairs applied by `standardize`, keyed by field name."""

    centers: Mapping[str, float]
    scales: Mapping[str, float]

    def forward(self, name: str, values: np.ndarray) -> np.ndarray:
        return (np.asarray(values, dtype=float) - self.centers[name]) / self.scales[name]

    def backward(self, name: str, values: np.ndarray) -> np.ndarray:
        return np.asarray(values, dtype=float) * self.scales[name] + self.centers[name]


@dataclass(frozen=True)
class PayrollDataset:
    """Numeric columns, zero-based factor codes and the indices that produced them."""

    numeric: Mapping[str, np.ndarray]
    codes: Mapping[str, np.ndarray]
    indexes: Mapping[str, GroupIndex]
    schema: Schema = PAYROLL_SCHEMA
    scaling: Optional[Scaling] = None
    _fingerprint: str = field(default="", compare=False, repr=False)

    def __post_init__(self) -> None:
        lengths = {len(values) for values in self.numeric.values()} | {len(values) for values in self.codes.values()}
        if len(lengths) != 1:
            raise InvalidInputError("Dataset columns must all have the same length.")
        if set(self.codes) != set(self.indexes):
            raise InvalidInputError("Every factor column needs exactly one GroupIndex.")
        for factor, codes in self.codes.items():
            used = np.unique(codes)
            expected = np.arange(self.indexes[factor].size)
            # Indices must match the data exactly: no unused or out-of-range levels.
            if used.shape != expected.shape or np.any(used != expected):
                raise InvalidInputError(f"Codes for {factor!r} do not cover its index exactly.")
        for values in list(self.numeric.values()) + list(self.codes.values()):
            values.setflags(write=False)
        if not self._fingerprint:
            object.__setattr__(self, "_fingerprint", self._compute_fingerprint())

    @property
    def n_obs(self) -> int:
        return len(next(iter(self.numeric.values())))

    @property
    def fingerprint(self) -> str:
        """Content hash identifying this dataset in the fit cache."""
        return self._fingerprint

    def column(self, name: str) -> np.ndarray:
        if name in self.numeric:
            return self.numeric[name]
        raise KeyError(f"Dataset has no numeric column {name!r}")

    def factor(self, name: str) -> Tuple[np.ndarray, GroupIndex]:
        """Return (zero-based codes, index) for a categorical column."""
        if name not in self.codes:
            raise KeyError(f"Dataset has no categorical column {name!r}")
        return self.codes[name], self.indexes[name]

    def group_sizes(self, name: str) -> np.ndarray:
        codes, index = self.factor(name)
        return np.bincount(codes, minlength=index.size)

    def _compute_fingerprint(self) -> str:
        digest = hashlib.sha256()
        for name in sorted(self.numeric):
            digest.update(name.encode())
            digest.update(np.ascontiguousarray(self.numeric[name], dtype=np.float64).tobytes())
        for name in sorted(self.codes):
            digest.update(name.encode())
            digest.update("\x1f".join(self.indexes[name].labels).encode())
            digest.update(np.ascontiguousarray(self.codes[name], dtype=np.int64).tobytes())
        return digest.hexdigest()


def build_dataset(
    records: Iterable[CompensationRecord],
    reference_levels: Optional[Mapping[str, str]] = None,
    schema: Schema = PAYROLL_SCHEMA,
) -> PayrollDataset:
    """Validate records and convert them into arrays ready for estimation."""
    record_list = list(records)
    if not record_list:
        raise InvalidInputError("No records supplied for estimation.")
    for position, record in enumerate(record_list):
        record.validate(row=position)

    references = dict(reference_levels or {})
    unknown = set(references) - set(schema.categorical)
    if unknown:
        raise InvalidInputError(f"Reference levels given for unknown factors: {sorted(unknown)}")

    numeric: Dict[str, np.ndarray] = {}
    for name in schema.response + schema.continuous:
        numeric[name] = np.asarray([getattr(record, name) for record in record_list], dtype=float)

    codes: Dict[str, np.ndarray] = {}
    indexes: Dict[str, GroupIndex] = {}
    for name in schema.categorical:
        labels = [getattr(record, name) for record in record_list]
        index = GroupIndex.from_values(name, labels, reference=references.get(name))
        indexes[name] = index
        codes[name] = index.codes(labels)

    return PayrollDataset(numeric=numeric, codes=codes, indexes=indexes, schema=schema)


def standardize(dataset: PayrollDataset, fields: Sequence[str]) -> Tuple[PayrollDataset, Scaling]:
    """Return a copy with ``fields`` z-scored and the scaling needed to undo it."""
    centers: Dict[str, float] = {}
    scales: Dict[str, float] = {}
    numeric = dict(dataset.numeric)
    for name in fields:
        values = dataset.column(name)
        scale = float(np.std(values))
        if scale == 0.0:
            raise InvalidInputError(f"Cannot standardize constant column {name!r}.")
        centers[name] = float(np.mean(values))
        scales[name] = scale
        numeric[name] = (values - centers[name]) / scale
    scaling = Scaling(centers=centers, scales=scales)
    return replace(dataset, numeric=numeric, scaling=scaling, _fingerprint=""), scaling


__all__ = ["PayrollDataset", "Scaling", "build_dataset", "standardize"]
