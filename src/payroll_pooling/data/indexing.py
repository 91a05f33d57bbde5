"""Dense integer indices for categorical grouping factors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, Optional, Sequence, Tuple

import numpy as np

from ..errors import UnknownCategoryError


@dataclass(frozen=True)
class GroupIndex:
    """Bijective mapping between category labels and indices 1..K.

    Labels are numbered in order of first appearance. When ``reference`` is
    given, that label takes index 1 and the rest keep first-appearance order.
    The reference only affects labelling (and treatment coding of fixed
    categorical terms); estimates of group-level effects do not depend on it.
    """

    factor: str
    labels: Tuple[str, ...]
    reference: str

    def __post_init__(self) -> None:
        if not self.labels:
            raise ValueError(f"GroupIndex for {self.factor!r} needs at least one label.")
        if len(set(self.labels)) != len(self.labels):
            raise ValueError(f"GroupIndex for {self.factor!r} received duplicate labels.")
        if self.labels[0] != self.reference:
            raise ValueError("The reference label must occupy index 1.")

    @classmethod
    def from_values(
        cls,
        factor: str,
        values: Iterable[Hashable],
        reference: Optional[str] = None,
    ) -> "GroupIndex":
        seen: Dict[str, None] = {}
        for value in values:
            seen.setdefault(str(value), None)
        ordered = list(seen)
        if not ordered:
            raise ValueError(f"Cannot index factor {factor!r} without any values.")
        if reference is not None:
            if reference not in seen:
                raise UnknownCategoryError(factor, reference)
            ordered.remove(reference)
            ordered.insert(0, reference)
        return cls(factor=factor, labels=tuple(ordered), reference=ordered[0])

    @property
    def size(self) -> int:
        return len(self.labels)

    def __len__(self) -> int:
        return len(self.labels)

    def __contains__(self, label: object) -> bool:
        return label in self._lookup

    @property
    def _lookup(self) -> Dict[str, int]:
        # Cached lazily; frozen dataclasses cannot assign attributes normally.
        cached = self.__dict__.get("_lookup_cache")
        if cached is None:
            cached = {label: position + 1 for position, label in enumerate(self.labels)}
            object.__setattr__(self, "_lookup_cache", cached)
        return cached

    def index_of(self, label: str) -> int:
        """Return the 1-based index for ``label``."""
        try:
            return self._lookup[label]
        except KeyError:
            raise UnknownCategoryError(self.factor, label) from None

    def label_of(self, index: int) -> str:
        """Return the label stored at 1-based ``index``."""
        if not 1 <= index <= len(self.labels):
            raise IndexError(f"{self.factor} index {index} outside [1, {len(self.labels)}]")
        return self.labels[index - 1]

    def encode(self, values: Sequence[str]) -> np.ndarray:
        """Map labels to 1-based indices, failing on any unseen label."""
        return np.asarray([self.index_of(str(value)) for value in values], dtype=int)

    def codes(self, values: Sequence[str]) -> np.ndarray:
        """Zero-based codes for array indexing."""
        return self.encode(values) - 1


__all__ = ["GroupIndex"]
