"""Exception and warning types raised by the estimation pipeline."""

from __future__ import annotations

from typing import Any, Mapping, Optional


class PayrollModelError(Exception):
    """Base class for every domain error raised by this package."""


class InvalidInputError(PayrollModelError, ValueError):
    """A dataset row is missing a required field or holds a disallowed value."""


class SpecificationError(PayrollModelError, ValueError):
    """A model specification references unknown fields or is internally inconsistent."""


class UnknownCategoryError(PayrollModelError, KeyError):
    """A categorical label was requested that the fitted index never saw."""

    def __init__(self, factor: str, label: object) -> None:
        self.factor = factor
        self.label = label
        super().__init__(f"Unknown {factor} level {label!r}; it was absent when the index was built.")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable.
        return str(self.args[0])

    def __reduce__(self):
        return type(self), (self.factor, self.label)


class NonConvergenceError(PayrollModelError, RuntimeError):
    """Optimisation or sampling did not stabilise, or was cancelled."""

    def __init__(self, message: str, diagnostics: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.diagnostics = dict(diagnostics or {})

    def __reduce__(self):
        return type(self), (self.args[0], self.diagnostics)


class DegenerateVarianceError(PayrollModelError, RuntimeError):
    """An estimated group-level scale collapsed to zero (singular fit)."""

    def __init__(self, message: str, factors: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.factors = factors

    def __reduce__(self):
        return type(self), (self.args[0], self.factors)


class ConvergenceWarning(UserWarning):
    """Independent runs of one fit disagree beyond tolerance."""


class SingularFitWarning(UserWarning):
    """A fit is singular but was kept because the caller asked for warnings."""


__all__ = [
    "ConvergenceWarning",
    "DegenerateVarianceError",
    "InvalidInputError",
    "NonConvergenceError",
    "PayrollModelError",
    "SingularFitWarning",
    "SpecificationError",
    "UnknownCategoryError",
]
