"""Partial-pooling regression estimation and model comparison for payroll data."""

from .comparison import ComparisonTable, compare
from .data import CompensationRecord, GroupIndex, PayrollDataset, build_dataset, load_records, standardize
from .errors import (
    ConvergenceWarning,
    DegenerateVarianceError,
    InvalidInputError,
    NonConvergenceError,
    PayrollModelError,
    SingularFitWarning,
    SpecificationError,
    UnknownCategoryError,
)
from .estimation import (
    CancellationToken,
    FitCache,
    FitFailure,
    FitJob,
    FitOptions,
    FitResult,
    fit,
    fit_many,
    predict,
)
from .modeling import ModelSpec, ModelSpecBuilder, build_ladder, get_model

__all__ = [
    "CancellationToken",
    "ComparisonTable",
    "CompensationRecord",
    "ConvergenceWarning",
    "DegenerateVarianceError",
    "FitCache",
    "FitFailure",
    "FitJob",
    "FitOptions",
    "FitResult",
    "GroupIndex",
    "InvalidInputError",
    "ModelSpec",
    "ModelSpecBuilder",
    "NonConvergenceError",
    "PayrollDataset",
    "PayrollModelError",
    "SingularFitWarning",
    "SpecificationError",
    "UnknownCategoryError",
    "build_dataset",
    "build_ladder",
    "compare",
    "fit",
    "fit_many",
    "get_model",
    "load_records",
    "predict",
    "standardize",
]
