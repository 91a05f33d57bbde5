"""Estimation engine: likelihood and posterior strategies, caching and batch runs."""

from .cache import FitCache, cache_key
from .engine import STRATEGIES, fit, literal_parameter_count
from .options import CancellationToken, FitOptions, Watchdog
from .prediction import predict
from .results import Diagnostics, FitFailure, FitResult, FixedEffect, GroupEffect, VarianceComponent
from .runner import BatchOutcome, FitJob, fit_cached, fit_many

__all__ = [
    "STRATEGIES",
    "BatchOutcome",
    "CancellationToken",
    "Diagnostics",
    "FitCache",
    "FitFailure",
    "FitJob",
    "FitOptions",
    "FitResult",
    "FixedEffect",
    "GroupEffect",
    "VarianceComponent",
    "Watchdog",
    "cache_key",
    "fit",
    "fit_cached",
    "fit_many",
    "literal_parameter_count",
    "predict",
]
