from __future__ import annotations

from pathlib import Path
from typing import Mapping, Optional, Sequence, Tuple

from payroll_pooling.comparison import ComparisonTable, compare
from payroll_pooling.config import DEFAULT_CACHE_ROOT, ColumnMap
from payroll_pooling.data import TableSource, build_dataset, load_records, standardize
from payroll_pooling.estimation import BatchOutcome, FitCache, FitJob, FitOptions, fit_many
from payroll_pooling.modeling import LadderPriors, get_model, list_available_models

STANDARDIZED_FIELDS = ("hourly_rate", "tenure_years")


def run_model_ladder(
    source: TableSource,
    models: Optional[Sequence[str]] = None,
    options: Optional[FitOptions] = None,
    priors: Optional[LadderPriors] = None,
    columns: Optional[ColumnMap] = None,
    reference_levels: Optional[Mapping[str, str]] = None,
    max_workers: int = 1,
    cache_root: Optional[Path] = DEFAULT_CACHE_ROOT,
) -> Tuple[ComparisonTable, BatchOutcome]:
    """Fit the requested rungs of the model ladder on a cleaned table and rank them."""
    print("[ladder] Loading cleaned payroll rows.")
    records = load_records(source, columns=columns)
    dataset, scaling = standardize(build_dataset(records, reference_levels=reference_levels), STANDARDIZED_FIELDS)
    print(
        f"[ladder] Loaded {dataset.n_obs} rows across {dataset.indexes['job_group'].size} job groups "
        f"and {dataset.indexes['gender_group'].size} gender groups."
    )
    print(
        "[ladder] Standardized "
        + ", ".join(f"{name} (mean={scaling.centers[name]:.2f}, sd={scaling.scales[name]:.2f})" for name in STANDARDIZED_FIELDS)
    )

    selected = list(models or list_available_models())
    opts = options or FitOptions()
    jobs = [FitJob(spec=get_model(key, priors), dataset=dataset, options=opts) for key in selected]
    cache = FitCache(cache_root) if cache_root is not None else None
    print(f"[ladder] Fitting {len(jobs)} models with method={opts.method} on {max_workers} worker(s).")

    outcome = fit_many(jobs, max_workers=max_workers, cache=cache, progress=True)
    if outcome.cache_hits:
        print(f"[ladder] Reused cached fits for: {', '.join(outcome.cache_hits)}")
    for result in outcome.results:
        for issue in result.issues:
            print(f"[ladder] {result.model}: {issue}")
        for message in result.diagnostics.messages:
            print(f"[ladder] {result.model}: {message}")
    for failure in outcome.failures:
        print(f"[ladder] {failure.model} failed ({failure.error_type}): {failure.message}")

    table = compare([*outcome.results, *outcome.failures])
    print(f"[ladder] Ranked {len(table.entries)} models by {table.criterion}; best is '{table.best.model}'.")
    return table, outcome
