"""Run independent fits in parallel worker processes, with optional memoisation."""

from __future__ import annotations

from concurrent.futures import Future, ProcessPoolExecutor, as_completed
from contextlib import ExitStack
from multiprocessing import Manager
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from ..data.dataset import PayrollDataset
from ..errors import PayrollModelError
from ..modeling.spec import ModelSpec
from .cache import FitCache, cache_key
from .engine import apply_singular_policy, fit
from .options import CancellationToken, FitOptions
from .results import FitFailure, FitResult


@dataclass(frozen=True)
class FitJob:
    spec: ModelSpec
    dataset: PayrollDataset
    options: FitOptions = field(default_factory=FitOptions)

    @property
    def key(self) -> str:
        return cache_key(self.spec, self.dataset, self.options)


@dataclass(frozen=True)
class BatchOutcome:
    """Successful fits in job order, failures reported separately."""

    results: Tuple[FitResult, ...]
    failures: Tuple[FitFailure, ...]
    cache_hits: Tuple[str, ...] = ()

    def result(self, model: str) -> FitResult:
        for result in self.results:
            if result.model == model:
                return result
        raise KeyError(f"No successful fit for model {model!r}")


def fit_cached(job: FitJob, cache: Optional[FitCache] = None) -> FitResult:
    """Load the result for ``job`` from ``cache`` if present, otherwise fit and store it."""
    if cache is None:
        return fit(job.spec, job.dataset, job.options)
    key = job.key
    cached = cache.get(key)
    if cached is not None:
        return _reuse(cached, job)
    result = fit(job.spec, job.dataset, job.options)
    cache.put(key, result)
    return result


def _reuse(cached: FitResult, job: FitJob) -> FitResult:
    """Adopt a stored fit for ``job``, re-applying the caller's singular-fit policy."""
    issues = apply_singular_policy(cached.diagnostics.singular_factors, job.options)
    return replace(cached, spec=job.spec, issues=issues)


def _run_job(job: FitJob) -> FitResult:
    return fit(job.spec, job.dataset, job.options)


def fit_many(
    jobs: Sequence[FitJob],
    max_workers: int = 1,
    cache: Optional[FitCache] = None,
    progress: bool = False,
) -> BatchOutcome:
    """Fit every job; domain errors become FitFailure records instead of aborting the batch."""
    if max_workers < 1:
        raise ValueError("max_workers must be at least 1.")

    outcomes: Dict[int, FitResult] = {}
    failures: Dict[int, FitFailure] = {}
    hits: List[str] = []
    pending: List[int] = []

    for position, job in enumerate(jobs):
        cached = cache.get(job.key) if cache is not None else None
        if cached is None:
            pending.append(position)
            continue
        hits.append(job.spec.name)
        _collect(job, position, partial(_reuse, cached, job), outcomes, failures, None)

    if max_workers == 1 or len(pending) <= 1:
        for position in tqdm(pending, desc="Fitting models", leave=False, disable=not progress):
            _collect(jobs[position], position, partial(_run_job, jobs[position]), outcomes, failures, cache)
    else:
        with ExitStack() as stack:
            shared = _shared_tokens([jobs[position] for position in pending], stack)
            executor = stack.enter_context(ProcessPoolExecutor(max_workers=max_workers))
            futures: Dict[Future[FitResult], int] = {}
            for position in pending:
                job = jobs[position]
                token = job.options.cancel_token
                if token is not None:
                    job = replace(job, options=replace(job.options, cancel_token=shared[id(token)]))
                futures[executor.submit(_run_job, job)] = position
            progress_bar = tqdm(as_completed(futures), total=len(futures), desc="Fitting models", leave=False, disable=not progress)
            for future in progress_bar:
                position = futures[future]
                _collect(jobs[position], position, future.result, outcomes, failures, cache)

    return BatchOutcome(
        results=tuple(outcomes[position] for position in sorted(outcomes)),
        failures=tuple(failures[position] for position in sorted(failures)),
        cache_hits=tuple(hits),
    )


def _shared_tokens(jobs: Sequence[FitJob], stack: ExitStack) -> Dict[int, CancellationToken]:
    """Map each caller token to a manager-backed copy that worker processes can poll."""
    tokens = {id(job.options.cancel_token): job.options.cancel_token for job in jobs if job.options.cancel_token is not None}
    if not tokens:
        return {}
    manager = stack.enter_context(Manager())
    shared: Dict[int, CancellationToken] = {}
    for key, token in tokens.items():
        event = manager.Event()
        token.link(event)
        stack.callback(token.unlink, event)
        shared[key] = CancellationToken(event)
    return shared


def _collect(
    job: FitJob,
    position: int,
    produce: Callable[[], FitResult],
    outcomes: Dict[int, FitResult],
    failures: Dict[int, FitFailure],
    cache: Optional[FitCache],
) -> None:
    try:
        result = produce()
    except PayrollModelError as exc:
        failures[position] = FitFailure.from_exception(job.spec.name, exc)
        return
    outcomes[position] = result
    if cache is not None:
        cache.put(job.key, result)


__all__ = ["BatchOutcome", "FitJob", "fit_cached", "fit_many"]
