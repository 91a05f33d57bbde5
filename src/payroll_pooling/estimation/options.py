"""Estimation options and cooperative cancellation."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from ..config import AGREEMENT_TOLERANCE, DEFAULT_CREDIBLE_INTERVAL, MAX_RHAT
from ..errors import NonConvergenceError

Method = Literal["likelihood", "posterior"]
SingularPolicy = Literal["warn", "raise"]


class CancellationToken:
    """Thread-safe flag an outside caller sets to stop a running fit.

    Worker processes cannot share a `threading.Event`, so the batch runner hands
    them a token backed by a manager event and links it here: `cancel()` then
    sets every linked event as well.
    """

    def __init__(self, event: Optional[Any] = None) -> None:
        self._event = event if event is not None else threading.Event()
        self._linked: List[Any] = []
        self._lock = threading.Lock()

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            for event in self._linked:
                event.set()

    def link(self, event: Any) -> None:
        """Mirror this token onto ``event``, setting it at once if already cancelled."""
        with self._lock:
            self._linked.append(event)
            if self._event.is_set():
                event.set()

    def unlink(self, event: Any) -> None:
        with self._lock:
            if event in self._linked:
                self._linked.remove(event)

    def __getstate__(self) -> Dict[str, Any]:
        # Only manager-backed tokens travel to workers; links stay in the parent.
        return {"event": self._event}

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__init__(state["event"])

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Watchdog:
    """Checkpoint helper combining a cancellation token with an optional deadline."""

    def __init__(self, token: Optional[CancellationToken] = None, timeout: Optional[float] = None) -> None:
        self.token = token
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self.checkpoints = 0

    def check(self, stage: str = "estimation") -> None:
        """Raise NonConvergenceError if the fit was cancelled or ran out of time."""
        self.checkpoints += 1
        if self.token is not None and self.token.cancelled:
            raise NonConvergenceError(
                f"{stage} cancelled after {self.checkpoints} checkpoints",
                {"reason": "cancelled", "checkpoints": self.checkpoints},
            )
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise NonConvergenceError(
                f"{stage} exceeded its time budget after {self.checkpoints} checkpoints",
                {"reason": "timeout", "checkpoints": self.checkpoints},
            )


@dataclass(frozen=True)
class FitOptions:
    """Configuration for `fit`. Only estimation-relevant fields enter the cache key."""

    method: Method = "likelihood"
    random_seed: Optional[int] = None

    # Likelihood strategy.
    reml: bool = True
    n_starts: int = 3
    max_iter: int = 1000
    tolerance: float = 1e-10
    fixed_scales: Tuple[Tuple[str, float], ...] = ()

    # Posterior strategy.
    draws: int = 1000
    tune: int = 1000
    chains: int = 4
    cores: Optional[int] = None
    target_accept: float = 0.9

    credible_interval: float = DEFAULT_CREDIBLE_INTERVAL
    agreement_tolerance: float = AGREEMENT_TOLERANCE
    max_rhat: float = MAX_RHAT
    on_singular: SingularPolicy = "warn"
    timeout: Optional[float] = None
    cancel_token: Optional[CancellationToken] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        scales: Any = self.fixed_scales
        if isinstance(scales, Mapping):
            object.__setattr__(self, "fixed_scales", tuple(sorted((str(k), float(v)) for k, v in scales.items())))

    def validate(self) -> None:
        if self.method not in ("likelihood", "posterior"):
            raise ValueError(f"Unknown estimation method {self.method!r}.")
        if self.n_starts < 1 or self.max_iter < 1:
            raise ValueError("n_starts and max_iter must be at least 1.")
        if self.draws < 1 or self.tune < 0 or self.chains < 1:
            raise ValueError("draws and chains must be positive; tune cannot be negative.")
        if not 0 < self.credible_interval < 1:
            raise ValueError("credible_interval must fall within (0, 1).")
        if not 0 < self.target_accept < 1:
            raise ValueError("target_accept must fall within (0, 1).")
        if self.agreement_tolerance <= 0 or self.tolerance <= 0:
            raise ValueError("Tolerances must be strictly positive.")
        if self.on_singular not in ("warn", "raise"):
            raise ValueError("on_singular must be 'warn' or 'raise'.")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive when given.")
        for factor, scale in self.fixed_scales:
            if not scale >= 0:
                raise ValueError(f"Fixed relative scale for {factor!r} must be non-negative.")

    @property
    def scale_overrides(self) -> Dict[str, float]:
        return dict(self.fixed_scales)

    def watchdog(self) -> Watchdog:
        return Watchdog(self.cancel_token, self.timeout)

    def cache_payload(self) -> Dict[str, Any]:
        """Fields that change the numbers a fit produces."""
        payload: Dict[str, Any] = {
            "method": self.method,
            "random_seed": self.random_seed,
            "credible_interval": self.credible_interval,
        }
        if self.method == "likelihood":
            payload.update(
                reml=self.reml,
                n_starts=self.n_starts,
                max_iter=self.max_iter,
                tolerance=self.tolerance,
                fixed_scales=[list(item) for item in self.fixed_scales],
            )
        else:
            payload.update(
                draws=self.draws,
                tune=self.tune,
                chains=self.chains,
                target_accept=self.target_accept,
            )
        return payload


__all__ = ["CancellationToken", "FitOptions", "Method", "SingularPolicy", "Watchdog"]
