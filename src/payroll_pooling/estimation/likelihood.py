"""Profiled (restricted) maximum likelihood for linear mixed models.

The covariance of each factor's group-level terms is written as
``sigma^2 * L_k L_k^T`` with ``L_k`` lower triangular (the relative Cholesky
factor). For a given set of factors the penalised least-squares system

    [ L'Z'ZL + I   L'Z'X ] [u]   [L'Z'y]
    [ X'ZL         X'X   ] [b] = [X'y  ]

yields the fixed effects and the spherical random effects ``u``; the
conditional modes are ``L u``. Profiling out ``sigma^2`` leaves a deviance in
the Cholesky entries alone, which is minimised with L-BFGS-B from several
starting points.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import scipy.sparse as sp
from scipy import stats
from scipy.linalg import cho_solve, solve_triangular
from scipy.optimize import minimize

from ..config import SINGULAR_TOLERANCE
from ..errors import ConvergenceWarning, NonConvergenceError, SpecificationError
from ..modeling.design import DesignMatrices, GroupDesign
from .options import Watchdog


@dataclass(frozen=True)
class PLSSolution:
    """Everything derived from one evaluation of the penalised least-squares system."""

    theta: np.ndarray
    beta: np.ndarray
    u: np.ndarray
    b: np.ndarray
    fitted: np.ndarray
    r2: float
    sigma2: float
    deviance: float
    schur: np.ndarray
    chol_a: np.ndarray
    rzx: np.ndarray


@dataclass(frozen=True)
class LikelihoodFit:
    solution: PLSSolution
    fixed_cov: np.ndarray
    random_var: np.ndarray
    hat_trace: float
    factor_cholesky: Dict[str, np.ndarray]
    singular_factors: Tuple[str, ...]
    n_iter: int
    runs: int
    converged_runs: int
    max_disagreement: float
    messages: Tuple[str, ...]


class LikelihoodEstimator:
    """REML/ML estimation for one design, with optional pinned relative scales."""

    def __init__(
        self,
        design: DesignMatrices,
        reml: bool = True,
        fixed_scales: Optional[Mapping[str, float]] = None,
    ) -> None:
        self.design = design
        self.reml = reml
        self.Z = design.random_design()
        X, y = design.X, design.y

        self.ZtZ = (self.Z.T @ self.Z).tocsc()
        self.ZtX = np.asarray(self.Z.T @ X)
        self.Zty = np.asarray(self.Z.T @ y).ravel()
        self.XtX = X.T @ X
        self.Xty = X.T @ y

        fixed = dict(fixed_scales or {})
        unknown = set(fixed) - {group.factor for group in design.groups}
        if unknown:
            raise SpecificationError(f"Fixed scales given for factors without group terms: {sorted(unknown)}")
        self._layout, self._lower, initial, pinned = self._theta_layout(design.groups, fixed)
        self._initial = initial
        self._pinned = pinned
        self._free = np.isnan(pinned)
        self._pinned_factors = frozenset(fixed)

    # --- parameter layout ----------------------------------------------

    @staticmethod
    def _theta_layout(groups, fixed: Mapping[str, float]):
        layout: List[Tuple[GroupDesign, int, np.ndarray, np.ndarray]] = []
        lower: List[Optional[float]] = []
        initial: List[float] = []
        pinned: List[float] = []
        position = 0
        for group in groups:
            rows, cols = np.tril_indices(group.n_terms)
            layout.append((group, position, rows, cols))
            for row, col in zip(rows, cols):
                diagonal = row == col
                lower.append(0.0 if diagonal else None)
                initial.append(1.0 if diagonal else 0.0)
                if group.factor in fixed:
                    pinned.append(float(fixed[group.factor]) if diagonal else 0.0)
                else:
                    pinned.append(np.nan)
            position += len(rows)
        return layout, lower, np.asarray(initial), np.asarray(pinned)

    def _expand(self, free_values: np.ndarray) -> np.ndarray:
        theta = self._pinned.copy()
        theta[self._free] = free_values
        return theta

    def factor_cholesky(self, theta: np.ndarray) -> Dict[str, np.ndarray]:
        factors: Dict[str, np.ndarray] = {}
        for group, start, rows, cols in self._layout:
            L = np.zeros((group.n_terms, group.n_terms))
            L[rows, cols] = theta[start : start + len(rows)]
            factors[group.factor] = L
        return factors

    def _lambda(self, theta: np.ndarray) -> sp.csc_matrix:
        blocks = [
            sp.kron(sp.identity(group.n_groups, format="csc"), sp.csc_matrix(L), format="csc")
            for (group, *_), L in zip(self._layout, self.factor_cholesky(theta).values())
        ]
        return sp.block_diag(blocks, format="csc")

    # --- penalised least squares ---------------------------------------

    def solve(self, theta: np.ndarray) -> PLSSolution:
        X, y = self.design.X, self.design.y
        n, p = X.shape
        q = self.design.n_random
        dof = n - p if self.reml else n
        if dof <= 0:
            raise SpecificationError("Not enough observations for the requested fixed effects.")

        if q == 0:
            chol_a = np.zeros((0, 0))
            rzx = np.zeros((0, p))
            cu = np.zeros(0)
            logdet_a = 0.0
            lam = None
        else:
            lam = self._lambda(theta)
            lam_t = lam.T.tocsc()
            a = np.asarray((lam_t @ self.ZtZ @ lam).todense()) + np.eye(q)
            chol_a = np.linalg.cholesky(a)
            rzx = solve_triangular(chol_a, np.asarray(lam_t @ self.ZtX), lower=True)
            cu = solve_triangular(chol_a, np.asarray(lam_t @ self.Zty).ravel(), lower=True)
            logdet_a = 2.0 * float(np.sum(np.log(np.diag(chol_a))))

        schur = self.XtX - rzx.T @ rzx
        chol_x = np.linalg.cholesky(schur)
        beta = cho_solve((chol_x, True), self.Xty - rzx.T @ cu)

        if q == 0:
            u = np.zeros(0)
            b = np.zeros(0)
            fitted = X @ beta
        else:
            u = solve_triangular(chol_a.T, cu - rzx @ beta, lower=False)
            b = np.asarray(lam @ u).ravel()
            fitted = X @ beta + np.asarray(self.Z @ b).ravel()

        r2 = float(np.sum((y - fitted) ** 2) + u @ u)
        deviance = logdet_a + dof * (1.0 + np.log(2.0 * np.pi * r2 / dof))
        if self.reml:
            deviance += 2.0 * float(np.sum(np.log(np.diag(chol_x))))

        return PLSSolution(
            theta=theta,
            beta=beta,
            u=u,
            b=b,
            fitted=fitted,
            r2=r2,
            sigma2=r2 / dof,
            deviance=float(deviance),
            schur=schur,
            chol_a=chol_a,
            rzx=rzx,
        )

    def deviance(self, free_values: np.ndarray) -> float:
        try:
            return self.solve(self._expand(free_values)).deviance
        except np.linalg.LinAlgError:
            return np.finfo(float).max / 1e10

    # --- optimisation --------------------------------------------------

    def fit(
        self,
        n_starts: int = 3,
        max_iter: int = 1000,
        tolerance: float = 1e-10,
        agreement_tolerance: float = 1e-3,
        random_seed: Optional[int] = None,
        watchdog: Optional[Watchdog] = None,
    ) -> LikelihoodFit:
        guard = watchdog or Watchdog()
        rng = np.random.default_rng(random_seed)
        bounds = [bound for bound, free in zip(self._bounds(), self._free) if free]
        n_free = int(self._free.sum())

        runs: List[Tuple[float, np.ndarray, int, str]] = []
        messages: List[str] = []
        total_iter = 0
        starts = 1 if n_free == 0 else n_starts

        def checkpoint(*_: object) -> None:
            guard.check("likelihood optimisation")

        for start in range(starts):
            guard.check("likelihood optimisation")
            if n_free == 0:
                runs.append((self.deviance(np.zeros(0)), np.zeros(0), 0, "no free parameters"))
                continue
            x0 = self._initial[self._free] if start == 0 else self._random_start(rng)
            try:
                result = minimize(
                    self.deviance,
                    x0,
                    method="L-BFGS-B",
                    bounds=bounds,
                    callback=checkpoint,
                    options={"maxiter": max_iter, "ftol": tolerance},
                )
            except NonConvergenceError as exc:
                exc.diagnostics.update({"runs_started": start + 1, "n_iter": total_iter})
                raise
            total_iter += int(result.nit)
            message = str(result.message)
            if result.status == 1 or not np.isfinite(result.fun):
                messages.append(f"start {start}: {message}")
                continue
            runs.append((float(result.fun), np.asarray(result.x), int(result.nit), message))

        if not runs:
            raise NonConvergenceError(
                f"Optimizer exhausted its budget of {max_iter} iterations on every start.",
                {"runs": starts, "n_iter": total_iter, "messages": messages},
            )

        runs.sort(key=lambda item: item[0])
        best_fun, best_x, best_iter, _ = runs[0]
        solution = self.solve(self._expand(best_x))

        disagreement = 0.0
        for _, x, _, _ in runs[1:]:
            other = self.solve(self._expand(x)).beta
            spread = np.max(np.abs(other - solution.beta) / np.maximum(1.0, np.abs(solution.beta)))
            disagreement = max(disagreement, float(spread))
        if disagreement > agreement_tolerance:
            note = f"independent starts disagree on fixed effects by {disagreement:.2e}"
            messages.append(note)
            warnings.warn(note, ConvergenceWarning, stacklevel=3)

        factors = self.factor_cholesky(solution.theta)
        singular = tuple(
            factor
            for factor, L in factors.items()
            if factor not in self._pinned_factors and np.any(np.diag(L) < SINGULAR_TOLERANCE)
        )
        fixed_cov, random_var, hat_trace = self._uncertainty(solution)

        return LikelihoodFit(
            solution=solution,
            fixed_cov=fixed_cov,
            random_var=random_var,
            hat_trace=hat_trace,
            factor_cholesky=factors,
            singular_factors=singular,
            n_iter=best_iter,
            runs=starts,
            converged_runs=len(runs),
            max_disagreement=disagreement,
            messages=tuple(messages),
        )

    def _bounds(self) -> List[Tuple[Optional[float], Optional[float]]]:
        return [(low, None) for low in self._lower]

    def _random_start(self, rng: np.random.Generator) -> np.ndarray:
        free_lower = np.asarray([low is not None for low in self._lower])[self._free]
        draws = rng.normal(0.0, 0.3, size=int(self._free.sum()))
        draws[free_lower] = rng.uniform(0.2, 3.0, size=int(free_lower.sum()))
        return draws

    # --- uncertainty ---------------------------------------------------

    def _uncertainty(self, solution: PLSSolution) -> Tuple[np.ndarray, np.ndarray, float]:
        """Fixed-effect covariance, prediction-error variances of the modes, and tr(hat)."""
        p = self.design.n_fixed
        q = self.design.n_random
        schur_inv = np.linalg.inv(solution.schur)
        fixed_cov = solution.sigma2 * schur_inv
        if q == 0:
            return fixed_cov, np.zeros(0), float(p)

        a_inv = cho_solve((solution.chol_a, True), np.eye(q))
        g = solve_triangular(solution.chol_a.T, solution.rzx, lower=False)
        c_uu = a_inv + g @ schur_inv @ g.T
        hat_trace = float(q + p - np.trace(c_uu))

        lam = self._lambda(solution.theta)
        scaled = np.asarray(lam @ c_uu)
        random_var = solution.sigma2 * np.asarray(lam.multiply(scaled).sum(axis=1)).ravel()
        return fixed_cov, random_var, hat_trace


def normal_interval(estimate: np.ndarray, std_error: np.ndarray, level: float) -> Tuple[np.ndarray, np.ndarray]:
    half = float(stats.norm.ppf(0.5 + level / 2.0)) * std_error
    return estimate - half, estimate + half


def conditional_log_likelihood(y: np.ndarray, fitted: np.ndarray, sigma2: float) -> np.ndarray:
    return stats.norm.logpdf(y, loc=fitted, scale=np.sqrt(sigma2))


__all__ = [
    "LikelihoodEstimator",
    "LikelihoodFit",
    "PLSSolution",
    "conditional_log_likelihood",
    "normal_interval",
]
