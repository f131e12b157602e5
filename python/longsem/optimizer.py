"""Quasi-Newton minimization of the FIML discrepancy and robust covariances."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple

import numpy as np
from scipy import optimize

from .errors import SingularCovarianceError
from .likelihood import LikelihoodDriver
from .structure import StructureMapper

__all__ = [
    "EstimationMethod",
    "OptimizationOptions",
    "OptimizationResult",
    "Objective",
    "minimize",
    "robust_covariance",
]

logger = logging.getLogger(__name__)

# Objective value reported to L-BFGS-B for trial points with a singular Sigma.
_INFEASIBLE = 1e10


class EstimationMethod(Enum):
    ML = "ML"
    MLR = "MLR"


@dataclass
class OptimizationOptions:
    """Settings for a single fit.

    ``optimizer_name`` selects the built-in projected BFGS (``"bfgs"``) or
    scipy's L-BFGS-B (``"lbfgs"``).  ``estimator`` chooses between
    information-based (``ML``) and sandwich (``MLR``) standard errors and
    test statistics.
    """

    max_iterations: int = 1000
    tolerance: float = 1e-5
    gradient_tolerance: float = 1e-6
    max_linesearch: int = 40
    variance_floor: float = 1e-3
    optimizer_name: str = "bfgs"
    estimator: EstimationMethod = EstimationMethod.MLR
    compute_standard_errors: bool = True
    compute_fit_indices: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.estimator, str):
            try:
                self.estimator = EstimationMethod(self.estimator.upper())
            except ValueError:
                raise ValueError(f"Unknown estimator: {self.estimator}") from None
        if self.optimizer_name not in ("bfgs", "lbfgs"):
            raise ValueError(f"Unknown optimizer: {self.optimizer_name}")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be positive")
        if self.tolerance <= 0 or self.gradient_tolerance <= 0:
            raise ValueError("tolerances must be positive")
        if self.variance_floor < 0:
            raise ValueError("variance_floor cannot be negative")

    def replace(self, **kwargs: Any) -> "OptimizationOptions":
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(kwargs) - known)
        if unknown:
            raise TypeError(f"Unknown optimization options: {unknown}")
        return dataclasses.replace(self, **kwargs)


@dataclass
class OptimizationResult:
    parameters: np.ndarray
    objective_value: float
    iterations: int
    converged: bool
    message: str
    gradient: np.ndarray = field(repr=False)
    at_bound: np.ndarray = field(repr=False)


class Objective:
    """``-2 log L / N`` as a function of the free-parameter vector."""

    def __init__(self, mapper: StructureMapper, driver: LikelihoodDriver) -> None:
        self.mapper = mapper
        self.driver = driver
        self.n = driver.patterns.n
        self.evaluations = 0

    def minus_two_loglik(self, theta: np.ndarray) -> float:
        mu, sigma = self.mapper.implied_moments(theta)
        return self.driver.minus_two_loglik(mu, sigma)

    def value(self, theta: np.ndarray) -> float:
        self.evaluations += 1
        return self.minus_two_loglik(theta) / self.n

    def gradient(self, theta: np.ndarray) -> np.ndarray:
        mu, sigma = self.mapper.implied_moments(theta)
        dmu, dsigma = self.mapper.moment_derivatives(theta)
        return self.driver.gradient(mu, sigma, dmu, dsigma) / self.n

    def value_and_gradient(self, theta: np.ndarray) -> Tuple[float, np.ndarray]:
        return self.value(theta), self.gradient(theta)

    def scores(self, theta: np.ndarray) -> np.ndarray:
        mu, sigma = self.mapper.implied_moments(theta)
        dmu, dsigma = self.mapper.moment_derivatives(theta)
        return self.driver.casewise_scores(mu, sigma, dmu, dsigma)

    def hessian(
        self,
        theta: np.ndarray,
        free: Optional[np.ndarray] = None,
        lower: Optional[np.ndarray] = None,
        step: float = 1e-5,
    ) -> np.ndarray:
        """Hessian of ``-log L`` over the ``free`` coordinates.

        Central differences of the analytic gradient; a coordinate within one
        step of its ``lower`` bound is differenced forward so that no variance
        is pushed through its bound.
        """
        theta = np.asarray(theta, dtype=float)
        q = theta.shape[0]
        idx = np.arange(q) if free is None else np.flatnonzero(free)
        lower = np.full(q, -np.inf) if lower is None else np.asarray(lower, dtype=float)
        hess = np.zeros((idx.size, idx.size))
        g0 = None
        for col, j in enumerate(idx):
            h = step * max(1.0, abs(theta[j]))
            up = theta.copy()
            up[j] += h
            if theta[j] - h > lower[j]:
                down = theta.copy()
                down[j] -= h
                hess[:, col] = (self.gradient(up) - self.gradient(down))[idx] / (2.0 * h)
            else:
                if g0 is None:
                    g0 = self.gradient(theta)
                hess[:, col] = (self.gradient(up) - g0)[idx] / h
        hess = 0.5 * (hess + hess.T)
        return 0.5 * self.n * hess


def minimize(
    objective: Objective,
    start: np.ndarray,
    lower: np.ndarray,
    options: OptimizationOptions,
) -> OptimizationResult:
    """Minimize the objective subject to lower bounds on variance parameters.

    A singular implied covariance at the starting point is fatal; at trial
    points it only shortens the step.
    """
    x0 = np.maximum(np.asarray(start, dtype=float), lower)
    if options.optimizer_name == "lbfgs":
        return _minimize_lbfgs(objective, x0, lower, options)
    return _minimize_bfgs(objective, x0, lower, options)


def _projected_gradient(x: np.ndarray, g: np.ndarray, lower: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    active = (x <= lower) & (g > 0)
    pg = np.where(active, 0.0, g)
    return pg, active


def _minimize_bfgs(
    objective: Objective,
    x: np.ndarray,
    lower: np.ndarray,
    options: OptimizationOptions,
) -> OptimizationResult:
    f, g = objective.value_and_gradient(x)
    q = x.shape[0]
    H = np.eye(q) / max(1.0, float(np.abs(g).max(initial=0.0)))
    scaled = False
    converged = False
    message = "iteration budget exhausted"
    iteration = 0
    gtol_loose = np.sqrt(options.tolerance)

    while iteration < options.max_iterations:
        iteration += 1
        pg, active = _projected_gradient(x, g, lower)
        pg_norm = float(np.abs(pg).max(initial=0.0))
        if pg_norm < options.gradient_tolerance:
            converged = True
            message = "projected gradient below tolerance"
            break

        free = ~active
        d = np.zeros(q)
        d[free] = -H[np.ix_(free, free)] @ g[free]
        if float(g @ d) >= 0.0:
            H = np.eye(q)
            scaled = False
            d = -pg

        step = 1.0
        accepted = False
        for _ in range(options.max_linesearch):
            x_new = np.maximum(x + step * d, lower)
            try:
                f_new, g_new = objective.value_and_gradient(x_new)
            except SingularCovarianceError:
                step *= 0.5
                continue
            if f_new <= f + 1e-4 * float(g @ (x_new - x)):
                accepted = True
                break
            step *= 0.5

        if not accepted:
            if scaled or not np.allclose(H, np.eye(q)):
                logger.debug("Line search failed at iteration %d; resetting curvature", iteration)
                H = np.eye(q)
                scaled = False
                continue
            converged = pg_norm < gtol_loose
            message = "line search could not improve the objective"
            break

        s = x_new - x
        y = g_new - g
        rel_f = abs(f_new - f) / max(abs(f), 1.0)
        rel_x = float(np.abs(s).max(initial=0.0)) / max(float(np.abs(x).max(initial=0.0)), 1.0)
        sy = float(s @ y)
        if sy > 1e-10:
            if not scaled:
                H = np.eye(q) * (sy / float(y @ y))
                scaled = True
            rho = 1.0 / sy
            Hy = H @ y
            H = H - rho * (np.outer(s, Hy) + np.outer(Hy, s)) + (rho * rho * float(y @ Hy) + rho) * np.outer(s, s)

        x, f, g = x_new, f_new, g_new
        if iteration % 50 == 0:
            logger.debug("iteration %d: objective %.8f", iteration, f)

        pg, _ = _projected_gradient(x, g, lower)
        pg_norm = float(np.abs(pg).max(initial=0.0))
        if rel_f < options.tolerance and rel_x < options.tolerance and pg_norm < gtol_loose:
            converged = True
            message = "relative change in objective and parameters below tolerance"
            break

    _, active = _projected_gradient(x, g, lower)
    return OptimizationResult(
        parameters=x,
        objective_value=0.5 * f * objective.n,
        iterations=iteration,
        converged=converged,
        message=message,
        gradient=g,
        at_bound=x <= lower,
    )


def _minimize_lbfgs(
    objective: Objective,
    x0: np.ndarray,
    lower: np.ndarray,
    options: OptimizationOptions,
) -> OptimizationResult:
    objective.value_and_gradient(x0)

    def fun(x: np.ndarray):
        try:
            return objective.value_and_gradient(x)
        except SingularCovarianceError:
            return _INFEASIBLE, np.zeros_like(x)

    bounds = [(lb if np.isfinite(lb) else None, None) for lb in lower]
    res = optimize.minimize(
        fun,
        x0,
        jac=True,
        method="L-BFGS-B",
        bounds=bounds,
        options={
            "maxiter": options.max_iterations,
            "ftol": options.tolerance * 1e-2,
            "gtol": options.gradient_tolerance,
            "maxls": options.max_linesearch,
        },
    )
    x = np.maximum(res.x, lower)
    f, g = objective.value_and_gradient(x)
    return OptimizationResult(
        parameters=x,
        objective_value=0.5 * f * objective.n,
        iterations=int(res.nit),
        converged=bool(res.success),
        message=str(res.message),
        gradient=g,
        at_bound=x <= lower,
    )


def robust_covariance(
    objective: Objective,
    theta: np.ndarray,
    fixed: Optional[np.ndarray] = None,
    estimator: EstimationMethod = EstimationMethod.MLR,
    lower: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Covariance of the estimates.

    ``H^-1`` for ML and the sandwich ``H^-1 B H^-1`` for MLR, where ``H`` is
    the observed information (Hessian of ``-log L``) and ``B`` the sum of
    outer products of the casewise scores.  Parameters flagged in ``fixed``
    (estimates held on a bound) are excluded and get ``NaN`` entries; the
    remaining ones are never perturbed below ``lower``.
    """
    q = theta.shape[0]
    free = np.ones(q, dtype=bool) if fixed is None else ~np.asarray(fixed, dtype=bool)
    vcov = np.full((q, q), np.nan)
    if not free.any():
        return vcov

    hess = objective.hessian(theta, free=free, lower=lower)
    try:
        bread = np.linalg.inv(hess)
        if not np.all(np.isfinite(bread)):
            raise np.linalg.LinAlgError("non-finite inverse")
    except np.linalg.LinAlgError:
        logger.warning("Information matrix is singular; using the Moore-Penrose inverse")
        bread = np.linalg.pinv(hess)

    if estimator == EstimationMethod.ML:
        inner = bread
    else:
        scores = objective.scores(theta)[:, free]
        meat = scores.T @ scores
        inner = bread @ meat @ bread
    vcov[np.ix_(free, free)] = 0.5 * (inner + inner.T)
    return vcov
