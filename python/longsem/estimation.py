"""Single-model estimation: start values, optimization, standard errors."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import (
    BoundaryEstimateWarning,
    ConvergenceError,
    IdentificationError,
    SingularCovarianceError,
)
from .ir import Specification
from .likelihood import LikelihoodDriver, MissingPatterns
from .optimizer import (
    EstimationMethod,
    Objective,
    OptimizationOptions,
    OptimizationResult,
    minimize,
    robust_covariance,
)
from .structure import StructureMapper

__all__ = ["FitResult", "estimate"]

logger = logging.getLogger(__name__)

# Lower bound on variances while searching; small enough not to bias any
# positive estimate, large enough to keep Sigma positive definite.
_SEARCH_BOUND = 1e-8


def _frozen(values: Any) -> np.ndarray:
    arr = np.array(values, dtype=float)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class FitResult:
    """Immutable outcome of one fit call."""

    spec: Specification
    optimization_result: OptimizationResult
    parameter_names: Tuple[str, ...]
    parameters: np.ndarray
    covariance: np.ndarray
    standard_errors: np.ndarray
    at_bound: np.ndarray
    loglik: float
    n_obs: int
    n_dropped: int
    implied_mean: np.ndarray
    implied_covariance: np.ndarray
    pattern_moments: Tuple[Dict[str, Any], ...]
    estimator: EstimationMethod
    variance_floor: float
    warnings: Tuple[Exception, ...] = field(default=())

    @property
    def converged(self) -> bool:
        return self.optimization_result.converged

    @property
    def n_free(self) -> int:
        return self.spec.n_free

    @property
    def df(self) -> int:
        return self.spec.df

    def check_convergence(self) -> None:
        """Raise the attached :class:`ConvergenceError`, if any."""
        for w in self.warnings:
            if isinstance(w, ConvergenceError):
                raise w


def _minimize_with_floor(
    objective: Objective,
    theta0: np.ndarray,
    search: np.ndarray,
    variances: np.ndarray,
    floor: float,
    options: OptimizationOptions,
) -> Tuple[OptimizationResult, np.ndarray, np.ndarray]:
    """Minimize against ``search``, then hold at ``floor`` every variance the
    data push onto that bound (gradient pointing outward) and re-optimize.

    Returns the result, the flags of variances held at the floor and the
    final bounds.
    """
    bounds = search
    pinned = np.zeros(variances.shape, dtype=bool)
    opt = minimize(objective, theta0, bounds, options)
    iterations = opt.iterations
    while True:
        outward = variances & ~pinned & (opt.parameters <= bounds) & (opt.gradient > 0)
        if not outward.any():
            break
        pinned |= outward
        bounds = np.where(pinned, floor, search)
        logger.debug("Holding %d variance(s) at the floor %g", int(outward.sum()), floor)
        remaining = options.max_iterations - iterations
        if remaining < 1:
            x = np.maximum(opt.parameters, bounds)
            opt = replace(opt, parameters=x, gradient=objective.gradient(x))
            break
        opt = minimize(objective, opt.parameters, bounds, options.replace(max_iterations=remaining))
        iterations += opt.iterations
    opt = replace(opt, iterations=iterations, at_bound=pinned & (opt.parameters <= bounds))
    return opt, opt.at_bound, bounds


def estimate(
    spec: Specification,
    data: pd.DataFrame,
    options: Optional[OptimizationOptions] = None,
    start: Optional[np.ndarray] = None,
) -> FitResult:
    """Fit ``spec`` to ``data`` by FIML.

    Non-fatal problems (identification trouble at the start, an exhausted
    iteration budget, variances held at the floor) are attached to the
    result's ``warnings``.
    """
    options = options or OptimizationOptions()
    patterns = MissingPatterns(data, spec.observed)
    mapper = StructureMapper(spec)
    objective = Objective(mapper, LikelihoodDriver(patterns))
    names = spec.free_parameter_names
    variances = np.asarray(spec.variance_mask, dtype=bool) if spec.n_free else np.zeros(0, dtype=bool)
    floor = max(options.variance_floor, _SEARCH_BOUND)
    lower = np.where(variances, _SEARCH_BOUND, -np.inf)
    collected: List[Exception] = []

    if start is None:
        theta0 = mapper.start_values(data, floor=options.variance_floor)
    else:
        theta0 = np.asarray(start, dtype=float).copy()
        if theta0.shape != (spec.n_free,):
            raise ValueError(f"start has shape {theta0.shape}, expected ({spec.n_free},)")
    theta0 = np.maximum(theta0, lower)

    try:
        mapper.check_start(theta0)
    except IdentificationError as exc:
        logger.warning("%s; fitting anyway", exc)
        collected.append(exc)

    opt, at_bound, bounds = _minimize_with_floor(objective, theta0, lower, variances, floor, options)
    theta = opt.parameters

    try:
        m2ll = objective.minus_two_loglik(theta)
    except SingularCovarianceError:
        logger.error("Implied covariance is singular at the final estimate")
        raise

    convergence_error = None
    if not opt.converged:
        convergence_error = ConvergenceError(
            f"optimizer stopped after {opt.iterations} iterations without converging: {opt.message}",
            iterations=opt.iterations,
        )
        logger.warning("%s", convergence_error)
        collected.append(convergence_error)

    for q in np.flatnonzero(at_bound):
        warning = BoundaryEstimateWarning(names[q], floor, float(opt.gradient[q]))
        logger.warning("%s", warning)
        warnings.warn(warning, stacklevel=3)
        collected.append(warning)

    if options.compute_standard_errors and spec.n_free:
        vcov = robust_covariance(objective, theta, at_bound, options.estimator, lower=bounds)
    else:
        vcov = np.full((spec.n_free, spec.n_free), np.nan)
    with np.errstate(invalid="ignore"):
        ses = np.sqrt(np.diag(vcov))

    mu, sigma = mapper.implied_moments(theta)
    result = FitResult(
        spec=spec,
        optimization_result=opt,
        parameter_names=tuple(names),
        parameters=_frozen(theta),
        covariance=_frozen(vcov),
        standard_errors=_frozen(ses),
        at_bound=at_bound,
        loglik=-0.5 * m2ll,
        n_obs=patterns.n,
        n_dropped=patterns.n_dropped,
        implied_mean=_frozen(mu),
        implied_covariance=_frozen(sigma),
        pattern_moments=tuple(objective.driver.pattern_moments(mu, sigma)),
        estimator=options.estimator,
        variance_floor=floor,
        warnings=tuple(collected),
    )
    if convergence_error is not None:
        convergence_error.result = result
    logger.info(
        "Fit finished: converged=%s iterations=%d loglik=%.4f npar=%d df=%d",
        opt.converged,
        opt.iterations,
        result.loglik,
        spec.n_free,
        spec.df,
    )
    return result
