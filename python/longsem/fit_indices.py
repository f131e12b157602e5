"""Fit statistics and likelihood-ratio comparison of nested fits.

The unrestricted (H1) model is the multivariate normal with free means and
covariances, estimated by EM under missing data.  Robust (MLR) statistics
use the Yuan-Bentler scaling ``c = tr(U Gamma) / df``, computed as
``tr(W^-1 B) - tr((D'WD)^-1 D'BD)`` with ``W`` the H1 expected information,
``B`` the outer product of the H1 casewise scores and ``D`` the Jacobian of
the H0 moments.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import linalg, optimize, stats

from .errors import NotNestedError, SingularCovarianceError
from .estimation import FitResult, estimate
from .ir import Specification
from .likelihood import LikelihoodDriver, MissingPatterns
from .optimizer import EstimationMethod, OptimizationOptions
from .structure import StructureMapper

__all__ = [
    "FitIndices",
    "LRTResult",
    "SaturatedModel",
    "baseline_specification",
    "compute_fit_indices",
    "compare",
    "compare_sequence",
    "rmsea_interval",
    "saturated_moments",
]

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Unrestricted model
# ----------------------------------------------------------------------
def saturated_moments(
    patterns: MissingPatterns,
    max_iterations: int = 1000,
    tolerance: float = 1e-8,
) -> Tuple[np.ndarray, np.ndarray, int]:
    """EM estimates of the unrestricted mean vector and covariance matrix.

    With complete data this is the closed-form ML solution (one pass).
    Returns ``(mu, sigma, iterations)``.
    """
    k = len(patterns.variables)
    n = patterns.n
    values = patterns.values
    mu = np.nanmean(values, axis=0)
    sigma = np.diag(np.nanvar(values, axis=0))

    for iteration in range(1, max_iterations + 1):
        t1 = np.zeros(k)
        t2 = np.zeros((k, k))
        for p in patterns:
            o = p.index
            m = np.setdiff1d(np.arange(k), o)
            if m.size == 0:
                t1 += p.total
                t2 += p.values.T @ p.values
                continue
            s_oo = sigma[np.ix_(o, o)]
            s_mo = sigma[np.ix_(m, o)]
            try:
                coef = linalg.solve(s_oo, s_mo.T, assume_a="pos").T
            except linalg.LinAlgError:
                raise SingularCovarianceError(p.names, p.n) from None
            filled = np.empty((p.n, k))
            filled[:, o] = p.values
            filled[:, m] = mu[m] + (p.values - mu[o]) @ coef.T
            t1 += filled.sum(axis=0)
            t2 += filled.T @ filled
            t2[np.ix_(m, m)] += p.n * (sigma[np.ix_(m, m)] - coef @ s_mo.T)
        mu_new = t1 / n
        sigma_new = t2 / n - np.outer(mu_new, mu_new)
        sigma_new = 0.5 * (sigma_new + sigma_new.T)
        delta = max(np.abs(mu_new - mu).max(), np.abs(sigma_new - sigma).max())
        mu, sigma = mu_new, sigma_new
        if delta < tolerance:
            break
    else:
        logger.warning("EM for the unrestricted model did not converge in %d iterations", max_iterations)
    return mu, sigma, iteration


class SaturatedModel:
    """Unrestricted H1 model: moments, log-likelihood, information and scores."""

    def __init__(self, patterns: MissingPatterns) -> None:
        self.patterns = patterns
        self.mu, self.sigma, self.iterations = saturated_moments(patterns)
        self.loglik = LikelihoodDriver(patterns).loglik(self.mu, self.sigma)
        k = len(patterns.variables)
        self.k = k
        rows, cols = np.tril_indices(k)
        self._rows = rows
        self._cols = cols
        position = np.full((k, k), -1, dtype=int)
        position[rows, cols] = np.arange(rows.size)
        self._position = position
        self.n_moments = k + rows.size

    def _pattern_terms(self, p):
        o = p.index
        try:
            factor = linalg.cho_factor(self.sigma[np.ix_(o, o)], lower=True)
        except linalg.LinAlgError:
            raise SingularCovarianceError(p.names, p.n) from None
        K = linalg.cho_solve(factor, np.eye(p.k))
        lr, lc = np.tril_indices(p.k)
        pos = self.k + self._position[o[lr], o[lc]]
        weight = np.where(lr == lc, 0.5, 1.0)
        return o, K, lr, lc, pos, weight

    def information(self) -> np.ndarray:
        """Expected information per observation in ``[mu, vech(Sigma)]`` order."""
        info = np.zeros((self.n_moments, self.n_moments))
        for p in self.patterns:
            o, K, lr, lc, pos, weight = self._pattern_terms(p)
            info[np.ix_(o, o)] += p.n * K
            k_ac = K[np.ix_(lr, lr)]
            k_bd = K[np.ix_(lc, lc)]
            k_ad = K[np.ix_(lr, lc)]
            k_bc = K[np.ix_(lc, lr)]
            block = (k_ac * k_bd + k_ad * k_bc) * np.outer(weight, weight)
            info[np.ix_(pos, pos)] += p.n * block
        return info / self.patterns.n

    def scores(self) -> np.ndarray:
        """Casewise scores of the H1 log-likelihood."""
        out = np.zeros((self.patterns.n, self.n_moments))
        for p in self.patterns:
            o, K, lr, lc, pos, weight = self._pattern_terms(p)
            z = (p.values - self.mu[o]) @ K
            out[np.ix_(p.rows, o)] = z
            out[np.ix_(p.rows, pos)] = weight * (z[:, lr] * z[:, lc] - K[lr, lc])
        return out


def _robust_trace(info: np.ndarray, meat: np.ndarray, jacobian: np.ndarray) -> float:
    """``tr(U Gamma)`` for one restricted model."""
    try:
        first = np.trace(np.linalg.solve(info, meat))
    except np.linalg.LinAlgError:
        logger.warning("Unrestricted information matrix is singular; using the Moore-Penrose inverse")
        first = np.trace(np.linalg.pinv(info) @ meat)
    if jacobian.shape[1] == 0:
        return float(first)
    dwd = jacobian.T @ info @ jacobian
    dbd = jacobian.T @ meat @ jacobian
    try:
        second = np.trace(np.linalg.solve(dwd, dbd))
    except np.linalg.LinAlgError:
        second = np.trace(np.linalg.pinv(dwd) @ dbd)
    return float(first - second)


def _free_jacobian(result: FitResult) -> np.ndarray:
    mapper = StructureMapper(result.spec)
    jac = mapper.moment_jacobian(np.asarray(result.parameters))
    return jac[:, ~np.asarray(result.at_bound, dtype=bool)]


# ----------------------------------------------------------------------
# Baseline model
# ----------------------------------------------------------------------
def baseline_specification(variables: Sequence[str]) -> Specification:
    """Independence model: free means and variances, zero covariances."""
    lines = []
    for name in variables:
        lines.append(f"{name} ~ 1")
        lines.append(f"{name} ~~ {name}")
    return Specification.from_text(lines)


def _baseline_start(patterns: MissingPatterns, floor: float) -> np.ndarray:
    mean = np.nanmean(patterns.values, axis=0)
    var = np.maximum(np.nanvar(patterns.values, axis=0), floor)
    return np.column_stack([mean, var]).ravel()


# ----------------------------------------------------------------------
# Indices
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class FitIndices:
    chisq: float
    df: int
    pvalue: float
    chisq_scaled: float
    pvalue_scaled: float
    scaling_factor: float
    baseline_chisq: float
    baseline_df: int
    baseline_chisq_scaled: float
    cfi: float
    tli: float
    cfi_scaled: float
    tli_scaled: float
    rmsea: float
    rmsea_ci_lower: float
    rmsea_ci_upper: float
    rmsea_scaled: float
    srmr: float
    loglik: float
    unrestricted_loglik: float
    npar: int
    ntotal: int
    aic: float
    bic: float
    trace_ugamma: float = field(default=float("nan"), repr=False)

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "FitIndices":
        return cls(**{k: (float("nan") if v is None else v) for k, v in payload.items()})


def _pvalue(stat: float, df: int) -> float:
    if df <= 0 or not np.isfinite(stat):
        return float("nan")
    return float(stats.chi2.sf(stat, df))


def _cfi(t: float, df: int, tb: float, dfb: int) -> float:
    num = max(t - df, 0.0)
    den = max(tb - dfb, t - df, 0.0)
    if not np.isfinite(den):
        return float("nan")
    return 1.0 if den == 0 else 1.0 - num / den


def _tli(t: float, df: int, tb: float, dfb: int) -> float:
    if df == 0:
        return 1.0
    if dfb == 0:
        return float("nan")
    ratio = tb / dfb
    if ratio == 1.0:
        return float("nan")
    return (ratio - t / df) / (ratio - 1.0)


def _rmsea(t: float, df: int, n: int) -> float:
    if df == 0:
        return 0.0
    return float(np.sqrt(max(t - df, 0.0) / (df * n)))


def _ncx2_cdf(x: float, df: int, nc: float) -> float:
    if nc <= 0:
        return float(stats.chi2.cdf(x, df))
    return float(stats.ncx2.cdf(x, df, nc))


def rmsea_interval(t: float, df: int, n: int, level: float = 0.90) -> Tuple[float, float]:
    """Confidence interval for RMSEA from the noncentral chi-square."""
    if df == 0 or not np.isfinite(t):
        return 0.0, 0.0
    tail = 0.5 * (1.0 - level)

    def noncentrality(prob: float) -> float:
        def target(lam):
            return _ncx2_cdf(t, df, lam) - prob

        if target(0.0) < 0:
            return 0.0
        upper = max(t, 1.0)
        for _ in range(60):
            if target(upper) < 0:
                break
            upper *= 2.0
        return float(optimize.brentq(target, 0.0, upper, xtol=1e-10))

    lower_lam = noncentrality(1.0 - tail)
    upper_lam = noncentrality(tail)
    scale = df * n
    return float(np.sqrt(lower_lam / scale)), float(np.sqrt(upper_lam / scale))


def _srmr(mu1: np.ndarray, sigma1: np.ndarray, mu0: np.ndarray, sigma0: np.ndarray) -> float:
    sd = np.sqrt(np.diag(sigma1))
    resid = (sigma1 - sigma0) / np.outer(sd, sd)
    rows, cols = np.tril_indices(sigma1.shape[0])
    mean_resid = (mu1 - mu0) / sd
    squares = np.concatenate([resid[rows, cols] ** 2, mean_resid ** 2])
    return float(np.sqrt(squares.mean()))


def _undefined_indices(result: FitResult, n: int) -> FitIndices:
    # Only the likelihood-based criteria survive a singular sample covariance.
    nan = float("nan")
    npar = result.n_free
    k = len(result.spec.observed)
    return FitIndices(
        chisq=nan,
        df=result.df,
        pvalue=nan,
        chisq_scaled=nan,
        pvalue_scaled=nan,
        scaling_factor=nan,
        baseline_chisq=nan,
        baseline_df=k * (k - 1) // 2,
        baseline_chisq_scaled=nan,
        cfi=nan,
        tli=nan,
        cfi_scaled=nan,
        tli_scaled=nan,
        rmsea=nan,
        rmsea_ci_lower=nan,
        rmsea_ci_upper=nan,
        rmsea_scaled=nan,
        srmr=nan,
        loglik=result.loglik,
        unrestricted_loglik=nan,
        npar=npar,
        ntotal=n,
        aic=-2.0 * result.loglik + 2.0 * npar,
        bic=-2.0 * result.loglik + npar * np.log(n),
    )


def compute_fit_indices(
    result: FitResult,
    data: pd.DataFrame,
    options: Optional[OptimizationOptions] = None,
) -> FitIndices:
    """Fit the unrestricted and baseline models and derive the fit indices."""
    options = options or OptimizationOptions()
    spec = result.spec
    patterns = MissingPatterns(data, spec.observed)
    n = patterns.n
    npar = spec.n_free
    df = spec.df
    try:
        h1 = SaturatedModel(patterns)
    except SingularCovarianceError as exc:
        logger.warning("Unrestricted model is singular (%s); chi-square based indices are undefined", exc)
        return _undefined_indices(result, n)

    chisq = max(2.0 * (h1.loglik - result.loglik), 0.0)

    base_spec = baseline_specification(spec.observed)
    base_options = options.replace(compute_standard_errors=False, compute_fit_indices=False)
    baseline = estimate(base_spec, data, base_options, start=_baseline_start(patterns, options.variance_floor))
    base_chisq = max(2.0 * (h1.loglik - baseline.loglik), 0.0)
    base_df = base_spec.df

    trace = base_trace = float("nan")
    if result.estimator == EstimationMethod.MLR:
        info = h1.information()
        scores = h1.scores()
        meat = scores.T @ scores / n
        trace = _robust_trace(info, meat, _free_jacobian(result))
        base_trace = _robust_trace(info, meat, _free_jacobian(baseline))

    def scaled(stat: float, dof: int, tr: float) -> Tuple[float, float]:
        if not np.isfinite(tr):
            return float("nan"), float("nan")
        if dof == 0:
            return stat, float("nan")
        c = tr / dof
        if c <= 0:
            return float("nan"), float("nan")
        return stat / c, c

    chisq_scaled, scaling = scaled(chisq, df, trace)
    base_scaled, _ = scaled(base_chisq, base_df, base_trace)
    lower, upper = rmsea_interval(chisq, df, n)

    indices = FitIndices(
        chisq=chisq,
        df=df,
        pvalue=_pvalue(chisq, df),
        chisq_scaled=chisq_scaled,
        pvalue_scaled=_pvalue(chisq_scaled, df),
        scaling_factor=scaling,
        baseline_chisq=base_chisq,
        baseline_df=base_df,
        baseline_chisq_scaled=base_scaled,
        cfi=_cfi(chisq, df, base_chisq, base_df),
        tli=_tli(chisq, df, base_chisq, base_df),
        cfi_scaled=_cfi(chisq_scaled, df, base_scaled, base_df),
        tli_scaled=_tli(chisq_scaled, df, base_scaled, base_df),
        rmsea=_rmsea(chisq, df, n),
        rmsea_ci_lower=lower,
        rmsea_ci_upper=upper,
        rmsea_scaled=_rmsea(chisq_scaled, df, n) if np.isfinite(chisq_scaled) else float("nan"),
        srmr=_srmr(h1.mu, h1.sigma, np.asarray(result.implied_mean), np.asarray(result.implied_covariance)),
        loglik=result.loglik,
        unrestricted_loglik=h1.loglik,
        npar=npar,
        ntotal=n,
        aic=-2.0 * result.loglik + 2.0 * npar,
        bic=-2.0 * result.loglik + npar * np.log(n),
        trace_ugamma=trace,
    )
    logger.debug("Fit indices: chisq=%.3f df=%d cfi=%.3f rmsea=%.3f", chisq, df, indices.cfi, indices.rmsea)
    return indices


# ----------------------------------------------------------------------
# Comparison
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class LRTResult:
    statistic: float
    df: int
    pvalue: float
    scaling: float
    delta_aic: float
    delta_bic: float
    method: str
    notes: Tuple[str, ...] = ()


def _information_criteria(result: FitResult) -> Tuple[float, float]:
    m2ll = -2.0 * result.loglik
    return m2ll + 2.0 * result.n_free, m2ll + result.n_free * np.log(result.n_obs)


def compare(model_a: Any, model_b: Any) -> LRTResult:
    """Likelihood-ratio test of ``model_b`` (constrained) against ``model_a``.

    Both arguments are fitted models exposing ``fit_result`` and
    ``statistics``.  Nesting itself cannot be verified; only its necessary
    conditions are checked.
    """
    ra: FitResult = model_a.fit_result
    rb: FitResult = model_b.fit_result
    if rb.n_free >= ra.n_free:
        raise NotNestedError(
            f"constrained model has {rb.n_free} free parameters; "
            f"it must have fewer than the {ra.n_free} of the unconstrained model"
        )
    if ra.n_obs != rb.n_obs:
        raise NotNestedError(f"models were fitted to different samples ({ra.n_obs} vs {rb.n_obs} rows)")
    if sorted(ra.spec.observed) != sorted(rb.spec.observed):
        raise NotNestedError("models do not share the same observed variables")

    ddf = rb.df - ra.df
    diff = 2.0 * (ra.loglik - rb.loglik)
    notes: List[str] = []
    if diff < 0:
        notes.append(f"negative likelihood-ratio statistic {diff:.3g} clamped to 0")
        diff = 0.0

    statistic = diff
    scaling = 1.0
    method = "standard"
    robust = ra.estimator == EstimationMethod.MLR and rb.estimator == EstimationMethod.MLR
    if robust:
        sa = getattr(model_a, "statistics", None)
        sb = getattr(model_b, "statistics", None)
        ta = sa.trace_ugamma if sa is not None else float("nan")
        tb = sb.trace_ugamma if sb is not None else float("nan")
        if np.isfinite(ta) and np.isfinite(tb):
            cd = (tb - ta) / ddf
            if cd > 0:
                statistic = diff / cd
                scaling = cd
                method = "satorra.bentler.2001"
            else:
                notes.append(f"scaled difference correction {cd:.3g} is not positive; unscaled statistic reported")
        else:
            notes.append("fit indices unavailable; unscaled statistic reported")

    aic_a, bic_a = _information_criteria(ra)
    aic_b, bic_b = _information_criteria(rb)
    for note in notes:
        logger.warning("%s", note)
    return LRTResult(
        statistic=float(statistic),
        df=int(ddf),
        pvalue=float(stats.chi2.sf(statistic, ddf)),
        scaling=float(scaling),
        delta_aic=float(aic_b - aic_a),
        delta_bic=float(bic_b - bic_a),
        method=method,
        notes=tuple(notes),
    )


def compare_sequence(*fits: Any, names: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Table of information criteria and successive LRTs, ordered by df."""
    if names is None:
        names = [f"model{i + 1}" for i in range(len(fits))]
    if len(names) != len(fits):
        raise ValueError("names must match the number of fits")
    order = sorted(range(len(fits)), key=lambda i: fits[i].fit_result.df)

    rows = []
    previous = None
    for i in order:
        fit = fits[i]
        res = fit.fit_result
        aic, bic = _information_criteria(res)
        stats_ = getattr(fit, "statistics", None)
        row = {
            "Df": res.df,
            "AIC": aic,
            "BIC": bic,
            "Chisq": stats_.chisq if stats_ is not None else float("nan"),
            "Chisq diff": float("nan"),
            "Df diff": float("nan"),
            "Pr(>Chisq)": float("nan"),
        }
        if previous is not None and previous.fit_result.n_free > res.n_free:
            lrt = compare(previous, fit)
            row["Chisq diff"] = lrt.statistic
            row["Df diff"] = lrt.df
            row["Pr(>Chisq)"] = lrt.pvalue
        rows.append(row)
        previous = fit
    return pd.DataFrame(rows, index=[names[i] for i in order])
