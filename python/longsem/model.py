"""High-level Python front end.

:class:`Model` accepts lavaan-style equations and compiles them into a
validated :class:`~longsem.ir.Specification`; :func:`fit` estimates it by
FIML and wraps the outcome in a :class:`SemFit` with fit indices,
standardized estimates and JSON serialization.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.stats import norm

from .errors import (
    BoundaryEstimateWarning,
    ConvergenceError,
    IdentificationError,
    ModelSpecificationError,
    SpecificationError,
)
from .estimation import FitResult, estimate
from .fit_indices import FitIndices, compute_fit_indices
from .ir import EdgeKind, Specification, VariableKind
from .optimizer import EstimationMethod, OptimizationOptions, OptimizationResult
from .structure import StructureMapper
from .syntax import parse_equations

__all__ = ["Model", "ModelSpecificationError", "SemFit", "SemFitSummary", "parse_spec", "fit"]

logger = logging.getLogger(__name__)

_FORMAT = "longsem-fit"
_FORMAT_VERSION = 1


def parse_spec(text: Union[str, Iterable[str]], observed: Optional[Iterable[str]] = None) -> Specification:
    """Parse model text into a validated specification."""
    return Specification.from_text(text, observed=observed)


def fit(
    spec: Specification,
    data: Any,
    options: Optional[OptimizationOptions] = None,
    **kwargs: Any,
) -> "SemFit":
    """Fit ``spec`` to ``data``.

    ``kwargs`` override fields of ``options`` (``max_iterations``,
    ``tolerance``, ``estimator``, ``optimizer_name`` ...).
    """
    if not isinstance(data, pd.DataFrame):
        data = pd.DataFrame(data)
    options = options or OptimizationOptions()
    if kwargs:
        options = options.replace(**kwargs)

    missing_cols = [v for v in spec.observed if v not in data.columns]
    if missing_cols:
        raise SpecificationError(f"Data missing columns for variables: {missing_cols}")

    result = estimate(spec, data, options)
    statistics = compute_fit_indices(result, data, options) if options.compute_fit_indices else None
    return SemFit(result, statistics, data=data)


def _safe_ratio(num: float, den: float) -> float:
    if den == 0 or not np.isfinite(den):
        return float("nan")
    return float(num / den)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, np.ndarray):
        return _jsonable(value.tolist())
    if isinstance(value, (np.bool_, bool)):
        return bool(value)
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (float, np.floating)):
        return None if not np.isfinite(value) else float(value)
    return value


def _array(values: Any) -> np.ndarray:
    # None entries come back as NaN.
    arr = np.array(values, dtype=float)
    arr.setflags(write=False)
    return arr


def _warning_record(w: Exception) -> Dict[str, Any]:
    record: Dict[str, Any] = {"type": type(w).__name__, "message": str(w)}
    if isinstance(w, BoundaryEstimateWarning):
        record.update(parameter=w.parameter, floor=w.floor, gradient=w.gradient)
    elif isinstance(w, ConvergenceError):
        record.update(iterations=w.iterations)
    elif isinstance(w, IdentificationError):
        record.update(block=w.block, eigenvalue=w.eigenvalue)
    return record


def _warning_from_record(record: Dict[str, Any]) -> Exception:
    kind = record.get("type")
    nan = float("nan")
    if kind == "BoundaryEstimateWarning":
        g = record.get("gradient")
        return BoundaryEstimateWarning(record["parameter"], record["floor"], nan if g is None else g)
    if kind == "ConvergenceError":
        return ConvergenceError(record["message"], iterations=record.get("iterations", 0))
    if kind == "IdentificationError":
        e = record.get("eigenvalue")
        return IdentificationError(record["message"], block=record.get("block", ""), eigenvalue=nan if e is None else e)
    return UserWarning(record.get("message", ""))


def _parameter_records(spec: Specification) -> List[Dict[str, Any]]:
    return [
        {
            "lhs": p.lhs,
            "op": p.op,
            "rhs": p.rhs,
            "id": p.id,
            "label": p.label,
            "fixed": p.fixed,
            "free": p.free,
            "user": p.user,
        }
        for p in spec.parameters
    ]


class SemFit:
    """Wrapper for model fit results providing reporting methods."""

    def __init__(
        self,
        fit_result: FitResult,
        statistics: Optional[FitIndices] = None,
        data: Optional[pd.DataFrame] = None,
    ) -> None:
        self.fit_result = fit_result
        self.statistics = statistics
        self.data = data

    def __repr__(self) -> str:
        return (
            f"SemFit(npar={self.fit_result.n_free}, df={self.fit_result.df}, "
            f"loglik={self.fit_result.loglik:.3f}, converged={self.converged})"
        )

    @property
    def spec(self) -> Specification:
        return self.fit_result.spec

    @property
    def optimization_result(self) -> OptimizationResult:
        return self.fit_result.optimization_result

    @property
    def converged(self) -> bool:
        return self.fit_result.converged

    @property
    def warnings(self) -> tuple:
        return self.fit_result.warnings

    @property
    def loglik(self) -> float:
        return self.fit_result.loglik

    def check_convergence(self) -> None:
        self.fit_result.check_convergence()

    @property
    def parameter_estimates(self) -> Dict[str, float]:
        """Map parameter names (labels or IDs) to their estimated values."""
        return dict(zip(self.fit_result.parameter_names, self.fit_result.parameters.tolist()))

    @property
    def standard_errors(self) -> Dict[str, float]:
        return dict(zip(self.fit_result.parameter_names, self.fit_result.standard_errors.tolist()))

    @property
    def fit_indices(self) -> Dict[str, float]:
        """Return fit indices (Chi-square, CFI, TLI, RMSEA, SRMR, AIC, BIC)."""
        if self.statistics is not None:
            return self.statistics.as_dict()
        res = self.fit_result
        nan = float("nan")
        return {
            "chisq": nan,
            "df": res.df,
            "pvalue": nan,
            "cfi": nan,
            "tli": nan,
            "rmsea": nan,
            "srmr": nan,
            "loglik": res.loglik,
            "npar": res.n_free,
            "ntotal": res.n_obs,
            "aic": -2.0 * res.loglik + 2.0 * res.n_free,
            "bic": -2.0 * res.loglik + res.n_free * np.log(res.n_obs),
        }

    # ------------------------------------------------------------------
    # Model-implied quantities
    # ------------------------------------------------------------------
    def _mapper(self) -> StructureMapper:
        return StructureMapper(self.spec)

    def implied_moments(self) -> Dict[str, Any]:
        """Implied mean vector and covariance matrix of the observed variables."""
        names = self.spec.observed
        return {
            "mean": pd.Series(np.asarray(self.fit_result.implied_mean), index=names),
            "cov": pd.DataFrame(np.asarray(self.fit_result.implied_covariance), index=names, columns=names),
        }

    def implied_by_pattern(self) -> List[Dict[str, Any]]:
        """Implied sub-moments for every missing-data pattern."""
        out = []
        for pm in self.fit_result.pattern_moments:
            names = pm["variables"]
            out.append(
                {
                    "variables": list(names),
                    "n": pm["n"],
                    "mean": pd.Series(pm["mean"], index=names),
                    "cov": pd.DataFrame(pm["covariance"], index=names, columns=names),
                }
            )
        return out

    def cov_lv(self) -> pd.DataFrame:
        """Model-implied covariance matrix of the latent variables."""
        mapper = self._mapper()
        _, sigma = mapper.full_moments(np.asarray(self.fit_result.parameters))
        k = mapper.n_observed
        names = self.spec.latent
        return pd.DataFrame(sigma[k:, k:], index=names, columns=names)

    def cor_lv(self) -> pd.DataFrame:
        cov = self.cov_lv()
        sd = np.sqrt(np.clip(np.diag(cov.to_numpy()), 0.0, None))
        with np.errstate(divide="ignore", invalid="ignore"):
            cor = cov.to_numpy() / np.outer(sd, sd)
        cor[~np.isfinite(cor)] = np.nan
        return pd.DataFrame(cor, index=cov.index, columns=cov.columns)

    # ------------------------------------------------------------------
    # Parameter table
    # ------------------------------------------------------------------
    def parameter_table(self) -> pd.DataFrame:
        """One row per specification row with unstandardized and standardized values."""
        spec = self.spec
        theta = np.asarray(self.fit_result.parameters)
        ses = np.asarray(self.fit_result.standard_errors)
        _, sigma_full = self._mapper().full_moments(theta)
        index = {v.name: i for i, v in enumerate(spec.variables)}
        sd_all = np.sqrt(np.clip(np.diag(sigma_full), 0.0, None))
        sd_lv = np.array([sd_all[i] if v.kind == VariableKind.Latent else 1.0 for i, v in enumerate(spec.variables)])

        rows = []
        for p in spec.parameters:
            if p.free:
                est = float(theta[p.free - 1])
                se = float(ses[p.free - 1])
            else:
                est = float(p.fixed)
                se = float("nan")
            z = _safe_ratio(est, se) if np.isfinite(se) and se > 0 else float("nan")
            pvalue = float(2.0 * norm.sf(abs(z))) if np.isfinite(z) else float("nan")

            if p.kind == EdgeKind.Loading:
                f, y = index[p.lhs], index[p.rhs]
                std_lv = _safe_ratio(est * sd_lv[f], sd_lv[y])
                std_all = _safe_ratio(est * sd_all[f], sd_all[y])
            elif p.kind == EdgeKind.Regression:
                t, x = index[p.lhs], index[p.rhs]
                std_lv = _safe_ratio(est * sd_lv[x], sd_lv[t])
                std_all = _safe_ratio(est * sd_all[x], sd_all[t])
            elif p.kind == EdgeKind.Covariance:
                a, b = index[p.lhs], index[p.rhs]
                std_lv = _safe_ratio(est, sd_lv[a] * sd_lv[b])
                std_all = _safe_ratio(est, sd_all[a] * sd_all[b])
            else:
                v = index[p.lhs]
                std_lv = _safe_ratio(est, sd_lv[v])
                std_all = _safe_ratio(est, sd_all[v])
            if p.kind == EdgeKind.Covariance and est == 0.0 and not p.free:
                std_lv = std_all = 0.0

            rows.append(
                {
                    "lhs": p.lhs,
                    "op": "~1" if p.kind == EdgeKind.Intercept else p.op,
                    "rhs": p.rhs,
                    "label": p.label,
                    "est": est,
                    "se": se,
                    "z": z,
                    "pvalue": pvalue,
                    "std_lv": std_lv,
                    "std_all": std_all,
                }
            )
        return pd.DataFrame(rows, columns=["lhs", "op", "rhs", "label", "est", "se", "z", "pvalue", "std_lv", "std_all"])

    def standardized_solution(self) -> pd.DataFrame:
        """Compute standardized parameter estimates (std.lv and std.all)."""
        return self.parameter_table()[["lhs", "op", "rhs", "label", "std_lv", "std_all"]]

    def summary(self) -> "SemFitSummary":
        return SemFitSummary(self)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        res = self.fit_result
        opt = res.optimization_result
        payload = {
            "format": _FORMAT,
            "version": _FORMAT_VERSION,
            "specification": self.spec.to_text(),
            "parameter_table": _parameter_records(self.spec),
            "parameter_names": list(res.parameter_names),
            "estimates": res.parameters,
            "covariance": res.covariance,
            "standard_errors": res.standard_errors,
            "at_bound": [bool(b) for b in res.at_bound],
            "loglik": res.loglik,
            "n_obs": res.n_obs,
            "n_dropped": res.n_dropped,
            "observed": self.spec.observed,
            "implied_mean": res.implied_mean,
            "implied_covariance": res.implied_covariance,
            "pattern_moments": [
                {"variables": pm["variables"], "n": pm["n"], "mean": pm["mean"], "covariance": pm["covariance"]}
                for pm in res.pattern_moments
            ],
            "optimization": {
                "iterations": opt.iterations,
                "converged": opt.converged,
                "message": opt.message,
                "objective_value": opt.objective_value,
                "gradient": opt.gradient,
            },
            "estimator": res.estimator.value,
            "variance_floor": res.variance_floor,
            "fit_indices": self.statistics.as_dict() if self.statistics is not None else None,
            "warnings": [_warning_record(w) for w in res.warnings],
        }
        return _jsonable(payload)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SemFit":
        if payload.get("format") != _FORMAT:
            raise ValueError("not a serialized longsem fit")
        if payload.get("version") != _FORMAT_VERSION:
            raise ValueError(f"unsupported fit format version {payload.get('version')}")

        spec = Specification.from_text(payload["specification"])
        if _jsonable(_parameter_records(spec)) != payload["parameter_table"]:
            raise SpecificationError("stored parameter table does not match the stored specification text")

        opt_payload = payload["optimization"]
        parameters = _array(payload["estimates"])
        at_bound = np.array(payload["at_bound"], dtype=bool)
        opt = OptimizationResult(
            parameters=np.array(parameters),
            objective_value=opt_payload["objective_value"],
            iterations=opt_payload["iterations"],
            converged=opt_payload["converged"],
            message=opt_payload["message"],
            gradient=np.array(_array(opt_payload["gradient"])),
            at_bound=at_bound,
        )
        warnings = tuple(_warning_from_record(w) for w in payload.get("warnings", []))
        q = spec.n_free
        covariance = _array(payload["covariance"]) if q else np.zeros((0, 0))
        result = FitResult(
            spec=spec,
            optimization_result=opt,
            parameter_names=tuple(payload["parameter_names"]),
            parameters=parameters,
            covariance=covariance,
            standard_errors=_array(payload["standard_errors"]),
            at_bound=at_bound,
            loglik=payload["loglik"],
            n_obs=payload["n_obs"],
            n_dropped=payload.get("n_dropped", 0),
            implied_mean=_array(payload["implied_mean"]),
            implied_covariance=_array(payload["implied_covariance"]),
            pattern_moments=tuple(
                {
                    "variables": pm["variables"],
                    "n": pm["n"],
                    "mean": np.array(pm["mean"], dtype=float),
                    "covariance": np.array(pm["covariance"], dtype=float),
                }
                for pm in payload["pattern_moments"]
            ),
            estimator=EstimationMethod(payload["estimator"]),
            variance_floor=payload["variance_floor"],
            warnings=warnings,
        )
        for w in warnings:
            if isinstance(w, ConvergenceError):
                w.result = result
        statistics = FitIndices.from_dict(payload["fit_indices"]) if payload.get("fit_indices") else None
        return cls(result, statistics)

    def save(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, indent=2)

    @classmethod
    def load(cls, path: str) -> "SemFit":
        with open(path, "r", encoding="utf-8") as handle:
            return cls.from_dict(json.load(handle))


class SemFitSummary:
    """Summary of model fit results."""

    def __init__(self, fit: SemFit) -> None:
        self.fit = fit
        self.fit_indices = fit.fit_indices
        self.parameters = fit.parameter_table()

    def __repr__(self) -> str:
        lines = []
        res = self.fit.optimization_result
        idx = self.fit_indices

        lines.append(f"Optimization converged: {res.converged}")
        lines.append(f"Iterations: {res.iterations}")
        lines.append(f"Estimator: {self.fit.fit_result.estimator.value}")
        lines.append(f"Number of observations: {self.fit.fit_result.n_obs}")
        lines.append(f"Log-likelihood: {self.fit.loglik:.3f}")

        if not np.isnan(idx["chisq"]):
            lines.append(f"Chi-square: {idx['chisq']:.3f} (df={idx['df']:.0f})")
            if idx["df"] > 0:
                lines.append(f"P-value: {idx['pvalue']:.3f}")
            scaled = idx.get("chisq_scaled", float("nan"))
            if scaled is not None and np.isfinite(scaled):
                lines.append(f"Scaled chi-square: {scaled:.3f} (scaling factor {idx['scaling_factor']:.3f})")

        indices = []
        for key, label in (("cfi", "CFI"), ("tli", "TLI"), ("rmsea", "RMSEA"), ("srmr", "SRMR")):
            if not np.isnan(idx[key]):
                indices.append(f"{label}: {idx[key]:.3f}")
        if indices:
            lines.append(", ".join(indices))

        lines.append(f"AIC: {idx['aic']:.1f}, BIC: {idx['bic']:.1f}")

        if self.fit.warnings:
            lines.append("")
            lines.append("Warnings:")
            for w in self.fit.warnings:
                lines.append(f"  {type(w).__name__}: {w}")

        lines.append("")
        lines.append(self.parameters.to_string(index=False))
        return "\n".join(lines)


class Model:
    """Parse SEM-style formulas into a validated :class:`Specification`.

    Parameters
    ----------
    equations:
        Model text or an iterable of lavaan-style strings (``=~`` for
        loadings, ``~`` for regressions and ``~ 1`` for intercepts, ``~~``
        for variances and covariances).
    """

    def __init__(self, equations: Union[str, Iterable[str]]) -> None:
        if isinstance(equations, str):
            cleaned = [equations]
        else:
            cleaned = [eq.strip() for eq in equations if eq and eq.strip()]
        if not cleaned:
            raise ModelSpecificationError("at least one equation is required")
        self._equations = cleaned
        self._parsed = parse_equations(cleaned)
        self._spec = Specification.from_equations(self._parsed)

    @classmethod
    def from_spec(cls, spec: Specification) -> "Model":
        return cls(spec.to_text())

    @property
    def equations(self) -> Sequence[str]:
        return list(self._equations)

    @property
    def spec(self) -> Specification:
        return self._spec

    def to_spec(self, observed: Optional[Iterable[str]] = None) -> Specification:
        """Build the specification, checking variable names against ``observed``."""
        if observed is None:
            return self._spec
        return Specification.from_equations(self._parsed, observed=observed)

    def copy(self) -> "Model":
        """Create an independent copy of the model specification."""
        return Model(list(self._equations))

    def fit(self, data: Any, options: Optional[OptimizationOptions] = None, **kwargs: Any) -> SemFit:
        """Fit the model to data.

        Parameters
        ----------
        data : Any
            Pandas DataFrame or dictionary of lists. Missing cells are NaN.
        options : OptimizationOptions, optional
            Custom optimization options.
        **kwargs
            Overrides for individual ``OptimizationOptions`` fields, e.g.
            ``max_iterations``, ``tolerance``, ``optimizer_name``, ``estimator``.

        Returns
        -------
        SemFit
            The result of the fit, including parameter estimates, standard errors,
            fit statistics and warnings.
        """
        if not isinstance(data, pd.DataFrame):
            data = pd.DataFrame(data)
        spec = self.to_spec(observed=data.columns)
        return fit(spec, data, options, **kwargs)
