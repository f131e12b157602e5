"""Full-information maximum likelihood for incomplete multivariate normal data."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import linalg

from .errors import SingularCovarianceError, SpecificationError

__all__ = ["Pattern", "MissingPatterns", "LikelihoodDriver"]

logger = logging.getLogger(__name__)

LOG_2PI = float(np.log(2.0 * np.pi))


@dataclass
class Pattern:
    """Rows sharing the same set of observed variables."""

    index: np.ndarray
    names: List[str]
    rows: np.ndarray
    values: np.ndarray
    total: np.ndarray = field(init=False)

    def __post_init__(self) -> None:
        self.total = self.values.sum(axis=0)

    @property
    def n(self) -> int:
        return int(self.values.shape[0])

    @property
    def k(self) -> int:
        return int(self.index.shape[0])


class MissingPatterns:
    """Partition of an observation matrix by missing-data pattern.

    Rows missing on every modeled variable carry no information and are
    dropped.  Patterns are kept in order of first appearance.
    """

    def __init__(self, data: Union[pd.DataFrame, Dict[str, Sequence[float]]], variables: Sequence[str]) -> None:
        if not isinstance(data, pd.DataFrame):
            data = pd.DataFrame(data)
        missing_cols = [v for v in variables if v not in data.columns]
        if missing_cols:
            raise SpecificationError(f"Data missing columns for variables: {missing_cols}")

        frame = data[list(variables)].apply(pd.to_numeric, errors="coerce")
        values = frame.to_numpy(dtype=float)
        observed = ~np.isnan(values)
        keep = observed.any(axis=1)
        self.n_dropped = int((~keep).sum())
        if self.n_dropped:
            logger.info("Dropping %d rows with no observed values", self.n_dropped)
        self.row_labels = frame.index[keep]
        values = values[keep]
        observed = observed[keep]
        if values.shape[0] == 0:
            raise SpecificationError("no rows with observed values for the modeled variables")

        self.variables = list(variables)
        self.values = values
        self.n = int(values.shape[0])

        groups: Dict[Tuple[bool, ...], List[int]] = {}
        for i, row in enumerate(observed):
            groups.setdefault(tuple(row.tolist()), []).append(i)

        self.patterns: List[Pattern] = []
        for key, rows in groups.items():
            index = np.flatnonzero(key)
            row_arr = np.asarray(rows, dtype=int)
            self.patterns.append(
                Pattern(
                    index=index,
                    names=[self.variables[j] for j in index],
                    rows=row_arr,
                    values=values[np.ix_(row_arr, index)],
                )
            )

    def __len__(self) -> int:
        return len(self.patterns)

    def __iter__(self):
        return iter(self.patterns)

    @property
    def complete(self) -> bool:
        return len(self.patterns) == 1 and self.patterns[0].k == len(self.variables)

    @property
    def coverage(self) -> np.ndarray:
        """Proportion of rows observing each pair of variables."""
        k = len(self.variables)
        cov = np.zeros((k, k))
        for p in self.patterns:
            cov[np.ix_(p.index, p.index)] += p.n
        return cov / self.n


class LikelihoodDriver:
    """Evaluate ``-2 log L`` and its derivatives over the missing-data patterns."""

    def __init__(self, patterns: MissingPatterns) -> None:
        self.patterns = patterns

    @staticmethod
    def _factor(sigma: np.ndarray, pattern: Pattern):
        sub = sigma[np.ix_(pattern.index, pattern.index)]
        if not np.all(np.isfinite(sub)):
            raise SingularCovarianceError(pattern.names, pattern.n)
        try:
            return linalg.cho_factor(sub, lower=True, check_finite=False)
        except linalg.LinAlgError:
            raise SingularCovarianceError(pattern.names, pattern.n) from None

    def minus_two_loglik(self, mu: np.ndarray, sigma: np.ndarray) -> float:
        total = 0.0
        for pattern in self.patterns:
            factor = self._factor(sigma, pattern)
            logdet = 2.0 * np.log(np.diag(factor[0])).sum()
            resid = pattern.values - mu[pattern.index]
            solved = linalg.cho_solve(factor, resid.T, check_finite=False)
            quad = float(np.einsum("ij,ji->", resid, solved))
            total += pattern.n * (pattern.k * LOG_2PI + logdet) + quad
        return float(total)

    def loglik(self, mu: np.ndarray, sigma: np.ndarray) -> float:
        return -0.5 * self.minus_two_loglik(mu, sigma)

    def gradient(
        self,
        mu: np.ndarray,
        sigma: np.ndarray,
        dmu: np.ndarray,
        dsigma: np.ndarray,
    ) -> np.ndarray:
        """Gradient of ``-2 log L`` given the moment derivatives."""
        grad = np.zeros(dmu.shape[0])
        for pattern in self.patterns:
            idx = pattern.index
            factor = self._factor(sigma, pattern)
            inv = linalg.cho_solve(factor, np.eye(pattern.k), check_finite=False)
            resid = pattern.values - mu[idx]
            cross = resid.T @ resid
            weight = pattern.n * inv - inv @ cross @ inv
            dsig_g = dsigma[:, idx][:, :, idx]
            grad += np.einsum("ij,qij->q", weight, dsig_g)
            grad -= 2.0 * dmu[:, idx] @ (inv @ resid.sum(axis=0))
        return grad

    def casewise_scores(
        self,
        mu: np.ndarray,
        sigma: np.ndarray,
        dmu: np.ndarray,
        dsigma: np.ndarray,
    ) -> np.ndarray:
        """Per-row gradients of ``log L_i``; rows follow the kept data order."""
        scores = np.zeros((self.patterns.n, dmu.shape[0]))
        for pattern in self.patterns:
            idx = pattern.index
            factor = self._factor(sigma, pattern)
            inv = linalg.cho_solve(factor, np.eye(pattern.k), check_finite=False)
            z = (pattern.values - mu[idx]) @ inv
            dsig_g = dsigma[:, idx][:, :, idx]
            trace = -0.5 * np.einsum("ij,qji->q", inv, dsig_g)
            quad = 0.5 * np.einsum("ni,qij,nj->nq", z, dsig_g, z)
            scores[pattern.rows] = trace + quad + z @ dmu[:, idx].T
        return scores

    def casewise_loglik(self, mu: np.ndarray, sigma: np.ndarray) -> np.ndarray:
        out = np.zeros(self.patterns.n)
        for pattern in self.patterns:
            factor = self._factor(sigma, pattern)
            logdet = 2.0 * np.log(np.diag(factor[0])).sum()
            resid = pattern.values - mu[pattern.index]
            solved = linalg.cho_solve(factor, resid.T, check_finite=False)
            quad = np.einsum("ij,ji->i", resid, solved)
            out[pattern.rows] = -0.5 * (pattern.k * LOG_2PI + logdet + quad)
        return out

    def pattern_moments(self, mu: np.ndarray, sigma: np.ndarray) -> List[Dict[str, object]]:
        """Implied sub-moments for each missing-data pattern."""
        return [
            {
                "variables": list(p.names),
                "n": p.n,
                "mean": mu[p.index].copy(),
                "covariance": sigma[np.ix_(p.index, p.index)].copy(),
            }
            for p in self.patterns
        ]
