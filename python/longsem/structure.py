"""Mapping from the free-parameter vector to implied means and covariances.

All observed and latent variables are stacked in one vector and the model is
written in reticular action model form::

    A  directed paths (loadings and regressions), A[target, source]
    S  variances and covariances
    m  means and intercepts

With ``E = (I - A)^-1`` the moments of all variables are ``E S E'`` and
``E m``; the observed block is the implied ``Sigma`` and ``mu``.  For a
first-order factor model this is ``Lambda Psi Lambda' + Theta`` and
``tau + Lambda alpha``.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import IdentificationError
from .ir import EdgeKind, Specification, VariableKind

__all__ = ["StructureMapper"]

logger = logging.getLogger(__name__)


class StructureMapper:
    """Evaluate ``mu(theta)`` and ``Sigma(theta)`` and their derivatives."""

    def __init__(self, spec: Specification) -> None:
        self.spec = spec
        self.names = [v.name for v in spec.variables]
        self.index = {name: i for i, name in enumerate(self.names)}
        self.n_observed = len(spec.observed)
        self.n_variables = len(self.names)
        self.n_free = spec.n_free

        nv = self.n_variables
        self._A0 = np.zeros((nv, nv))
        self._S0 = np.zeros((nv, nv))
        self._m0 = np.zeros(nv)
        a_free, s_free, m_free = [], [], []

        for p in spec.parameters:
            if p.kind in (EdgeKind.Loading, EdgeKind.Regression):
                if p.kind == EdgeKind.Loading:
                    target, source = self.index[p.rhs], self.index[p.lhs]
                else:
                    target, source = self.index[p.lhs], self.index[p.rhs]
                if p.free:
                    a_free.append((target, source, p.free - 1))
                else:
                    self._A0[target, source] = p.fixed
            elif p.kind == EdgeKind.Covariance:
                i, j = self.index[p.lhs], self.index[p.rhs]
                if p.free:
                    s_free.append((i, j, p.free - 1))
                else:
                    self._S0[i, j] = self._S0[j, i] = p.fixed
            elif p.kind == EdgeKind.Intercept:
                i = self.index[p.lhs]
                if p.free:
                    m_free.append((i, p.free - 1))
                else:
                    self._m0[i] = p.fixed

        self._a_free = np.array(a_free, dtype=int).reshape(-1, 3)
        self._s_free = np.array(s_free, dtype=int).reshape(-1, 3)
        self._m_free = np.array(m_free, dtype=int).reshape(-1, 2)
        self._identity = np.eye(nv)

    # ------------------------------------------------------------------
    # Matrices
    # ------------------------------------------------------------------
    def ram(self, theta: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        theta = np.asarray(theta, dtype=float)
        A = self._A0.copy()
        S = self._S0.copy()
        m = self._m0.copy()
        if len(self._a_free):
            A[self._a_free[:, 0], self._a_free[:, 1]] = theta[self._a_free[:, 2]]
        if len(self._s_free):
            S[self._s_free[:, 0], self._s_free[:, 1]] = theta[self._s_free[:, 2]]
            S[self._s_free[:, 1], self._s_free[:, 0]] = theta[self._s_free[:, 2]]
        if len(self._m_free):
            m[self._m_free[:, 0]] = theta[self._m_free[:, 1]]
        return A, S, m

    def matrices(self, theta: np.ndarray) -> Dict[str, np.ndarray]:
        """Named blocks of the parameter matrices.

        ``Lambda`` (observed x latent loadings), ``B`` (latent x latent
        paths), ``Gamma`` (latent x observed paths, covariate regressions),
        ``Psi`` (latent covariances), ``Theta`` (observed covariances),
        ``tau`` (observed intercepts), ``alpha`` (latent means).
        """
        A, S, m = self.ram(theta)
        o = slice(0, self.n_observed)
        lv = slice(self.n_observed, self.n_variables)
        return {
            "Lambda": A[o, lv],
            "B": A[lv, lv],
            "Gamma": A[lv, o],
            "Psi": S[lv, lv],
            "Theta": S[o, o],
            "tau": m[o],
            "alpha": m[lv],
        }

    def _solve(self, A: np.ndarray) -> np.ndarray:
        return np.linalg.solve(self._identity - A, self._identity)

    def full_moments(self, theta: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Implied means and covariances over observed and latent variables."""
        A, S, m = self.ram(theta)
        E = self._solve(A)
        return E @ m, E @ S @ E.T

    def implied_moments(self, theta: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        mu, sigma = self.full_moments(theta)
        k = self.n_observed
        return mu[:k], sigma[:k, :k]

    def moment_derivatives(self, theta: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Derivatives of the observed moments.

        Returns ``dmu`` with shape ``(q, k)`` and ``dsigma`` with shape
        ``(q, k, k)`` for ``q`` free parameters and ``k`` observed variables.
        Rows sharing a label accumulate into the same slice.
        """
        A, S, m = self.ram(theta)
        E = self._solve(A)
        mu_full = E @ m
        sigma_full = E @ S @ E.T
        k = self.n_observed
        Eo = E[:k]

        dmu = np.zeros((self.n_free, k))
        dsigma = np.zeros((self.n_free, k, k))
        for target, source, q in self._a_free:
            left = Eo[:, target]
            t = np.outer(left, sigma_full[source, :k])
            dsigma[q] += t + t.T
            dmu[q] += left * mu_full[source]
        for i, j, q in self._s_free:
            t = np.outer(Eo[:, i], Eo[:, j])
            if i == j:
                dsigma[q] += t
            else:
                dsigma[q] += t + t.T
        for i, q in self._m_free:
            dmu[q] += Eo[:, i]
        return dmu, dsigma

    def moment_jacobian(self, theta: np.ndarray) -> np.ndarray:
        """Jacobian of ``[mu, vech(Sigma)]`` with respect to theta."""
        dmu, dsigma = self.moment_derivatives(theta)
        rows, cols = np.tril_indices(self.n_observed)
        return np.hstack([dmu, dsigma[:, rows, cols]]).T

    # ------------------------------------------------------------------
    # Starting values and checks
    # ------------------------------------------------------------------
    def start_values(self, data: Optional[pd.DataFrame] = None, floor: float = 1e-3) -> np.ndarray:
        """Simple starting values in the manner of lavaan's ``start = "simple"``."""
        theta = np.zeros(self.n_free)
        assigned = np.zeros(self.n_free, dtype=bool)

        def column_stats(name: str) -> Tuple[float, float]:
            if data is None or name not in data:
                return 0.0, 1.0
            values = pd.to_numeric(data[name], errors="coerce")
            mean = values.mean()
            var = values.var(ddof=0)
            return (0.0 if pd.isna(mean) else float(mean)), (1.0 if pd.isna(var) or var <= 0 else float(var))

        for p in self.spec.parameters:
            if not p.free or assigned[p.free - 1]:
                continue
            q = p.free - 1
            assigned[q] = True
            if p.kind == EdgeKind.Loading:
                theta[q] = 1.0
            elif p.kind == EdgeKind.Intercept:
                if self.spec.kind_of(p.lhs) != VariableKind.Latent:
                    theta[q] = column_stats(p.lhs)[0]
            elif p.is_variance:
                kind = self.spec.kind_of(p.lhs)
                if kind == VariableKind.Latent:
                    value = 0.05
                elif kind == VariableKind.Exogenous:
                    value = column_stats(p.lhs)[1]
                else:
                    value = 0.5 * column_stats(p.lhs)[1]
                theta[q] = max(value, 10.0 * floor)
        return theta

    def check_start(self, theta: np.ndarray) -> None:
        """Raise :class:`IdentificationError` when Psi or Theta is not PSD."""
        blocks = self.matrices(theta)
        for name in ("Psi", "Theta"):
            mat = blocks[name]
            if mat.size == 0:
                continue
            smallest = float(np.linalg.eigvalsh(mat).min())
            if smallest < -1e-8:
                raise IdentificationError(
                    f"{name} is not positive semi-definite at the starting values "
                    f"(smallest eigenvalue {smallest:.4g})",
                    block=name,
                    eigenvalue=smallest,
                )
