"""Validated parameter-table representation of a model specification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import SpecificationError
from .syntax import (
    Covariance,
    Equation,
    Intercept,
    Loading,
    Modifier,
    Regression,
    Variance,
    parse_equations,
)

__all__ = [
    "VariableKind",
    "EdgeKind",
    "VariableSpec",
    "ParameterSpec",
    "Specification",
    "SpecificationBuilder",
]

logger = logging.getLogger(__name__)


class VariableKind(Enum):
    Observed = "observed"
    Latent = "latent"
    Exogenous = "exogenous"


class EdgeKind(Enum):
    Loading = "=~"
    Regression = "~"
    Covariance = "~~"
    Intercept = "~1"


@dataclass(frozen=True)
class VariableSpec:
    name: str
    kind: VariableKind

    @property
    def is_observed(self) -> bool:
        return self.kind != VariableKind.Latent


@dataclass(frozen=True)
class ParameterSpec:
    """One row of the parameter table.

    ``lhs``/``rhs`` follow the operator: for loadings ``lhs`` is the latent
    factor and ``rhs`` the indicator, for regressions ``lhs`` is the outcome,
    for intercepts ``rhs`` is empty.
    """

    kind: EdgeKind
    lhs: str
    rhs: str
    id: str
    label: str = ""
    fixed: Optional[float] = None
    free: int = 0
    user: bool = True

    @property
    def op(self) -> str:
        return self.kind.value

    @property
    def is_variance(self) -> bool:
        return self.kind == EdgeKind.Covariance and self.lhs == self.rhs

    @property
    def name(self) -> str:
        """Public name of the parameter: its label when it has one."""
        return self.label or self.id


def _pair(a: str, b: str) -> Tuple[str, str]:
    return (a, b) if a <= b else (b, a)


@dataclass(frozen=True)
class Specification:
    """Immutable, validated model specification.

    Produced by :class:`SpecificationBuilder` (usually through
    :func:`longsem.model.parse_spec`); never modified afterwards.
    """

    variables: Tuple[VariableSpec, ...]
    parameters: Tuple[ParameterSpec, ...]
    equations: Tuple[Equation, ...]

    @classmethod
    def from_equations(
        cls,
        equations: Iterable[Equation],
        observed: Optional[Iterable[str]] = None,
    ) -> "Specification":
        builder = SpecificationBuilder(observed=observed)
        for eq in equations:
            builder.add_equation(eq)
        return builder.build()

    @classmethod
    def from_text(cls, text, observed: Optional[Iterable[str]] = None) -> "Specification":
        return cls.from_equations(parse_equations(text), observed=observed)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def observed(self) -> List[str]:
        return [v.name for v in self.variables if v.is_observed]

    @property
    def latent(self) -> List[str]:
        return [v.name for v in self.variables if v.kind == VariableKind.Latent]

    @property
    def exogenous(self) -> List[str]:
        return [v.name for v in self.variables if v.kind == VariableKind.Exogenous]

    def kind_of(self, name: str) -> VariableKind:
        for var in self.variables:
            if var.name == name:
                return var.kind
        raise KeyError(name)

    @property
    def n_free(self) -> int:
        return max((p.free for p in self.parameters), default=0)

    @property
    def free_parameter_names(self) -> List[str]:
        names: Dict[int, str] = {}
        for p in self.parameters:
            if p.free and p.free not in names:
                names[p.free] = p.name
        return [names[i] for i in range(1, self.n_free + 1)]

    @property
    def variance_mask(self) -> List[bool]:
        """True for free parameters that appear as a variance anywhere."""
        mask = [False] * self.n_free
        for p in self.parameters:
            if p.free and p.is_variance:
                mask[p.free - 1] = True
        return mask

    @property
    def n_moments(self) -> int:
        k = len(self.observed)
        return k + k * (k + 1) // 2

    @property
    def df(self) -> int:
        return self.n_moments - self.n_free

    @property
    def labels(self) -> Dict[str, List[ParameterSpec]]:
        groups: Dict[str, List[ParameterSpec]] = {}
        for p in self.parameters:
            if p.label:
                groups.setdefault(p.label, []).append(p)
        return groups

    def to_text(self) -> str:
        """Equation text that rebuilds an equal specification."""
        return "\n".join(str(eq) for eq in self.equations)

    def __str__(self) -> str:
        return self.to_text()


class SpecificationBuilder:
    """Accumulate equations and build a validated :class:`Specification`.

    ``observed`` optionally lists the names available in the data; any
    non-latent variable outside it is reported as undefined.
    """

    def __init__(self, observed: Optional[Iterable[str]] = None) -> None:
        self._observed = set(observed) if observed is not None else None
        self._equations: List[Equation] = []

    def add_equation(self, eq: Equation) -> "SpecificationBuilder":
        self._equations.append(eq)
        return self

    def add_text(self, text) -> "SpecificationBuilder":
        self._equations.extend(parse_equations(text))
        return self

    def build(self) -> Specification:
        if not self._equations:
            raise SpecificationError("at least one equation is required")
        equations = list(self._equations)
        variables = self._classify(equations)
        rows = self._user_rows(equations, variables)
        rows.extend(self._default_rows(rows, variables))
        rows = self._resolve_labels(rows)
        self._check_scale(rows, variables)

        spec = Specification(
            variables=tuple(variables),
            parameters=tuple(rows),
            equations=tuple(equations),
        )
        if spec.df < 0:
            raise SpecificationError(
                f"model is not identified: {spec.n_free} free parameters for "
                f"{spec.n_moments} observed moments (df = {spec.df})"
            )
        return spec

    # ------------------------------------------------------------------
    # Variable classification
    # ------------------------------------------------------------------
    def _classify(self, equations: Sequence[Equation]) -> List[VariableSpec]:
        order: List[str] = []
        latent: Set[str] = set()
        dependent: Set[str] = set()
        predictors: Set[str] = set()

        def seen(name: str) -> None:
            if name not in order:
                order.append(name)

        for eq in equations:
            if isinstance(eq, Loading):
                if eq.latent == eq.indicator:
                    raise SpecificationError(f"factor {eq.latent} cannot load on itself", eq.source)
                latent.add(eq.latent)
                dependent.add(eq.indicator)
                seen(eq.latent)
                seen(eq.indicator)
            elif isinstance(eq, Regression):
                dependent.add(eq.target)
                predictors.add(eq.predictor)
                seen(eq.target)
                seen(eq.predictor)
            elif isinstance(eq, Covariance):
                seen(eq.left)
                seen(eq.right)
            elif isinstance(eq, (Variance, Intercept)):
                seen(eq.variable)

        variables = []
        for name in order:
            if name in latent:
                kind = VariableKind.Latent
            elif name in predictors and name not in dependent:
                kind = VariableKind.Exogenous
            else:
                kind = VariableKind.Observed
            if kind != VariableKind.Latent and self._observed is not None and name not in self._observed:
                raise SpecificationError(f"undefined variable '{name}': not a latent factor and not in the data")
            variables.append(VariableSpec(name, kind))

        # Observed variables first, then latents, each in order of appearance.
        return [v for v in variables if v.is_observed] + [v for v in variables if not v.is_observed]

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------
    def _user_rows(self, equations: Sequence[Equation], variables: Sequence[VariableSpec]) -> List[ParameterSpec]:
        rows: List[ParameterSpec] = []
        keys: Dict[Tuple[EdgeKind, str, str], str] = {}
        marked: Set[str] = set()

        def add(kind: EdgeKind, lhs: str, rhs: str, pid: str, modifier: Modifier, source: str) -> None:
            key = (kind, lhs, rhs) if kind != EdgeKind.Covariance else (kind,) + _pair(lhs, rhs)
            if key in keys:
                raise SpecificationError(f"duplicate definition of {lhs} {kind.value} {rhs}".rstrip(), source)
            keys[key] = source
            rows.append(
                ParameterSpec(
                    kind=kind,
                    lhs=lhs,
                    rhs=rhs,
                    id=pid,
                    label=modifier.label or "",
                    fixed=modifier.fixed,
                    free=0,
                    user=True,
                )
            )

        for eq in equations:
            if isinstance(eq, Loading):
                modifier = eq.modifier
                if eq.latent not in marked:
                    marked.add(eq.latent)
                    # Default marker variable strategy: fix first loading to 1.0
                    if not modifier.is_fixed and not modifier.free:
                        modifier = Modifier(fixed=1.0, label=modifier.label)
                add(EdgeKind.Loading, eq.latent, eq.indicator,
                    f"lambda_{eq.indicator}_on_{eq.latent}", modifier, eq.source)
            elif isinstance(eq, Regression):
                add(EdgeKind.Regression, eq.target, eq.predictor,
                    f"beta_{eq.target}_on_{eq.predictor}", eq.modifier, eq.source)
            elif isinstance(eq, Intercept):
                add(EdgeKind.Intercept, eq.variable, "", f"nu_{eq.variable}", eq.modifier, eq.source)
            elif isinstance(eq, Variance):
                add(EdgeKind.Covariance, eq.variable, eq.variable,
                    f"psi_{eq.variable}_{eq.variable}", eq.modifier, eq.source)
            elif isinstance(eq, Covariance):
                a, b = _pair(eq.left, eq.right)
                add(EdgeKind.Covariance, eq.left, eq.right, f"psi_{a}_{b}", eq.modifier, eq.source)
        return rows

    def _default_rows(self, rows: Sequence[ParameterSpec], variables: Sequence[VariableSpec]) -> List[ParameterSpec]:
        defaults: List[ParameterSpec] = []
        variances = {r.lhs for r in rows if r.is_variance}
        intercepts = {r.lhs for r in rows if r.kind == EdgeKind.Intercept}
        covariances = {_pair(r.lhs, r.rhs) for r in rows if r.kind == EdgeKind.Covariance}
        indicators = {r.rhs for r in rows if r.kind == EdgeKind.Loading}
        outcomes = {r.lhs for r in rows if r.kind == EdgeKind.Regression}

        for var in variables:
            if var.name not in variances:
                defaults.append(ParameterSpec(EdgeKind.Covariance, var.name, var.name,
                                              f"psi_{var.name}_{var.name}", user=False))
            if var.name not in intercepts:
                fixed = 0.0 if var.kind == VariableKind.Latent else None
                defaults.append(ParameterSpec(EdgeKind.Intercept, var.name, "", f"nu_{var.name}",
                                              fixed=fixed, user=False))

        latents = [v.name for v in variables if v.kind == VariableKind.Latent]
        exogenous_lv = [n for n in latents if n not in indicators and n not in outcomes]
        outcome_lv = [n for n in latents if n in outcomes and n not in indicators]
        covariates = [v.name for v in variables if v.kind == VariableKind.Exogenous]

        for block in (exogenous_lv, outcome_lv, covariates):
            for i in range(len(block)):
                for j in range(i + 1, len(block)):
                    key = _pair(block[i], block[j])
                    if key in covariances:
                        continue
                    covariances.add(key)
                    defaults.append(ParameterSpec(EdgeKind.Covariance, block[i], block[j],
                                                  f"psi_{key[0]}_{key[1]}", user=False))
        if defaults:
            logger.debug("Adding %d default parameters", len(defaults))
        return defaults

    @staticmethod
    def _resolve_labels(rows: Sequence[ParameterSpec]) -> List[ParameterSpec]:
        fixed_by_label: Dict[str, float] = {}
        for r in rows:
            if r.label and r.fixed is not None:
                known = fixed_by_label.get(r.label)
                if known is not None and known != r.fixed:
                    raise SpecificationError(
                        f"label '{r.label}' is fixed to contradictory values {known:g} and {r.fixed:g}"
                    )
                fixed_by_label[r.label] = r.fixed

        resolved: List[ParameterSpec] = []
        index_by_label: Dict[str, int] = {}
        n_free = 0
        for r in rows:
            fixed = r.fixed
            if r.label and r.label in fixed_by_label:
                fixed = fixed_by_label[r.label]
            if fixed is not None:
                free = 0
            elif r.label and r.label in index_by_label:
                free = index_by_label[r.label]
            else:
                n_free += 1
                free = n_free
                if r.label:
                    index_by_label[r.label] = free
            resolved.append(
                ParameterSpec(r.kind, r.lhs, r.rhs, r.id, r.label, fixed, free, r.user)
            )
        return resolved

    @staticmethod
    def _check_scale(rows: Sequence[ParameterSpec], variables: Sequence[VariableSpec]) -> None:
        for var in variables:
            if var.kind != VariableKind.Latent:
                continue
            loadings = [r for r in rows if r.kind == EdgeKind.Loading and r.lhs == var.name]
            if not loadings:
                raise SpecificationError(f"latent factor '{var.name}' has no indicators")
            has_marker = any(r.fixed is not None and r.fixed != 0.0 for r in loadings)
            has_fixed_variance = any(
                r.is_variance and r.lhs == var.name and r.fixed is not None for r in rows
            )
            if not (has_marker or has_fixed_variance):
                raise SpecificationError(
                    f"latent factor '{var.name}' has no fixed loading or fixed variance to set its scale"
                )


def parameter_lookup(spec: Specification) -> Mapping[str, int]:
    """Map parameter names (labels or ids) to 0-based free positions."""
    return {name: i for i, name in enumerate(spec.free_parameter_names)}
