"""Second-order latent growth layers over occasion-specific factors."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import BasisMismatchError, SpecificationError
from .ir import EdgeKind, Specification, VariableKind
from .syntax import Covariance, Equation, Intercept, Loading, Modifier, Regression, Variance

__all__ = ["GrowthBasis", "project_growth", "parallel_process", "growth_factor_names", "growth_factors"]

logger = logging.getLogger(__name__)

_OCCASION = re.compile(r"^(?P<stem>.+?)_?T\d+$")

# Growth factor stems; ``s``/``q`` for polynomial bases, ``s1``/``s2`` piecewise.
_STEMS = ("i", "s", "q", "s1", "s2")


@dataclass(frozen=True)
class GrowthBasis:
    """Shape of the slope loadings.

    Time scores are elapsed time since the first occasion, so time points
    ``[1, 2, 3]`` give linear loadings ``0, 1, 2``.
    """

    kind: str
    knot: Optional[float] = None

    @classmethod
    def no_growth(cls) -> "GrowthBasis":
        return cls("no_growth")

    @classmethod
    def linear(cls) -> "GrowthBasis":
        return cls("linear")

    @classmethod
    def quadratic(cls) -> "GrowthBasis":
        return cls("quadratic")

    @classmethod
    def piecewise(cls, knot: float) -> "GrowthBasis":
        return cls("piecewise", float(knot))

    def __post_init__(self) -> None:
        if self.kind not in ("no_growth", "linear", "quadratic", "piecewise"):
            raise ValueError(f"Unknown growth basis: {self.kind}")
        if self.kind == "piecewise" and self.knot is None:
            raise ValueError("piecewise basis requires a knot")

    def __str__(self) -> str:
        if self.kind == "piecewise":
            return f"piecewise(knot={self.knot:g})"
        return self.kind

    @property
    def minimum_timepoints(self) -> int:
        return {"no_growth": 1, "linear": 2, "quadratic": 3, "piecewise": 3}[self.kind]

    @property
    def slopes(self) -> tuple:
        if self.kind == "quadratic":
            return ("s", "q")
        if self.kind == "piecewise":
            return ("s1", "s2")
        return ("s",)

    def validate(self, timepoints: Sequence[float]) -> List[float]:
        times = [float(t) for t in timepoints]
        if len(times) < self.minimum_timepoints:
            raise BasisMismatchError(
                f"{self} basis needs at least {self.minimum_timepoints} time points, got {len(times)}"
            )
        if any(b <= a for a, b in zip(times, times[1:])):
            raise BasisMismatchError(f"time points must be strictly increasing: {times}")
        if self.kind == "piecewise" and self.knot not in times[1:-1]:
            raise BasisMismatchError(
                f"knot {self.knot:g} is not an interior time point of {times}"
            )
        return times

    def loadings(self, timepoints: Sequence[float]) -> Dict[str, List[float]]:
        """Fixed slope loadings keyed by slope stem."""
        times = self.validate(timepoints)
        elapsed = [t - times[0] for t in times]
        if self.kind == "no_growth":
            return {"s": [0.0] * len(times)}
        if self.kind == "linear":
            return {"s": elapsed}
        if self.kind == "quadratic":
            return {"s": elapsed, "q": [e * e for e in elapsed]}
        knot = self.knot - times[0]
        return {
            "s1": [min(e, knot) for e in elapsed],
            "s2": [max(e - knot, 0.0) for e in elapsed],
        }


def growth_factor_names(tag: str) -> Dict[str, str]:
    """Names of the growth factors for one construct (``i_att``, ``s_att``...)."""
    return {stem: f"{stem}_{tag}" if tag else stem for stem in _STEMS}


def _first_order_factors(spec: Specification) -> List[str]:
    observed = set(spec.observed)
    factors = []
    for name in spec.latent:
        targets = [p.rhs for p in spec.parameters if p.kind == EdgeKind.Loading and p.lhs == name]
        if targets and all(t in observed for t in targets):
            factors.append(name)
    return factors


def _stem(name: str) -> str:
    match = _OCCASION.match(name)
    return match.group("stem") if match else name


def _occasion_factors(spec: Specification, prefix: Optional[str], factors: Optional[Sequence[str]]) -> List[str]:
    if factors is not None:
        missing = [f for f in factors if f not in spec.latent]
        if missing:
            raise SpecificationError(f"unknown occasion factors: {missing}")
        return list(factors)
    groups: Dict[str, List[str]] = {}
    for name in _first_order_factors(spec):
        groups.setdefault(_stem(name), []).append(name)
    if prefix is not None:
        for stem, members in groups.items():
            if stem.lower() == prefix.lower():
                return members
    if len(groups) == 1:
        return next(iter(groups.values()))
    raise SpecificationError(
        f"cannot tell which first-order factors are occasions (found constructs {sorted(groups)}); "
        "pass factors= explicitly"
    )


def _mentions(eq: Equation, names: Iterable[str]) -> bool:
    names = set(names)
    if isinstance(eq, Loading):
        return eq.latent in names or eq.indicator in names
    if isinstance(eq, Regression):
        return eq.target in names or eq.predictor in names
    if isinstance(eq, Covariance):
        return eq.left in names or eq.right in names
    return eq.variable in names


def project_growth(
    spec: Specification,
    basis: GrowthBasis,
    timepoints: Sequence[float],
    prefix: Optional[str] = None,
    covariates: Sequence[str] = (),
    predict: Sequence[str] = ("intercept",),
    factors: Optional[Sequence[str]] = None,
) -> Specification:
    """Add a growth layer over the occasion factors of ``spec``.

    The intercept factor loads 1 on every occasion and the slope factors
    load per ``basis``.  Any growth layer already present for the same
    construct is replaced, so repeated projection is stable.  The marker
    indicator of every occasion gets a zero intercept so that the growth
    means are identified; occasion factor means stay at 0.

    ``covariates`` are regressed onto the growth factors named in
    ``predict`` (``"intercept"``, ``"slope"``, or ``"all"``).
    """
    times = basis.validate(timepoints)
    occasions = _occasion_factors(spec, prefix, factors)
    if len(occasions) != len(times):
        raise BasisMismatchError(
            f"{len(times)} time points given for {len(occasions)} occasion factors {occasions}"
        )
    tag = prefix.lower() if prefix is not None else _stem(occasions[0]).lower()
    names = growth_factor_names(tag)
    occasion_set = set(occasions)

    markers = {}
    for p in spec.parameters:
        if p.kind == EdgeKind.Loading and p.lhs in occasion_set and p.lhs not in markers:
            markers[p.lhs] = p.rhs
    marker_items = set(markers.values())

    equations: List[Equation] = []
    pinned = set()
    for eq in spec.equations:
        if _mentions(eq, names.values()):
            continue
        if isinstance(eq, Intercept) and eq.variable in occasion_set:
            continue
        if isinstance(eq, Covariance) and eq.left in occasion_set and eq.right in occasion_set:
            continue
        if isinstance(eq, Intercept) and eq.variable in marker_items:
            if eq.variable not in pinned:
                equations.append(Intercept(eq.variable, Modifier(fixed=0.0)))
                pinned.add(eq.variable)
            continue
        equations.append(eq)
    for factor in occasions:
        if markers[factor] not in pinned:
            equations.append(Intercept(markers[factor], Modifier(fixed=0.0)))
            pinned.add(markers[factor])

    intercept = names["i"]
    equations.extend(Loading(intercept, f, Modifier(fixed=1.0)) for f in occasions)
    slope_loadings = basis.loadings(times)
    slopes = [names[stem] for stem in basis.slopes]
    for stem, values in slope_loadings.items():
        equations.extend(Loading(names[stem], f, Modifier(fixed=v)) for f, v in zip(occasions, values))

    pinned_slopes = set(slopes) if basis.kind == "no_growth" else set()
    growth = [intercept] + slopes
    for g in growth:
        equations.append(Intercept(g, Modifier(fixed=0.0) if g in pinned_slopes else Modifier()))
    for g in growth:
        equations.append(Variance(g, Modifier(fixed=0.0) if g in pinned_slopes else Modifier()))
    for a, b in combinations(growth, 2):
        fixed = a in pinned_slopes or b in pinned_slopes
        equations.append(Covariance(a, b, Modifier(fixed=0.0) if fixed else Modifier()))

    targets: List[str] = []
    for what in predict:
        if what in ("intercept", "all"):
            targets.append(intercept)
        if what in ("slope", "all"):
            targets.extend(s for s in slopes if s not in pinned_slopes)
        if what not in ("intercept", "slope", "all"):
            raise ValueError(f"predict must name 'intercept', 'slope' or 'all', got {what!r}")
    for target in dict.fromkeys(targets):
        equations.extend(Regression(target, c) for c in covariates)

    logger.debug("Projected %s growth over %s", basis, occasions)
    return Specification.from_equations(equations)


def growth_factors(spec: Specification) -> List[str]:
    latent = set(spec.latent)
    out = []
    for name in spec.latent:
        targets = [p.rhs for p in spec.parameters if p.kind == EdgeKind.Loading and p.lhs == name]
        if targets and all(t in latent for t in targets):
            out.append(name)
    return out


def _zero_variance(spec: Specification, name: str) -> bool:
    return any(p.is_variance and p.lhs == name and p.fixed == 0.0 for p in spec.parameters)


def parallel_process(blocks: Sequence[Specification]) -> Specification:
    """Join projected growth blocks and let growth factors covary across blocks.

    Blocks must use distinct labels; a shared label would silently equate
    parameters of different constructs.
    """
    if not 2 <= len(blocks) <= 3:
        raise SpecificationError(f"parallel-process models join two or three blocks, got {len(blocks)}")

    owner: Dict[str, int] = {}
    for i, block in enumerate(blocks):
        for label in block.labels:
            if label in owner and owner[label] != i:
                raise SpecificationError(
                    f"label '{label}' is used by blocks {owner[label] + 1} and {i + 1}; "
                    "give each construct its own label suffix"
                )
            owner[label] = i

    equations: List[Equation] = []
    seen = set()
    for block in blocks:
        for eq in block.equations:
            if eq in seen:
                continue
            seen.add(eq)
            equations.append(eq)

    growth = [growth_factors(block) for block in blocks]
    for a_idx, b_idx in combinations(range(len(blocks)), 2):
        for a in growth[a_idx]:
            for b in growth[b_idx]:
                fixed = _zero_variance(blocks[a_idx], a) or _zero_variance(blocks[b_idx], b)
                equations.append(Covariance(a, b, Modifier(fixed=0.0) if fixed else Modifier()))

    spec = Specification.from_equations(equations)
    kinds = {v.name: v.kind for v in spec.variables}
    logger.debug(
        "Joined %d blocks: %d growth factors, %d covariates",
        len(blocks),
        sum(len(g) for g in growth),
        sum(1 for k in kinds.values() if k == VariableKind.Exogenous),
    )
    return spec
