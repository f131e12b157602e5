"""Parsing of lavaan-style model equations into typed equation records.

The accepted operators are ``=~`` (is measured by), ``~`` (regression, or
mean/intercept when the right-hand term is ``1``), and ``~~`` (variance when
both sides name the same variable, covariance otherwise).  Right-hand terms
may carry a premultiplier: a number fixes the coefficient, ``NA`` frees it
and any other identifier labels it.  Rows sharing a label are constrained to
be equal.  A label may be chained with a value, as in ``a*1*x``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

from .errors import SpecificationError

__all__ = [
    "Modifier",
    "Loading",
    "Regression",
    "Intercept",
    "Variance",
    "Covariance",
    "Equation",
    "parse_equations",
    "split_terms",
]

_IDENTIFIER = re.compile(r"^[A-Za-z_.][A-Za-z0-9_.]*$")


@dataclass(frozen=True)
class Modifier:
    """Premultiplier attached to a right-hand term."""

    fixed: Optional[float] = None
    label: Optional[str] = None
    free: bool = False

    def __str__(self) -> str:
        out = f"{self.label}*" if self.label else ""
        if self.fixed is not None:
            out += f"{format_number(self.fixed)}*"
        elif self.free:
            out += "NA*"
        return out

    @property
    def is_fixed(self) -> bool:
        return self.fixed is not None


@dataclass(frozen=True)
class Loading:
    latent: str
    indicator: str
    modifier: Modifier = Modifier()
    source: str = field(default="", compare=False)

    def __str__(self) -> str:
        return f"{self.latent} =~ {self.modifier}{self.indicator}"


@dataclass(frozen=True)
class Regression:
    target: str
    predictor: str
    modifier: Modifier = Modifier()
    source: str = field(default="", compare=False)

    def __str__(self) -> str:
        return f"{self.target} ~ {self.modifier}{self.predictor}"


@dataclass(frozen=True)
class Intercept:
    variable: str
    modifier: Modifier = Modifier()
    source: str = field(default="", compare=False)

    def __str__(self) -> str:
        return f"{self.variable} ~ {self.modifier}1"


@dataclass(frozen=True)
class Variance:
    variable: str
    modifier: Modifier = Modifier()
    source: str = field(default="", compare=False)

    def __str__(self) -> str:
        return f"{self.variable} ~~ {self.modifier}{self.variable}"


@dataclass(frozen=True)
class Covariance:
    left: str
    right: str
    modifier: Modifier = Modifier()
    source: str = field(default="", compare=False)

    def __str__(self) -> str:
        return f"{self.left} ~~ {self.modifier}{self.right}"


Equation = Union[Loading, Regression, Intercept, Variance, Covariance]


def parse_equations(text: Union[str, Iterable[str]]) -> List[Equation]:
    """Split model text (or a sequence of equation strings) into equations."""
    if isinstance(text, str):
        raw_lines = text.splitlines()
    else:
        raw_lines = []
        for chunk in text:
            raw_lines.extend(str(chunk).splitlines())

    equations: List[Equation] = []
    for raw in raw_lines:
        line = raw.split("#", 1)[0]
        for statement in line.split(";"):
            statement = statement.strip()
            if statement:
                equations.extend(_parse_statement(statement))
    if not equations:
        raise SpecificationError("at least one equation is required")
    return equations


def _parse_statement(eq: str) -> List[Equation]:
    if "=~" in eq:
        lhs, rhs = eq.split("=~", 1)
        latent = _check_name(lhs, eq)
        terms = split_terms(rhs)
        if not terms:
            raise SpecificationError(f"loading equation for {latent} is empty", eq)
        out: List[Equation] = []
        for term in terms:
            modifier, name = _parse_term(term, eq)
            if name == "1":
                raise SpecificationError("a latent factor cannot be measured by a constant", eq)
            out.append(Loading(latent, name, modifier, source=eq))
        return out

    if "~~" in eq:
        lhs, rhs = eq.split("~~", 1)
        left = _check_name(lhs, eq)
        terms = split_terms(rhs)
        if not terms:
            raise SpecificationError(f"covariance equation for {left} is empty", eq)
        out = []
        for term in terms:
            modifier, name = _parse_term(term, eq)
            if name == "1":
                raise SpecificationError("covariance with a constant is not defined", eq)
            if name == left:
                out.append(Variance(left, modifier, source=eq))
            else:
                out.append(Covariance(left, name, modifier, source=eq))
        return out

    if "~" in eq:
        lhs, rhs = eq.split("~", 1)
        target = _check_name(lhs, eq)
        terms = split_terms(rhs)
        if not terms:
            raise SpecificationError(f"regression equation for {target} is empty", eq)
        out = []
        for term in terms:
            bare = _as_number(term)
            if bare is not None and bare != 1.0:
                # "f ~ 0" pins the mean of f at the given value.
                out.append(Intercept(target, Modifier(fixed=bare), source=eq))
                continue
            modifier, name = _parse_term(term, eq)
            if name == "1":
                out.append(Intercept(target, modifier, source=eq))
            else:
                out.append(Regression(target, name, modifier, source=eq))
        return out

    raise SpecificationError(f"Unrecognized equation: {eq}")


def _parse_term(term: str, eq: str):
    if "*" not in term:
        name = term.strip()
        if name != "1":
            _check_name(name, eq)
        return Modifier(), name

    *pres, name = term.split("*")
    name = name.strip()
    if name != "1":
        _check_name(name, eq)
    fixed, label, free = None, None, False
    for pre in (p.strip() for p in pres):
        value = None if pre.upper() == "NA" else _as_number(pre)
        if pre.upper() == "NA" or value is not None:
            if fixed is not None or free:
                raise SpecificationError(f"more than one value premultiplier on '{name}'", eq)
            fixed, free = value, value is None
        elif _IDENTIFIER.match(pre):
            if label is not None:
                raise SpecificationError(f"more than one label on '{name}'", eq)
            label = pre
        else:
            raise SpecificationError(f"invalid premultiplier '{pre}'", eq)
    return Modifier(fixed=fixed, label=label, free=free), name


def _as_number(token: str) -> Optional[float]:
    try:
        value = float(token.strip())
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def format_number(value: float) -> str:
    """Shortest text that parses back to exactly ``value``."""
    short = f"{value:g}"
    return short if float(short) == value else repr(float(value))


def _check_name(name: str, eq: str) -> str:
    normalized = name.strip()
    if not normalized:
        raise SpecificationError("variable names cannot be empty", eq)
    if not _IDENTIFIER.match(normalized):
        raise SpecificationError(f"invalid variable name '{normalized}'", eq)
    return normalized


def split_terms(rhs: str) -> List[str]:
    """Split a right-hand side on top-level ``+`` signs."""
    terms = []
    current = []
    depth = 0
    for char in rhs:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1

        if char == "+" and depth == 0:
            terms.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    if current:
        terms.append("".join(current).strip())
    return [t for t in terms if t]
