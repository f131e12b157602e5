"""Exception and warning types raised by the estimation engine."""

from __future__ import annotations

from typing import Any, Optional, Sequence

__all__ = [
    "SemError",
    "SpecificationError",
    "ModelSpecificationError",
    "IdentificationError",
    "SingularCovarianceError",
    "ConvergenceError",
    "NotNestedError",
    "BasisMismatchError",
    "BoundaryEstimateWarning",
]


class SemError(Exception):
    """Base class for all errors raised by longsem."""


class SpecificationError(SemError, ValueError):
    """Raised when equations or metadata are inconsistent or unidentified."""

    def __init__(self, message: str, equation: Optional[str] = None) -> None:
        if equation:
            message = f"{message} (in '{equation}')"
        super().__init__(message)
        self.equation = equation


# Alias raised by the Model front end.
ModelSpecificationError = SpecificationError


class IdentificationError(SemError):
    """Raised when Psi or Theta is not positive semi-definite at the start values.

    The fit entry point treats this as a warning: it is attached to the
    result and fitting proceeds.
    """

    def __init__(self, message: str, block: str = "", eigenvalue: float = float("nan")) -> None:
        super().__init__(message)
        self.block = block
        self.eigenvalue = eigenvalue


class SingularCovarianceError(SemError, ArithmeticError):
    """Raised when a missing-data pattern's implied sub-covariance is singular."""

    def __init__(self, variables: Sequence[str], n_rows: int = 0) -> None:
        self.variables = list(variables)
        self.n_rows = n_rows
        super().__init__(
            "implied covariance is not positive definite for pattern "
            f"[{', '.join(self.variables)}] ({n_rows} rows)"
        )


class ConvergenceError(SemError, RuntimeError):
    """Raised (or attached to a result) when the iteration budget is exhausted."""

    def __init__(self, message: str, iterations: int = 0, result: Any = None) -> None:
        super().__init__(message)
        self.iterations = iterations
        self.result = result


class NotNestedError(SemError, ValueError):
    """Raised when two fits cannot be compared as a nested pair."""


class BasisMismatchError(SemError, ValueError):
    """Raised when a growth basis does not fit the available time points."""


class BoundaryEstimateWarning(UserWarning):
    """A variance estimate was held at the lower bound instead of going negative."""

    def __init__(self, parameter: str, floor: float, gradient: float = float("nan")) -> None:
        self.parameter = parameter
        self.floor = floor
        self.gradient = gradient
        super().__init__(
            f"variance parameter '{parameter}' would be negative; "
            f"estimate held at the floor {floor:g}"
        )
