"""Longitudinal structural equation modeling with FIML estimation."""

from __future__ import annotations

from .errors import (
    BasisMismatchError,
    BoundaryEstimateWarning,
    ConvergenceError,
    IdentificationError,
    ModelSpecificationError,
    NotNestedError,
    SemError,
    SingularCovarianceError,
    SpecificationError,
)
from .ir import EdgeKind, ParameterSpec, Specification, SpecificationBuilder, VariableKind, VariableSpec
from .likelihood import LikelihoodDriver, MissingPatterns
from .structure import StructureMapper
from .optimizer import EstimationMethod, OptimizationOptions, OptimizationResult
from .estimation import FitResult
from .fit_indices import FitIndices, LRTResult, compare, compare_sequence
from .model import Model, SemFit, SemFitSummary, fit, parse_spec
from .growth import GrowthBasis, parallel_process, project_growth
from .invariance import InvarianceResult, invariance_ladder, measurement_block
from .pipeline import growth_comparison, parallel_process_model

__all__ = [
    "__version__",
    "BasisMismatchError",
    "BoundaryEstimateWarning",
    "ConvergenceError",
    "EdgeKind",
    "EstimationMethod",
    "FitIndices",
    "FitResult",
    "GrowthBasis",
    "IdentificationError",
    "InvarianceResult",
    "LikelihoodDriver",
    "LRTResult",
    "MissingPatterns",
    "Model",
    "ModelSpecificationError",
    "NotNestedError",
    "OptimizationOptions",
    "OptimizationResult",
    "ParameterSpec",
    "SemError",
    "SemFit",
    "SemFitSummary",
    "SingularCovarianceError",
    "Specification",
    "SpecificationBuilder",
    "SpecificationError",
    "StructureMapper",
    "VariableKind",
    "VariableSpec",
    "compare",
    "compare_sequence",
    "fit",
    "growth_comparison",
    "invariance_ladder",
    "measurement_block",
    "parallel_process",
    "parallel_process_model",
    "parse_spec",
    "project_growth",
]

__version__ = "0.1.0"
