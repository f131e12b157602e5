"""Growth-basis comparison and parallel-process stages of a longitudinal analysis.

Each stage takes the previous stage's :class:`~longsem.ir.Specification`
as an explicit argument; nothing is shared between fits except the
read-only data frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from .errors import NotNestedError
from .fit_indices import LRTResult, compare, compare_sequence
from .growth import GrowthBasis, growth_factors, parallel_process, project_growth
from .ir import Specification
from .model import SemFit, fit
from .optimizer import OptimizationOptions

__all__ = [
    "default_bases",
    "growth_comparison",
    "GrowthComparison",
    "parallel_process_model",
    "ParallelProcessResult",
]

logger = logging.getLogger(__name__)


def default_bases(timepoints: Sequence[float]) -> Dict[str, GrowthBasis]:
    """The four bases, keeping only those the time points support."""
    bases = {
        "no_growth": GrowthBasis.no_growth(),
        "linear": GrowthBasis.linear(),
        "quadratic": GrowthBasis.quadratic(),
    }
    if len(timepoints) >= 3:
        bases["piecewise"] = GrowthBasis.piecewise(timepoints[1])
    return {name: b for name, b in bases.items() if len(timepoints) >= b.minimum_timepoints}


@dataclass
class GrowthComparison:
    fits: Dict[str, SemFit]
    specs: Dict[str, Specification]
    table: pd.DataFrame
    tests: Dict[str, LRTResult] = field(default_factory=dict)

    @property
    def indices(self) -> pd.DataFrame:
        keys = ("chisq", "df", "cfi", "tli", "rmsea", "srmr", "aic", "bic")
        return pd.DataFrame({name: {k: f.fit_indices[k] for k in keys} for name, f in self.fits.items()}).T


def growth_comparison(
    data: pd.DataFrame,
    strong_spec: Specification,
    timepoints: Sequence[float],
    bases: Optional[Mapping[str, GrowthBasis]] = None,
    prefix: Optional[str] = None,
    covariates: Sequence[str] = (),
    predict: Sequence[str] = ("intercept",),
    options: Optional[OptimizationOptions] = None,
    reference: str = "no_growth",
    **kwargs: Any,
) -> GrowthComparison:
    """Fit one growth model per basis and test each against ``reference``."""
    bases = dict(bases) if bases is not None else default_bases(timepoints)
    specs: Dict[str, Specification] = {}
    fits: Dict[str, SemFit] = {}
    for name, basis in bases.items():
        specs[name] = project_growth(strong_spec, basis, timepoints, prefix=prefix,
                                     covariates=covariates, predict=predict)
        logger.info("Fitting %s growth model", name)
        fits[name] = fit(specs[name], data, options, **kwargs)

    tests: Dict[str, LRTResult] = {}
    if reference in fits:
        for name, f in fits.items():
            if name == reference:
                continue
            try:
                tests[name] = compare(f, fits[reference])
            except NotNestedError as exc:
                logger.warning("Skipping %s vs %s: %s", name, reference, exc)

    names = list(fits)
    table = compare_sequence(*[fits[n] for n in names], names=names)
    return GrowthComparison(fits=fits, specs=specs, table=table, tests=tests)


@dataclass
class ParallelProcessResult:
    fit: SemFit
    spec: Specification
    growth_factors: List[str]

    @property
    def cor_lv(self) -> pd.DataFrame:
        """Correlations among the growth factors of all blocks."""
        cor = self.fit.cor_lv()
        return cor.loc[self.growth_factors, self.growth_factors]

    @property
    def cov_lv(self) -> pd.DataFrame:
        cov = self.fit.cov_lv()
        return cov.loc[self.growth_factors, self.growth_factors]


def parallel_process_model(
    data: pd.DataFrame,
    blocks: Sequence[Specification],
    options: Optional[OptimizationOptions] = None,
    **kwargs: Any,
) -> ParallelProcessResult:
    """Join projected growth blocks and fit the parallel-process model."""
    spec = parallel_process(blocks)
    growth = [name for block in blocks for name in growth_factors(block)]
    logger.info("Fitting parallel-process model over %s", growth)
    result = fit(spec, data, options, **kwargs)
    return ParallelProcessResult(fit=result, spec=spec, growth_factors=growth)
