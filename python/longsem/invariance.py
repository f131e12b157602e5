"""Longitudinal measurement invariance: configural, weak and strong models."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Dict, Mapping, Optional, Sequence

import pandas as pd

from .fit_indices import LRTResult, compare
from .model import Model
from .optimizer import OptimizationOptions

__all__ = ["LEVELS", "measurement_block", "indicator_name", "occasion_name", "invariance_ladder", "InvarianceResult"]

logger = logging.getLogger(__name__)

LEVELS = ("configural", "weak", "strong")


def indicator_name(construct: str, item: Any, time: Any) -> str:
    return f"{construct}{item}_T{time}"


def occasion_name(construct: str, time: Any) -> str:
    return f"{construct}_T{time}"


def measurement_block(
    construct: str,
    items: Sequence[Any],
    times: Sequence[Any],
    level: str,
    label_suffix: str = "",
) -> str:
    """Model text for one construct measured at several occasions.

    One factor per occasion, residuals of the same item correlated across
    occasions.  ``weak`` labels loadings ``l1, l2, ...`` so they are equal over
    time; ``strong`` additionally labels intercepts ``t1, t2, ...`` and frees
    the factor means after the first occasion.
    """
    if level not in LEVELS:
        raise ValueError(f"level must be one of {LEVELS}, got {level!r}")
    if not items or not times:
        raise ValueError("items and times cannot be empty")

    lines = []
    for t in times:
        terms = []
        for pos, item in enumerate(items, start=1):
            ind = indicator_name(construct, item, t)
            terms.append(f"l{pos}{label_suffix}*{ind}" if level != "configural" else ind)
        lines.append(f"{occasion_name(construct, t)} =~ " + " + ".join(terms))

    if level == "strong":
        for pos, item in enumerate(items, start=1):
            for t in times:
                lines.append(f"{indicator_name(construct, item, t)} ~ t{pos}{label_suffix}*1")
        for t in times[1:]:
            lines.append(f"{occasion_name(construct, t)} ~ 1")

    for item in items:
        for a, b in combinations(times, 2):
            lines.append(f"{indicator_name(construct, item, a)} ~~ {indicator_name(construct, item, b)}")
    return "\n".join(lines)


@dataclass
class InvarianceResult:
    """Fits of the three levels and the nested tests between them."""

    construct: str
    fits: Dict[str, Any]
    comparisons: Dict[str, LRTResult] = field(default_factory=dict)

    @property
    def table(self) -> pd.DataFrame:
        rows = {}
        for level, fit in self.fits.items():
            idx = fit.fit_indices
            rows[level] = {k: idx[k] for k in ("chisq", "df", "cfi", "tli", "rmsea", "srmr", "aic", "bic")}
        return pd.DataFrame(rows).T

    @property
    def strong_spec(self):
        return self.fits["strong"].spec

    def summary(self) -> pd.DataFrame:
        rows = []
        for name, lrt in self.comparisons.items():
            rows.append({"comparison": name, "chisq_diff": lrt.statistic, "df": lrt.df, "pvalue": lrt.pvalue,
                         "delta_aic": lrt.delta_aic, "delta_bic": lrt.delta_bic})
        return pd.DataFrame(rows)


def invariance_ladder(
    data: pd.DataFrame,
    construct: str,
    items: Sequence[Any],
    times: Sequence[Any],
    options: Optional[OptimizationOptions] = None,
    label_suffix: str = "",
    **kwargs: Any,
) -> InvarianceResult:
    """Fit configural, weak and strong models and test each step."""
    fits: Dict[str, Any] = {}
    for level in LEVELS:
        text = measurement_block(construct, items, times, level, label_suffix)
        logger.info("Fitting %s invariance for %s", level, construct)
        fits[level] = Model(text).fit(data, options=options, **kwargs)

    comparisons: Mapping[str, LRTResult] = {
        "configural_vs_weak": compare(fits["configural"], fits["weak"]),
        "weak_vs_strong": compare(fits["weak"], fits["strong"]),
    }
    return InvarianceResult(construct=construct, fits=fits, comparisons=dict(comparisons))
