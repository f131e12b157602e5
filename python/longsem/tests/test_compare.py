"""Likelihood-ratio comparison of nested fits."""

from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

import longsem


def _regression_frame(n=300, seed=8):
    np.random.seed(seed)
    x1 = np.random.randn(n)
    x2 = np.random.randn(n)
    y = 0.5 + 0.6 * x1 + 0.3 * x2 + 0.8 * np.random.randn(n)
    return pd.DataFrame({"y": y, "x1": x1, "x2": x2})


@pytest.fixture(scope="module")
def nested_fits():
    data = _regression_frame()
    full = longsem.Model("y ~ x1 + x2").fit(data)
    restricted = longsem.Model("y ~ x1 + 0*x2").fit(data)
    return full, restricted


def _fake(loglik, npar, df, trace=float("nan"), n_obs=100, estimator=longsem.EstimationMethod.MLR):
    result = SimpleNamespace(
        loglik=loglik,
        n_free=npar,
        df=df,
        n_obs=n_obs,
        estimator=estimator,
        spec=SimpleNamespace(observed=["y", "x"]),
    )
    return SimpleNamespace(fit_result=result, statistics=SimpleNamespace(trace_ugamma=trace))


def test_restricted_model_fits_worse(nested_fits):
    full, restricted = nested_fits
    assert restricted.loglik <= full.loglik + 1e-6
    lrt = longsem.compare(full, restricted)
    assert lrt.df == 1
    assert lrt.statistic >= 0.0
    assert lrt.pvalue < 0.01
    assert lrt.scaling > 0
    assert lrt.delta_aic == pytest.approx(
        (-2 * restricted.loglik + 2 * restricted.fit_result.n_free) - (-2 * full.loglik + 2 * full.fit_result.n_free)
    )


def test_ml_comparison_is_plain_difference():
    data = _regression_frame()
    full = longsem.Model("y ~ x1 + x2").fit(data, estimator="ML")
    restricted = longsem.Model("y ~ x1 + 0*x2").fit(data, estimator="ML")
    lrt = longsem.compare(full, restricted)
    assert lrt.method == "standard"
    assert lrt.statistic == pytest.approx(2 * (full.loglik - restricted.loglik))


def test_order_matters(nested_fits):
    full, restricted = nested_fits
    with pytest.raises(longsem.NotNestedError):
        longsem.compare(restricted, full)
    with pytest.raises(longsem.NotNestedError):
        longsem.compare(full, full)


def test_different_samples_are_not_nested(nested_fits):
    full, _ = nested_fits
    other = longsem.Model("y ~ x1 + 0*x2").fit(_regression_frame(n=200))
    with pytest.raises(longsem.NotNestedError, match="different samples"):
        longsem.compare(full, other)


def test_negative_statistic_is_clamped():
    a = _fake(loglik=-500.0, npar=6, df=3)
    b = _fake(loglik=-499.9, npar=5, df=4)
    lrt = longsem.compare(a, b)
    assert lrt.statistic == 0.0
    assert lrt.pvalue == pytest.approx(1.0)
    assert any("clamped" in note for note in lrt.notes)


def test_scaled_difference():
    a = _fake(loglik=-500.0, npar=6, df=3, trace=3.6)
    b = _fake(loglik=-505.0, npar=4, df=5, trace=6.0)
    lrt = longsem.compare(a, b)
    cd = (6.0 - 3.6) / 2
    assert lrt.method == "satorra.bentler.2001"
    assert lrt.scaling == pytest.approx(cd)
    assert lrt.statistic == pytest.approx(10.0 / cd)
    assert lrt.df == 2


def test_non_positive_correction_reports_unscaled():
    a = _fake(loglik=-500.0, npar=6, df=3, trace=4.0)
    b = _fake(loglik=-505.0, npar=4, df=5, trace=3.0)
    lrt = longsem.compare(a, b)
    assert lrt.method == "standard"
    assert lrt.statistic == pytest.approx(10.0)
    assert lrt.notes


def test_compare_sequence(nested_fits):
    full, restricted = nested_fits
    table = longsem.compare_sequence(restricted, full, names=["restricted", "full"])
    assert list(table.index) == ["full", "restricted"]
    assert list(table.columns) == ["Df", "AIC", "BIC", "Chisq", "Chisq diff", "Df diff", "Pr(>Chisq)"]
    assert np.isnan(table.loc["full", "Chisq diff"])
    assert table.loc["restricted", "Df diff"] == 1
    assert table.loc["restricted", "Chisq diff"] == pytest.approx(longsem.compare(full, restricted).statistic)

    with pytest.raises(ValueError):
        longsem.compare_sequence(full, restricted, names=["only one"])
