"""Tests for the high-level longsem.Model front-end."""

import numpy as np
import pandas as pd
import pytest

from longsem import EdgeKind, Model, ModelSpecificationError, SemFit, VariableKind


def test_model_generates_spec_from_formulas():
    model = Model(
        [
            "eta =~ y1 + y2 + y3",
            "y1 ~ x1",
            "eta ~ x2",
            "y2 ~~ y3",
        ]
    )

    spec = model.spec
    var_map = {v.name: v for v in spec.variables}
    assert var_map["eta"].kind == VariableKind.Latent
    assert var_map["x1"].kind == VariableKind.Exogenous
    assert var_map["y1"].kind == VariableKind.Observed
    assert spec.latent == ["eta"]

    user = [p for p in spec.parameters if p.user]
    kinds = [p.kind for p in user]
    assert kinds.count(EdgeKind.Loading) == 3
    assert kinds.count(EdgeKind.Regression) == 2
    assert kinds.count(EdgeKind.Covariance) == 1


def test_model_accepts_text_block():
    text = """
    # two-indicator factor
    f =~ a + b; f ~~ 1*f
    a ~ 1
    """
    model = Model(text)
    assert model.spec.latent == ["f"]
    assert [p.fixed for p in model.spec.parameters if p.kind == EdgeKind.Loading] == [1.0, None]
    assert Model(["f =~ a + b", "f ~~ 1*f", "a ~ 1"]).spec == model.spec


def test_model_rejects_empty_and_malformed_input():
    with pytest.raises(ModelSpecificationError):
        Model([])
    with pytest.raises(ModelSpecificationError):
        Model(["  ", ""])
    with pytest.raises(ModelSpecificationError):
        Model(["y <- x"])


def test_to_spec_checks_columns():
    model = Model(["f =~ a + b + c"])
    assert model.to_spec(observed=["a", "b", "c", "extra"]) == model.spec
    with pytest.raises(ModelSpecificationError, match="'c'"):
        model.to_spec(observed=["a", "b"])


def test_copy_is_independent():
    model = Model(["f =~ a + b + c"])
    clone = model.copy()
    assert clone is not model
    assert clone.equations == model.equations
    assert clone.spec == model.spec

    equations = model.equations
    equations.append("a ~~ b")
    assert model.equations == ["f =~ a + b + c"]


def test_from_spec_round_trips():
    model = Model(["f =~ a + l2*b + l2*c", "a ~ 0*1"])
    again = Model.from_spec(model.spec)
    assert again.spec == model.spec


@pytest.fixture(scope="module")
def two_factor_fit():
    np.random.seed(5)
    n = 300
    f = np.random.multivariate_normal([0.0, 0.0], [[1.0, 0.4], [0.4, 1.0]], size=n)
    data = {}
    for j, lam in enumerate([1.0, 0.8, 0.7]):
        data[f"a{j + 1}"] = (lam * f[:, 0] + 0.6 * np.random.randn(n)).tolist()
        data[f"b{j + 1}"] = (lam * f[:, 1] + 0.6 * np.random.randn(n)).tolist()
    # Plain dict input is converted to a frame.
    return Model(["F1 =~ a1 + a2 + a3", "F2 =~ b1 + b2 + b3"]).fit(data)


def test_fit_with_dict_data(two_factor_fit):
    fit = two_factor_fit
    assert isinstance(fit, SemFit)
    assert fit.converged
    assert isinstance(fit.data, pd.DataFrame)
    assert fit.fit_result.n_obs == 300
    assert "lambda_a2_on_F1" in fit.parameter_estimates
    assert set(fit.parameter_estimates) == set(fit.standard_errors)
    assert all(se > 0 for se in fit.standard_errors.values())
    assert "SemFit(npar=" in repr(fit)


def test_summary_lists_fit_and_parameters(two_factor_fit):
    text = repr(two_factor_fit.summary())
    assert "Optimization converged: True" in text
    assert "Estimator: MLR" in text
    assert "CFI:" in text
    assert "AIC:" in text
    assert "F1" in text and "a2" in text


def test_standardized_solution(two_factor_fit):
    std = two_factor_fit.standardized_solution()
    assert list(std.columns) == ["lhs", "op", "rhs", "label", "std_lv", "std_all"]

    loadings = std[std.op == "=~"]
    assert len(loadings) == 6
    assert np.all(np.abs(loadings.std_all) < 1.0)

    cov = std[(std.op == "~~") & (std.lhs == "F1") & (std.rhs == "F2")]
    assert cov.std_lv.iloc[0] == pytest.approx(cov.std_all.iloc[0])
    assert 0.2 < cov.std_all.iloc[0] < 0.6

    variances = std[(std.op == "~~") & (std.lhs == "F1") & (std.rhs == "F1")]
    assert variances.std_all.iloc[0] == pytest.approx(1.0)


def test_latent_moments(two_factor_fit):
    cov = two_factor_fit.cov_lv()
    assert list(cov.index) == ["F1", "F2"]
    assert cov.loc["F1", "F2"] == pytest.approx(cov.loc["F2", "F1"])

    cor = two_factor_fit.cor_lv()
    assert np.diag(cor.to_numpy()) == pytest.approx([1.0, 1.0])
    assert cor.loc["F1", "F2"] == pytest.approx(
        cov.loc["F1", "F2"] / np.sqrt(cov.loc["F1", "F1"] * cov.loc["F2", "F2"])
    )


def test_implied_moments_match_sample(two_factor_fit):
    moments = two_factor_fit.implied_moments()
    assert list(moments["mean"].index) == two_factor_fit.spec.observed
    # Saturated mean structure reproduces the sample means.
    assert moments["mean"].to_numpy() == pytest.approx(
        two_factor_fit.data[two_factor_fit.spec.observed].mean().to_numpy(), abs=1e-3
    )
