import json

import numpy as np
import pandas as pd
import pytest

import longsem
from longsem import GrowthBasis, SemFit


def _panel(n=200, seed=21):
    np.random.seed(seed)
    i = 2.0 + np.random.randn(n)
    s = 0.5 + 0.3 * np.random.randn(n)
    data = pd.DataFrame({f"Y{t}": i + s * (t - 1) + 0.5 * np.random.randn(n) for t in (1, 2, 3, 4)})
    data.iloc[::7, 3] = np.nan
    return data


GROWTH = [
    "i =~ 1*Y1 + 1*Y2 + 1*Y3 + 1*Y4",
    "s =~ 0*Y1 + 1*Y2 + 2*Y3 + 3*Y4",
    "i ~ 1",
    "s ~ 1",
    "Y1 ~ 0*1",
    "Y2 ~ 0*1",
    "Y3 ~ 0*1",
    "Y4 ~ 0*1",
    "Y1 ~~ e*Y1",
    "Y2 ~~ e*Y2",
    "Y3 ~~ e*Y3",
    "Y4 ~~ e*Y4",
]


@pytest.fixture(scope="module")
def growth_fit():
    return longsem.Model(GROWTH).fit(_panel())


def test_save_and_load(growth_fit, tmp_path):
    path = tmp_path / "growth.json"
    growth_fit.save(str(path))
    loaded = SemFit.load(str(path))

    assert loaded.spec == growth_fit.spec
    assert loaded.loglik == growth_fit.loglik
    assert loaded.converged == growth_fit.converged
    assert loaded.fit_result.n_obs == growth_fit.fit_result.n_obs
    assert loaded.fit_result.estimator == growth_fit.fit_result.estimator
    np.testing.assert_allclose(loaded.fit_result.parameters, growth_fit.fit_result.parameters)
    np.testing.assert_allclose(loaded.fit_result.covariance, growth_fit.fit_result.covariance)
    assert loaded.fit_indices == pytest.approx(growth_fit.fit_indices, nan_ok=True)
    pd.testing.assert_frame_equal(loaded.parameter_table(), growth_fit.parameter_table())

    original = growth_fit.implied_by_pattern()
    again = loaded.implied_by_pattern()
    assert [p["variables"] for p in again] == [p["variables"] for p in original]
    for a, b in zip(again, original):
        pd.testing.assert_frame_equal(a["cov"], b["cov"])


def test_payload_is_plain_json(growth_fit):
    payload = growth_fit.to_dict()
    text = json.dumps(payload)
    assert "NaN" not in text
    assert payload["format"] == "longsem-fit"
    assert payload["observed"] == ["Y1", "Y2", "Y3", "Y4"]


def test_labels_and_free_groups_survive(growth_fit):
    loaded = SemFit.from_dict(json.loads(json.dumps(growth_fit.to_dict())))
    rows = [p for p in loaded.spec.parameters if p.label == "e"]
    assert len(rows) == 4
    assert len({p.free for p in rows}) == 1
    assert loaded.parameter_estimates["e"] == growth_fit.parameter_estimates["e"]


def test_warnings_round_trip():
    # Exact-moment data whose one-factor solution is a Heywood case.
    rng = np.random.RandomState(2)
    z = rng.randn(150, 3)
    z -= z.mean(axis=0)
    z = np.linalg.solve(np.linalg.cholesky(np.cov(z, rowvar=False, ddof=0)), z.T).T
    cor = np.array([[1.0, 0.8, 0.8], [0.8, 1.0, 0.5], [0.8, 0.5, 1.0]])
    data = pd.DataFrame(z @ np.linalg.cholesky(cor).T, columns=["x1", "x2", "x3"])
    with pytest.warns(longsem.BoundaryEstimateWarning):
        fit = longsem.Model("f =~ x1 + x2 + x3").fit(data)
    assert fit.warnings

    loaded = SemFit.from_dict(fit.to_dict())
    assert [type(w) for w in loaded.warnings] == [type(w) for w in fit.warnings]
    assert [str(w) for w in loaded.warnings] == [str(w) for w in fit.warnings]
    boundary = [w for w in loaded.warnings if isinstance(w, longsem.BoundaryEstimateWarning)]
    assert boundary[0].parameter == "psi_x1_x1"
    assert np.isnan(loaded.standard_errors["psi_x1_x1"])


def test_convergence_error_round_trip():
    np.random.seed(4)
    x = np.random.randn(80)
    data = pd.DataFrame({"x": x, "y": 0.5 * x + np.random.randn(80)})
    fit = longsem.Model("y ~ x").fit(data, max_iterations=1)
    assert not fit.converged

    loaded = SemFit.from_dict(fit.to_dict())
    assert not loaded.converged
    with pytest.raises(longsem.ConvergenceError) as info:
        loaded.check_convergence()
    assert info.value.result is loaded.fit_result


def test_mismatched_table_is_rejected(growth_fit):
    payload = growth_fit.to_dict()
    payload["parameter_table"][0]["label"] = "tampered"
    with pytest.raises(longsem.SpecificationError, match="does not match"):
        SemFit.from_dict(payload)

    payload = growth_fit.to_dict()
    payload["version"] = 99
    with pytest.raises(ValueError):
        SemFit.from_dict(payload)
    with pytest.raises(ValueError):
        SemFit.from_dict({"format": "something-else"})


def test_loaded_specification_feeds_growth_projection(tmp_path):
    text = longsem.measurement_block("ATT", [1, 2, 3], [1, 2, 3], "strong")
    spec = longsem.parse_spec(text)
    path = tmp_path / "strong.txt"
    path.write_text(spec.to_text())

    reloaded = longsem.parse_spec(path.read_text())
    assert reloaded == spec
    assert longsem.project_growth(reloaded, GrowthBasis.linear(), [1, 2, 3]) == longsem.project_growth(
        spec, GrowthBasis.linear(), [1, 2, 3]
    )
