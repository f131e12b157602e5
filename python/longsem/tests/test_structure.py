"""Tests for the RAM mapping from parameters to implied moments."""

import numpy as np
import pandas as pd
import pytest

import longsem
from longsem.ir import parameter_lookup


def _theta(spec, values):
    lookup = parameter_lookup(spec)
    theta = np.zeros(spec.n_free)
    for name, value in values.items():
        theta[lookup[name]] = value
    return theta


def _cfa_theta(spec):
    return _theta(
        spec,
        {
            "lambda_x2_on_f": 0.8,
            "lambda_x3_on_f": 1.2,
            "psi_x1_x1": 0.5,
            "psi_x2_x2": 0.4,
            "psi_x3_x3": 0.3,
            "nu_x1": 1.0,
            "nu_x2": 2.0,
            "nu_x3": 3.0,
            "psi_f_f": 1.5,
        },
    )


def test_first_order_factor_model_matches_hand_built_matrices():
    spec = longsem.parse_spec(["f =~ x1 + x2 + x3", "f ~ 1", "x1 ~ 0*1"])
    theta = _theta(
        spec,
        {
            "lambda_x2_on_f": 0.8,
            "lambda_x3_on_f": 1.2,
            "psi_x1_x1": 0.5,
            "psi_x2_x2": 0.4,
            "psi_x3_x3": 0.3,
            "nu_f": 0.7,
            "nu_x2": 2.0,
            "nu_x3": 3.0,
            "psi_f_f": 1.5,
        },
    )
    mapper = longsem.StructureMapper(spec)
    mu, sigma = mapper.implied_moments(theta)

    lam = np.array([[1.0], [0.8], [1.2]])
    psi = np.array([[1.5]])
    theta_mat = np.diag([0.5, 0.4, 0.3])
    tau = np.array([0.0, 2.0, 3.0])
    alpha = np.array([0.7])
    assert sigma == pytest.approx(lam @ psi @ lam.T + theta_mat)
    assert mu == pytest.approx(tau + lam @ alpha)

    blocks = mapper.matrices(theta)
    assert blocks["Lambda"] == pytest.approx(lam)
    assert blocks["Psi"] == pytest.approx(psi)
    assert blocks["Theta"] == pytest.approx(theta_mat)
    assert blocks["alpha"] == pytest.approx(alpha)


def test_second_order_growth_moments():
    spec = longsem.parse_spec(
        [
            "F_T1 =~ y1 + y2",
            "F_T2 =~ z1 + z2",
            "F_T3 =~ w1 + w2",
            "i =~ 1*F_T1 + 1*F_T2 + 1*F_T3",
            "s =~ 0*F_T1 + 1*F_T2 + 2*F_T3",
            "i ~ 1",
            "s ~ 1",
            "y1 ~ 0*1",
            "z1 ~ 0*1",
            "w1 ~ 0*1",
        ]
    )
    mapper = longsem.StructureMapper(spec)
    rng = np.random.RandomState(3)
    theta = np.abs(rng.uniform(0.2, 1.0, spec.n_free))
    mu, sigma = mapper.implied_moments(theta)
    blocks = mapper.matrices(theta)

    # Two-level algebra written out: eta = B eta + zeta, y = tau + Lambda eta + eps.
    inv = np.linalg.inv(np.eye(blocks["B"].shape[0]) - blocks["B"])
    lam = blocks["Lambda"] @ inv
    assert sigma == pytest.approx(lam @ blocks["Psi"] @ lam.T + blocks["Theta"])
    assert mu == pytest.approx(blocks["tau"] + lam @ blocks["alpha"])


def test_moment_derivatives_match_finite_differences():
    spec = longsem.parse_spec(["f =~ x1 + l*x2 + l*x3 + x4", "f ~ GENDER", "x1 ~~ x2"])
    mapper = longsem.StructureMapper(spec)
    rng = np.random.RandomState(0)
    theta = rng.uniform(0.3, 1.2, spec.n_free)
    dmu, dsigma = mapper.moment_derivatives(theta)

    h = 1e-6
    for q in range(spec.n_free):
        up = theta.copy()
        down = theta.copy()
        up[q] += h
        down[q] -= h
        mu_up, sig_up = mapper.implied_moments(up)
        mu_dn, sig_dn = mapper.implied_moments(down)
        assert dmu[q] == pytest.approx((mu_up - mu_dn) / (2 * h), abs=1e-6)
        assert dsigma[q] == pytest.approx((sig_up - sig_dn) / (2 * h), abs=1e-6)

    jac = mapper.moment_jacobian(theta)
    assert jac.shape == (spec.n_moments, spec.n_free)


def test_start_values_follow_data():
    spec = longsem.parse_spec("f =~ x1 + x2 + x3")
    data = pd.DataFrame({"x1": [1.0, 2.0, 3.0, 4.0], "x2": [2.0, 2.0, 4.0, 4.0], "x3": [0.0, 1.0, np.nan, 2.0]})
    mapper = longsem.StructureMapper(spec)
    theta = mapper.start_values(data)
    lookup = parameter_lookup(spec)
    assert theta[lookup["lambda_x2_on_f"]] == 1.0
    assert theta[lookup["nu_x1"]] == pytest.approx(2.5)
    assert theta[lookup["nu_x3"]] == pytest.approx(1.0)
    assert theta[lookup["psi_x1_x1"]] == pytest.approx(0.5 * 1.25)
    assert theta[lookup["psi_f_f"]] == pytest.approx(0.05)


def test_check_start_rejects_negative_variance():
    spec = longsem.parse_spec("f =~ x1 + x2 + x3")
    theta = _cfa_theta(spec)
    mapper = longsem.StructureMapper(spec)
    mapper.check_start(theta)

    theta[parameter_lookup(spec)["psi_f_f"]] = -1.0
    with pytest.raises(longsem.IdentificationError) as excinfo:
        mapper.check_start(theta)
    assert excinfo.value.block == "Psi"
    assert excinfo.value.eigenvalue == pytest.approx(-1.0)
