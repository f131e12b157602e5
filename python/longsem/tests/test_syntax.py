"""Tests for the equation parser."""

import pytest

from longsem.errors import SpecificationError
from longsem.syntax import (
    Covariance,
    Intercept,
    Loading,
    Modifier,
    Regression,
    Variance,
    format_number,
    parse_equations,
    split_terms,
)


def test_loading_premultipliers():
    eqs = parse_equations("f =~ l1*x1 + 0.5*x2 + NA*x3 + x4")
    assert eqs == [
        Loading("f", "x1", Modifier(label="l1")),
        Loading("f", "x2", Modifier(fixed=0.5)),
        Loading("f", "x3", Modifier(free=True)),
        Loading("f", "x4"),
    ]


def test_regression_and_intercepts():
    eqs = parse_equations(["y ~ x + b*z", "y ~ 1", "x ~ t1*1", "s ~ 0"])
    assert eqs[0] == Regression("y", "x")
    assert eqs[1] == Regression("y", "z", Modifier(label="b"))
    assert eqs[2] == Intercept("y")
    assert eqs[3] == Intercept("x", Modifier(label="t1"))
    assert eqs[4] == Intercept("s", Modifier(fixed=0.0))


def test_fixed_intercept_with_premultiplier():
    (eq,) = parse_equations("ATT1_T1 ~ 0*1")
    assert eq == Intercept("ATT1_T1", Modifier(fixed=0.0))


def test_variances_and_covariances():
    eqs = parse_equations("a ~~ a + b + 0*c")
    assert eqs == [
        Variance("a"),
        Covariance("a", "b"),
        Covariance("a", "c", Modifier(fixed=0.0)),
    ]


def test_comments_and_semicolons():
    text = """
    # measurement part
    f =~ x1 + x2 ; f ~~ 1*f   # fixed variance
    """
    eqs = parse_equations(text)
    assert len(eqs) == 3
    assert eqs[2] == Variance("f", Modifier(fixed=1.0))


def test_source_is_kept_but_not_compared():
    (eq,) = parse_equations("f =~ x1")
    assert eq.source == "f =~ x1"
    assert eq == Loading("f", "x1")


@pytest.mark.parametrize(
    "text, message",
    [
        ("f =~ ", "empty"),
        ("x := y", "Unrecognized"),
        ("f =~ 2x", "invalid variable name"),
        ("f =~ a-b*x", "invalid premultiplier"),
        ("f =~ 1", "constant"),
        ("a ~~ 1", "constant"),
        ("   # nothing here", "at least one equation"),
    ],
)
def test_malformed_equations(text, message):
    with pytest.raises(SpecificationError, match=message):
        parse_equations(text)


def test_error_names_the_equation():
    with pytest.raises(SpecificationError) as excinfo:
        parse_equations("f =~ x1 + bad name")
    assert excinfo.value.equation == "f =~ x1 + bad name"


def test_split_terms_respects_parentheses():
    assert split_terms("a + b*(c + d) + e") == ["a", "b*(c + d)", "e"]
    assert split_terms(" + a + ") == ["a"]


def test_equations_print_back():
    assert str(Loading("f", "x", Modifier(fixed=0.25))) == "f =~ 0.25*x"
    assert str(Intercept("x", Modifier(label="t1"))) == "x ~ t1*1"
    assert str(Covariance("a", "b", Modifier(free=True))) == "a ~~ NA*b"
    assert str(Variance("a")) == "a ~~ a"


def test_format_number_round_trips():
    for value in (0.0, 1.0, 0.5, 1.0 / 3.0, 1e-12, 123456789.125):
        assert float(format_number(value)) == value
    assert format_number(2.0) == "2"


def test_labelled_value_prints_and_parses_back():
    eq = Loading("f", "x1", Modifier(fixed=1.0, label="a"))
    assert str(eq) == "f =~ a*1*x1"
    assert parse_equations(str(eq)) == [eq]
    (free,) = parse_equations("y ~ NA*b*x")
    assert free == Regression("y", "x", Modifier(label="b", free=True))
    assert parse_equations(str(free)) == [free]


@pytest.mark.parametrize("text", ["f =~ 1*2*x", "f =~ a*b*x", "f =~ NA*0.5*x"])
def test_conflicting_chained_premultipliers(text):
    with pytest.raises(SpecificationError, match="more than one"):
        parse_equations(text)
