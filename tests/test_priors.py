from __future__ import annotations

import math

import pytest

from bvsel.models.priors import (
    NormalPrior,
    RegularizedHorseshoePrior,
    StudentTPrior,
    horseshoe_global_scale,
    prior_from_config,
)


def test_horseshoe_global_scale_formula():
    assert horseshoe_global_scale(2, 10, 100) == pytest.approx(2 / 8 / 10)
    assert horseshoe_global_scale(1, 5, 400, sigma=3.0) == pytest.approx(1 / 4 / 20 * 3.0)
    with pytest.raises(ValueError):
        horseshoe_global_scale(5, 5, 100)


def test_resolve_global_scale_defaults_and_override():
    rhs = RegularizedHorseshoePrior()
    assert rhs.resolve_global_scale(100, 10) == pytest.approx(2 / 8 / math.sqrt(100))
    assert RegularizedHorseshoePrior(global_scale=0.01).resolve_global_scale(100, 10) == 0.01
    assert RegularizedHorseshoePrior(p0=3).resolve_global_scale(25, 6) == pytest.approx(3 / 3 / 5)


def test_explicit_p0_must_be_below_number_of_covariates():
    with pytest.raises(ValueError):
        RegularizedHorseshoePrior(p0=6).resolve_global_scale(25, 6)
    with pytest.raises(ValueError):
        RegularizedHorseshoePrior(p0=8).resolve_global_scale(25, 6)
    # the default guess is capped instead
    assert RegularizedHorseshoePrior().resolve_global_scale(16, 1) == pytest.approx(0.5 / 0.5 / 4)


def test_prior_from_config_names():
    assert prior_from_config({"name": "student_t", "df": 3}) == StudentTPrior(df=3)
    assert prior_from_config(None) == NormalPrior()
    hs = prior_from_config({"name": "horseshoe", "p0": 2, "slab_scale": 1.5})
    assert isinstance(hs, RegularizedHorseshoePrior)
    assert hs.p0 == 2 and hs.slab_scale == 1.5
    with pytest.raises(ValueError):
        prior_from_config({"name": "laplace"})


def test_prior_parameter_validation():
    with pytest.raises(ValueError):
        NormalPrior(scale=0.0)
    with pytest.raises(ValueError):
        StudentTPrior(df=-1.0)
    with pytest.raises(ValueError):
        RegularizedHorseshoePrior(slab_df=0.0)
