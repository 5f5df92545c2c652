from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bvsel.diagnostics.convergence import ConvergenceError
from bvsel.loo.elpd import loo, loo_compare
from bvsel.models import BayesianGLM, RegularizedHorseshoePrior, StudentTPrior, model_from_config
from bvsel.projection.project import ReferenceModel
from bvsel.selection.search import ForwardSelector
from data.generators import SCENARIO_GENERATORS, SyntheticConfig


def _synthetic_regression(seed: int = 0) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    rng = np.random.default_rng(seed)
    n, p = 80, 3
    X = rng.normal(size=(n, p))
    beta = np.array([1.0, 0.0, -0.5])
    y = 1.0 + X @ beta + rng.normal(scale=0.5, size=n)
    return X, y, beta


def test_gaussian_glm_posterior_shapes_and_summary():
    X, y, beta = _synthetic_regression(seed=123)
    model = BayesianGLM(
        family="gaussian",
        num_warmup=200,
        num_samples=200,
        num_chains=2,
        seed=2024,
    )
    fitted = model.fit(X, y, feature_names=["a", "b", "c"])

    draws = fitted.draws_
    assert draws.coef.shape == (2, 200, 3)
    assert draws.aux.shape == (2, 200)
    assert fitted.log_likelihood(X, y).shape == (400, 80)
    assert fitted.log_likelihood(X, y, by_chain=True).shape == (2, 200, 80)
    assert fitted.predict(X[:5]).shape == (5,)
    np.testing.assert_allclose(fitted.coef_, beta, atol=0.3)

    table = fitted.summary(prob=0.9)
    assert list(table.index) == ["(Intercept)", "a", "b", "c", "sigma"]
    assert {"mean", "sd", "lower", "upper", "rhat", "ess", "ess_ratio"} <= set(table.columns)
    assert table.loc["sigma", "mean"] == pytest.approx(0.5, abs=0.15)
    assert fitted.convergence_ is not None


def test_logistic_single_signal_scenario():
    data = SCENARIO_GENERATORS["single_signal"](SyntheticConfig(n=500, p=5, seed=42))
    model = BayesianGLM(family="binomial", link="logit", num_warmup=300, num_samples=300, num_chains=2, seed=7)
    model.fit(data.X, data.y)

    lower, upper = model.credible_intervals(prob=0.99)
    assert lower[0] > 0.0
    assert np.all(lower[1:] < 0.0) and np.all(upper[1:] > 0.0)
    proba = model.predict_proba(data.X[:4])
    assert proba.shape == (4, 2)
    np.testing.assert_allclose(proba.sum(axis=1), 1.0)

    ref = ReferenceModel.from_glm(model, data.X, data.y)
    assert ref.r_eff is not None and ref.r_eff.shape == (500,)
    result = ForwardSelector(ref, seed=0).fit()
    assert result.path[0] == 0
    assert result.suggested_size == 1
    assert result.selected == ["x1"]

    null_model = model.clone().fit(data.X[:, :0], data.y)
    table = loo_compare({
        "full": loo(model.log_likelihood(data.X, data.y)),
        "intercept_only": loo(null_model.log_likelihood(data.X[:, :0], data.y)),
    })
    assert table.index[0] == "full"
    assert table.loc["intercept_only", "elpd_diff"] > 3.0 * table.loc["intercept_only", "se_diff"]


def test_zero_covariates_leave_coefficients_at_prior():
    data = SCENARIO_GENERATORS["zero_covariates"](
        SyntheticConfig(n=100, p=3, family="binomial", signal={"n_active": 2, "scale": 2.0}, seed=3)
    )
    assert np.all(data.X == 0.0)
    model = BayesianGLM(family="binomial", prior=StudentTPrior(), num_warmup=200, num_samples=200, num_chains=2, seed=1)
    model.fit(data.X, data.y)
    lower, upper = model.credible_intervals(prob=0.9)
    assert np.all(lower < 0.0) and np.all(upper > 0.0)


def test_horseshoe_records_shrinkage_parameters():
    X, y, _ = _synthetic_regression(seed=5)
    model = BayesianGLM(
        family="gaussian",
        prior=RegularizedHorseshoePrior(p0=1),
        num_warmup=200,
        num_samples=200,
        num_chains=1,
        target_accept_prob=0.95,
        seed=11,
    )
    model.fit(X, y)
    assert model.draws_.extras["tau"].shape == (1, 200)
    assert model.draws_.extras["lambda"].shape == (1, 200, 3)
    summaries = model.get_posterior_summaries()
    assert summaries["lambda_mean"].shape == (3,)
    assert "tau" in model.summary().index


def test_intercept_only_fit_and_clone():
    _, y, _ = _synthetic_regression(seed=9)
    model = BayesianGLM(family="gaussian", num_warmup=100, num_samples=100, num_chains=1, seed=0)
    model.fit(np.zeros((y.size, 0)), y)
    assert model.draws_.coef.shape == (1, 100, 0)
    assert model.intercept_ == pytest.approx(y.mean(), abs=0.3)
    clone = model.clone(num_samples=50)
    assert clone.draws_ is None and clone.num_samples == 50


def test_high_leverage_outlier_is_flagged_by_loo():
    rng = np.random.default_rng(17)
    x = rng.normal(size=40)
    y = 0.5 + x + rng.normal(scale=0.5, size=40)
    x[0], y[0] = 8.0, -15.0
    model = BayesianGLM(family="gaussian", num_warmup=300, num_samples=300, num_chains=2, seed=3)
    model.fit(x[:, None], y)

    res = loo(model.log_likelihood(x[:, None], y))
    assert res.warning
    assert 0 in res.bad_k
    assert res.pareto_k[0] == np.max(res.pareto_k)


def test_strict_mode_raises_on_failed_checks():
    X, y, _ = _synthetic_regression(seed=1)
    model = BayesianGLM(
        family="gaussian",
        num_warmup=50,
        num_samples=50,
        num_chains=1,
        strict=True,
        ess_ratio_threshold=1.5,
        seed=0,
    )
    with pytest.raises(ConvergenceError) as excinfo:
        model.fit(X, y)
    assert not excinfo.value.report.ok


def test_invalid_inputs_raise():
    with pytest.raises(ValueError):
        BayesianGLM(family="binomial", link="identity")
    with pytest.raises(ValueError):
        BayesianGLM(chain_method="threads")
    model = BayesianGLM(family="binomial", num_warmup=10, num_samples=10, num_chains=1)
    with pytest.raises(ValueError):
        model.fit(np.zeros((3, 1)), np.array([0.0, 2.0, 1.0]))
    with pytest.raises(ValueError):
        model.fit(np.array([[np.nan], [0.0]]), np.array([0.0, 1.0]))


def test_model_from_config_horseshoe_defaults():
    model = model_from_config(
        {"family": "binomial", "prior": {"name": "hs", "p0": 2}},
        {"num_chains": 2, "num_samples": 100},
        seed=5,
    )
    assert isinstance(model.prior_, RegularizedHorseshoePrior)
    assert model.target_accept_prob == 0.99
    assert model.num_chains == 2 and model.seed == 5
