from __future__ import annotations

import numpy as np
import numpy.testing as npt
import pytest
from scipy import stats
from scipy.special import logsumexp

from bvsel.loo.elpd import LooResult, loo, loo_compare, reloo


def _normal_loglik(seed: int = 0, n: int = 60, draws: int = 800) -> np.ndarray:
    rng = np.random.default_rng(seed)
    y = rng.normal(1.0, 1.0, size=n)
    mu = rng.normal(y.mean(), 1.0 / np.sqrt(n), size=draws)
    return stats.norm.logpdf(y[None, :], mu[:, None], 1.0)


def test_loo_basic_quantities():
    ll = _normal_loglik()
    res = loo(ll)
    lpd = float(np.sum(logsumexp(ll, axis=0) - np.log(ll.shape[0])))
    assert res.n_obs == 60
    assert res.elpd_loo < lpd
    assert res.p_loo == pytest.approx(lpd - res.elpd_loo)
    assert 0.5 < res.p_loo < 2.0
    assert res.looic == pytest.approx(-2.0 * res.elpd_loo)
    assert res.se == pytest.approx(np.sqrt(60 * np.var(res.elpd_i)))
    assert not res.warning
    assert res.as_dict()["n_bad_k"] == 0


def test_loo_reports_bad_pareto_k():
    rng = np.random.default_rng(1)
    ll = -rng.exponential(scale=2.0, size=(2000, 3))
    res = loo(ll, k_threshold=0.7)
    assert res.warning
    npt.assert_array_equal(res.bad_k, np.arange(3))
    payload = res.as_dict(pointwise=True)
    assert len(payload["pareto_k"]) == 3


def test_compare_ordering_and_paired_difference():
    good = loo(_normal_loglik(seed=2))
    rng = np.random.default_rng(2)
    worse_ll = _normal_loglik(seed=2) - np.abs(rng.normal(0.5, 0.1, size=60))[None, :]
    worse = loo(worse_ll)

    gap = good.elpd_i - worse.elpd_i
    table = loo_compare({"worse": worse, "good": good})
    assert list(table.index) == ["good", "worse"]
    assert table.loc["good", "elpd_diff"] == 0.0
    assert table.loc["worse", "elpd_diff"] == pytest.approx(gap.sum())
    assert table.loc["worse", "se_diff"] == pytest.approx(np.sqrt(gap.size * np.var(gap)))
    assert table.loc["good", "weight"] > table.loc["worse", "weight"]
    assert not table["warning"].any()


def test_loo_compare_needs_two_models():
    with pytest.raises(ValueError):
        loo_compare({"only": loo(_normal_loglik())})


def test_loo_compare_rejects_mismatched_observations():
    a = loo(_normal_loglik(n=20))
    b = loo(_normal_loglik(n=30))
    with pytest.raises(ValueError):
        loo_compare({"a": a, "b": b})


class _ConstantModel:
    """Stands in for a fitted GLM: the refit predicts N(0, 1) for every row."""

    feature_names_ = ["x1"]

    def __init__(self):
        self.fits = []

    def clone(self):
        return self

    def fit(self, X, y, feature_names=None):
        self.fits.append(X.shape[0])
        return self

    def log_likelihood(self, X, y):
        return np.tile(stats.norm.logpdf(np.asarray(y)), (50, 1))


def test_reloo_replaces_bad_observations_with_exact_refits():
    ll = _normal_loglik(n=10)
    base = loo(ll)
    forced = LooResult(
        elpd_loo=base.elpd_loo,
        se=base.se,
        p_loo=base.p_loo,
        elpd_i=base.elpd_i,
        pareto_k=np.where(np.arange(10) == 3, 1.2, 0.1),
    )
    model = _ConstantModel()
    X = np.zeros((10, 1))
    y = np.linspace(-1.0, 1.0, 10)
    out = reloo(model, X, y, forced)

    assert model.fits == [9]
    npt.assert_array_equal(out.refitted, [3])
    assert out.pareto_k[3] == 0.0
    assert out.elpd_i[3] == pytest.approx(stats.norm.logpdf(y[3]))
    npt.assert_allclose(np.delete(out.elpd_i, 3), np.delete(base.elpd_i, 3))
    assert not out.warning


def test_reloo_result_feeds_model_comparison():
    rng = np.random.default_rng(3)
    heavy = loo(-rng.exponential(scale=2.0, size=(2000, 3)))
    assert heavy.warning
    fixed = reloo(_ConstantModel(), np.zeros((3, 1)), np.zeros(3), heavy)
    assert not fixed.warning
    npt.assert_allclose(np.asarray(fixed.elpd_data["loo_i"]).reshape(-1), fixed.elpd_i)

    other = loo(rng.normal(-3.0, 0.01, size=(2000, 3)))
    table = loo_compare({"other": other, "fixed": fixed})
    assert table.index[0] == "fixed"
    assert table.loc["other", "elpd_diff"] == pytest.approx(fixed.elpd_loo - other.elpd_loo)
    assert table.loc["fixed", "n_bad_k"] == 0
