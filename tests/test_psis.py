from __future__ import annotations

import arviz as az
import numpy as np
import numpy.testing as npt
import pytest
from scipy.special import logsumexp

from bvsel.loo.psis import as_inference_data, mean_r_eff, psislw


def test_psislw_weights_normalised_and_k_small_for_light_tails():
    rng = np.random.default_rng(12)
    log_lik = rng.normal(-1.0, 0.1, size=(1000, 4))
    lw, k = psislw(-log_lik)
    assert lw.shape == (1000, 4)
    assert k.shape == (4,)
    npt.assert_allclose(logsumexp(lw, axis=0), 0.0, atol=1e-10)
    assert np.all(k < 0.5)


def test_psislw_flags_heavy_tail():
    rng = np.random.default_rng(13)
    # exp(Exponential(scale=2)) ratios have a Pareto tail with shape k = 2
    log_lik = -rng.exponential(scale=2.0, size=(4000, 2))
    _, k = psislw(-log_lik)
    assert np.all(k > 0.7)


def test_psislw_matches_arviz_loo_pareto_k():
    rng = np.random.default_rng(14)
    log_lik = rng.normal(-1.0, 0.5, size=(500, 6))
    _, k = psislw(-log_lik, r_eff=0.8)
    elpd = az.loo(as_inference_data(log_lik), pointwise=True, reff=0.8)
    npt.assert_allclose(k, np.asarray(elpd["pareto_k"]).reshape(-1))


def test_as_inference_data_layout():
    log_lik = np.zeros((40, 3))
    idata = as_inference_data(log_lik)
    assert idata.log_likelihood["y"].shape == (1, 40, 3)


def test_mean_r_eff():
    assert mean_r_eff(None) == 1.0
    assert mean_r_eff(np.array([0.5, 1.0])) == pytest.approx(0.75)
    with pytest.raises(ValueError):
        mean_r_eff(np.array([0.0, 0.0]))


def test_psislw_input_validation():
    with pytest.raises(ValueError):
        psislw(np.zeros((5, 3)))
    with pytest.raises(ValueError):
        psislw(np.zeros((20, 3, 2)))
    bad = np.zeros((50, 2))
    bad[0, 0] = np.inf
    with pytest.raises(ValueError):
        psislw(bad)
