"""Tests for convergence diagnostics utilities."""
from __future__ import annotations

import numpy as np
import pytest

from bvsel.diagnostics.convergence import (
    check_convergence,
    effective_sample_size,
    relative_efficiency,
    split_rhat,
    summarize_convergence,
)


def test_split_rhat_single_chain():
    rng = np.random.default_rng(0)
    draws = rng.normal(size=(200, 3))
    rhat = split_rhat(draws)
    assert rhat.shape == (3,)
    assert np.all(rhat < 1.1)


def test_split_rhat_detects_shifted_chains():
    rng = np.random.default_rng(3)
    chains = rng.normal(size=(4, 300))
    chains[0] += 5.0
    assert float(split_rhat(chains, has_chains=True)) > 1.1


def test_effective_sample_size_reasonable():
    rng = np.random.default_rng(1)
    draws = rng.normal(size=(200,))
    ess = effective_sample_size(draws)
    assert ess > 100


def test_effective_sample_size_autocorrelated_chain_is_small():
    rng = np.random.default_rng(4)
    x = np.empty(1000)
    x[0] = 0.0
    for t in range(1, x.size):
        x[t] = 0.95 * x[t - 1] + rng.normal()
    assert effective_sample_size(x) < 150


def test_summarize_convergence_keys():
    rng = np.random.default_rng(2)
    draws = rng.normal(size=(2, 200, 2))
    summary = summarize_convergence({"beta": draws, "empty": np.zeros((2, 200, 0))})
    assert "beta" in summary
    assert "empty" not in summary
    beta_summary = summary["beta"]
    assert "rhat_max" in beta_summary
    assert "ess_min" in beta_summary


def test_relative_efficiency_shape_and_range():
    rng = np.random.default_rng(5)
    ll = rng.normal(size=(2, 100, 7))
    r_eff = relative_efficiency(ll)
    assert r_eff.shape == (7,)
    assert np.all((r_eff > 0) & (r_eff <= 1.0))
    with pytest.raises(ValueError):
        relative_efficiency(ll[0])


def test_check_convergence_flags_divergences_and_low_acceptance():
    rng = np.random.default_rng(6)
    samples = {"alpha": rng.normal(size=(2, 200))}
    ok = check_convergence(samples, accept_prob=np.full((2, 200), 0.9), target_accept_prob=0.9)
    assert ok.ok
    assert ok.num_chains == 2 and ok.num_draws == 200

    bad = check_convergence(samples, divergences=3, accept_prob=np.full((2, 200), 0.5), target_accept_prob=0.9)
    assert not bad.ok
    assert bad.divergences == 3
    assert len(bad.messages) == 2
    assert bad.as_dict()["ok"] is False
