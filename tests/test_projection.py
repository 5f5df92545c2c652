from __future__ import annotations

import numpy as np
import numpy.testing as npt
import pytest
from scipy.special import expit

from bvsel.models.families import get_family
from bvsel.projection.project import (
    ProjectionError,
    ReferenceModel,
    all_draws,
    cluster_draws,
    project,
    thin_draws,
)


def _gaussian_reference(seed: int = 0, n: int = 200, draws: int = 100) -> ReferenceModel:
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n, 3))
    X -= X.mean(axis=0)
    beta = np.array([1.5, -0.5, 0.0])
    y = 0.5 + X @ beta + rng.normal(size=n)
    return ReferenceModel(
        family=get_family("gaussian"),
        X=X,
        y=y,
        intercept=rng.normal(0.5, 0.05, size=draws),
        coef=beta + rng.normal(0.0, 0.05, size=(draws, 3)),
        aux=np.abs(rng.normal(1.0, 0.05, size=draws)),
    )


def _logistic_reference(seed: int = 1, n: int = 300, draws: int = 60) -> ReferenceModel:
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n, 3))
    beta = np.array([1.0, 0.0, -0.7])
    y = rng.binomial(1, expit(-0.3 + X @ beta)).astype(float)
    return ReferenceModel(
        family=get_family("binomial", "logit"),
        X=X,
        y=y,
        intercept=rng.normal(-0.3, 0.1, size=draws),
        coef=beta + rng.normal(0.0, 0.1, size=(draws, 3)),
    )


def test_gaussian_full_projection_reproduces_reference():
    ref = _gaussian_reference()
    proj = project(ref, [0, 1, 2])
    npt.assert_allclose(proj.coef, ref.coef, atol=1e-4)
    npt.assert_allclose(proj.intercept, ref.intercept, atol=1e-4)
    npt.assert_allclose(proj.aux, ref.aux, rtol=1e-6)
    npt.assert_allclose(proj.kl, 0.0, atol=1e-8)


def test_gaussian_submodel_dispersion_absorbs_fit_gap():
    ref = _gaussian_reference()
    proj = project(ref, [1])
    assert proj.coef.shape == (ref.n_draws, 1)
    assert np.all(proj.aux > ref.aux)
    assert np.all(proj.kl > 0)


def test_binomial_full_projection_reproduces_reference():
    ref = _logistic_reference()
    proj = project(ref, [0, 1, 2])
    npt.assert_allclose(proj.coef, ref.coef, atol=1e-3)
    npt.assert_allclose(proj.intercept, ref.intercept, atol=1e-3)
    assert proj.aux is None


@pytest.mark.parametrize("link", ["probit", "cloglog", "cauchit"])
def test_binomial_projection_other_links_converges(link):
    base = _logistic_reference()
    ref = ReferenceModel(
        family=get_family("binomial", link),
        X=base.X,
        y=base.y,
        intercept=base.intercept * 0.5,
        coef=base.coef * 0.5,
    )
    proj = project(ref, [0, 2])
    npt.assert_allclose(proj.coef, ref.coef[:, [0, 2]], atol=0.05)


def test_empty_subset_projects_onto_intercept():
    ref = _logistic_reference()
    proj = project(ref, [])
    assert proj.coef.shape == (ref.n_draws, 0)
    npt.assert_allclose(proj.predict(ref.X), np.full(ref.n_obs, ref.mu().mean()), atol=1e-6)


def test_project_rejects_bad_subsets_and_reports_non_convergence():
    ref = _logistic_reference()
    with pytest.raises(ValueError):
        project(ref, [0, 0])
    with pytest.raises(ValueError):
        project(ref, [3])
    with pytest.raises(ProjectionError):
        project(ref, [0, 2], max_iter=1)


def test_cluster_and_thin_targets():
    ref = _gaussian_reference(draws=100)
    clusters = cluster_draws(ref, 10, seed=0)
    assert clusters.n_targets <= 10
    assert clusters.weights.sum() == pytest.approx(1.0)
    assert clusters.uses_all_draws
    assert set(np.unique(clusters.labels)) == set(range(clusters.n_targets))

    thinned = thin_draws(ref, 25)
    assert thinned.n_targets == 25
    assert np.sum(thinned.labels >= 0) == 25
    assert not thinned.uses_all_draws

    full = all_draws(ref)
    assert full.n_targets == ref.n_draws
    assert cluster_draws(ref, None).n_targets == ref.n_draws


def test_projection_summary_and_full_coefficients():
    ref = _gaussian_reference()
    proj = project(ref, [2, 0])
    table = proj.summary(ref.feature_names, prob=0.9)
    assert list(table.index) == ["(Intercept)", "x3", "x1", "sigma"]
    assert table.loc["x1", "lower"] <= table.loc["x1", "mean"] <= table.loc["x1", "upper"]
    full = proj.coef_full(ref.n_features)
    npt.assert_allclose(full[:, 1], 0.0)
    npt.assert_allclose(full[:, 0], proj.coef[:, 1])
