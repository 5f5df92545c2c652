"""Projection of a reference posterior onto submodels (Piironen, Paasiniemi & Vehtari, 2020).

Each reference draw (or cluster of draws) defines a predictive distribution
over the training inputs. The projection finds, per draw, the submodel
parameters minimising the KL divergence from that predictive distribution.
For exponential families this is a GLM fit to the reference means, solved
here by iteratively reweighted least squares vectorised over draws.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import jax.numpy as jnp
from sklearn.cluster import KMeans

from bvsel.diagnostics.convergence import relative_efficiency
from bvsel.loo.elpd import K_THRESHOLD, LooResult, loo
from bvsel.models.families import Family

logger = logging.getLogger(__name__)

_REGULARIZATION = 1e-4
_MAX_ITER = 100
_TOL = 1e-8
_MAX_HALVINGS = 20


class ProjectionError(RuntimeError):
    """Raised when the KL projection onto a submodel does not converge."""


def _np(x) -> np.ndarray:
    return np.asarray(x, dtype=np.float64)


@dataclass
class ReferenceModel:
    """Posterior draws of the full (reference) model on its training data.

    ``intercept`` is (S,), ``coef`` is (S, P), ``aux`` the Gaussian sigma
    draws (S,) or None.
    """

    family: Family
    X: np.ndarray
    y: np.ndarray
    intercept: np.ndarray
    coef: np.ndarray
    aux: Optional[np.ndarray] = None
    feature_names: Optional[List[str]] = None
    r_eff: Optional[np.ndarray] = None
    _mu: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    _loo: Optional[LooResult] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.X = _np(self.X)
        self.y = _np(self.y).reshape(-1)
        self.intercept = _np(self.intercept).reshape(-1)
        self.coef = _np(self.coef)
        if self.coef.ndim != 2 or self.coef.shape[0] != self.intercept.size:
            raise ValueError("coef must have shape (S, P) matching the intercept draws.")
        if self.X.shape != (self.y.size, self.coef.shape[1]):
            raise ValueError("X must have shape (N, P) consistent with y and coef.")
        if self.family.has_dispersion:
            if self.aux is None:
                raise ValueError(f"Family '{self.family.name}' requires dispersion draws.")
            self.aux = _np(self.aux).reshape(-1)
        if self.feature_names is None:
            self.feature_names = [f"x{j + 1}" for j in range(self.n_features)]

    @classmethod
    def from_glm(cls, model: Any, X: np.ndarray, y: np.ndarray) -> "ReferenceModel":
        """Build a reference model from a fitted :class:`~bvsel.models.glm.BayesianGLM`."""
        draws = model.draws_
        if draws is None:
            raise RuntimeError("Reference model must be fitted first.")
        r_eff = None
        if draws.num_draws >= 4:
            r_eff = relative_efficiency(model.log_likelihood(X, y, by_chain=True))
        return cls(
            family=model.family_,
            X=X,
            y=y,
            intercept=draws.intercept_flat,
            coef=draws.coef_flat,
            aux=draws.aux_flat,
            feature_names=list(model.feature_names_ or []) or None,
            r_eff=r_eff,
        )

    @property
    def n_draws(self) -> int:
        return int(self.intercept.size)

    @property
    def n_features(self) -> int:
        return int(self.coef.shape[1])

    @property
    def n_obs(self) -> int:
        return int(self.y.size)

    def mu(self) -> np.ndarray:
        """Reference predictive means for every draw, (S, N)."""
        if self._mu is None:
            eta = self.intercept[:, None] + self.coef @ self.X.T
            self._mu = _np(self.family.linkinv(jnp.asarray(eta)))
        return self._mu

    def log_lik(self) -> np.ndarray:
        return self.family.log_density(self.y[None, :], self.mu(), self.aux)

    def loo(self, k_threshold: float = K_THRESHOLD) -> LooResult:
        if self._loo is None or self._loo.k_threshold != k_threshold:
            self._loo = loo(self.log_lik(), r_eff=self.r_eff, k_threshold=k_threshold)
        return self._loo


@dataclass
class ProjectionTargets:
    """Reference predictive distributions the submodels are projected onto.

    ``labels`` maps each reference draw to its target row (-1 when the draw
    is not used).
    """

    mu: np.ndarray
    aux: Optional[np.ndarray]
    weights: np.ndarray
    labels: np.ndarray

    @property
    def n_targets(self) -> int:
        return int(self.mu.shape[0])

    @property
    def uses_all_draws(self) -> bool:
        return bool(np.all(self.labels >= 0))


def all_draws(ref: ReferenceModel) -> ProjectionTargets:
    S = ref.n_draws
    return ProjectionTargets(
        mu=ref.mu(),
        aux=None if ref.aux is None else ref.aux.copy(),
        weights=np.full(S, 1.0 / S),
        labels=np.arange(S),
    )


def thin_draws(ref: ReferenceModel, ndraws: Optional[int]) -> ProjectionTargets:
    """Keep ``ndraws`` evenly spaced reference draws (all draws when None)."""
    S = ref.n_draws
    if ndraws is None or ndraws >= S:
        return all_draws(ref)
    if ndraws <= 0:
        raise ValueError("ndraws must be positive.")
    idx = np.unique(np.linspace(0, S - 1, int(ndraws)).round().astype(int))
    labels = np.full(S, -1, dtype=int)
    labels[idx] = np.arange(idx.size)
    return ProjectionTargets(
        mu=ref.mu()[idx],
        aux=None if ref.aux is None else ref.aux[idx],
        weights=np.full(idx.size, 1.0 / idx.size),
        labels=labels,
    )


def cluster_draws(ref: ReferenceModel, n_clusters: Optional[int], seed: Optional[int] = None) -> ProjectionTargets:
    """Group reference draws with k-means on their predictive means.

    Each cluster target is the average predictive mean of its members; the
    Gaussian dispersion is pooled as sqrt(mean(sigma^2)).
    """
    S = ref.n_draws
    if n_clusters is None or n_clusters >= S:
        return all_draws(ref)
    if n_clusters <= 0:
        raise ValueError("n_clusters must be positive.")
    mu = ref.mu()
    if n_clusters == 1:
        labels = np.zeros(S, dtype=int)
    else:
        km = KMeans(n_clusters=int(n_clusters), n_init=3, random_state=seed)
        labels = km.fit_predict(mu).astype(int)
    present = np.unique(labels)
    # relabel to consecutive ids when k-means leaves a cluster empty
    remap = np.full(labels.max() + 1, -1, dtype=int)
    remap[present] = np.arange(present.size)
    labels = remap[labels]

    C = present.size
    counts = np.bincount(labels, minlength=C).astype(float)
    targets = np.zeros((C, ref.n_obs))
    np.add.at(targets, labels, mu)
    targets /= counts[:, None]
    aux = None
    if ref.aux is not None:
        sq = np.zeros(C)
        np.add.at(sq, labels, ref.aux ** 2)
        aux = np.sqrt(sq / counts)
    return ProjectionTargets(mu=targets, aux=aux, weights=counts / S, labels=labels)


def _kl_divergence(family: Family, mu_ref: np.ndarray, mu_sub: np.ndarray,
                   aux_ref: Optional[np.ndarray], aux_sub: Optional[np.ndarray]) -> np.ndarray:
    """Mean pointwise KL(reference || submodel) for every target row."""
    if family.name == "gaussian":
        s_ref = aux_ref[:, None]
        s_sub = aux_sub[:, None]
        kl = np.log(s_sub / s_ref) + (s_ref ** 2 + (mu_ref - mu_sub) ** 2) / (2.0 * s_sub ** 2) - 0.5
    elif family.name == "binomial":
        p = np.clip(mu_ref, 1e-12, 1.0 - 1e-12)
        q = np.clip(mu_sub, 1e-12, 1.0 - 1e-12)
        kl = p * np.log(p / q) + (1.0 - p) * np.log((1.0 - p) / (1.0 - q))
    else:
        kl = mu_ref * np.log(mu_ref / mu_sub) - mu_ref + mu_sub
    return kl.mean(axis=1)


@dataclass
class Projection:
    """Projected submodel draws: one parameter vector per projection target."""

    family: Family
    subset: Tuple[int, ...]
    intercept: np.ndarray
    coef: np.ndarray
    aux: Optional[np.ndarray]
    weights: np.ndarray
    labels: np.ndarray
    kl: np.ndarray

    @property
    def n_draws(self) -> int:
        return int(self.intercept.size)

    def linpred(self, X: np.ndarray) -> np.ndarray:
        """Linear predictor (C, N) for a full design matrix ``X``."""
        X_sub = _np(X)[:, list(self.subset)]
        return self.intercept[:, None] + self.coef @ X_sub.T

    def mu(self, X: np.ndarray) -> np.ndarray:
        return _np(self.family.linkinv(jnp.asarray(self.linpred(X))))

    def predict(self, X: np.ndarray) -> np.ndarray:
        return self.weights @ self.mu(X)

    def log_predictive(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        """Pointwise log density of ``y`` for every projected draw, (C, N)."""
        return self.family.log_density(_np(y).reshape(1, -1), self.mu(X), self.aux)

    def coef_full(self, n_features: int) -> np.ndarray:
        out = np.zeros((self.n_draws, n_features))
        if self.subset:
            out[:, list(self.subset)] = self.coef
        return out

    def summary(self, feature_names: Sequence[str], prob: float = 0.9) -> pd.DataFrame:
        """Weighted posterior summary of the projected coefficients."""
        tail = (1.0 - prob) / 2.0
        rows = []
        params = [("(Intercept)", self.intercept)]
        params += [(feature_names[j], self.coef[:, i]) for i, j in enumerate(self.subset)]
        if self.aux is not None:
            params.append(("sigma", self.aux))
        for name, values in params:
            mean = float(np.sum(self.weights * values))
            sd = float(np.sqrt(np.sum(self.weights * (values - mean) ** 2)))
            rows.append({
                "parameter": name,
                "mean": mean,
                "sd": sd,
                "lower": _weighted_quantile(values, self.weights, tail),
                "upper": _weighted_quantile(values, self.weights, 1.0 - tail),
            })
        return pd.DataFrame(rows).set_index("parameter")


def _weighted_quantile(values: np.ndarray, weights: np.ndarray, q: float) -> float:
    order = np.argsort(values)
    cdf = np.cumsum(weights[order])
    cdf /= cdf[-1]
    return float(values[order][np.searchsorted(cdf, q, side="left").clip(0, values.size - 1)])


def _objective(family: Family, mu_ref: np.ndarray, mu_sub: np.ndarray) -> np.ndarray:
    """Negative expected log-likelihood under the reference, up to constants (per target)."""
    if family.name == "gaussian":
        return np.sum((mu_ref - mu_sub) ** 2, axis=1)
    if family.name == "binomial":
        q = np.clip(mu_sub, 1e-12, 1.0 - 1e-12)
        return -np.sum(mu_ref * np.log(q) + (1.0 - mu_ref) * np.log1p(-q), axis=1)
    return -np.sum(mu_ref * np.log(mu_sub) - mu_sub, axis=1)


def _solve(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.solve(A, b[..., None])[..., 0]
    except np.linalg.LinAlgError as exc:
        raise ProjectionError(f"singular projection system: {exc}") from exc


def _irls(family: Family, Z: np.ndarray, targets: np.ndarray, penalty: np.ndarray,
          max_iter: int, tol: float) -> np.ndarray:
    """Fisher scoring for all target rows at once; returns coefficients (C, K)."""
    C = targets.shape[0]
    K = Z.shape[1]
    mean_target = targets.mean(axis=1)
    B = np.zeros((C, K))
    if family.name == "binomial":
        m = np.clip(mean_target, 1e-6, 1.0 - 1e-6)
        B[:, 0] = np.log(m / (1.0 - m)) if family.link == "logit" else 0.0
    elif family.link == "log":
        B[:, 0] = np.log(np.maximum(mean_target, 1e-6))
    else:
        B[:, 0] = mean_target

    def _mu(coef):
        return _np(family.linkinv(jnp.asarray(coef @ Z.T)))

    def _penalised(coef, mu):
        return _objective(family, targets, mu) + 0.5 * np.sum(penalty * coef ** 2, axis=1)

    mu = _mu(B)
    obj = _penalised(B, mu)
    for _ in range(max_iter):
        eta = B @ Z.T
        d = np.maximum(np.abs(_np(family.mu_eta(jnp.asarray(eta)))), 1e-10)
        var = np.maximum(_np(family.variance(jnp.asarray(mu))), 1e-10)
        w = d ** 2 / var
        z = eta + (targets - mu) / d
        A = np.einsum("cn,nk,nl->ckl", w, Z, Z) + np.diag(penalty)[None]
        rhs = np.einsum("cn,nk->ck", w * z, Z)
        proposal = _solve(A, rhs)
        step = proposal - B

        new_B = B + step
        new_mu = _mu(new_B)
        new_obj = _penalised(new_B, new_mu)
        worse = ~(new_obj <= obj + 1e-12)
        halvings = 0
        while np.any(worse) and halvings < _MAX_HALVINGS:
            step[worse] *= 0.5
            new_B[worse] = B[worse] + step[worse]
            new_mu[worse] = _mu(new_B[worse])
            new_obj[worse] = _penalised(new_B[worse], new_mu[worse])
            worse = ~(new_obj <= obj + 1e-12)
            halvings += 1

        if not np.all(np.isfinite(new_B)):
            raise ProjectionError("non-finite coefficients during projection")
        delta = np.max(np.abs(new_B - B))
        B, mu, obj = new_B, new_mu, new_obj
        if delta < tol * (1.0 + np.max(np.abs(B))):
            return B
    raise ProjectionError(f"projection did not converge within {max_iter} iterations")


def project(
    ref: ReferenceModel,
    subset: Sequence[int],
    targets: Optional[ProjectionTargets] = None,
    *,
    regularization: float = _REGULARIZATION,
    max_iter: int = _MAX_ITER,
    tol: float = _TOL,
) -> Projection:
    """Project the reference model onto the submodel using columns ``subset``."""
    subset = tuple(int(j) for j in subset)
    if len(set(subset)) != len(subset):
        raise ValueError("subset must not contain repeated covariates.")
    if any(j < 0 or j >= ref.n_features for j in subset):
        raise ValueError(f"subset indices must lie in [0, {ref.n_features}).")
    if targets is None:
        targets = all_draws(ref)
    family = ref.family
    N = ref.n_obs
    Z = np.column_stack([np.ones(N), ref.X[:, list(subset)]]) if subset else np.ones((N, 1))
    penalty = np.full(Z.shape[1], regularization)
    penalty[0] = 0.0

    if family.name == "gaussian" and family.link == "identity":
        A = Z.T @ Z + np.diag(penalty)
        try:
            B = np.linalg.solve(A, Z.T @ targets.mu.T).T
        except np.linalg.LinAlgError as exc:
            raise ProjectionError(f"singular projection system: {exc}") from exc
    else:
        B = _irls(family, Z, targets.mu, penalty, max_iter, tol)

    mu_sub = _np(family.linkinv(jnp.asarray(B @ Z.T)))
    aux = None
    if family.has_dispersion:
        aux = np.sqrt(targets.aux ** 2 + np.mean((targets.mu - mu_sub) ** 2, axis=1))
    if not np.all(np.isfinite(B)) or (aux is not None and not np.all(np.isfinite(aux))):
        raise ProjectionError(f"non-finite projection for subset {subset}")
    logger.debug("Projected %d draw(s) onto subset %s.", B.shape[0], subset)

    return Projection(
        family=family,
        subset=subset,
        intercept=B[:, 0],
        coef=B[:, 1:],
        aux=aux,
        weights=targets.weights.copy(),
        labels=targets.labels.copy(),
        kl=_kl_divergence(family, targets.mu, mu_sub, targets.aux, aux),
    )
