"""Response families and link functions for Bayesian GLMs.

Inverse links and their derivatives are written with ``jax.numpy`` so that the
same callables feed the NumPyro likelihood during sampling and the IRLS solver
used by the projection step.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional

import jax.numpy as jnp
import numpy as np
import numpyro.distributions as dist
from jax.scipy.special import expit, gammaln
from jax.scipy.stats import norm

__all__ = [
    "Family",
    "LINKS",
    "MU_ETA",
    "get_family",
    "gaussian",
    "binomial",
    "poisson",
]

_PROB_EPS = 1e-12


def _clip_prob(mu: jnp.ndarray) -> jnp.ndarray:
    return jnp.clip(mu, _PROB_EPS, 1.0 - _PROB_EPS)


def _cloglog_inv(eta: jnp.ndarray) -> jnp.ndarray:
    return -jnp.expm1(-jnp.exp(eta))


def _cauchit_inv(eta: jnp.ndarray) -> jnp.ndarray:
    return 0.5 + jnp.arctan(eta) / jnp.pi


LINKS: Dict[str, Callable[[jnp.ndarray], jnp.ndarray]] = {
    "identity": lambda eta: eta,
    "log": jnp.exp,
    "logit": expit,
    "probit": norm.cdf,
    "cauchit": _cauchit_inv,
    "cloglog": _cloglog_inv,
}

MU_ETA: Dict[str, Callable[[jnp.ndarray], jnp.ndarray]] = {
    "identity": jnp.ones_like,
    "log": jnp.exp,
    "logit": lambda eta: expit(eta) * expit(-eta),
    "probit": norm.pdf,
    "cauchit": lambda eta: 1.0 / (jnp.pi * (1.0 + eta ** 2)),
    "cloglog": lambda eta: jnp.exp(eta - jnp.exp(eta)),
}

_ALLOWED_LINKS = {
    "gaussian": ("identity", "log"),
    "binomial": ("logit", "probit", "cauchit", "cloglog"),
    "poisson": ("log", "identity"),
}

_DEFAULT_LINKS = {"gaussian": "identity", "binomial": "logit", "poisson": "log"}


@dataclass(frozen=True)
class Family:
    """Exponential-family response distribution paired with a link function."""

    name: str
    link: str

    def __post_init__(self) -> None:
        if self.name not in _ALLOWED_LINKS:
            raise ValueError(f"Unknown family '{self.name}'. Expected one of {sorted(_ALLOWED_LINKS)}.")
        if self.link not in _ALLOWED_LINKS[self.name]:
            raise ValueError(
                f"Link '{self.link}' is not supported for family '{self.name}'; "
                f"choose from {_ALLOWED_LINKS[self.name]}."
            )

    @property
    def has_dispersion(self) -> bool:
        return self.name == "gaussian"

    @property
    def is_binary(self) -> bool:
        return self.name == "binomial"

    def linkinv(self, eta: jnp.ndarray) -> jnp.ndarray:
        """Map the linear predictor to the mean of the response."""
        mu = LINKS[self.link](eta)
        if self.name == "binomial":
            return _clip_prob(mu)
        if self.name == "poisson":
            return jnp.maximum(mu, _PROB_EPS)
        return mu

    def mu_eta(self, eta: jnp.ndarray) -> jnp.ndarray:
        """Elementwise derivative d mu / d eta of the inverse link."""
        return MU_ETA[self.link](jnp.asarray(eta))

    def variance(self, mu: jnp.ndarray) -> jnp.ndarray:
        if self.name == "binomial":
            return mu * (1.0 - mu)
        if self.name == "poisson":
            return mu
        return jnp.ones_like(mu)

    def likelihood(self, eta: jnp.ndarray, aux: Optional[jnp.ndarray] = None) -> dist.Distribution:
        """NumPyro observation distribution for linear predictor ``eta``."""
        if self.name == "gaussian":
            if aux is None:
                raise ValueError("Gaussian likelihood requires the dispersion parameter sigma.")
            return dist.Normal(self.linkinv(eta), aux)
        if self.name == "binomial":
            if self.link == "logit":
                return dist.Bernoulli(logits=eta)
            return dist.Bernoulli(probs=self.linkinv(eta))
        return dist.Poisson(self.linkinv(eta))

    def log_density(self, y, mu, aux=None) -> np.ndarray:
        """Pointwise log density of ``y`` given means ``mu`` (broadcasting over draws)."""
        y = jnp.asarray(y)
        mu = jnp.asarray(mu)
        if self.name == "gaussian":
            if aux is None:
                raise ValueError("Gaussian log density requires sigma.")
            sigma = jnp.asarray(aux)
            if sigma.ndim == 1 and mu.ndim == 2:
                sigma = sigma[:, None]
            out = norm.logpdf(y, loc=mu, scale=sigma)
        elif self.name == "binomial":
            mu = _clip_prob(mu)
            out = y * jnp.log(mu) + (1.0 - y) * jnp.log1p(-mu)
        else:
            out = y * jnp.log(mu) - mu - gammaln(y + 1.0)
        return np.asarray(out, dtype=np.float64)

    def validate_response(self, y: np.ndarray) -> None:
        arr = np.asarray(y, dtype=float)
        if not np.all(np.isfinite(arr)):
            raise ValueError("Response contains non-finite values.")
        if self.name == "binomial" and not np.all(np.isin(arr, (0.0, 1.0))):
            raise ValueError("Binomial family expects a binary 0/1 response.")
        if self.name == "poisson" and (np.any(arr < 0) or not np.allclose(arr, np.round(arr))):
            raise ValueError("Poisson family expects non-negative integer counts.")


def get_family(name: str, link: Optional[str] = None) -> Family:
    """Resolve a family by name, e.g. ``get_family("binomial", "probit")``."""
    key = str(name).strip().lower()
    aliases = {"normal": "gaussian", "bernoulli": "binomial", "logistic": "binomial"}
    key = aliases.get(key, key)
    if key not in _DEFAULT_LINKS:
        raise ValueError(f"Unknown family '{name}'. Expected one of {sorted(_DEFAULT_LINKS)}.")
    return Family(key, (link or _DEFAULT_LINKS[key]).strip().lower())


def gaussian(link: str = "identity") -> Family:
    return Family("gaussian", link)


def binomial(link: str = "logit") -> Family:
    return Family("binomial", link)


def poisson(link: str = "log") -> Family:
    return Family("poisson", link)
