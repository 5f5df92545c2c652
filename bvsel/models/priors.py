"""Coefficient priors for Bayesian GLMs (normal, Student-t, regularized horseshoe)."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

import jax.numpy as jnp
import numpyro
import numpyro.distributions as dist

__all__ = [
    "NormalPrior",
    "StudentTPrior",
    "RegularizedHorseshoePrior",
    "Prior",
    "horseshoe_global_scale",
    "prior_from_config",
]


def horseshoe_global_scale(p0: float, P: int, N: int, sigma: float = 1.0) -> float:
    """Recommended global scale tau0 = p0 / (P - p0) / sqrt(N) * sigma.

    ``p0`` is the prior guess of the number of relevant covariates (Piironen &
    Vehtari, 2017). ``sigma`` is the residual scale for Gaussian responses and
    1 for the pseudo-variance approximation used with binary responses.
    """
    if P <= 0 or N <= 0:
        raise ValueError("P and N must be positive.")
    if not 0 < p0 < P:
        raise ValueError(f"p0 must lie strictly between 0 and P={P}; got {p0}.")
    return float(p0) / float(P - p0) / math.sqrt(N) * float(sigma)


@dataclass(frozen=True)
class NormalPrior:
    """Independent ``Normal(location, scale)`` on each coefficient."""

    location: float = 0.0
    scale: float = 2.5

    def __post_init__(self) -> None:
        if self.scale <= 0:
            raise ValueError("scale must be positive.")

    def sample_coefficients(self, P: int, *, n_obs: int, scale_factor: float = 1.0, sigma=None) -> jnp.ndarray:
        return numpyro.sample(
            "beta",
            dist.Normal(self.location, self.scale * scale_factor).expand((P,)).to_event(1),
        )


@dataclass(frozen=True)
class StudentTPrior:
    """Independent ``StudentT(df, location, scale)`` on each coefficient."""

    df: float = 7.0
    location: float = 0.0
    scale: float = 2.5

    def __post_init__(self) -> None:
        if self.df <= 0:
            raise ValueError("df must be positive.")
        if self.scale <= 0:
            raise ValueError("scale must be positive.")

    def sample_coefficients(self, P: int, *, n_obs: int, scale_factor: float = 1.0, sigma=None) -> jnp.ndarray:
        return numpyro.sample(
            "beta",
            dist.StudentT(self.df, self.location, self.scale * scale_factor).expand((P,)).to_event(1),
        )


@dataclass(frozen=True)
class RegularizedHorseshoePrior:
    """Regularized horseshoe (Piironen & Vehtari, 2017) in non-centred form.

    Either ``global_scale`` is given directly or it is derived from ``p0``, the
    prior guess for the number of relevant covariates.
    """

    global_scale: Optional[float] = None
    p0: Optional[float] = None
    df: float = 1.0
    global_df: float = 1.0
    slab_scale: float = 2.0
    slab_df: float = 4.0

    def __post_init__(self) -> None:
        if self.global_scale is not None and self.global_scale <= 0:
            raise ValueError("global_scale must be positive when provided.")
        if self.p0 is not None and self.p0 <= 0:
            raise ValueError("p0 must be positive when provided.")
        if self.df <= 0 or self.global_df <= 0:
            raise ValueError("df and global_df must be positive.")
        if self.slab_scale <= 0 or self.slab_df <= 0:
            raise ValueError("slab_scale and slab_df must be positive.")

    def resolve_global_scale(self, N: int, P: int) -> float:
        if self.global_scale is not None:
            return float(self.global_scale)
        if self.p0 is not None:
            if not self.p0 < P:
                raise ValueError(f"p0 must be smaller than the number of covariates P={P}; got {self.p0}.")
            return horseshoe_global_scale(float(self.p0), P, N)
        # default guess stays below P so the ratio is finite
        p0 = min(float(max(1, P // 5)), P - 0.5)
        return horseshoe_global_scale(p0, P, N)

    def sample_coefficients(self, P: int, *, n_obs: int, scale_factor: float = 1.0, sigma=None) -> jnp.ndarray:
        tau0 = self.resolve_global_scale(n_obs, P)
        if sigma is not None:
            tau0 = tau0 * sigma

        r1_global = numpyro.sample("r1_global", dist.HalfNormal(1.0))
        r2_global = numpyro.sample(
            "r2_global",
            dist.InverseGamma(0.5 * self.global_df, 0.5 * self.global_df),
        )
        tau = numpyro.deterministic("tau", r1_global * jnp.sqrt(r2_global) * tau0)

        r1_local = numpyro.sample("r1_local", dist.HalfNormal(jnp.ones((P,))).to_event(1))
        r2_local = numpyro.sample(
            "r2_local",
            dist.InverseGamma(0.5 * self.df, 0.5 * self.df).expand((P,)).to_event(1),
        )
        lambda_raw = r1_local * jnp.sqrt(r2_local)

        caux = numpyro.sample("caux", dist.InverseGamma(0.5 * self.slab_df, 0.5 * self.slab_df))
        c = numpyro.deterministic("c", self.slab_scale * scale_factor * jnp.sqrt(caux))

        c2 = c ** 2
        lambda_tilde = jnp.sqrt(c2 * lambda_raw ** 2 / (c2 + tau ** 2 * lambda_raw ** 2 + 1e-18))
        numpyro.deterministic("lambda", lambda_tilde)

        z = numpyro.sample("z", dist.Normal(jnp.zeros((P,)), 1.0).to_event(1))
        return numpyro.deterministic("beta", z * lambda_tilde * tau)


Prior = Union[NormalPrior, StudentTPrior, RegularizedHorseshoePrior]


def prior_from_config(cfg: Optional[Mapping[str, Any]], default: Optional[Prior] = None) -> Prior:
    """Build a prior from a config mapping such as ``{"name": "hs", "p0": 3}``."""
    if cfg is None:
        return default if default is not None else NormalPrior()
    if isinstance(cfg, (NormalPrior, StudentTPrior, RegularizedHorseshoePrior)):
        return cfg
    params = dict(cfg)
    name = str(params.pop("name", params.pop("type", "normal"))).strip().lower()
    if name in {"normal", "gaussian"}:
        return NormalPrior(**params)
    if name in {"student_t", "student-t", "studentt", "t"}:
        return StudentTPrior(**params)
    if name in {"hs", "horseshoe", "regularized_horseshoe", "rhs"}:
        return RegularizedHorseshoePrior(**params)
    raise ValueError(f"Unknown prior '{name}'.")
