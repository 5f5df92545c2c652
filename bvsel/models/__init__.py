"""Bayesian GLM families, priors and the NUTS-based sampler."""
from __future__ import annotations

import jax

# log-likelihoods, PSIS weights and projections need double precision
jax.config.update("jax_enable_x64", True)

from .families import Family, get_family, gaussian, binomial, poisson  # noqa: E402
from .priors import (  # noqa: E402
    NormalPrior,
    StudentTPrior,
    RegularizedHorseshoePrior,
    horseshoe_global_scale,
    prior_from_config,
)
from .glm import BayesianGLM, PosteriorDraws, model_from_config  # noqa: E402

__all__ = [
    "Family",
    "get_family",
    "gaussian",
    "binomial",
    "poisson",
    "NormalPrior",
    "StudentTPrior",
    "RegularizedHorseshoePrior",
    "horseshoe_global_scale",
    "prior_from_config",
    "BayesianGLM",
    "PosteriorDraws",
    "model_from_config",
]
