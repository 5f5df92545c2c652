"""Synthetic GLM data generators for selection experiments."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import math
import numpy as np
from scipy.special import expit

__all__ = [
    "GeneratorError",
    "SyntheticConfig",
    "SyntheticDataset",
    "generate_synthetic",
    "synthetic_config_from_dict",
    "register_generator",
    "SCENARIO_GENERATORS",
]


class GeneratorError(ValueError):
    """Raised when an invalid synthetic configuration is provided."""


@dataclass
class SyntheticConfig:
    """Container capturing all parameters for synthetic scenario generation."""

    n: int
    p: int
    family: str = "binomial"
    link: Optional[str] = None
    beta: Optional[Sequence[float]] = None
    intercept: float = 0.0
    design: str = "normal"
    correlation: Mapping[str, object] = field(default_factory=dict)
    signal: Mapping[str, object] = field(default_factory=dict)
    noise_sigma: float = 1.0
    seed: Optional[int] = None
    name: Optional[str] = None


@dataclass
class SyntheticDataset:
    """Generated synthetic dataset together with metadata."""

    X: np.ndarray
    y: np.ndarray
    beta: np.ndarray
    intercept: float
    feature_names: List[str]
    noise_sigma: float
    info: Dict[str, object] = field(default_factory=dict)


SCENARIO_GENERATORS: Dict[str, Callable[[SyntheticConfig], SyntheticDataset]] = {}


def register_generator(name: str) -> Callable[[Callable[[SyntheticConfig], SyntheticDataset]], Callable[[SyntheticConfig], SyntheticDataset]]:
    """Decorator used to register named scenarios."""

    key = name.strip().lower()

    def decorator(func: Callable[[SyntheticConfig], SyntheticDataset]) -> Callable[[SyntheticConfig], SyntheticDataset]:
        SCENARIO_GENERATORS[key] = func
        return func

    return decorator


def _draw_design(rng: np.random.Generator, n: int, p: int, corr_cfg: Mapping[str, object]) -> np.ndarray:
    corr_type = str(corr_cfg.get("type", "independent")).lower()
    rho = float(corr_cfg.get("rho", 0.0))

    if corr_type in {"independent", "none"} or abs(rho) < 1e-12:
        return rng.standard_normal((n, p))

    if corr_type == "block":
        block_size = corr_cfg.get("block_size")
        if block_size is None:
            raise GeneratorError("Block correlation requires 'block_size'.")
        block = int(block_size)
        if block <= 0:
            raise GeneratorError("block_size must be positive.")
        if not (0.0 <= rho < 1.0):
            raise GeneratorError("Block correlation requires rho in [0, 1).")
        design = np.empty((n, p), dtype=float)
        for start in range(0, p, block):
            end = min(start + block, p)
            shared = rng.standard_normal((n, 1))
            noise = rng.standard_normal((n, end - start))
            design[:, start:end] = math.sqrt(rho) * shared + math.sqrt(1.0 - rho) * noise
        return design

    if corr_type == "ar1":
        if not (-0.999 <= rho <= 0.999):
            raise GeneratorError("AR1 correlation requires rho in [-0.999, 0.999].")
        eps = rng.standard_normal((n, p))
        design = np.empty((n, p), dtype=float)
        design[:, 0] = eps[:, 0]
        scale = math.sqrt(max(1.0 - rho * rho, 1e-8))
        for j in range(1, p):
            design[:, j] = rho * design[:, j - 1] + scale * eps[:, j]
        return design

    if corr_type in {"cs", "compound_symmetry"}:
        if not (0.0 <= rho < 1.0):
            raise GeneratorError("Compound symmetry requires rho in [0, 1).")
        shared = rng.standard_normal((n, 1))
        noise = rng.standard_normal((n, p))
        return math.sqrt(rho) * shared + math.sqrt(1.0 - rho) * noise

    raise GeneratorError(f"Unsupported correlation type '{corr_type}'.")


def _draw_beta(rng: np.random.Generator, p: int, signal_cfg: Mapping[str, object]) -> np.ndarray:
    n_active = int(signal_cfg.get("n_active", 0))
    if not (0 <= n_active <= p):
        raise GeneratorError(f"signal.n_active must lie in [0, {p}].")
    beta = np.zeros(p, dtype=float)
    if n_active:
        scale = float(signal_cfg.get("scale", 1.0))
        idx = np.sort(rng.choice(p, size=n_active, replace=False))
        beta[idx] = rng.normal(0.0, scale, size=n_active)
    return beta


def _inverse_link(family: str, link: str, eta: np.ndarray) -> np.ndarray:
    if link == "identity":
        return eta
    if link == "log":
        return np.exp(np.clip(eta, -30.0, 30.0))
    if link == "logit":
        return expit(eta)
    if link == "probit":
        from scipy.stats import norm

        return norm.cdf(eta)
    if link == "cauchit":
        return 0.5 + np.arctan(eta) / np.pi
    if link == "cloglog":
        return -np.expm1(-np.exp(np.clip(eta, -30.0, 30.0)))
    raise GeneratorError(f"Unsupported link '{link}' for family '{family}'.")


_DEFAULT_LINKS = {"gaussian": "identity", "binomial": "logit", "poisson": "log"}


def generate_synthetic(config: SyntheticConfig, *, rng: Optional[np.random.Generator] = None) -> SyntheticDataset:
    """Draw ``X`` and a response from the GLM with coefficients ``beta``.

    ``design="zeros"`` yields an all-zero design matrix (no information about
    the response); otherwise covariates are Gaussian with the configured
    correlation and are centred column-wise.
    """
    if config.n <= 0 or config.p < 0:
        raise GeneratorError("n must be positive and p non-negative.")
    family = str(config.family).lower()
    if family not in _DEFAULT_LINKS:
        raise GeneratorError(f"Unsupported family '{config.family}'.")
    link = str(config.link or _DEFAULT_LINKS[family]).lower()

    local_rng = rng or np.random.default_rng(config.seed)
    design = str(config.design).lower()
    if design == "zeros":
        X = np.zeros((config.n, config.p), dtype=float)
    elif design == "normal":
        X = _draw_design(local_rng, config.n, config.p, config.correlation) if config.p else np.zeros((config.n, 0))
        X -= X.mean(axis=0, keepdims=True)
    else:
        raise GeneratorError(f"Unsupported design '{config.design}'.")

    if config.beta is not None:
        beta = np.asarray(config.beta, dtype=float).reshape(-1)
        if beta.size != config.p:
            raise GeneratorError(f"beta has {beta.size} entries but p={config.p}.")
    else:
        beta = _draw_beta(local_rng, config.p, config.signal)

    eta = config.intercept + X @ beta
    mu = _inverse_link(family, link, eta)
    if family == "binomial":
        y = local_rng.binomial(1, np.clip(mu, 0.0, 1.0)).astype(float)
        noise_sigma = 0.0
    elif family == "poisson":
        y = local_rng.poisson(mu).astype(float)
        noise_sigma = 0.0
    else:
        y = mu + local_rng.normal(0.0, float(config.noise_sigma), size=config.n)
        noise_sigma = float(config.noise_sigma)

    info: Dict[str, object] = {
        "active_idx": np.flatnonzero(beta),
        "seed": config.seed,
        "name": config.name,
        "family": family,
        "link": link,
        "design": design,
    }
    if family == "binomial":
        info["mean_probability"] = float(np.mean(mu))

    return SyntheticDataset(
        X=X,
        y=y,
        beta=beta,
        intercept=float(config.intercept),
        feature_names=[f"x{j + 1}" for j in range(config.p)],
        noise_sigma=noise_sigma,
        info=info,
    )


@register_generator("single_signal")
def single_signal(config: SyntheticConfig) -> SyntheticDataset:
    """Logistic data where only the first covariate carries signal (beta_1 = 2)."""
    beta = np.zeros(config.p)
    if config.p:
        beta[0] = 2.0
    return generate_synthetic(replace(config, family="binomial", link=config.link or "logit", beta=beta))


@register_generator("null")
def null_signal(config: SyntheticConfig) -> SyntheticDataset:
    """Every coefficient is zero; the response is pure noise around the intercept."""
    return generate_synthetic(replace(config, beta=np.zeros(config.p)))


@register_generator("zero_covariates")
def zero_covariates(config: SyntheticConfig) -> SyntheticDataset:
    """All-zero design matrix with random coefficients; X carries no information."""
    return generate_synthetic(replace(config, design="zeros"))


def synthetic_config_from_dict(
    data_cfg: Mapping[str, object],
    *,
    seed: Optional[int] = None,
    name: Optional[str] = None,
    family: Optional[str] = None,
) -> SyntheticConfig:
    if "n" not in data_cfg or "p" not in data_cfg:
        raise KeyError("data configuration requires 'n' and 'p'.")

    cfg_seed = data_cfg.get("seed", seed)
    beta = data_cfg.get("beta")
    fam = data_cfg.get("family") or family or "binomial"

    return SyntheticConfig(
        n=int(data_cfg["n"]),
        p=int(data_cfg["p"]),
        family=str(fam).lower(),
        link=data_cfg.get("link"),
        beta=None if beta is None else [float(b) for b in beta],
        intercept=float(data_cfg.get("intercept", 0.0)),
        design=str(data_cfg.get("design", "normal")),
        correlation=dict(data_cfg.get("correlation", {}) or {}),
        signal=dict(data_cfg.get("signal", {}) or {}),
        noise_sigma=float(data_cfg.get("noise_sigma", 1.0)),
        seed=None if cfg_seed is None else int(cfg_seed),
        name=name or data_cfg.get("name"),
    )
