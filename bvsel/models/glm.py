"""Bayesian generalized linear models fitted with NumPyro's NUTS sampler."""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import jax.numpy as jnp
from jax import random

import numpyro
import numpyro.distributions as dist
from numpyro.infer import MCMC, NUTS

from bvsel.diagnostics.convergence import (
    ConvergenceError,
    ConvergenceReport,
    check_convergence,
    effective_sample_size,
    split_rhat,
)
from bvsel.models.families import Family, get_family
from bvsel.models.priors import NormalPrior, Prior, RegularizedHorseshoePrior, prior_from_config

ArrayLike = Any

logger = logging.getLogger(__name__)

_CHAIN_METHODS = ("sequential", "parallel", "vectorized")


def _ensure_2d(array: ArrayLike, name: str) -> np.ndarray:
    """Coerce input to (n, p) float array."""
    arr = np.asarray(array, dtype=np.float64)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be a 2D array; got shape {arr.shape}.")
    return arr


def _ensure_1d(array: ArrayLike, name: str) -> np.ndarray:
    """Coerce input to (n,) float array."""
    arr = np.asarray(array, dtype=np.float64)
    if arr.ndim != 1:
        raise ValueError(f"{name} must be a 1D array; got shape {arr.shape}.")
    return arr


@dataclass
class PosteriorDraws:
    """Posterior draws grouped by chain: every array starts with (chains, draws)."""

    intercept: np.ndarray
    coef: np.ndarray
    aux: Optional[np.ndarray] = None
    extras: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def num_chains(self) -> int:
        return int(self.intercept.shape[0])

    @property
    def num_draws(self) -> int:
        return int(self.intercept.shape[1])

    @property
    def num_total(self) -> int:
        return self.num_chains * self.num_draws

    @staticmethod
    def _flatten(arr: Optional[np.ndarray]) -> Optional[np.ndarray]:
        if arr is None:
            return None
        return arr.reshape((arr.shape[0] * arr.shape[1],) + arr.shape[2:])

    @property
    def intercept_flat(self) -> np.ndarray:
        return self._flatten(self.intercept)

    @property
    def coef_flat(self) -> np.ndarray:
        return self._flatten(self.coef)

    @property
    def aux_flat(self) -> Optional[np.ndarray]:
        return self._flatten(self.aux)

    def by_name(self) -> Dict[str, np.ndarray]:
        """Chain-grouped arrays keyed by parameter name (used for diagnostics)."""
        out: Dict[str, np.ndarray] = {"alpha": self.intercept, "beta": self.coef}
        if self.aux is not None:
            out["sigma"] = self.aux
        out.update(self.extras)
        return out


@dataclass
class BayesianGLM:
    """GLM with a normal, Student-t or regularized-horseshoe coefficient prior.

    Chains are sampled independently (``chain_method``) and only combined
    after sampling, when the convergence diagnostics are computed. With
    ``autoscale`` the Gaussian priors are scaled by ``sd(y)`` and the intercept
    prior is centred at ``mean(y)``.
    """

    family: Union[str, Family] = "gaussian"
    link: Optional[str] = None
    prior: Optional[Prior] = None
    prior_intercept: NormalPrior = field(default_factory=lambda: NormalPrior(0.0, 2.5))
    prior_aux_rate: float = 1.0
    autoscale: bool = True
    num_warmup: int = 1000
    num_samples: int = 1000
    num_chains: int = 4
    chain_method: str = "sequential"
    target_accept_prob: float = 0.9
    max_tree_depth: int = 10
    dense_mass: bool = False
    seed: Optional[int] = None
    progress_bar: bool = False
    strict: bool = False
    rhat_threshold: float = 1.1
    ess_ratio_threshold: float = 0.1

    draws_: Optional[PosteriorDraws] = field(default=None, init=False)
    convergence_: Optional[ConvergenceReport] = field(default=None, init=False)
    family_: Optional[Family] = field(default=None, init=False)
    prior_: Optional[Prior] = field(default=None, init=False)
    feature_names_: Optional[List[str]] = field(default=None, init=False)
    n_features_: int = field(default=0, init=False)
    n_obs_: int = field(default=0, init=False)
    coef_: Optional[np.ndarray] = field(default=None, init=False)
    intercept_: Optional[float] = field(default=None, init=False)
    _scale_factor: float = field(default=1.0, init=False, repr=False)
    _intercept_shift: float = field(default=0.0, init=False, repr=False)
    mcmc_: Optional[MCMC] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.family_ = self.family if isinstance(self.family, Family) else get_family(self.family, self.link)
        self.prior_ = prior_from_config(self.prior) if self.prior is not None else NormalPrior()
        if self.prior_aux_rate <= 0:
            raise ValueError("prior_aux_rate must be positive.")
        if self.num_warmup <= 0 or self.num_samples <= 0:
            raise ValueError("num_warmup and num_samples must be positive integers.")
        if self.num_chains <= 0:
            raise ValueError("num_chains must be a positive integer.")
        if self.chain_method not in _CHAIN_METHODS:
            raise ValueError(f"chain_method must be one of {_CHAIN_METHODS}.")
        if not 0.0 < self.target_accept_prob < 1.0:
            raise ValueError("target_accept_prob must lie in (0, 1).")
        if self.max_tree_depth <= 0:
            raise ValueError("max_tree_depth must be positive.")

    # ------------------------------------------------------------------
    # Model
    # ------------------------------------------------------------------
    def _numpyro_model(self, X: jnp.ndarray, y: Optional[jnp.ndarray] = None) -> None:
        n, P = X.shape
        fam = self.family_
        scale = self._scale_factor

        sigma = None
        if fam.has_dispersion:
            sigma = numpyro.sample("sigma", dist.Exponential(self.prior_aux_rate / scale))
        alpha = numpyro.sample(
            "alpha",
            dist.Normal(
                self.prior_intercept.location + self._intercept_shift,
                self.prior_intercept.scale * scale,
            ),
        )
        if P > 0:
            beta = self.prior_.sample_coefficients(P, n_obs=n, scale_factor=scale, sigma=sigma)
            eta = alpha + X @ beta
        else:
            eta = alpha * jnp.ones((n,))
        with numpyro.plate("data", n):
            numpyro.sample("y", fam.likelihood(eta, sigma), obs=y)

    def fit(self, X: ArrayLike, y: ArrayLike, feature_names: Optional[Sequence[str]] = None) -> "BayesianGLM":
        X_arr = _ensure_2d(X, "X")
        y_arr = _ensure_1d(y, "y")
        if X_arr.shape[0] != y_arr.shape[0]:
            raise ValueError("X and y must have matching number of rows.")
        if not np.all(np.isfinite(X_arr)):
            raise ValueError("X contains non-finite values; clean the data before fitting.")
        self.family_.validate_response(y_arr)

        self.n_obs_, self.n_features_ = X_arr.shape
        if feature_names is not None:
            if len(feature_names) != self.n_features_:
                raise ValueError("feature_names must match the number of columns of X.")
            self.feature_names_ = [str(f) for f in feature_names]
        else:
            self.feature_names_ = [f"x{j + 1}" for j in range(self.n_features_)]

        if self.autoscale and self.family_.name == "gaussian":
            sd = float(np.std(y_arr))
            self._scale_factor = sd if sd > 0 else 1.0
            self._intercept_shift = float(np.mean(y_arr))
        else:
            self._scale_factor = 1.0
            self._intercept_shift = 0.0

        rng_key = random.PRNGKey(0 if self.seed is None else int(self.seed))
        kernel = NUTS(
            self._numpyro_model,
            target_accept_prob=self.target_accept_prob,
            max_tree_depth=self.max_tree_depth,
            dense_mass=self.dense_mass,
        )
        mcmc = MCMC(
            kernel,
            num_warmup=int(self.num_warmup),
            num_samples=int(self.num_samples),
            num_chains=int(self.num_chains),
            chain_method=self.chain_method,
            progress_bar=self.progress_bar,
        )
        logger.info(
            "Sampling %s/%s GLM with %s prior: N=%d, P=%d, %d chains x %d draws.",
            self.family_.name, self.family_.link, type(self.prior_).__name__,
            self.n_obs_, self.n_features_, self.num_chains, self.num_samples,
        )
        mcmc.run(
            rng_key,
            jnp.asarray(X_arr),
            jnp.asarray(y_arr),
            extra_fields=("diverging", "accept_prob"),
        )
        self.mcmc_ = mcmc
        samples = mcmc.get_samples(group_by_chain=True)
        extra = mcmc.get_extra_fields(group_by_chain=True)
        self._store_samples(samples)

        self.convergence_ = check_convergence(
            {k: v for k, v in self.draws_.by_name().items() if k != "lambda"},
            divergences=int(np.sum(np.asarray(extra["diverging"]))),
            accept_prob=np.asarray(extra["accept_prob"]),
            target_accept_prob=self.target_accept_prob,
            rhat_threshold=self.rhat_threshold,
            ess_ratio_threshold=self.ess_ratio_threshold,
        )
        if not self.convergence_.ok:
            if self.strict:
                raise ConvergenceError(self.convergence_)
            logger.warning(
                "Posterior flagged as untrustworthy (%d issue(s)); consider raising "
                "target_accept_prob or the number of iterations.",
                len(self.convergence_.messages),
            )
        return self

    def _store_samples(self, samples: Dict[str, jnp.ndarray]) -> None:
        def _convert(name: str) -> Optional[np.ndarray]:
            if name not in samples:
                return None
            return np.asarray(samples[name], dtype=np.float64)

        intercept = _convert("alpha")
        if intercept is None:
            raise RuntimeError("NumPyro model did not produce intercept samples.")
        coef = _convert("beta")
        if coef is None:
            coef = np.zeros(intercept.shape + (0,), dtype=np.float64)
        extras = {}
        for name in ("tau", "lambda", "c"):
            arr = _convert(name)
            if arr is not None:
                extras[name] = arr
        self.draws_ = PosteriorDraws(intercept=intercept, coef=coef, aux=_convert("sigma"), extras=extras)

        self.coef_ = self.draws_.coef_flat.mean(axis=0)
        self.intercept_ = float(self.draws_.intercept_flat.mean())

    # ------------------------------------------------------------------
    # Posterior quantities
    # ------------------------------------------------------------------
    def _require_fit(self) -> PosteriorDraws:
        if self.draws_ is None:
            raise RuntimeError("Model must be fitted before requesting posterior quantities.")
        return self.draws_

    def linpred_draws(self, X: ArrayLike) -> np.ndarray:
        """Linear predictor for every draw, shape (S, N)."""
        draws = self._require_fit()
        X_arr = _ensure_2d(X, "X")
        if X_arr.shape[1] != self.n_features_:
            raise ValueError(f"X must have {self.n_features_} columns; got {X_arr.shape[1]}.")
        return draws.intercept_flat[:, None] + draws.coef_flat @ X_arr.T

    def mu_draws(self, X: ArrayLike) -> np.ndarray:
        return np.asarray(self.family_.linkinv(jnp.asarray(self.linpred_draws(X))), dtype=np.float64)

    def predict(self, X: ArrayLike) -> np.ndarray:
        """Posterior mean of E[y | x]."""
        return self.mu_draws(X).mean(axis=0)

    def predict_proba(self, X: ArrayLike) -> np.ndarray:
        if not self.family_.is_binary:
            raise RuntimeError("predict_proba is only available for the binomial family.")
        p1 = self.predict(X)
        return np.column_stack([1.0 - p1, p1])

    def log_likelihood(self, X: ArrayLike, y: ArrayLike, by_chain: bool = False) -> np.ndarray:
        """Pointwise log-likelihood matrix (S, N), or (chains, draws, N) with ``by_chain``."""
        draws = self._require_fit()
        y_arr = _ensure_1d(y, "y")
        ll = self.family_.log_density(y_arr[None, :], self.mu_draws(X), draws.aux_flat)
        if by_chain:
            return ll.reshape(draws.num_chains, draws.num_draws, -1)
        return ll

    def credible_intervals(self, prob: float = 0.9) -> Tuple[np.ndarray, np.ndarray]:
        if not 0.0 < prob < 1.0:
            raise ValueError("prob must lie in (0, 1).")
        coef = self._require_fit().coef_flat
        tail = (1.0 - prob) / 2.0
        return np.quantile(coef, tail, axis=0), np.quantile(coef, 1.0 - tail, axis=0)

    def summary(self, prob: float = 0.9) -> pd.DataFrame:
        """Posterior summary with R-hat and ESS next to every point estimate."""
        draws = self._require_fit()
        tail = (1.0 - prob) / 2.0
        total = float(draws.num_total)
        rows: List[Dict[str, Any]] = []

        def _add(label: str, chains: np.ndarray) -> None:
            flat = chains.reshape(-1)
            rows.append({
                "parameter": label,
                "mean": float(flat.mean()),
                "sd": float(flat.std(ddof=1)) if flat.size > 1 else 0.0,
                "lower": float(np.quantile(flat, tail)),
                "upper": float(np.quantile(flat, 1.0 - tail)),
                "rhat": float(split_rhat(chains, has_chains=True)),
                "ess": float(effective_sample_size(chains, has_chains=True)),
            })

        _add("(Intercept)", draws.intercept)
        for j, name in enumerate(self.feature_names_ or []):
            _add(name, draws.coef[:, :, j])
        if draws.aux is not None:
            _add("sigma", draws.aux)
        if "tau" in draws.extras:
            _add("tau", draws.extras["tau"])
        frame = pd.DataFrame(rows).set_index("parameter")
        frame["ess_ratio"] = frame["ess"] / total
        return frame

    def get_posterior_summaries(self) -> Dict[str, Any]:
        draws = self._require_fit()
        coef = draws.coef_flat
        summaries: Dict[str, Any] = {
            "coef_mean": coef.mean(axis=0),
            "coef_median": np.median(coef, axis=0),
            "coef_ci95": np.quantile(coef, [0.025, 0.975], axis=0),
            "intercept_mean": float(draws.intercept_flat.mean()),
        }
        if draws.aux is not None:
            summaries["sigma_mean"] = float(draws.aux.mean())
        if "tau" in draws.extras:
            summaries["tau_mean"] = float(draws.extras["tau"].mean())
        if "lambda" in draws.extras:
            summaries["lambda_mean"] = draws.extras["lambda"].reshape(-1, self.n_features_).mean(axis=0)
        if self.convergence_ is not None:
            summaries["converged"] = self.convergence_.ok
            summaries["divergences"] = self.convergence_.divergences
        return summaries

    def clone(self, **overrides: Any) -> "BayesianGLM":
        """Unfitted copy with the same settings (used for refits)."""
        return dataclasses.replace(self, **overrides)


def model_from_config(cfg: Dict[str, Any], inference: Optional[Dict[str, Any]] = None, seed: Optional[int] = None) -> BayesianGLM:
    """Build a :class:`BayesianGLM` from ``model`` and ``inference`` config sections."""
    inference = dict(inference or {})
    prior_intercept = cfg.get("prior_intercept")
    kwargs: Dict[str, Any] = {
        "family": cfg.get("family", "gaussian"),
        "link": cfg.get("link"),
        "prior": prior_from_config(cfg.get("prior")),
        "autoscale": bool(cfg.get("autoscale", True)),
        "prior_aux_rate": float(cfg.get("prior_aux_rate", 1.0)),
    }
    if prior_intercept is not None:
        kwargs["prior_intercept"] = NormalPrior(**prior_intercept)
    for key in (
        "num_warmup", "num_samples", "num_chains", "chain_method", "target_accept_prob",
        "max_tree_depth", "dense_mass", "progress_bar", "strict", "rhat_threshold",
        "ess_ratio_threshold",
    ):
        if key in inference:
            kwargs[key] = inference[key]
    kwargs["seed"] = inference.get("seed", seed)
    if isinstance(kwargs["prior"], RegularizedHorseshoePrior):
        kwargs.setdefault("target_accept_prob", 0.99)
    return BayesianGLM(**kwargs)
