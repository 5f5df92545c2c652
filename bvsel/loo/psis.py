"""Pareto smoothed importance sampling (Vehtari, Gelman & Gabry, 2017) on top of ArviZ.

Pointwise log-likelihood matrices are kept as ``(S, N)`` arrays throughout the
package; the helpers here convert them to the layouts ArviZ expects.
"""
from __future__ import annotations

from typing import Optional, Tuple, Union

import arviz as az
import numpy as np

__all__ = ["as_inference_data", "mean_r_eff", "psislw"]

_MIN_DRAWS = 10


def _as_matrix(values: np.ndarray, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim == 1:
        arr = arr[:, None]
    if arr.ndim != 2:
        raise ValueError(f"{name} must have shape (S, N).")
    if arr.shape[0] < _MIN_DRAWS:
        raise ValueError(f"PSIS needs at least {_MIN_DRAWS} posterior draws; got {arr.shape[0]}.")
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} contain non-finite values.")
    return arr


def mean_r_eff(r_eff: Optional[Union[float, np.ndarray]]) -> float:
    """Single relative efficiency for ArviZ (mean over observations)."""
    if r_eff is None:
        return 1.0
    value = float(np.mean(np.asarray(r_eff, dtype=float)))
    if not np.isfinite(value) or value <= 0:
        raise ValueError(f"r_eff must be positive; got {value}.")
    return value


def as_inference_data(log_lik: np.ndarray, var_name: str = "y") -> az.InferenceData:
    """Wrap an ``(S, N)`` log-likelihood matrix as single-chain InferenceData."""
    ll = _as_matrix(log_lik, "log_lik")
    return az.from_dict(log_likelihood={var_name: ll[None, :, :]})


def psislw(log_ratios: np.ndarray, r_eff: Union[float, np.ndarray] = 1.0) -> Tuple[np.ndarray, np.ndarray]:
    """Pareto smoothed log importance weights.

    Parameters
    ----------
    log_ratios:
        Raw log importance ratios with shape (S, N); for leave-one-out these
        are ``-log_lik``.
    r_eff:
        Relative MCMC efficiency (scalar or per observation).

    Returns
    -------
    (log_weights, k_hat):
        Normalised smoothed log weights (S, N) and Pareto shape estimates (N,).
    """
    lr = _as_matrix(log_ratios, "log_ratios")
    # ArviZ puts the sample axis last
    log_weights, k_hat = az.psislw(np.ascontiguousarray(lr.T), reff=mean_r_eff(r_eff))
    return np.asarray(log_weights, dtype=float).T, np.asarray(k_hat, dtype=float).reshape(-1)
