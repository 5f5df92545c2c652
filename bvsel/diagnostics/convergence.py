"""Posterior convergence diagnostics (R-hat, ESS, divergences, acceptance)."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

Array = np.ndarray

logger = logging.getLogger(__name__)

RHAT_THRESHOLD = 1.1
ESS_RATIO_THRESHOLD = 0.1
ACCEPT_TOLERANCE = 0.1


class ConvergenceError(RuntimeError):
    """Raised in strict mode when the sampler output fails convergence checks."""

    def __init__(self, report: "ConvergenceReport") -> None:
        super().__init__("; ".join(report.messages) or "posterior failed convergence checks")
        self.report = report


def _reshape_samples(samples: Array, has_chains: bool = False) -> Tuple[Array, Tuple[int, ...]]:
    arr = np.asarray(samples, dtype=float)
    if arr.ndim == 0:
        raise ValueError("samples must have at least one dimension (draws)")

    if has_chains:
        if arr.ndim < 2:
            raise ValueError("expected (chains, draws, ...) samples")
        param_shape: Tuple[int, ...] = arr.shape[2:]
        if arr.ndim == 2:
            arr = arr[..., None]
    elif arr.ndim == 1:
        arr = arr.reshape(1, arr.shape[0], 1)
        param_shape = ()
    elif arr.ndim == 2:
        # interpret as (draws, parameters)
        arr = arr.reshape(1, arr.shape[0], arr.shape[1])
        param_shape = (arr.shape[2],)
    else:
        # expect (chains, draws, ...)
        param_shape = arr.shape[2:]
    # ensure even draws for splitting
    draws = arr.shape[1]
    if draws < 4:
        raise ValueError("need at least 4 draws for convergence diagnostics")
    if draws % 2 == 1:
        arr = arr[:, :-1]
    return arr, param_shape


def _split_chains(chains: Array) -> Array:
    half = chains.shape[1] // 2
    return np.concatenate([chains[:, :half], chains[:, half:]], axis=0)


def _rhat_from_chains(chains: Array) -> Array:
    C, N = chains.shape[:2]
    if C < 2:
        raise ValueError("split R-hat requires at least two chains after splitting")
    chain_means = chains.mean(axis=1)
    chain_vars = chains.var(axis=1, ddof=1)
    W = chain_vars.mean(axis=0)
    B = N * chain_means.var(axis=0, ddof=1)
    var_hat = ((N - 1) / N) * W + B / N
    with np.errstate(divide="ignore", invalid="ignore"):
        rhat = np.sqrt(np.where(W > 0, var_hat / W, 1.0))
    return rhat


def split_rhat(samples: Array, has_chains: bool = False) -> Array:
    arr, param_shape = _reshape_samples(samples, has_chains)
    rhat = _rhat_from_chains(_split_chains(arr))
    if param_shape:
        return rhat.reshape(param_shape)
    return np.squeeze(rhat)


def _autocorrelation(chain: Array) -> Array:
    """Normalised autocorrelation along axis 0 computed with an FFT."""
    n = chain.shape[0]
    centered = chain - chain.mean(axis=0)
    size = 2 ** int(np.ceil(np.log2(2 * n)))
    freq = np.fft.rfft(centered, n=size, axis=0)
    acov = np.fft.irfft(freq * np.conjugate(freq), n=size, axis=0)[:n] / n
    var0 = acov[0]
    zero_mask = var0 <= 1e-12
    ac = acov / np.where(zero_mask, 1.0, var0)
    if np.any(zero_mask):
        ac[:, zero_mask] = 0.0
        ac[0, zero_mask] = 1.0
    return ac


def _ess_from_chains(chains: Array) -> Array:
    C, N = chains.shape[:2]
    chains2d = chains.reshape(C, N, -1)
    ac_avg = np.zeros((N, chains2d.shape[2]), dtype=float)
    for c in range(C):
        ac_avg += _autocorrelation(chains2d[c])
    ac_avg /= C
    rho = ac_avg[1:]
    ess = np.empty(chains2d.shape[2], dtype=float)
    for j in range(chains2d.shape[2]):
        total = 0.0
        for k in range(0, rho.shape[0], 2):
            pair = rho[k, j]
            if k + 1 < rho.shape[0]:
                pair += rho[k + 1, j]
            if pair < 0:
                break
            total += pair
        ess[j] = min(C * N / max(1.0, 1.0 + 2.0 * total), C * N)
    return ess


def effective_sample_size(samples: Array, has_chains: bool = False) -> Array:
    arr, param_shape = _reshape_samples(samples, has_chains)
    ess = _ess_from_chains(_split_chains(arr))
    if param_shape:
        return ess.reshape(param_shape)
    return np.squeeze(ess)


def relative_efficiency(log_lik: Array) -> Array:
    """Relative MCMC efficiency of the likelihood per observation.

    ``log_lik`` has shape (chains, draws, N); returns (N,) values of
    ESS(exp(log_lik)) / (chains * draws), clipped to (0, 1].
    """
    arr = np.asarray(log_lik, dtype=float)
    if arr.ndim != 3:
        raise ValueError("log_lik must have shape (chains, draws, N).")
    C, D, N = arr.shape
    lik = np.exp(arr - arr.max(axis=(0, 1), keepdims=True))
    ess = np.asarray(effective_sample_size(lik, has_chains=True)).reshape(N)
    return np.clip(ess / float(C * D), 1e-3, 1.0)


def summarize_convergence(samples: Mapping[str, Array], has_chains: bool = True) -> Dict[str, Dict[str, float]]:
    summary: Dict[str, Dict[str, float]] = {}
    for name, arr in samples.items():
        if np.asarray(arr).size == 0:
            continue
        try:
            flat_rhat = np.asarray(split_rhat(arr, has_chains)).ravel()
            flat_ess = np.asarray(effective_sample_size(arr, has_chains)).ravel()
            total = float(np.prod(np.asarray(arr).shape[:2])) if has_chains else float(np.asarray(arr).shape[0])
            summary[name] = {
                "rhat_max": float(np.nanmax(flat_rhat)),
                "rhat_median": float(np.nanmedian(flat_rhat)),
                "ess_min": float(np.min(flat_ess)),
                "ess_median": float(np.median(flat_ess)),
                "ess_ratio_min": float(np.min(flat_ess) / total),
            }
        except ValueError as exc:
            summary[name] = {"error": str(exc)}
    return summary


@dataclass
class ConvergenceReport:
    """Outcome of the convergence checks for one posterior sample set."""

    ok: bool
    parameters: Dict[str, Dict[str, float]]
    divergences: int = 0
    mean_accept_prob: Optional[float] = None
    target_accept_prob: Optional[float] = None
    num_chains: int = 1
    num_draws: int = 0
    messages: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "ok": self.ok,
            "divergences": self.divergences,
            "mean_accept_prob": self.mean_accept_prob,
            "target_accept_prob": self.target_accept_prob,
            "num_chains": self.num_chains,
            "num_draws": self.num_draws,
            "messages": list(self.messages),
            "parameters": self.parameters,
        }


def check_convergence(
    samples: Mapping[str, Array],
    *,
    divergences: int = 0,
    accept_prob: Optional[Array] = None,
    target_accept_prob: Optional[float] = None,
    rhat_threshold: float = RHAT_THRESHOLD,
    ess_ratio_threshold: float = ESS_RATIO_THRESHOLD,
) -> ConvergenceReport:
    """Run R-hat / ESS / divergence / acceptance checks on ``(chains, draws, ...)`` samples."""
    summary = summarize_convergence(samples, has_chains=True)
    messages: List[str] = []
    for name, stats in summary.items():
        if "error" in stats:
            messages.append(f"{name}: {stats['error']}")
            continue
        if not np.isfinite(stats["rhat_max"]) or stats["rhat_max"] >= rhat_threshold:
            messages.append(f"{name}: R-hat {stats['rhat_max']:.3f} >= {rhat_threshold}")
        if stats["ess_ratio_min"] < ess_ratio_threshold:
            messages.append(
                f"{name}: ESS ratio {stats['ess_ratio_min']:.3f} < {ess_ratio_threshold}"
            )
    if divergences > 0:
        messages.append(f"{divergences} divergent transitions after warmup")

    mean_accept = None
    if accept_prob is not None:
        mean_accept = float(np.mean(accept_prob))
        if target_accept_prob is not None and mean_accept < target_accept_prob - ACCEPT_TOLERANCE:
            messages.append(
                f"mean acceptance {mean_accept:.3f} fell short of target {target_accept_prob:.2f}"
            )

    first = next(iter(samples.values()), None)
    num_chains, num_draws = (0, 0) if first is None else np.asarray(first).shape[:2]
    report = ConvergenceReport(
        ok=not messages,
        parameters=summary,
        divergences=int(divergences),
        mean_accept_prob=mean_accept,
        target_accept_prob=target_accept_prob,
        num_chains=int(num_chains),
        num_draws=int(num_draws),
        messages=messages,
    )
    for msg in messages:
        logger.warning("Convergence check: %s", msg)
    return report
