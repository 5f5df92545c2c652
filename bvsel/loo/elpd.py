"""PSIS-LOO estimates of expected log predictive density and model comparison.

Estimates come from :func:`arviz.loo` and :func:`arviz.compare`. Results are
kept as :class:`LooResult`, which carries the Pareto k threshold, the smoothed
weights used by the selector and any exact refits.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

import arviz as az
import numpy as np
import pandas as pd
from arviz.stats.stats_utils import ELPDData
from scipy.special import logsumexp

from bvsel.loo.psis import as_inference_data, mean_r_eff, psislw

logger = logging.getLogger(__name__)

K_THRESHOLD = 0.7

_COMPARE_COLUMNS = ["rank", "elpd_loo", "se", "elpd_diff", "se_diff", "p_loo", "weight", "warning", "n_bad_k"]


@dataclass
class LooResult:
    """PSIS-LOO estimate together with its reliability diagnostics."""

    elpd_loo: float
    se: float
    p_loo: float
    elpd_i: np.ndarray
    pareto_k: np.ndarray
    k_threshold: float = K_THRESHOLD
    log_weights: Optional[np.ndarray] = field(default=None, repr=False)
    refitted: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=int))
    elpd_data: Optional[ELPDData] = field(default=None, repr=False)

    @property
    def n_obs(self) -> int:
        return int(self.elpd_i.size)

    @property
    def looic(self) -> float:
        return -2.0 * self.elpd_loo

    @property
    def bad_k(self) -> np.ndarray:
        """Indices of observations whose Pareto k exceeds the threshold."""
        return np.flatnonzero(self.pareto_k > self.k_threshold)

    @property
    def warning(self) -> bool:
        return bool(self.bad_k.size)

    def as_dict(self, pointwise: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "elpd_loo": self.elpd_loo,
            "se": self.se,
            "p_loo": self.p_loo,
            "looic": self.looic,
            "n_obs": self.n_obs,
            "k_threshold": self.k_threshold,
            "pareto_k_max": float(np.max(self.pareto_k)) if self.n_obs else None,
            "n_bad_k": int(self.bad_k.size),
            "bad_k": self.bad_k.tolist(),
            "warning": self.warning,
            "refitted": self.refitted.tolist(),
        }
        if pointwise:
            out["elpd_i"] = self.elpd_i.tolist()
            out["pareto_k"] = self.pareto_k.tolist()
        return out


def loo(
    log_lik: np.ndarray,
    r_eff: Optional[np.ndarray] = None,
    k_threshold: float = K_THRESHOLD,
) -> LooResult:
    """PSIS-LOO from a pointwise log-likelihood matrix of shape (S, N).

    Observations whose Pareto k exceeds ``k_threshold`` are logged and listed
    in :attr:`LooResult.bad_k`; their estimates should be refitted exactly
    (see :func:`reloo`) or treated as unreliable.
    """
    ll = np.asarray(log_lik, dtype=float)
    if ll.ndim != 2:
        raise ValueError("log_lik must have shape (S, N).")
    N = ll.shape[1]
    reff = mean_r_eff(r_eff)
    elpd_data = az.loo(as_inference_data(ll), pointwise=True, reff=reff, scale="log")
    log_weights, _ = psislw(-ll, reff)

    result = LooResult(
        elpd_loo=float(elpd_data["elpd_loo"]),
        se=float(elpd_data["se"]),
        p_loo=float(elpd_data["p_loo"]),
        elpd_i=np.asarray(elpd_data["loo_i"], dtype=float).reshape(-1),
        pareto_k=np.asarray(elpd_data["pareto_k"], dtype=float).reshape(-1),
        k_threshold=k_threshold,
        log_weights=log_weights,
        elpd_data=elpd_data,
    )
    if result.warning:
        logger.warning(
            "PSIS-LOO unreliable for %d of %d observations (Pareto k > %.2f; max k = %.2f).",
            result.bad_k.size, N, k_threshold, float(np.max(result.pareto_k)),
        )
    return result


def loo_compare(results: Mapping[str, LooResult]) -> pd.DataFrame:
    """Rank models by elpd_loo with :func:`arviz.compare`.

    ``elpd_diff`` is the elpd of the best model minus that of each row (zero
    for the best, positive otherwise) and ``se_diff`` its paired standard
    error.
    """
    if len(results) < 2:
        raise ValueError("Provide at least two LOO results to compare.")
    sizes = {res.n_obs for res in results.values()}
    if len(sizes) != 1:
        raise ValueError("All models must be evaluated on the same observations.")
    missing = [name for name, res in results.items() if res.elpd_data is None]
    if missing:
        raise ValueError(f"LOO results {missing} were not produced by loo().")

    table = az.compare({name: res.elpd_data for name, res in results.items()}, ic="loo", scale="log")
    table = table.rename(columns={"dse": "se_diff"})
    table.index.name = "model"
    table["warning"] = [results[name].warning for name in table.index]
    table["n_bad_k"] = [int(results[name].bad_k.size) for name in table.index]
    return table[_COMPARE_COLUMNS]


def _se_of_sum(pointwise: np.ndarray) -> float:
    n = pointwise.size
    return float(np.sqrt(n * np.var(pointwise))) if n > 1 else 0.0


def _replace_elpd_data(data: Optional[ELPDData], result: LooResult) -> Optional[ELPDData]:
    if data is None:
        return None
    values = {key: data[key] for key in data.index}
    values.update(
        elpd_loo=result.elpd_loo,
        se=result.se,
        p_loo=result.p_loo,
        warning=result.warning,
        loo_i=data["loo_i"].copy(data=result.elpd_i.reshape(data["loo_i"].shape)),
        pareto_k=data["pareto_k"].copy(data=result.pareto_k.reshape(data["pareto_k"].shape)),
    )
    return ELPDData(data=list(values.values()), index=list(values.keys()))


def reloo(model, X: np.ndarray, y: np.ndarray, result: LooResult) -> LooResult:
    """Replace unreliable PSIS estimates by exact leave-one-out refits.

    ``model`` is a fitted :class:`~bvsel.models.glm.BayesianGLM`; each
    observation in ``result.bad_k`` is dropped, the model refitted, and the
    held-out log predictive density computed exactly.
    """
    bad = result.bad_k
    if bad.size == 0:
        return result
    X_arr = np.asarray(X, dtype=float)
    y_arr = np.asarray(y, dtype=float)
    elpd_i = result.elpd_i.copy()
    pareto_k = result.pareto_k.copy()
    for i in bad:
        mask = np.ones(y_arr.size, dtype=bool)
        mask[i] = False
        logger.info("Exact refit leaving out observation %d (k = %.2f).", i, result.pareto_k[i])
        refit = model.clone().fit(X_arr[mask], y_arr[mask], feature_names=model.feature_names_)
        ll_i = refit.log_likelihood(X_arr[i:i + 1], y_arr[i:i + 1])[:, 0]
        elpd_i[i] = float(logsumexp(ll_i) - np.log(ll_i.size))
        pareto_k[i] = 0.0
    updated = replace(
        result,
        elpd_loo=float(elpd_i.sum()),
        se=_se_of_sum(elpd_i),
        p_loo=result.p_loo + (result.elpd_loo - float(elpd_i.sum())),
        elpd_i=elpd_i,
        pareto_k=pareto_k,
        refitted=bad.copy(),
    )
    return replace(updated, elpd_data=_replace_elpd_data(result.elpd_data, updated))
