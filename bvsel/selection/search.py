"""Projection-predictive forward variable selection.

The search grows a submodel one covariate at a time. At every step each
remaining candidate is projected independently (optionally in a thread pool)
and scored by cross-validated predictive utility; the best candidate is
appended to the path, ties going to the lowest covariate index.

State machine: ``INIT -> GROWING -> FINALIZE -> DONE`` with ``ABORTED`` when a
fold refit, the PSIS weights or a candidate projection fails; the failure
propagates as :class:`SelectionError`.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.special import logsumexp
from scipy.stats import norm

from bvsel.loo.psis import psislw
from bvsel.projection.project import (
    Projection,
    ProjectionError,
    ProjectionTargets,
    ReferenceModel,
    cluster_draws,
    project,
    thin_draws,
)
from data.splits import kfold_indices

logger = logging.getLogger(__name__)

_STATS = ("elpd", "mlpd", "mse")
_CV_METHODS = ("loo", "kfold")
_BASELINES = ("best", "ref")
_TIE_TOL = 1e-9

RefitFn = Callable[[np.ndarray], ReferenceModel]


class SelectionError(RuntimeError):
    """Raised when the forward search aborts because a candidate cannot be evaluated."""


class SelectorState(str, Enum):
    INIT = "INIT"
    GROWING = "GROWING"
    FINALIZE = "FINALIZE"
    DONE = "DONE"
    ABORTED = "ABORTED"


@dataclass
class _Fold:
    ref: ReferenceModel
    test: np.ndarray
    search_targets: ProjectionTargets
    pred_targets: ProjectionTargets


@dataclass
class SelectionResult:
    """Outcome of a forward search."""

    path: List[int]
    feature_names: List[str]
    performance: pd.DataFrame
    suggested_size: int
    stat: str
    baseline: str
    cv_method: str
    reference_value: float
    reference_se: float
    state: SelectorState = SelectorState.DONE

    @property
    def selected(self) -> List[str]:
        return [self.feature_names[j] for j in self.path[: self.suggested_size]]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "path": list(self.path),
            "path_names": [self.feature_names[j] for j in self.path],
            "suggested_size": self.suggested_size,
            "selected": self.selected,
            "stat": self.stat,
            "baseline": self.baseline,
            "cv_method": self.cv_method,
            "reference": {"value": self.reference_value, "se": self.reference_se},
            "state": self.state.value,
            "performance": self.performance.reset_index().to_dict(orient="records"),
        }


def _weighted_log_predictive(log_pred: np.ndarray, log_w: np.ndarray) -> np.ndarray:
    """log sum_c w_ci p(y_i | theta_c) with log weights normalised over c."""
    return logsumexp(log_w + log_pred, axis=0)


class ForwardSelector:
    """Forward search over covariates of a reference model.

    ``cv_method="loo"`` scores submodels with PSIS weights taken from the
    reference model (no refits). ``cv_method="kfold"`` needs ``refit``, a
    callable that fits the reference model on the given training indices and
    returns a :class:`ReferenceModel`; held-out rows are then scored exactly.
    """

    def __init__(
        self,
        reference: ReferenceModel,
        *,
        cv_method: str = "loo",
        stat: str = "elpd",
        max_size: Optional[int] = None,
        n_clusters_search: Optional[int] = 20,
        ndraws_pred: Optional[int] = 400,
        baseline: str = "best",
        alpha: float = 2.0 * norm.sf(1.0),
        k: int = 5,
        refit: Optional[RefitFn] = None,
        n_jobs: int = 1,
        regularization: float = 1e-4,
        k_threshold: float = 0.7,
        seed: Optional[int] = None,
    ) -> None:
        if cv_method not in _CV_METHODS:
            raise ValueError(f"cv_method must be one of {_CV_METHODS}.")
        if stat not in _STATS:
            raise ValueError(f"stat must be one of {_STATS}.")
        if baseline not in _BASELINES:
            raise ValueError(f"baseline must be one of {_BASELINES}.")
        if not 0.0 < alpha < 1.0:
            raise ValueError("alpha must lie in (0, 1).")
        if cv_method == "kfold":
            if refit is None:
                raise ValueError("cv_method='kfold' requires a refit callable.")
            if k < 2 or k > reference.n_obs:
                raise ValueError("k must lie in [2, N] for k-fold cross-validation.")
        if max_size is None:
            max_size = reference.n_features
        if not 0 <= max_size <= reference.n_features:
            raise ValueError(f"max_size must lie in [0, {reference.n_features}].")
        if n_jobs < 1:
            raise ValueError("n_jobs must be >= 1.")

        self.reference = reference
        self.cv_method = cv_method
        self.stat = stat
        self.max_size = int(max_size)
        self.n_clusters_search = n_clusters_search
        self.ndraws_pred = ndraws_pred
        self.baseline = baseline
        self.alpha = float(alpha)
        self.k = int(k)
        self.refit = refit
        self.n_jobs = int(n_jobs)
        self.regularization = float(regularization)
        self.k_threshold = float(k_threshold)
        self.seed = seed

        self.state = SelectorState.INIT
        self.path_: List[int] = []
        self.result_: Optional[SelectionResult] = None
        self._folds: List[_Fold] = []
        self._search_targets: Optional[ProjectionTargets] = None
        self._pred_targets: Optional[ProjectionTargets] = None
        self._ref_log_weights: Optional[np.ndarray] = None
        self._search_log_w: Optional[np.ndarray] = None
        self._pred_log_w: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------
    def _prepare(self) -> None:
        ref = self.reference
        if self.cv_method == "loo":
            loo_ref = ref.loo(self.k_threshold)
            if loo_ref.warning:
                logger.warning(
                    "Reference PSIS-LOO has %d observation(s) with k > %.2f; "
                    "submodel LOO estimates inherit this unreliability.",
                    loo_ref.bad_k.size, self.k_threshold,
                )
            self._ref_log_weights = loo_ref.log_weights
            self._search_targets = cluster_draws(ref, self.n_clusters_search, self.seed)
            self._pred_targets = thin_draws(ref, self.ndraws_pred)
            self._search_log_w = self._loo_log_weights(self._search_targets)
            self._pred_log_w = self._loo_log_weights(self._pred_targets)
        else:
            folds = kfold_indices(ref.n_obs, n_splits=self.k, seed=self.seed,
                                  y=ref.y if ref.family.is_binary else None)
            for fold_id, (train, test) in enumerate(folds):
                logger.info("Refitting reference model for fold %d/%d.", fold_id + 1, len(folds))
                fold_ref = self.refit(train)
                self._folds.append(_Fold(
                    ref=fold_ref,
                    test=test,
                    search_targets=cluster_draws(fold_ref, self.n_clusters_search, self.seed),
                    pred_targets=thin_draws(fold_ref, self.ndraws_pred),
                ))

    def _loo_log_weights(self, targets: ProjectionTargets) -> np.ndarray:
        """PSIS log weights aggregated to projection targets, normalised per observation."""
        lw_ref = self._ref_log_weights
        if targets.n_targets == lw_ref.shape[0] and targets.uses_all_draws:
            lw = lw_ref[np.argsort(targets.labels)]
        elif targets.uses_all_draws:
            lw = np.full((targets.n_targets, lw_ref.shape[1]), -np.inf)
            for c in range(targets.n_targets):
                members = targets.labels == c
                lw[c] = logsumexp(lw_ref[members], axis=0)
        else:
            used = np.flatnonzero(targets.labels >= 0)
            ll = self.reference.log_lik()[used]
            lw, _ = psislw(-ll, 1.0 if self.reference.r_eff is None else self.reference.r_eff)
            lw = lw[np.argsort(targets.labels[used])]
        return lw - logsumexp(lw, axis=0, keepdims=True)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def _pointwise_utility(self, subset: Sequence[int], predictive: bool) -> Tuple[np.ndarray, float]:
        """Pointwise utility (higher is better) and mean KL of the submodel over ``subset``."""
        ref = self.reference
        if self.cv_method == "loo":
            targets = self._pred_targets if predictive else self._search_targets
            proj = project(ref, subset, targets, regularization=self.regularization)
            log_w = self._pred_log_w if predictive else self._search_log_w
            if self.stat == "mse":
                yhat = np.sum(np.exp(log_w) * proj.mu(ref.X), axis=0)
                return -(ref.y - yhat) ** 2, float(proj.weights @ proj.kl)
            return _weighted_log_predictive(proj.log_predictive(ref.X, ref.y), log_w), float(proj.weights @ proj.kl)

        utility = np.empty(ref.n_obs)
        kl = 0.0
        for fold in self._folds:
            targets = fold.pred_targets if predictive else fold.search_targets
            proj = project(fold.ref, subset, targets, regularization=self.regularization)
            X_test = ref.X[fold.test]
            y_test = ref.y[fold.test]
            if self.stat == "mse":
                utility[fold.test] = -(y_test - proj.predict(X_test)) ** 2
            else:
                log_w = np.log(proj.weights)[:, None]
                utility[fold.test] = _weighted_log_predictive(proj.log_predictive(X_test, y_test), log_w)
            kl += float(proj.weights @ proj.kl) / len(self._folds)
        return utility, kl

    def _reference_utility(self) -> np.ndarray:
        ref = self.reference
        if self.cv_method == "loo":
            loo_ref = ref.loo(self.k_threshold)
            if self.stat == "mse":
                yhat = np.sum(np.exp(loo_ref.log_weights) * ref.mu(), axis=0)
                return -(ref.y - yhat) ** 2
            return loo_ref.elpd_i
        utility = np.empty(ref.n_obs)
        for fold in self._folds:
            X_test = ref.X[fold.test]
            y_test = ref.y[fold.test]
            eta = fold.ref.intercept[:, None] + fold.ref.coef @ X_test.T
            mu = np.asarray(ref.family.linkinv(eta), dtype=float)
            if self.stat == "mse":
                utility[fold.test] = -(y_test - mu.mean(axis=0)) ** 2
            else:
                ll = ref.family.log_density(y_test[None, :], mu, fold.ref.aux)
                utility[fold.test] = logsumexp(ll, axis=0) - np.log(ll.shape[0])
        return utility

    def _summarise(self, utility: np.ndarray) -> Tuple[float, float]:
        """Report the configured statistic and its standard error from pointwise utilities."""
        n = utility.size
        sd = float(np.std(utility, ddof=1)) if n > 1 else 0.0
        if self.stat == "elpd":
            return float(utility.sum()), sd * np.sqrt(n)
        if self.stat == "mlpd":
            return float(utility.mean()), sd / np.sqrt(n)
        return float(-utility.mean()), sd / np.sqrt(n)

    def _paired(self, a: np.ndarray, b: np.ndarray) -> Tuple[float, float]:
        """Utility-scale difference ``a - b`` and its SE (sum for elpd, mean otherwise)."""
        diff = a - b
        n = diff.size
        sd = float(np.std(diff, ddof=1)) if n > 1 else 0.0
        if self.stat == "elpd":
            return float(diff.sum()), sd * np.sqrt(n)
        return float(diff.mean()), sd / np.sqrt(n)

    def _score_candidates(self, path: Sequence[int], candidates: Sequence[int]) -> Dict[int, float]:
        def _score(j: int) -> float:
            utility, _ = self._pointwise_utility(list(path) + [j], predictive=False)
            return float(np.sum(utility))

        if self.n_jobs == 1 or len(candidates) == 1:
            return {j: _score(j) for j in candidates}
        with ThreadPoolExecutor(max_workers=self.n_jobs) as executor:
            futures = {j: executor.submit(_score, j) for j in candidates}
            return {j: fut.result() for j, fut in futures.items()}

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------
    def fit(self) -> SelectionResult:
        """Run the forward search and return the path, performance curve and suggested size."""
        self.state = SelectorState.INIT
        self.path_ = []
        self._folds = []
        try:
            self._prepare()
            self.state = SelectorState.GROWING
            remaining = list(range(self.reference.n_features))
            while len(self.path_) < self.max_size:
                scores = self._score_candidates(self.path_, remaining)
                if not all(np.isfinite(v) for v in scores.values()):
                    bad = [j for j, v in scores.items() if not np.isfinite(v)]
                    raise ProjectionError(f"non-finite score for candidate(s) {bad}")
                top = max(scores.values())
                # scores equal up to rounding count as ties; lowest index wins
                best = min(j for j in remaining if scores[j] >= top - _TIE_TOL * (1.0 + abs(top)))
                self.path_.append(best)
                remaining.remove(best)
                logger.info(
                    "Step %d: added %s (score %.3f).",
                    len(self.path_), self.reference.feature_names[best], scores[best],
                )

            self.state = SelectorState.FINALIZE
            performance, ref_value, ref_se = self._performance_curve()
            suggested = self.suggest_size(performance)
        except Exception as exc:
            # a partial path is not usable
            self.state = SelectorState.ABORTED
            logger.error("Forward search aborted after %d step(s): %s", len(self.path_), exc)
            raise SelectionError(f"forward search aborted: {exc}") from exc

        self.state = SelectorState.DONE
        self.result_ = SelectionResult(
            path=list(self.path_),
            feature_names=list(self.reference.feature_names),
            performance=performance,
            suggested_size=suggested,
            stat=self.stat,
            baseline=self.baseline,
            cv_method=self.cv_method,
            reference_value=ref_value,
            reference_se=ref_se,
            state=self.state,
        )
        logger.info(
            "Suggested size %d: %s", suggested, ", ".join(self.result_.selected) or "(intercept only)"
        )
        return self.result_

    def _performance_curve(self) -> Tuple[pd.DataFrame, float, float]:
        utilities = []
        kls = []
        for size in range(self.max_size + 1):
            utility, kl = self._pointwise_utility(self.path_[:size], predictive=True)
            utilities.append(utility)
            kls.append(kl)
        ref_utility = self._reference_utility()
        ref_value, ref_se = self._summarise(ref_utility)

        if self.baseline == "ref":
            base = ref_utility
        else:
            totals = [float(np.sum(u)) for u in utilities]
            base = utilities[int(np.argmax(totals))]

        rows = []
        for size, (utility, kl) in enumerate(zip(utilities, kls)):
            value, se = self._summarise(utility)
            diff, se_diff = self._paired(utility, base)
            rows.append({
                "size": size,
                "variable": None if size == 0 else self.reference.feature_names[self.path_[size - 1]],
                self.stat: value,
                "se": se,
                "diff": diff,
                "se_diff": se_diff,
                "kl": kl,
            })
        return pd.DataFrame(rows).set_index("size"), ref_value, ref_se

    def suggest_size(self, performance: pd.DataFrame) -> int:
        """Smallest size whose utility is within ``z * se_diff`` of the baseline.

        ``diff`` is on the utility scale (higher is better), so the rule is
        ``diff + z * se_diff >= 0`` with ``z = Phi^{-1}(1 - alpha / 2)``.
        """
        z = float(norm.ppf(1.0 - self.alpha / 2.0))
        ok = performance["diff"] + z * performance["se_diff"] >= -1e-12
        if not ok.any():
            return int(performance.index.max())
        return int(performance.index[ok.to_numpy()].min())

    def project_selected(self, size: Optional[int] = None, ndraws: Optional[int] = None) -> Projection:
        """Project the reference posterior onto the first ``size`` path entries."""
        if self.result_ is None:
            raise RuntimeError("Run fit() before projecting the selected submodel.")
        if size is None:
            size = self.result_.suggested_size
        if not 0 <= size <= len(self.path_):
            raise ValueError(f"size must lie in [0, {len(self.path_)}].")
        targets = thin_draws(self.reference, self.ndraws_pred if ndraws is None else ndraws)
        try:
            return project(self.reference, self.path_[:size], targets, regularization=self.regularization)
        except ProjectionError as exc:
            raise SelectionError(f"final projection failed: {exc}") from exc


def selector_from_config(reference: ReferenceModel, cfg: Dict[str, Any], refit: Optional[RefitFn] = None,
                         seed: Optional[int] = None) -> ForwardSelector:
    """Build a :class:`ForwardSelector` from the ``selection`` config section."""
    keys = ("cv_method", "stat", "max_size", "n_clusters_search", "ndraws_pred", "baseline",
            "alpha", "k", "n_jobs", "regularization", "k_threshold")
    kwargs = {key: cfg[key] for key in keys if key in cfg}
    return ForwardSelector(reference, refit=refit, seed=cfg.get("seed", seed), **kwargs)
