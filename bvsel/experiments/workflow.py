"""
Workflow orchestration for Bayesian GLM fitting, LOO and variable selection.

The function :func:`run_workflow` is the public entry point invoked by the CLI
(`python -m bvsel.cli.run_workflow`). It expects a fully merged configuration
dictionary and an output directory where all artefacts are written:

* dataset preparation (CSV preset or synthetic scenario) with zero-as-missing
  cleaning and covariate standardisation,
* NUTS fit of the reference model with convergence checks,
* PSIS-LOO with Pareto k diagnostics (optionally exact refits for bad k),
* comparison against an intercept-only model and any configured alternatives,
* projection-predictive forward selection and projection of the suggested
  submodel.
"""

from __future__ import annotations

import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from bvsel.diagnostics.convergence import relative_efficiency, summarize_convergence
from bvsel.loo.elpd import K_THRESHOLD, LooResult, loo, loo_compare, reloo
from bvsel.models.glm import BayesianGLM, model_from_config
from bvsel.projection.project import ReferenceModel
from bvsel.selection.search import selector_from_config
from bvsel.utils.io import ensure_dir, save_json
from bvsel.utils.logging_utils import Timer, progress
from data.generators import SCENARIO_GENERATORS, generate_synthetic, synthetic_config_from_dict
from data.loaders import load_real_dataset
from data.preprocess import StandardizationConfig, apply_standardization

logger = logging.getLogger(__name__)


class WorkflowError(RuntimeError):
    """Raised when a configuration-driven workflow cannot be executed."""


def _resolve_seed(*candidates: Any) -> Optional[int]:
    for value in candidates:
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def _prepare_dataset(config: Mapping[str, Any], seed: Optional[int]) -> Tuple[np.ndarray, np.ndarray, List[str], Dict[str, Any]]:
    data_cfg = dict(config.get("data", {}) or {})
    data_type = str(data_cfg.get("type", "csv" if "path" in data_cfg or "preset" in data_cfg else "synthetic")).lower()

    if data_type == "synthetic":
        scenario = str(data_cfg.get("scenario", "custom")).lower()
        syn_cfg = synthetic_config_from_dict(
            data_cfg,
            seed=seed,
            name=config.get("name"),
            family=(config.get("model", {}) or {}).get("family"),
        )
        if scenario == "custom":
            dataset = generate_synthetic(syn_cfg)
        elif scenario in SCENARIO_GENERATORS:
            dataset = SCENARIO_GENERATORS[scenario](syn_cfg)
        else:
            raise WorkflowError(f"Unknown synthetic scenario '{scenario}'. Available: {sorted(SCENARIO_GENERATORS)}")
        meta = {
            "type": "synthetic",
            "scenario": scenario,
            "beta_true": dataset.beta,
            "intercept_true": dataset.intercept,
            **{k: v for k, v in dataset.info.items() if k != "active_idx"},
            "active_idx": dataset.info.get("active_idx"),
        }
        return dataset.X, dataset.y, dataset.feature_names, meta

    if data_type in {"csv", "loader", "real"}:
        base_dir = config.get("config_dir")
        loaded = load_real_dataset(data_cfg, base_dir=None if base_dir is None else Path(base_dir))
        meta = {"type": "csv", **loaded.metadata}
        return loaded.X, loaded.y, loaded.feature_names, meta

    raise WorkflowError(f"Unsupported data.type '{data_type}'.")


def _save_posterior_bundle(model: BayesianGLM, path: Path) -> None:
    arrays = {k: np.asarray(v) for k, v in model.draws_.by_name().items() if v is not None}
    np.savez_compressed(path, feature_names=np.asarray(model.feature_names_), **arrays)


def _fit_compare_models(
    config: Mapping[str, Any],
    reference: BayesianGLM,
    X: np.ndarray,
    y: np.ndarray,
    feature_names: List[str],
    k_threshold: float,
) -> Dict[str, LooResult]:
    """Fit the alternatives listed under ``compare`` and return their LOO results."""
    compare_cfg = config.get("compare", {}) or {}
    if isinstance(compare_cfg, list):
        compare_cfg = {"models": compare_cfg}
    results: Dict[str, LooResult] = {}

    jobs: List[Tuple[str, BayesianGLM, np.ndarray, List[str]]] = []
    if compare_cfg.get("intercept_only", True):
        jobs.append(("intercept_only", reference.clone(), X[:, :0], []))
    base_model_cfg = dict(config.get("model", {}) or {})
    for idx, entry in enumerate(compare_cfg.get("models", []) or []):
        if not isinstance(entry, Mapping):
            raise WorkflowError(f"compare.models[{idx}] must be a mapping.")
        name = str(entry.get("name", f"model_{idx + 1}"))
        model_cfg = deepcopy(base_model_cfg)
        model_cfg.update({k: v for k, v in entry.items() if k != "name"})
        model = model_from_config(model_cfg, config.get("inference"), seed=reference.seed)
        jobs.append((name, model, X, feature_names))

    for name, model, X_m, names_m in progress(jobs, total=len(jobs), desc="compare", disable=len(jobs) < 2):
        with Timer(f"fit:{name}", logger):
            model.fit(X_m, y, feature_names=names_m)
        ll = model.log_likelihood(X_m, y)
        results[name] = loo(ll, r_eff=_r_eff(model, X_m, y), k_threshold=k_threshold)
    return results


def _r_eff(model: BayesianGLM, X: np.ndarray, y: np.ndarray) -> Optional[np.ndarray]:
    if model.draws_ is None or model.draws_.num_draws < 4:
        return None
    return relative_efficiency(model.log_likelihood(X, y, by_chain=True))


def run_workflow(config: Mapping[str, Any], output_dir: Path | str) -> Dict[str, Any]:
    """Run the full fit / LOO / selection workflow and write artefacts to ``output_dir``."""

    out = ensure_dir(Path(output_dir))
    seed = _resolve_seed(config.get("seed"), (config.get("inference", {}) or {}).get("seed"))
    model_cfg = dict(config.get("model", {}) or {})
    inference_cfg = dict(config.get("inference", {}) or {})
    loo_cfg = dict(config.get("loo", {}) or {})
    selection_cfg = dict(config.get("selection", {}) or {})
    convergence_cfg = dict(config.get("convergence", {}) or {})
    k_threshold = float(loo_cfg.get("k_threshold", K_THRESHOLD))

    # Data
    with Timer("data", logger):
        X_raw, y, feature_names, data_meta = _prepare_dataset(config, seed)
        if "family" not in model_cfg and "family" in data_meta:
            model_cfg["family"] = data_meta["family"]
        std_cfg = StandardizationConfig(X=str((config.get("standardization", {}) or {}).get("X", "unit_variance")))
        std = apply_standardization(X_raw, std_cfg)
        X = std.X
    data_meta.update({
        "n": int(X.shape[0]),
        "p": int(X.shape[1]),
        "feature_names": feature_names,
        "x_mean": std.x_mean,
        "x_scale": std.x_scale,
        "standardization": std_cfg.X,
    })
    save_json(data_meta, out / "dataset_meta.json")

    # Reference model
    for key in ("rhat_threshold", "ess_ratio_threshold"):
        if key in convergence_cfg:
            inference_cfg.setdefault(key, convergence_cfg[key])
    try:
        model = model_from_config(model_cfg, inference_cfg, seed=seed)
    except (TypeError, ValueError) as exc:
        raise WorkflowError(f"Invalid model configuration: {exc}") from exc
    with Timer("fit:reference", logger):
        model.fit(X, y, feature_names=feature_names)

    _save_posterior_bundle(model, out / "posterior_samples.npz")
    summary = model.summary(prob=float(config.get("interval_prob", 0.9)))
    summary.to_csv(out / "summary.csv")
    convergence = {
        "report": model.convergence_.as_dict(),
        "parameters": summarize_convergence(
            {k: v for k, v in model.draws_.by_name().items() if v is not None}, has_chains=True
        ),
    }
    save_json(convergence, out / "convergence.json")

    # PSIS-LOO
    with Timer("loo", logger):
        loo_ref = loo(model.log_likelihood(X, y), r_eff=_r_eff(model, X, y), k_threshold=k_threshold)
        if loo_cfg.get("reloo", False) and loo_ref.warning:
            loo_ref = reloo(model, X, y, loo_ref)
    save_json(loo_ref.as_dict(pointwise=True), out / "loo.json")

    with Timer("compare", logger):
        loo_results = {"reference": loo_ref}
        loo_results.update(_fit_compare_models(config, model, X, y, feature_names, k_threshold))
        if len(loo_results) > 1:
            comparison = loo_compare(loo_results)
        else:
            logger.info("No comparison models configured; reporting the reference model only.")
            comparison = pd.DataFrame(
                [{"model": "reference", "rank": 0, "elpd_loo": loo_ref.elpd_loo, "se": loo_ref.se,
                  "elpd_diff": 0.0, "se_diff": 0.0, "p_loo": loo_ref.p_loo, "weight": 1.0,
                  "warning": loo_ref.warning, "n_bad_k": int(loo_ref.bad_k.size)}]
            ).set_index("model")
    comparison.to_csv(out / "loo_compare.csv")

    # Projection-predictive selection
    metrics: Dict[str, Any] = {
        "status": "OK",
        "n": int(X.shape[0]),
        "p": int(X.shape[1]),
        "family": model.family_.name,
        "link": model.family_.link,
        "converged": bool(model.convergence_.ok),
        "elpd_loo": loo_ref.elpd_loo,
        "elpd_loo_se": loo_ref.se,
        "p_loo": loo_ref.p_loo,
        "n_bad_k": int(loo_ref.bad_k.size),
        "loo_compare": comparison.reset_index().to_dict(orient="records"),
    }
    if selection_cfg.get("enabled", True) and X.shape[1] > 0:
        reference = ReferenceModel.from_glm(model, X, y)

        def _refit(train: np.ndarray) -> ReferenceModel:
            fold_model = model.clone().fit(X[train], y[train], feature_names=feature_names)
            return ReferenceModel.from_glm(fold_model, X[train], y[train])

        selection_cfg.setdefault("k_threshold", k_threshold)
        selector = selector_from_config(reference, selection_cfg, refit=_refit, seed=seed)
        with Timer("selection", logger):
            result = selector.fit()
        save_json(result.as_dict(), out / "selection.json")
        result.performance.to_csv(out / "selection_performance.csv")

        projection = selector.project_selected(result.suggested_size)
        projected = projection.summary(feature_names, prob=float(config.get("interval_prob", 0.9)))
        projected.to_csv(out / "projected_summary.csv")
        metrics.update({
            "selection_path": [feature_names[j] for j in result.path],
            "suggested_size": result.suggested_size,
            "selected": result.selected,
            "selector_state": result.state.value,
        })
    else:
        logger.info("Variable selection skipped.")
        pd.DataFrame(columns=["parameter"]).to_csv(out / "projected_summary.csv", index=False)

    save_json(metrics, out / "metrics.json")
    return metrics
