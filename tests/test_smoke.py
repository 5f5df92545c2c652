"""Smoke tests for the workflow runner and its CLI."""
from __future__ import annotations

import json
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bvsel.cli.run_workflow import _load_and_merge_configs, _parse_overrides, main
from bvsel.experiments.workflow import WorkflowError, run_workflow


def _small_config() -> dict:
    return {
        "seed": 123,
        "name": "smoke",
        "data": {"type": "synthetic", "scenario": "custom", "n": 120, "p": 3,
                 "family": "gaussian", "beta": [1.5, 0.0, 0.0], "noise_sigma": 1.0},
        "standardization": {"X": "unit_variance"},
        "model": {"family": "gaussian", "prior": {"name": "normal", "scale": 2.5}},
        "inference": {"num_warmup": 150, "num_samples": 150, "num_chains": 2},
        "loo": {"k_threshold": 0.7, "reloo": False},
        "compare": {"intercept_only": True},
        "selection": {"n_clusters_search": 5, "ndraws_pred": 60},
    }


def test_run_workflow_creates_artifacts(tmp_path):
    metrics = run_workflow(_small_config(), tmp_path)

    assert metrics["status"] == "OK"
    for name in (
        "dataset_meta.json", "posterior_samples.npz", "summary.csv", "convergence.json",
        "loo.json", "loo_compare.csv", "selection.json", "selection_performance.csv",
        "projected_summary.csv", "metrics.json",
    ):
        assert (tmp_path / name).exists(), name

    compare = pd.read_csv(tmp_path / "loo_compare.csv", index_col=0)
    assert set(compare.index) == {"reference", "intercept_only"}
    assert compare.index[0] == "reference"
    assert compare.loc["intercept_only", "elpd_diff"] > 3.0 * compare.loc["intercept_only", "se_diff"]

    selection = json.loads((tmp_path / "selection.json").read_text())
    assert selection["path"][0] == 0
    assert selection["state"] == "DONE"

    posterior = np.load(tmp_path / "posterior_samples.npz")
    assert posterior["beta"].shape == (2, 150, 3)
    meta = json.loads((tmp_path / "dataset_meta.json").read_text())
    assert meta["p"] == 3 and meta["family"] == "gaussian"


def test_run_workflow_rejects_unknown_scenario(tmp_path):
    cfg = _small_config()
    cfg["data"]["scenario"] = "does-not-exist"
    with pytest.raises(WorkflowError):
        run_workflow(cfg, tmp_path)


def test_parse_overrides_casts_values():
    parsed = _parse_overrides(["seed=7", "loo.reloo=true", "selection.stat=mlpd", "loo.k_threshold=0.5",
                               "selection.max_size=null"])
    assert parsed == {
        "seed": 7,
        "loo": {"reloo": True, "k_threshold": 0.5},
        "selection": {"stat": "mlpd", "max_size": None},
    }
    with pytest.raises(ValueError):
        _parse_overrides(["novalue"])


def test_config_defaults_are_merged(tmp_path):
    (tmp_path / "base.yaml").write_text(yaml.safe_dump({"seed": 1, "model": {"family": "gaussian", "prior": {"name": "normal"}}}))
    (tmp_path / "child.yaml").write_text(yaml.safe_dump({"defaults": "base.yaml", "model": {"family": "binomial"}}))
    cfg = _load_and_merge_configs([tmp_path / "child.yaml"])
    assert cfg == {"seed": 1, "model": {"family": "binomial", "prior": {"name": "normal"}}}


def test_bundled_configs_resolve():
    for name in ("diabetes.yaml", "wine.yaml", "candy.yaml", "synthetic.yaml"):
        cfg = _load_and_merge_configs([ROOT / "configs" / name])
        assert "defaults" not in cfg
        assert {"model", "inference", "loo", "selection"} <= set(cfg)


def test_cli_missing_config_returns_error(tmp_path):
    assert main(["--config", str(tmp_path / "nope.yaml"), "--outdir", str(tmp_path)]) == 1
