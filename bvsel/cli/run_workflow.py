# bvsel/cli/run_workflow.py
from __future__ import annotations

import argparse
import datetime as _dt
import logging
import sys
import traceback
from functools import reduce
from pathlib import Path
from typing import Any, Dict, List

import yaml

from bvsel.utils.io import load_yaml, save_json
from bvsel.utils.logging_utils import log_config, setup_logging


def _verbosity_to_level(verbosity: int) -> int:
    if verbosity == 1:
        return logging.INFO
    if verbosity >= 2:
        return logging.DEBUG
    return logging.WARNING


def _cast_val(v: str) -> Any:
    low = v.lower()
    if low in {"true", "false"}:
        return low == "true"
    if low in {"null", "none"}:
        return None
    try:
        if "." in v or "e" in low:
            return float(v)
        return int(v)
    except ValueError:
        return v


def _parse_overrides(pairs: List[str]) -> Dict[str, Any]:
    """
    Parse CLI overrides like:
      ['seed=42', 'inference.num_chains=2', 'selection.stat=mlpd', 'loo.reloo=true']

    Returns a nested dict merged later into config.
    """
    root: Dict[str, Any] = {}
    for item in pairs:
        if "=" not in item:
            raise ValueError(f"Override must be key=value, got: '{item}'")
        k, v = item.split("=", 1)
        keys = k.split(".")
        d = reduce(lambda acc, kk: acc.setdefault(kk, {}), keys[:-1], root)
        if not isinstance(d, dict):
            raise ValueError(f"Key path conflict at '{k}'")
        d[keys[-1]] = _cast_val(v)
    return root


def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_update(dst[k], v)
        else:
            dst[k] = v
    return dst


def _load_with_defaults(path: Path, seen: frozenset = frozenset()) -> Dict[str, Any]:
    norm_path = path.resolve()
    if norm_path in seen:
        cycle = " -> ".join(str(p) for p in (*seen, norm_path))
        raise ValueError(f"Config defaults cycle detected: {cycle}")
    seen = seen | {norm_path}

    data = load_yaml(norm_path) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config {norm_path} must be a YAML mapping at top-level.")

    defaults = data.pop("defaults", None)
    base: Dict[str, Any] = {}
    if defaults:
        if isinstance(defaults, str):
            defaults = [defaults]
        if not isinstance(defaults, list):
            raise ValueError(f"'defaults' in {norm_path} must be string or list.")
        for item in defaults:
            ref = Path(item)
            if not ref.is_absolute():
                candidates = [norm_path.parent / ref, Path.cwd() / ref]
                resolved = next((c.resolve() for c in candidates if c.exists()), None)
                if resolved is None:
                    raise FileNotFoundError(f"Default config '{item}' referenced from {norm_path} not found.")
                ref = resolved
            base = _deep_update(base, _load_with_defaults(ref, seen))
    return _deep_update(base, data)


def _load_and_merge_configs(paths: List[Path]) -> Dict[str, Any]:
    """
    Load and recursively merge YAML configs. Honors a top-level `defaults`
    key by loading and merging parent configs (relative to the current file).
    """
    cfg: Dict[str, Any] = {}
    for p in paths:
        _deep_update(cfg, _load_with_defaults(p))
    return cfg


def _save_resolved_config(cfg: Dict[str, Any], out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    with (out_dir / "resolved_config.yaml").open("w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False, allow_unicode=True)


def _timestamp() -> str:
    return _dt.datetime.now().strftime("%Y%m%d-%H%M%S")


def _derive_run_dir(base_out: Path, exp_name: str | None) -> Path:
    tag = exp_name if exp_name else "run"
    return base_out / f"{tag}-{_timestamp()}"


def _configure_devices(resolved_cfg: Dict[str, Any]) -> None:
    """Expose one host device per chain when chains run in parallel."""
    inference = resolved_cfg.get("inference", {}) or {}
    if str(inference.get("chain_method", "sequential")) != "parallel":
        return
    import numpyro

    numpyro.set_host_device_count(int(inference.get("num_chains", 4)))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fit a Bayesian GLM, run PSIS-LOO and projection-predictive selection from YAML config.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        nargs="+",
        type=str,
        required=True,
        help="One or more YAML config files (merged from left to right).",
    )
    parser.add_argument(
        "--override",
        "-o",
        nargs="*",
        default=[],
        help="Override config keys: e.g., seed=42 inference.num_chains=2",
    )
    parser.add_argument(
        "--outdir",
        type=str,
        default="outputs/runs",
        help="Base output directory for this run.",
    )
    parser.add_argument(
        "--name",
        type=str,
        default=None,
        help="Run name tag used in run directory naming.",
    )
    parser.add_argument(
        "--verbosity",
        "-v",
        action="count",
        default=0,
        help="Increase logging verbosity (-v INFO, -vv DEBUG).",
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg_paths = [Path(p).expanduser().resolve() for p in args.config]
        for p in cfg_paths:
            if not p.exists():
                raise FileNotFoundError(f"Config not found: {p}")

        base_cfg = _load_and_merge_configs(cfg_paths)
        overrides = _parse_overrides(args.override or [])
        resolved_cfg = _deep_update(base_cfg, overrides)
        # relative data paths resolve against the last config file
        resolved_cfg.setdefault("config_dir", str(cfg_paths[-1].parent))

        base_out = Path(args.outdir).expanduser().resolve()
        run_dir = _derive_run_dir(base_out, args.name or resolved_cfg.get("name"))
        resolved_cfg.setdefault("io", {})
        resolved_cfg["io"]["run_dir"] = str(run_dir)
        _save_resolved_config(resolved_cfg, run_dir)

        logger = setup_logging(_verbosity_to_level(args.verbosity), log_file=str(run_dir / "run.log"))
        log_config(logger, resolved_cfg)
        _configure_devices(resolved_cfg)

        # imported late so the host device count is set before jax initialises
        from bvsel.experiments.workflow import run_workflow

        metrics = run_workflow(resolved_cfg, run_dir)
        save_json(metrics, run_dir / "metrics.json")

        print(f"[OK] Run finished. Artifacts in: {run_dir}")
        return 0
    except Exception:  # pragma: no cover
        print("[FATAL] Workflow failed:\n", file=sys.stderr)
        traceback.print_exc()
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
