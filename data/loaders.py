"""Tabular dataset loading helpers for GLM workflows."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .preprocess import DataQualityError, check_complete, drop_zero_as_missing

__all__ = [
    "LoadedDataset",
    "DATASET_PRESETS",
    "resolve_loader_config",
    "load_real_dataset",
]

logger = logging.getLogger(__name__)


@dataclass
class LoadedDataset:
    """Container for externally provided datasets."""

    X: np.ndarray
    y: np.ndarray
    feature_names: List[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_obs(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.X.shape[1])


# Known public CSV exports. Paths are supplied by the caller.
DATASET_PRESETS: Dict[str, Dict[str, Any]] = {
    "diabetes": {
        "sep": ",",
        "response": "Outcome",
        "family": "binomial",
        "zero_as_missing": ["Glucose", "BloodPressure", "SkinThickness", "Insulin", "BMI"],
    },
    "winequality-red": {
        "sep": ";",
        "response": "quality",
        "family": "gaussian",
        "zero_as_missing": [],
    },
    "candy": {
        "sep": ",",
        "response": "winpercent",
        "family": "gaussian",
        "drop": ["competitorname"],
        "zero_as_missing": [],
    },
}


def resolve_loader_config(loader_cfg: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge a preset (``loader_cfg['preset']``) with explicit overrides."""

    cfg: Dict[str, Any] = {}
    preset = loader_cfg.get("preset")
    if preset is not None:
        key = str(preset).strip().lower()
        if key not in DATASET_PRESETS:
            raise ValueError(f"Unknown dataset preset '{preset}'. Expected one of {sorted(DATASET_PRESETS)}.")
        cfg.update({k: (list(v) if isinstance(v, list) else v) for k, v in DATASET_PRESETS[key].items()})
        cfg["preset"] = key
    for key, value in loader_cfg.items():
        if value is not None:
            cfg[key] = value
    cfg.setdefault("sep", ",")
    cfg.setdefault("zero_as_missing", [])
    cfg.setdefault("drop", [])
    return cfg


def _ensure_path(path_like: Any, base_dir: Optional[Path]) -> Path:
    path = Path(str(path_like)).expanduser()
    if not path.is_absolute() and not path.exists() and base_dir is not None:
        path = (base_dir / path).resolve()
    if not path.exists():
        raise FileNotFoundError(f"Dataset file not found: {path}")
    return path


def _select_features(frame: pd.DataFrame, response: str, features: Optional[Sequence[str]], drop: Sequence[str]) -> List[str]:
    if features:
        missing = [col for col in features if col not in frame.columns]
        if missing:
            raise KeyError(f"Requested feature columns {missing} not present in dataset.")
        return [str(col) for col in features]
    excluded = set(drop) | {response}
    return [str(col) for col in frame.columns if col not in excluded]


def load_real_dataset(
    loader_cfg: Mapping[str, Any],
    *,
    base_dir: Optional[Path] = None,
) -> LoadedDataset:
    """Load a delimited text dataset according to loader configuration.

    Supported fields in ``loader_cfg``:
        path (str): location of the CSV file.
        preset (str, optional): one of :data:`DATASET_PRESETS`; supplies defaults
            for the fields below.
        sep (str): column delimiter (``","`` or ``";"``).
        response (str): name of the response column.
        features (list, optional): explicit covariate columns; default is every
            column except the response and ``drop``.
        drop (list, optional): columns to ignore (identifiers, labels).
        zero_as_missing (list, optional): columns where 0 encodes a missing value;
            rows with such zeros are removed.
        dropna (bool, optional): drop rows with NaN before the completeness check.
    """

    if not loader_cfg:
        raise ValueError("loader configuration must be provided for data.type=csv")

    cfg = resolve_loader_config(loader_cfg)
    if not cfg.get("path"):
        raise ValueError("data.path is required to locate the CSV file")
    if not cfg.get("response"):
        raise ValueError("data.response must name the response column")

    path = _ensure_path(cfg["path"], base_dir.resolve() if base_dir is not None else None)
    frame = pd.read_csv(path, sep=cfg["sep"])
    frame.columns = [str(col).strip() for col in frame.columns]
    n_raw = len(frame)

    response = str(cfg["response"])
    if response not in frame.columns:
        raise KeyError(f"Response column '{response}' not found; available: {list(frame.columns)}")

    frame, zero_counts = drop_zero_as_missing(frame, list(cfg["zero_as_missing"]))
    if cfg.get("dropna", False):
        before = len(frame)
        frame = frame.dropna().reset_index(drop=True)
        logger.info("Dropped %d rows with NaN values.", before - len(frame))

    feature_names = _select_features(frame, response, cfg.get("features"), cfg["drop"])
    non_numeric = [col for col in feature_names if not pd.api.types.is_numeric_dtype(frame[col])]
    if non_numeric:
        raise DataQualityError(f"Non-numeric covariate columns {non_numeric}; list them under data.drop.")

    X = frame[feature_names].to_numpy(dtype=float)
    y = frame[response].to_numpy(dtype=float)
    check_complete(X, y)

    metadata: Dict[str, Any] = {
        "source_path": str(path),
        "preset": cfg.get("preset"),
        "sep": cfg["sep"],
        "response": response,
        "n_rows_raw": int(n_raw),
        "n_rows": int(len(frame)),
        "zero_as_missing": zero_counts,
    }
    if "family" in cfg:
        metadata["family"] = cfg["family"]
    logger.info("Loaded %s: %d rows x %d covariates.", path.name, X.shape[0], X.shape[1])

    return LoadedDataset(X=X, y=y, feature_names=feature_names, metadata=metadata)
