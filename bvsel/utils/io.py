"""I/O utilities for workflow artifacts."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

import numpy as np
import yaml


def ensure_dir(path: Path) -> Path:
    """Create directory if missing and return the path."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def to_serializable(value: Any) -> Any:
    """Convert NumPy / Path rich objects into JSON serialisable forms."""
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Mapping):
        return {str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_serializable(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, float) and not np.isfinite(value):
        return str(value)
    return value


def save_json(data: Any, path: Path) -> None:
    """Write JSON with UTF-8 encoding."""
    ensure_dir(path.parent)
    path.write_text(json.dumps(to_serializable(data), indent=2), encoding="utf-8")


def load_yaml(path: Path) -> Any:
    """Load YAML file into a Python object."""
    return yaml.safe_load(path.read_text(encoding="utf-8"))
