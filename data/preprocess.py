"""Data cleaning and standardization utilities for GLM datasets."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

__all__ = [
    "DataQualityError",
    "StandardizationConfig",
    "StandardizeResult",
    "drop_zero_as_missing",
    "check_complete",
    "standardize_X",
    "apply_standardization",
]

logger = logging.getLogger(__name__)

_EPS = 1e-8


class DataQualityError(ValueError):
    """Raised when a design matrix or response still holds missing values."""


@dataclass(frozen=True)
class StandardizationConfig:
    """Configuration for covariate standardization."""

    X: str = "unit_variance"


@dataclass
class StandardizeResult:
    """Result of applying standardization to a design matrix."""

    X: np.ndarray
    x_mean: Optional[np.ndarray] = None
    x_scale: Optional[np.ndarray] = None
    config: StandardizationConfig = field(default_factory=StandardizationConfig)

    def transform(self, X_new: np.ndarray) -> np.ndarray:
        """Apply the stored centring/scaling to new rows."""
        arr = np.asarray(X_new, dtype=float)
        if self.x_mean is None or self.x_scale is None:
            return arr.copy()
        return (arr - self.x_mean) / self.x_scale


def drop_zero_as_missing(
    frame: pd.DataFrame,
    columns: Sequence[str],
) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """Treat zeros in ``columns`` as missing and drop the affected rows.

    Returns the cleaned frame (fresh index) and the number of zero entries
    found per column.
    """

    missing = [col for col in columns if col not in frame.columns]
    if missing:
        raise KeyError(f"Columns {missing} not present in dataset; available: {list(frame.columns)}")
    if not columns:
        return frame.reset_index(drop=True), {}

    zero_counts: Dict[str, int] = {}
    mask = np.zeros(len(frame), dtype=bool)
    for col in columns:
        is_zero = frame[col].to_numpy() == 0
        zero_counts[col] = int(is_zero.sum())
        mask |= is_zero
        if zero_counts[col]:
            logger.info("Column %s: %d zero entries treated as missing.", col, zero_counts[col])

    cleaned = frame.loc[~mask].reset_index(drop=True)
    logger.info("Dropped %d of %d rows with zero-as-missing values.", int(mask.sum()), len(frame))
    return cleaned, zero_counts


def check_complete(X: np.ndarray, y: Optional[np.ndarray] = None) -> None:
    """Raise :class:`DataQualityError` if ``X`` or ``y`` contain NaN/inf."""

    X_arr = np.asarray(X, dtype=float)
    bad_cols = np.flatnonzero(~np.all(np.isfinite(X_arr), axis=0)) if X_arr.size else np.empty(0, dtype=int)
    if bad_cols.size:
        raise DataQualityError(f"Design matrix has missing or non-finite values in columns {bad_cols.tolist()}.")
    if y is not None and not np.all(np.isfinite(np.asarray(y, dtype=float))):
        raise DataQualityError("Response has missing or non-finite values.")


def standardize_X(
    X: np.ndarray,
    method: str = "unit_variance",
    eps: float = _EPS,
) -> tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
    """Standardize feature matrix according to the requested method."""

    arr = np.asarray(X, dtype=float)
    if method is None or str(method).lower() == "none":
        return arr.copy(), None, None

    method_l = str(method).lower()
    mean = arr.mean(axis=0, keepdims=True) if arr.shape[0] else np.zeros((1, arr.shape[1]))
    centered = arr - mean

    if method_l == "unit_variance":
        scale = np.std(centered, axis=0, keepdims=True)
    elif method_l == "center":
        scale = np.ones((1, arr.shape[1]))
    else:
        raise ValueError(f"Unknown standardization method '{method}'.")
    # constant columns stay at zero instead of blowing up
    scale = np.where(scale < eps, 1.0, scale)

    standardized = centered / scale
    return standardized, mean.squeeze(0), scale.squeeze(0)


def apply_standardization(
    X: np.ndarray,
    config: StandardizationConfig | None = None,
) -> StandardizeResult:
    """Check completeness and standardize covariates; the response is left untouched."""

    cfg = config or StandardizationConfig()
    check_complete(X)
    X_std, x_mean, x_scale = standardize_X(X, cfg.X)
    return StandardizeResult(X=X_std, x_mean=x_mean, x_scale=x_scale, config=cfg)
