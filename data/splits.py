"""Dataset splitting helpers."""
from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np
from sklearn.model_selection import KFold, StratifiedKFold

__all__ = ["kfold_indices"]


def _can_stratify(y: Optional[np.ndarray], n_splits: int) -> bool:
    if y is None:
        return False
    labels = np.asarray(y).reshape(-1)
    unique, counts = np.unique(labels, return_counts=True)
    # continuous responses and tiny classes fall back to plain folds
    if unique.size < 2 or unique.size > max(10, labels.size // 10):
        return False
    return bool(np.all(counts >= n_splits))


def kfold_indices(
    n: int,
    n_splits: int = 5,
    seed: Optional[int] = None,
    y: Optional[np.ndarray] = None,
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    Shuffled K-fold partition of ``range(n)``.

    Args:
        n: Number of observations.
        n_splits: Number of folds (``n_splits == n`` gives leave-one-out).
        seed: Random seed controlling the shuffle.
        y: Optional response; binary/categorical responses are stratified.

    Returns:
        List of ``(train, test)`` index arrays; every observation appears in
        exactly one test fold.
    """

    if n <= 0:
        raise ValueError("n must be positive for kfold_indices.")
    if n_splits < 2:
        raise ValueError("kfold_indices requires n_splits >= 2.")
    if n_splits > n:
        raise ValueError("n_splits cannot exceed number of samples.")

    dummy = np.zeros(n, dtype=int)
    if _can_stratify(y, n_splits):
        splitter = StratifiedKFold(n_splits=n_splits, shuffle=True, random_state=seed)
        iterator = splitter.split(dummy, np.asarray(y).reshape(-1))
    else:
        splitter = KFold(n_splits=n_splits, shuffle=True, random_state=seed)
        iterator = splitter.split(dummy)

    folds: List[Tuple[np.ndarray, np.ndarray]] = []
    for train_idx, test_idx in iterator:
        train_arr = np.asarray(train_idx, dtype=int)
        test_arr = np.asarray(test_idx, dtype=int)
        if train_arr.size == 0 or test_arr.size == 0:
            raise ValueError("K-fold split produced an empty train/test fold.")
        folds.append((train_arr, test_arr))
    return folds
