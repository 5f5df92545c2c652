"""Data subpackage: synthetic generators, preprocessing, splits, and loaders."""

from .generators import generate_synthetic, synthetic_config_from_dict, SyntheticConfig, SyntheticDataset, SCENARIO_GENERATORS
from .preprocess import (
    DataQualityError,
    check_complete,
    drop_zero_as_missing,
    standardize_X,
    apply_standardization,
    StandardizationConfig,
    StandardizeResult,
)
from .splits import kfold_indices
from .loaders import load_real_dataset, resolve_loader_config, LoadedDataset, DATASET_PRESETS
