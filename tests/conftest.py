"""Shared pytest fixtures for taxa ensemble tests."""

import numpy as np
import pytest

from taxa_ensemble import Dataset, RunConfig


def _blobs(n_negative, n_positive, n_informative, n_noise, shift=2.0, seed=0) -> Dataset:
    """Two Gaussian blobs: the first n_informative columns are shifted for positives."""
    rng = np.random.default_rng(seed)
    n = n_negative + n_positive
    X = rng.normal(size=(n, n_informative + n_noise))
    y = np.array([0] * n_negative + [1] * n_positive)
    X[y == 1, :n_informative] += shift
    return Dataset(
        sample_ids=[f"S{i:04d}" for i in range(n)],
        X=X,
        y=y,
        feature_names=[f"taxon_{i}" for i in range(X.shape[1])],
        class_names=("control", "disease"),
    )


@pytest.fixture
def make_dataset():
    """Factory for synthetic two-blob datasets."""
    return _blobs


@pytest.fixture
def blob_dataset() -> Dataset:
    """60 per class, 3 informative + 50 noise features."""
    return _blobs(60, 60, n_informative=3, n_noise=50, shift=2.0, seed=7)


@pytest.fixture
def tiny_config() -> RunConfig:
    """Small forests so a repetition runs in seconds."""
    return RunConfig(
        train_per_class=15,
        repetitions=3,
        threshold_tree_count=100,
        threshold_forests=4,
        interpretation_tree_count=60,
        interpretation_forests=2,
        max_interpretation_features=8,
        prediction_tree_count=60,
        cv_folds=3,
        ensemble_tree_count=120,
        n_jobs=1,
        base_seed=11,
    )
