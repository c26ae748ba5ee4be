#!/usr/bin/env python3
"""
Quick tests for dpmix.datasets.

Includes:
- Shapes and label ranges of make_gaussian_blobs
- Reproducibility from the seed of the key generator
"""
import numpy as np
import pytest

from dpmix.datasets import GaussianBlobs, make_gaussian_blobs
from dpmix.random_utils import infinite_safe_keys


def test_gaussian_blobs_shapes():
    print("=== Testing make_gaussian_blobs shapes ===")
    data = make_gaussian_blobs(infinite_safe_keys(0), n_samples=200, n_clusters=4, d_x=3)
    assert isinstance(data, GaussianBlobs)
    assert data.X.shape == (3, 200)
    assert data.y.shape == (200,)
    assert data.centers.shape == (4, 3)
    assert data.y.min() >= 0 and data.y.max() < 4
    assert data.X.dtype == np.float64


def test_gaussian_blobs_points_stay_near_centers():
    data = make_gaussian_blobs(infinite_safe_keys(1), n_samples=500, n_clusters=3, noise=0.1)
    offsets = data.X.T - data.centers[data.y]
    assert np.max(np.abs(offsets)) < 1.0


def test_gaussian_blobs_are_reproducible():
    a = make_gaussian_blobs(infinite_safe_keys(5), n_samples=50)
    b = make_gaussian_blobs(infinite_safe_keys(5), n_samples=50)
    np.testing.assert_array_equal(a.X, b.X)
    np.testing.assert_array_equal(a.y, b.y)


@pytest.mark.parametrize("kwargs", [
    {"n_samples": 0},
    {"n_clusters": 0},
    {"d_x": -1},
])
def test_gaussian_blobs_invalid_sizes(kwargs):
    with pytest.raises(ValueError):
        make_gaussian_blobs(infinite_safe_keys(0), **kwargs)
