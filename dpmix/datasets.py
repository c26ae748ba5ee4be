from typing import NamedTuple

import jax
import numpy as np

from dpmix.random_utils import KeyGen


class GaussianBlobs(NamedTuple):
    n_samples: int
    d_x: int
    n_clusters: int
    X: np.ndarray  # (d_x, n_samples), one point per column
    y: np.ndarray  # (n_samples,)
    centers: np.ndarray  # (n_clusters, d_x)


def make_gaussian_blobs(
    key_gen: KeyGen,
    n_samples: int = 1000,
    n_clusters: int = 5,
    d_x: int = 2,
    spread: float = 10.0,
    noise: float = 1.0,
) -> GaussianBlobs:
    """
    Generate isotropic gaussian clusters with ground-truth labels.

    Args:
        key_gen: Generator of SafeKeys
        n_samples: Number of points
        n_clusters: Number of clusters
        d_x: Dimensionality of the points
        spread: Standard deviation of the cluster centers around the origin
        noise: Standard deviation of the points around their center
    """
    if n_samples <= 0 or n_clusters <= 0 or d_x <= 0:
        raise ValueError(
            f"n_samples, n_clusters and d_x must be positive, got {n_samples}, {n_clusters}, {d_x}"
        )
    centers = np.asarray(jax.random.normal(next(key_gen).get(), (n_clusters, d_x))) * spread
    y = np.asarray(jax.random.randint(next(key_gen).get(), (n_samples,), 0, n_clusters))
    offsets = np.asarray(jax.random.normal(next(key_gen).get(), (n_samples, d_x))) * noise
    X = (centers[y] + offsets).astype(np.float64).T
    return GaussianBlobs(n_samples, d_x, n_clusters, X, y.astype(np.int64), centers.astype(np.float64))
