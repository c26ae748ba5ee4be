"""
Evaluation data selection - a bounded, reproducible subsample for metrics.

Metrics are computed every iteration, so they run on a fixed subsample of at
most max_points columns instead of the whole point set.
"""
import logging
from typing import NamedTuple, Optional

import numpy as np

from dpmix.random_utils import infinite_safe_keys
from dpmix.sampling import reservoir_sample

logger = logging.getLogger(__name__)

DEFAULT_EVAL_SEED = 42


class EvalData(NamedTuple):
    """Evaluation points (n_dim, n_points) and their optional labels (n_points,)."""
    points: np.ndarray
    labels: Optional[np.ndarray]

    @property
    def n_points(self) -> int:
        return int(self.points.shape[1])


def freeze(arr: np.ndarray) -> np.ndarray:
    """Mark an array read-only and return it."""
    arr.setflags(write=False)
    return arr


def build_eval_data(
    points: np.ndarray,
    labels: Optional[np.ndarray] = None,
    max_points: int = 1000,
    seed: int = DEFAULT_EVAL_SEED,
) -> EvalData:
    """
    Create evaluation data by reservoir sampling columns of the main data.

    The same points, labels, max_points and seed always give the same columns
    in the same order. The order is the reservoir order, not sorted.

    Args:
        points: The points to sample from, shape (n_dim, n_points)
        labels: Optional ground-truth labels, shape (n_points,)
        max_points: Maximum number of columns to keep
        seed: Seed for the sampling keys

    Returns:
        EvalData holding read-only copies of the sampled columns and labels

    Raises:
        ValueError: If points is not 2-D, labels are misaligned, or max_points < 0
    """
    points = np.asarray(points)
    if points.ndim != 2:
        raise ValueError(f"Points must be a (n_dim, n_points) matrix, got shape {points.shape}")
    if max_points < 0:
        raise ValueError(f"max_points must be non-negative, got {max_points}")
    n_cols = points.shape[1]
    if labels is not None:
        labels = np.asarray(labels).reshape(-1)
        if labels.shape[0] != n_cols:
            raise ValueError(f"Got {labels.shape[0]} labels for {n_cols} points")

    key_gen = infinite_safe_keys(seed)
    indices, n = reservoir_sample(key_gen, range(n_cols), max_points)
    idx = np.asarray(indices[:n], dtype=np.int64)

    # Fancy indexing copies, so the eval data never aliases the caller's arrays
    eval_points = freeze(points[:, idx])
    eval_labels = freeze(labels[idx]) if labels is not None else None
    logger.debug(f"Selected {n} of {n_cols} points for evaluation")
    return EvalData(points=eval_points, labels=eval_labels)
