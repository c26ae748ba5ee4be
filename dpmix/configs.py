"""
Type definitions and options for the fitting components.

CODING CONVENTION:
------------------
Functions with side effects or mutations have an underscore suffix (_).
Pure functions (no side effects, no mutations) have no underscore.
"""
from typing import Dict, NamedTuple, Optional, Protocol

import numpy as np
from jax import Array

from dpmix.eval_data import EvalData
from dpmix.prior import IsotropicNormal

Measurements = Dict[str, float]


class ThinParams(Protocol):
    """Read-only view of the current model state handed to callbacks."""

    def n_clusters(self) -> int:
        """Current number of clusters (outlier component excluded)."""
        ...


class PredictiveParams(ThinParams, Protocol):
    """Thin parameters that can also score and assign points."""

    def predict(self, points: np.ndarray) -> np.ndarray:
        """Cluster label per column of points (n_dim, n_points)."""
        ...

    def log_likelihood(self, points: np.ndarray) -> float:
        """Mean per-point log mixture density of points (n_dim, n_points)."""
        ...


class MetricProtocol(Protocol):
    """Protocol interface for metrics run by the monitoring callback."""

    def compute_(
        self,
        i: int,
        data: EvalData,
        params: ThinParams,
        measurements: Measurements
    ) -> None:
        """
        Compute the metric and write named values into measurements.

        Args:
            i: The current iteration
            data: Evaluation data (must not be mutated)
            params: Current model parameters (must not be mutated)
            measurements: Table of named values for this iteration
        """
        ...


class PriorProtocol(Protocol):
    """Protocol interface for the prior family of the cluster components."""

    dim: int

    def log_likelihood(self, X: np.ndarray, means: np.ndarray) -> np.ndarray:
        """Log density of rows X (n, d) under each component, shape (n, K)."""
        ...

    def log_predictive(self, X: np.ndarray, scale: float = 1.0) -> np.ndarray:
        """Log prior predictive density of rows X (n, d), shape (n,)."""
        ...

    def log_posterior_predictive(self, X: np.ndarray, counts: np.ndarray, sums: np.ndarray) -> np.ndarray:
        """Log density of rows X (n, d) joining clusters with the given statistics, shape (n, K)."""
        ...

    def log_marginal(self, counts: np.ndarray, sums: np.ndarray, sumsqs: np.ndarray) -> np.ndarray:
        """Log marginal likelihood of each cluster's points, shape (K,)."""
        ...

    def sample_means(self, key: Array, counts: np.ndarray, sums: np.ndarray) -> np.ndarray:
        """Draw component means (K, d) from their posteriors."""
        ...


class OutlierOptions(NamedTuple):
    """Fixed broad component that absorbs points no cluster explains."""
    weight: float = 0.05
    scale: float = 10.0


class ModelOptions(NamedTuple):
    """Options of the mixture model."""
    dim: int
    prior: PriorProtocol
    alpha: float = 10.0
    outlier: Optional[OutlierOptions] = OutlierOptions()

    @classmethod
    def default(cls, dim: int) -> 'ModelOptions':
        """Model options with an isotropic normal prior of the given dimension."""
        return cls(dim=dim, prior=IsotropicNormal(dim))


class FitOptions(NamedTuple):
    """Options of the fitting loop."""
    seed: int = 42
    init_clusters: int = 1
    max_clusters: int = 100
    iters: int = 100
    argmax_sample_stop: int = 5
    workers: int = 1


def validate_model_options(options: ModelOptions) -> None:
    """Raise ValueError if the model options are inconsistent."""
    if options.dim <= 0:
        raise ValueError(f"dim must be positive, got {options.dim}")
    if options.alpha <= 0:
        raise ValueError(f"alpha must be positive, got {options.alpha}")
    if options.prior.dim != options.dim:
        raise ValueError(f"Prior has dimension {options.prior.dim}, model expects {options.dim}")
    if options.outlier is not None:
        if not 0.0 < options.outlier.weight < 1.0:
            raise ValueError(f"Outlier weight must be in (0, 1), got {options.outlier.weight}")
        if options.outlier.scale <= 0:
            raise ValueError(f"Outlier scale must be positive, got {options.outlier.scale}")


def validate_fit_options(options: FitOptions) -> None:
    """Raise ValueError if the fit options are inconsistent."""
    for name in ('init_clusters', 'max_clusters', 'workers'):
        value = getattr(options, name)
        if value <= 0:
            raise ValueError(f"{name} must be positive, got {value}")
    if options.iters < 0:
        raise ValueError(f"iters must be non-negative, got {options.iters}")
    if options.argmax_sample_stop < 0:
        raise ValueError(f"argmax_sample_stop must be non-negative, got {options.argmax_sample_stop}")
    if options.init_clusters > options.max_clusters:
        raise ValueError(
            f"init_clusters ({options.init_clusters}) exceeds max_clusters ({options.max_clusters})"
        )
