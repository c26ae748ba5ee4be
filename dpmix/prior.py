"""
Reference prior family: isotropic normal components with a conjugate prior on the means.

Each cluster k generates points from N(mu_k, sigma2 * I) and the means follow
N(mu0, tau2 * I). Swap in any object implementing configs.PriorProtocol to use
a different family.
"""
import math
from typing import Optional

import jax
import numpy as np
from jax import Array


def squared_distances(X: np.ndarray, means: np.ndarray) -> np.ndarray:
    """Pure function computing squared distances between rows of X (n, d) and means (K, d)."""
    d2 = (
        np.sum(X ** 2, axis=1)[:, None]
        - 2.0 * X @ means.T
        + np.sum(means ** 2, axis=1)[None, :]
    )
    return np.maximum(d2, 0.0)


class IsotropicNormal:
    """Normal components with known isotropic variance and a normal prior on the means."""

    def __init__(
        self,
        dim: int,
        sigma2: float = 1.0,
        tau2: float = 10.0,
        mu0: Optional[np.ndarray] = None
    ):
        """
        Args:
            dim: Dimensionality of the points
            sigma2: Within-cluster variance
            tau2: Prior variance of the cluster means
            mu0: Prior mean of the cluster means, zeros by default
        """
        if dim <= 0:
            raise ValueError(f"dim must be positive, got {dim}")
        if sigma2 <= 0 or tau2 <= 0:
            raise ValueError(f"Variances must be positive, got sigma2={sigma2}, tau2={tau2}")
        self.dim = dim
        self.sigma2 = float(sigma2)
        self.tau2 = float(tau2)
        self.mu0 = np.zeros(dim) if mu0 is None else np.asarray(mu0, dtype=np.float64).reshape(dim)

    def __repr__(self) -> str:
        return f"IsotropicNormal(dim={self.dim}, sigma2={self.sigma2}, tau2={self.tau2})"

    def log_likelihood(self, X: np.ndarray, means: np.ndarray) -> np.ndarray:
        d2 = squared_distances(X, means)
        return -0.5 * d2 / self.sigma2 - 0.5 * self.dim * math.log(2 * math.pi * self.sigma2)

    def log_predictive(self, X: np.ndarray, scale: float = 1.0) -> np.ndarray:
        # Marginal of a point under a fresh cluster, optionally widened by scale
        var = scale * (self.sigma2 + self.tau2)
        d2 = np.sum((X - self.mu0) ** 2, axis=1)
        return -0.5 * d2 / var - 0.5 * self.dim * math.log(2 * math.pi * var)

    def posterior(self, counts: np.ndarray, sums: np.ndarray):
        """Posterior precision (K,) and mean (K, d) of the cluster means."""
        precision = 1.0 / self.tau2 + counts / self.sigma2
        post_mean = (self.mu0 / self.tau2 + sums / self.sigma2) / precision[:, None]
        return precision, post_mean

    def log_posterior_predictive(self, X: np.ndarray, counts: np.ndarray, sums: np.ndarray) -> np.ndarray:
        """Log density of rows X (n, d) joining each cluster given its points, shape (n, K)."""
        precision, post_mean = self.posterior(counts, sums)
        var = self.sigma2 + 1.0 / precision
        d2 = squared_distances(X, post_mean)
        return -0.5 * d2 / var[None, :] - 0.5 * self.dim * np.log(2 * math.pi * var)[None, :]

    def log_marginal(self, counts: np.ndarray, sums: np.ndarray, sumsqs: np.ndarray) -> np.ndarray:
        """
        Log marginal likelihood of the points of each cluster, means integrated out.

        Args:
            counts: Points per cluster, shape (K,)
            sums: Sum of the points per cluster, shape (K, d)
            sumsqs: Sum of the squared norms of the points per cluster, shape (K,)
        """
        precision = 1.0 / self.tau2 + counts / self.sigma2
        b = self.mu0 / self.tau2 + sums / self.sigma2
        return (
            -0.5 * counts * self.dim * math.log(2 * math.pi * self.sigma2)
            - 0.5 * self.dim * np.log(self.tau2 * precision)
            - 0.5 * sumsqs / self.sigma2
            - 0.5 * float(self.mu0 @ self.mu0) / self.tau2
            + 0.5 * np.sum(b ** 2, axis=1) / precision
        )

    def sample_means(self, key: Array, counts: np.ndarray, sums: np.ndarray) -> np.ndarray:
        """
        Draw cluster means from their posteriors.

        Args:
            key: PRNG key
            counts: Points per cluster, shape (K,)
            sums: Sum of the points per cluster, shape (K, d)

        Returns:
            Means of shape (K, d)
        """
        precision, post_mean = self.posterior(counts, sums)
        noise = np.asarray(jax.random.normal(key, post_mean.shape), dtype=np.float64)
        return post_mean + noise / np.sqrt(precision)[:, None]
