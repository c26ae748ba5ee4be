"""
Fitting Loop - ECS-style component running the parallel DPMM sampler and calling callbacks.

Every iteration the points are split into one contiguous shard per worker. Workers
resample the labels of their shard in parallel against a read-only snapshot of the
parameters; the coordinator then waits for all shards, turns new-cluster proposals
into clusters, proposes merges of neighbouring clusters, drops empty clusters and
resamples the cluster means. Callbacks are only ever called from the coordinator
thread.

CODING CONVENTION:
------------------
Functions with side effects or mutations have an underscore suffix (_).
Pure functions (no side effects, no mutations) have no underscore.

Examples:
- Pure: sample_shard_labels(), merge_shard_labels(), propose_merges(), update_params()
- With side effects: fit_() (mutates model state, calls callbacks)
"""
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import List, NamedTuple, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array

from dpmix.callback import Callback
from dpmix.configs import (
    FitOptions,
    ModelOptions,
    OutlierOptions,
    PriorProtocol,
    validate_fit_options,
    validate_model_options,
)
from dpmix.eval_data import freeze
from dpmix.prior import squared_distances
from dpmix.random_utils import infinite_safe_keys, split_keys_, uniform64
from dpmix.sampling import categorical_from_uniforms, replacement_sample_weighted

logger = logging.getLogger(__name__)

OUTLIER_LABEL = -1
NEW_CLUSTER_LABEL = -2


def logsumexp_rows(a: np.ndarray) -> np.ndarray:
    """Pure function computing log(sum(exp(a), axis=1)) stably."""
    if a.shape[1] == 0:
        return np.full(a.shape[0], -np.inf)
    m = np.max(a, axis=1, keepdims=True)
    m = np.where(np.isfinite(m), m, 0.0)
    return (m + np.log(np.sum(np.exp(a - m), axis=1, keepdims=True)))[:, 0]


class MixtureParams(NamedTuple):
    """Read-only snapshot of the mixture handed to callbacks and metrics."""
    means: np.ndarray
    weights: np.ndarray
    counts: np.ndarray
    prior: PriorProtocol
    alpha: float
    outlier: Optional[OutlierOptions]

    def n_clusters(self) -> int:
        return int(self.means.shape[0])

    def log_weights(self) -> np.ndarray:
        """Log weights of the clusters, followed by the outlier component if enabled."""
        with np.errstate(divide='ignore'):
            log_w = np.log(self.weights)
        if self.outlier is not None:
            log_w = np.append(log_w, math.log(self.outlier.weight))
        return log_w

    def component_log_density(self, X: np.ndarray) -> np.ndarray:
        """Weighted log density of rows X (n, d) under every component, shape (n, K[+1])."""
        cols = self.prior.log_likelihood(X, self.means)
        if self.outlier is not None:
            outlier_col = self.prior.log_predictive(X, scale=self.outlier.scale)
            cols = np.concatenate([cols, outlier_col[:, None]], axis=1)
        return cols + self.log_weights()[None, :]

    def predict(self, points: np.ndarray) -> np.ndarray:
        """
        Assign columns of points (n_dim, n_points) to their most probable cluster.

        Returns:
            Labels of shape (n_points,), OUTLIER_LABEL for points claimed by the outlier component
        """
        X = np.asarray(points, dtype=np.float64).T
        if X.shape[0] == 0:
            return np.zeros(0, dtype=np.int64)
        best = np.argmax(self.component_log_density(X), axis=1)
        return np.where(best < self.n_clusters(), best, OUTLIER_LABEL).astype(np.int64)

    def log_likelihood(self, points: np.ndarray) -> float:
        """Mean per-point log density of points (n_dim, n_points) under the mixture."""
        X = np.asarray(points, dtype=np.float64).T
        return float(np.mean(logsumexp_rows(self.component_log_density(X))))


def shard_logits(X: np.ndarray, params: MixtureParams, allow_new: bool) -> np.ndarray:
    """
    Pure function building unnormalized log label probabilities for rows X.

    Columns: existing clusters, then the new-cluster column (if allow_new), then
    the outlier column (if enabled). Cluster columns follow the Chinese restaurant
    process: existing clusters weigh their size, a new cluster weighs alpha.
    """
    in_weight = 1.0 - params.outlier.weight if params.outlier is not None else 1.0
    log_norm = math.log(in_weight) - math.log(float(params.counts.sum()) + params.alpha)

    cols = [params.prior.log_likelihood(X, params.means) + np.log(params.counts)[None, :] + log_norm]
    if allow_new:
        new_col = params.prior.log_predictive(X) + math.log(params.alpha) + log_norm
        cols.append(new_col[:, None])
    if params.outlier is not None:
        outlier_col = params.prior.log_predictive(X, scale=params.outlier.scale)
        cols.append(outlier_col[:, None] + math.log(params.outlier.weight))
    return np.concatenate(cols, axis=1)


def choose_from_logits(logits: np.ndarray, u: float) -> int:
    """Pure function picking an index with probability proportional to exp(logits), given uniform u."""
    return int(categorical_from_uniforms(np.exp(logits - np.max(logits)), np.array([u]))[0])


def seat_new_points(
    X: np.ndarray,
    prior: PriorProtocol,
    alpha: float,
    u: np.ndarray,
    max_new: int,
    argmax: bool,
) -> np.ndarray:
    """
    Pure function seating points that asked for a new cluster, one at a time.

    Each point joins one of the fresh clusters opened so far in its shard, with
    weight size times posterior predictive, or opens another with weight alpha
    times prior predictive, until max_new fresh clusters exist.

    Returns:
        Local fresh cluster ids of shape (n,), contiguous from 0
    """
    d = X.shape[1]
    counts = np.zeros(0)
    sums = np.zeros((0, d))
    ids = np.empty(X.shape[0], dtype=np.int64)
    log_alpha = math.log(alpha)
    for idx in range(X.shape[0]):
        x = X[idx:idx + 1]
        logits = prior.log_posterior_predictive(x, counts, sums)[0] + np.log(counts)
        if counts.shape[0] < max_new:
            logits = np.append(logits, log_alpha + prior.log_predictive(x)[0])
        choice = int(np.argmax(logits)) if argmax else choose_from_logits(logits, float(u[idx]))
        if choice == counts.shape[0]:
            counts = np.append(counts, 0.0)
            sums = np.vstack([sums, np.zeros((1, d))])
        counts[choice] += 1.0
        sums[choice] += X[idx]
        ids[idx] = choice
    return ids


def sample_shard_labels(
    X: np.ndarray,
    params: MixtureParams,
    key: Array,
    max_new: int,
    argmax: bool,
) -> np.ndarray:
    """
    Pure function resampling the labels of one shard. Runs on a worker thread.

    Returns:
        Labels of shape (n,): cluster index, OUTLIER_LABEL, or
        NEW_CLUSTER_LABEL - j for the shard's j-th fresh cluster
    """
    choice_key, seat_key = jax.random.split(key)
    allow_new = max_new > 0
    logits = shard_logits(X, params, allow_new)
    if argmax:
        choice = np.argmax(logits, axis=1)
    else:
        choice = np.asarray(jax.random.categorical(choice_key, jnp.asarray(logits), axis=-1))

    k = params.n_clusters()
    labels = choice.astype(np.int64)
    if params.outlier is not None:
        labels[choice == logits.shape[1] - 1] = OUTLIER_LABEL
    if allow_new:
        is_new = choice == k
        n_new = int(np.sum(is_new))
        if n_new:
            u = uniform64(seat_key, (n_new,))
            local = seat_new_points(X[is_new], params.prior, params.alpha, u, max_new, argmax)
            labels[is_new] = NEW_CLUSTER_LABEL - local
    return labels


def new_cluster_caps(n_clusters: int, max_clusters: int, n_shards: int) -> List[int]:
    """Pure function sharing the remaining cluster budget between shards, earlier shards first."""
    base, extra = divmod(max(max_clusters - n_clusters, 0), n_shards)
    return [base + (1 if s < extra else 0) for s in range(n_shards)]


def merge_shard_labels(shard_labels: List[np.ndarray], n_clusters: int) -> np.ndarray:
    """Pure function joining shard labels, giving each shard's fresh clusters global ids."""
    next_id = n_clusters
    merged = []
    for labels in shard_labels:
        labels = labels.copy()
        is_new = labels <= NEW_CLUSTER_LABEL
        if is_new.any():
            local = NEW_CLUSTER_LABEL - labels[is_new]
            labels[is_new] = next_id + local
            next_id += int(local.max()) + 1
        merged.append(labels)
    return np.concatenate(merged) if merged else np.zeros(0, dtype=np.int64)


def compact_labels(labels: np.ndarray) -> Tuple[np.ndarray, int]:
    """Pure function dropping empty clusters and relabelling the rest to 0..K-1."""
    inlier = labels >= 0
    unique_ids, inverse = np.unique(labels[inlier], return_inverse=True)
    out = labels.copy()
    out[inlier] = inverse
    return out, int(unique_ids.shape[0])


def cluster_stats(X: np.ndarray, labels: np.ndarray, n_clusters: int):
    """Pure function returning counts (K,), sums (K, d) and squared-norm sums (K,) of compact labels."""
    inlier = labels >= 0
    counts = np.bincount(labels[inlier], minlength=n_clusters).astype(np.float64)
    sums = np.zeros((n_clusters, X.shape[1]))
    np.add.at(sums, labels[inlier], X[inlier])
    sumsqs = np.bincount(labels[inlier], weights=np.sum(X[inlier] ** 2, axis=1), minlength=n_clusters)
    return counts, sums, sumsqs


def propose_merges(
    X: np.ndarray,
    labels: np.ndarray,
    n_clusters: int,
    options: ModelOptions,
    key: Array,
) -> np.ndarray:
    """
    Pure function proposing to merge each cluster with its nearest neighbour.

    A merge of clusters a and b is accepted with probability
    min(1, p(merged partition) / p(current partition)) under the Chinese
    restaurant process prior and the prior's marginal likelihood. A cluster takes
    part in at most one merge per call. Shards open clusters independently, so
    this folds duplicates of the same cluster back together.

    Returns:
        Labels with merged clusters sharing an id, not compacted
    """
    if n_clusters < 2:
        return labels
    counts, sums, sumsqs = cluster_stats(X, labels, n_clusters)
    centers = sums / counts[:, None]
    d2 = squared_distances(centers, centers)
    np.fill_diagonal(d2, np.inf)
    nearest = np.argmin(d2, axis=1)
    pairs = sorted({(min(a, int(b)), max(a, int(b))) for a, b in enumerate(nearest)}, key=lambda p: d2[p])

    u = uniform64(key, (len(pairs),))
    log_m = options.prior.log_marginal(counts, sums, sumsqs)
    log_alpha = math.log(options.alpha)
    target = np.arange(n_clusters)
    used = set()
    for (a, b), u_ab in zip(pairs, u):
        if a in used or b in used:
            continue
        n_a, n_b = counts[a], counts[b]
        log_m_ab = options.prior.log_marginal(
            np.array([n_a + n_b]), (sums[a] + sums[b])[None, :], np.array([sumsqs[a] + sumsqs[b]])
        )[0]
        log_ratio = (
            log_m_ab - log_m[a] - log_m[b]
            + math.lgamma(n_a + n_b) - math.lgamma(n_a) - math.lgamma(n_b) - log_alpha
        )
        if log_ratio >= 0 or u_ab < math.exp(log_ratio):
            target[b] = a
            used.update((a, b))

    out = labels.copy()
    inlier = labels >= 0
    out[inlier] = target[labels[inlier]]
    return out


def update_params(
    X: np.ndarray,
    labels: np.ndarray,
    n_clusters: int,
    options: ModelOptions,
    key: Array,
) -> MixtureParams:
    """Pure function drawing new cluster means and weights from compact labels."""
    counts, sums, _ = cluster_stats(X, labels, n_clusters)
    means = options.prior.sample_means(key, counts, sums)

    in_weight = 1.0 - options.outlier.weight if options.outlier is not None else 1.0
    total = counts.sum()
    weights = in_weight * counts / total if total > 0 else np.zeros(n_clusters)

    return MixtureParams(
        means=freeze(np.asarray(means, dtype=np.float64)),
        weights=freeze(weights),
        counts=freeze(counts),
        prior=options.prior,
        alpha=options.alpha,
        outlier=options.outlier,
    )


def check_points(points: np.ndarray, dim: int) -> np.ndarray:
    """Validate a (dim, n_points) matrix and return it as float64 rows (n_points, dim)."""
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2:
        raise ValueError(f"Points must be a (n_dim, n_points) matrix, got shape {points.shape}")
    if points.shape[0] != dim:
        raise ValueError(f"Points have dimension {points.shape[0]}, model expects {dim}")
    if points.shape[1] == 0:
        raise ValueError("Cannot fit a model to an empty point set")
    if not np.all(np.isfinite(points)):
        raise ValueError("Points contain non-finite values")
    return np.ascontiguousarray(points.T)


class DPMM:
    """
    Dirichlet process mixture model fitted with a parallel Gibbs-style sampler.
    """

    def __init__(self, options: ModelOptions):
        validate_model_options(options)
        self.options = options
        self.params: Optional[MixtureParams] = None
        self.labels: Optional[np.ndarray] = None

    @classmethod
    def from_options(cls, options: ModelOptions) -> 'DPMM':
        return cls(options)

    def fit_(
        self,
        points: np.ndarray,
        fit_options: FitOptions,
        callback: Optional[Callback] = None,
    ) -> MixtureParams:
        """
        Fit the model. Mutates the model state and calls the callback hooks.

        Args:
            points: Points to cluster, shape (n_dim, n_points)
            fit_options: Options of the fitting loop
            callback: Optional callback, called as before_step_, during_step_,
                after_step_ once per iteration

        Returns:
            Final parameters (also stored on self.params)
        """
        validate_fit_options(fit_options)
        X = check_points(points, self.options.dim)
        n_points = X.shape[0]
        key_gen = infinite_safe_keys(fit_options.seed)

        init = replacement_sample_weighted(key_gen, np.ones(fit_options.init_clusters), n_points)
        labels, n_clusters = compact_labels(init)
        params = update_params(X, labels, n_clusters, self.options, next(key_gen).get())

        n_shards = min(fit_options.workers, n_points)
        shards = np.array_split(np.arange(n_points), n_shards)
        logger.info(
            f"Fitting DPMM on {n_points} points (dim={self.options.dim}) "
            f"for {fit_options.iters} iterations with {fit_options.workers} workers"
        )

        with ThreadPoolExecutor(max_workers=fit_options.workers, thread_name_prefix="dpmix-worker") as pool:
            for i in range(fit_options.iters):
                if callback is not None:
                    callback.before_step_(i)

                argmax = i >= fit_options.iters - fit_options.argmax_sample_stop
                k = params.n_clusters()
                caps = new_cluster_caps(k, fit_options.max_clusters, n_shards)
                keys = split_keys_(key_gen, n_shards)
                futures = [
                    pool.submit(sample_shard_labels, X[idx], params, key, cap, argmax)
                    for idx, key, cap in zip(shards, keys, caps)
                ]
                # Barrier: result() re-raises worker exceptions on the coordinator
                shard_labels = [f.result() for f in futures]

                labels, n_clusters = compact_labels(merge_shard_labels(shard_labels, k))
                merged = propose_merges(X, labels, n_clusters, self.options, next(key_gen).get())
                labels, n_clusters = compact_labels(merged)
                params = update_params(X, labels, n_clusters, self.options, next(key_gen).get())
                logger.debug(f"Iteration {i}: {n_clusters} clusters, {int(np.sum(labels < 0))} outliers")

                if callback is not None:
                    callback.during_step_(i, params)
                    callback.after_step_(i)

        self.params = params
        self.labels = freeze(labels)
        logger.info(f"Finished fitting with {params.n_clusters()} clusters")
        return params

    def predict(self, points: np.ndarray) -> np.ndarray:
        """Assign columns of points (n_dim, n_points) to clusters of the fitted model."""
        if self.params is None:
            raise RuntimeError("Model has not been fitted. Call fit_() first.")
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[0] != self.options.dim:
            raise ValueError(f"Expected points of shape ({self.options.dim}, n_points), got {points.shape}")
        return self.params.predict(points)
