"""
Sampling Primitives - single-pass samplers used to draw labels and subsets.

All randomness comes from a key generator (see random_utils.infinite_safe_keys).
Streams are consumed in chunks of CHUNK_SIZE items and each chunk draws its
random numbers with one fresh key, so the result depends only on the seed and
the input, never on who else is drawing keys.

CODING CONVENTION:
------------------
Functions with side effects or mutations have an underscore suffix (_).
Pure functions (no side effects, no mutations) have no underscore.

Examples:
- Pure: reservoir_sample(), categorical_probs()
- With side effects: none here; key generators are advanced but never shared
"""
import itertools
from typing import Iterable, Iterator, List, Tuple, TypeVar

import jax
import jax.numpy as jnp
import numpy as np

from dpmix.random_utils import KeyGen, uniform64

T = TypeVar('T')

CHUNK_SIZE = 1024


class DistributionError(ValueError):
    """Weights do not describe a valid categorical distribution."""


def iter_chunks(src: Iterator[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive lists of at most `size` items from src."""
    while True:
        chunk = list(itertools.islice(src, size))
        if not chunk:
            return
        yield chunk


def check_sample_size(k: int) -> None:
    if k < 0:
        raise ValueError(f"Sample size must be non-negative, got {k}")


def check_weights(weights: np.ndarray, offset: int = 0) -> None:
    """Raise DistributionError on the first negative or non-finite weight."""
    bad = ~np.isfinite(weights) | (weights < 0)
    if bad.any():
        idx = int(np.flatnonzero(bad)[0])
        raise DistributionError(
            f"Weight at index {offset + idx} must be finite and non-negative, got {weights[idx]}"
        )


def reservoir_sample(key_gen: KeyGen, src: Iterable[T], k: int) -> Tuple[List[T], int]:
    """
    Sample k items without replacement using reservoir sampling (Algorithm R).

    Args:
        key_gen: Generator of SafeKeys
        src: Sequence or stream to sample from, consumed in a single pass
        k: Reservoir size

    Returns:
        (sampled, n) where n = min(k, len(src)) and sampled holds n items.
        Every item of src is kept with probability k / len(src).
    """
    check_sample_size(k)
    it = iter(src)
    dst = list(itertools.islice(it, k))
    n = len(dst)
    if n < k or k == 0:
        return dst, n

    seen = k
    for chunk in iter_chunks(it, CHUNK_SIZE):
        m = len(chunk)
        # Item at position i replaces slot j ~ U[0, i] when j < k
        positions = np.arange(seen, seen + m, dtype=np.int32)
        js = np.asarray(
            jax.random.randint(next(key_gen).get(), (m,), 0, jnp.asarray(positions + 1))
        )
        for item, j in zip(chunk, js):
            if j < k:
                dst[int(j)] = item
        seen += m
    return dst, n


def weighted_reservoir_sample(
    key_gen: KeyGen,
    weights: Iterable[float],
    k: int
) -> Tuple[List[int], int]:
    """
    Sample k indices without replacement, favouring items with larger weight.

    The first k items fill the reservoir. Each later item adds its weight to the
    running sum and, with probability weight / running sum, replaces a uniformly
    chosen slot.

    Args:
        key_gen: Generator of SafeKeys
        weights: Stream of non-negative weights, one per item
        k: Reservoir size

    Returns:
        (indices, n) where n = min(k, number of weights)

    Raises:
        DistributionError: If a weight is negative or not finite
    """
    check_sample_size(k)
    it = iter(weights)
    head = np.asarray(list(itertools.islice(it, k)), dtype=np.float64)
    check_weights(head)
    n = len(head)
    dst = list(range(n))
    if n < k or k == 0:
        return dst, n

    w_sum = float(head.sum())
    seen = k
    for chunk in iter_chunks(it, CHUNK_SIZE):
        w = np.asarray(chunk, dtype=np.float64)
        check_weights(w, offset=seen)
        m = len(w)
        w_sums = w_sum + np.cumsum(w)

        accept_key, slot_key = next(key_gen).split()
        u = uniform64(accept_key.get(), (m,)) * w_sums
        slots = np.asarray(jax.random.randint(slot_key.get(), (m,), 0, k))

        # A zero running sum has no range to draw from: the item cannot win yet.
        accepted = (w_sums > 0) & (u < w)
        for offset in np.flatnonzero(accepted):
            dst[int(slots[offset])] = seen + int(offset)

        w_sum = float(w_sums[-1])
        seen += m
    return dst, n


def categorical_probs(weights: Iterable[float]) -> np.ndarray:
    """
    Pure function to normalize a weight stream into category probabilities.

    Raises:
        DistributionError: If the stream is empty, has a negative or non-finite
            weight, or does not sum to a positive finite value
    """
    w = np.fromiter(weights, dtype=np.float64)
    if w.size == 0:
        raise DistributionError("Cannot build a distribution from an empty weight stream")
    check_weights(w)
    total = w.sum()
    if not np.isfinite(total) or total <= 0:
        raise DistributionError(f"Weights must sum to a positive finite value, got {total}")
    return w / total


def categorical_from_uniforms(weights: np.ndarray, u: np.ndarray) -> np.ndarray:
    """
    Pure function mapping uniforms in [0, 1) to category indices by inverse CDF.

    Works in float64 throughout, so a category of weight w is chosen with
    probability w / sum(weights) up to float64 rounding. Zero-weight
    categories are never chosen.

    Args:
        weights: Non-negative weights with a positive sum, shape (K,)
        u: Uniforms, any shape

    Returns:
        Integer array of the shape of u with values in [0, K)
    """
    cdf = np.cumsum(np.asarray(weights, dtype=np.float64))
    idx = np.searchsorted(cdf, np.asarray(u, dtype=np.float64) * cdf[-1], side='right')
    return np.minimum(idx, cdf.shape[0] - 1).astype(np.int64)


def replacement_sample_weighted(
    key_gen: KeyGen,
    weights: Iterable[float],
    n_samples: int
) -> np.ndarray:
    """
    Draw n_samples i.i.d. indices with probability proportional to weights.

    Args:
        key_gen: Generator of SafeKeys
        weights: Stream of non-negative weights
        n_samples: Number of draws

    Returns:
        Integer array of shape (n_samples,) with values in [0, len(weights))
    """
    check_sample_size(n_samples)
    probs = categorical_probs(weights)
    if n_samples == 0:
        return np.zeros(0, dtype=np.int64)
    return categorical_from_uniforms(probs, uniform64(next(key_gen).get(), (n_samples,)))
