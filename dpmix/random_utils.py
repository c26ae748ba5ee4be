from __future__ import annotations

from typing import Iterator, List, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array


KeyGen = Iterator['SafeKey']


class SafeKey:
    """Safety wrapper for PRNG keys."""

    def __init__(self, key: Array):
        self._key = key
        self._used = False

    def _assert_not_used(self) -> None:
        if self._used:
            raise RuntimeError('Random key has been used previously.')

    def get(self) -> Array:
        self._assert_not_used()
        self._used = True
        return self._key

    def split(self, num_keys=2) -> Tuple['SafeKey', ...]:
        self._assert_not_used()
        self._used = True
        new_keys = jax.random.split(self._key, num_keys)
        return tuple(SafeKey(k) for k in new_keys)


def infinite_safe_keys(seed: int) -> KeyGen:
    init_key = jax.random.key(seed)
    while True:
        init_key, key = jax.random.split(init_key)
        yield SafeKey(key)


def split_keys_(key_gen: KeyGen, num_keys: int) -> List[Array]:
    """
    Draw one raw key per consumer from the generator. Advances key_gen.

    Key generators are not thread-safe; the coordinator calls this before
    handing work to worker threads so each worker owns its key.
    """
    if num_keys <= 0:
        return []
    return [k.get() for k in next(key_gen).split(num_keys)]


def uniform64(key: Array, shape: Tuple[int, ...]) -> np.ndarray:
    """
    Draw float64 uniforms in [0, 1) with 53 random bits each.

    jax draws float32 unless x64 is enabled, which puts every value on a 2^-23
    grid. Two uint32 words per value give the full float64 mantissa instead.
    """
    words = np.asarray(jax.random.bits(key, (2,) + tuple(shape), dtype=jnp.uint32)).astype(np.uint64)
    hi = words[0] >> np.uint64(5)
    lo = words[1] >> np.uint64(6)
    return (hi * np.float64(2 ** 26) + lo) / np.float64(2 ** 53)
