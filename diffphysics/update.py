"""
Differentiable Element Update

`update(container, index, value)` returns a copy of `container` with
`container[index]` replaced by `value`. It is how every simulator writes a
single element (a force, a particle state, a running minimum, a stencil
region) inside its per-element loops without mutating anything.

The reverse rule is registered explicitly:

    pullback(seed) = (seed with seed[index] zeroed,   -> to the container
                      seed[index])                    -> to the value

so the sensitivity mass of the incoming seed is split between the two
inputs without loss or duplication.

Indices are static: an int, a tuple of ints, or a tuple mixing ints and
slices (a region write). Out-of-range integer indices raise
PreconditionError; JAX would otherwise silently drop the write. Values whose
dtype would be cast to a different kind (a float into an integer
container) raise PreconditionError instead of being truncated.
"""

from __future__ import annotations
from typing import Any, Union
import functools

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array

from diffphysics.errors import PreconditionError


Index = Union[int, slice, tuple]


# =============================================================================
# Index Normalization
# =============================================================================

def _normalize_index(index: Index, shape: tuple[int, ...]) -> tuple:
    if not isinstance(index, tuple):
        index = (index,)
    if len(index) > len(shape):
        raise PreconditionError(
            "update", "too many indices for container", {"index": index, "shape": shape}
        )
    normalized = []
    for axis, item in enumerate(index):
        if isinstance(item, slice):
            normalized.append(item)
            continue
        item = int(item)
        size = shape[axis]
        if not -size <= item < size:
            raise PreconditionError(
                "update", "index out of range", {"index": index, "shape": shape}
            )
        normalized.append(item % size)
    return tuple(normalized)


def _index_key(index: tuple) -> tuple:
    """Hashable form of a normalized index (slices are unhashable before 3.12)."""
    return tuple(
        ("slice", item.start, item.stop, item.step) if isinstance(item, slice) else item
        for item in index
    )


def _index_from_key(key: tuple) -> tuple:
    return tuple(
        slice(*item[1:]) if isinstance(item, tuple) else item
        for item in key
    )


# =============================================================================
# Forward and Pullback
# =============================================================================

def forward(container: Array, index: tuple, value: Array) -> Array:
    """Copy of `container` with `index` set to `value`."""
    return container.at[index].set(value)


def pullback(seed: Array, index: tuple) -> tuple[Array, Array]:
    """Split `seed` into the container's and the value's sensitivities."""
    return seed.at[index].set(0), seed[index]


@functools.lru_cache(maxsize=None)
def _updater(key: tuple):
    index = _index_from_key(key)

    @jax.custom_vjp
    def updated(container, value):
        return forward(container, index, value)

    def updated_fwd(container, value):
        return forward(container, index, value), None

    def updated_bwd(_, seed):
        return pullback(seed, index)

    updated.defvjp(updated_fwd, updated_bwd)
    return updated


def update(container: Any, index: Index, value: Any) -> Array:
    """
    Return `container` with `container[index] = value`, differentiably.

    Args:
        container: Array to copy
        index: Static int, tuple of ints, or tuple with slices
        value: New element(s); broadcast to the shape of the indexed region

    Returns:
        New array; `container` itself is unchanged
    """
    container = jnp.asarray(container)
    index = _normalize_index(index, container.shape)
    region_shape = np.empty(container.shape, dtype=bool)[index].shape
    value = jnp.asarray(value)
    if not np.can_cast(value.dtype, container.dtype, casting="same_kind"):
        raise PreconditionError(
            "update", "value would be truncated to the container's dtype",
            {"value_dtype": value.dtype, "container_dtype": container.dtype},
        )
    value = jnp.broadcast_to(value.astype(container.dtype), region_shape)
    return _updater(_index_key(index))(container, value)
