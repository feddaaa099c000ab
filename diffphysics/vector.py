"""
2D Vector Algebra

Vectors are JAX arrays of shape (2,) holding (x, y); functions that reduce
over the last axis also accept batches of shape (..., 2). Values are never
mutated: every operation returns a new array.

Length, normalization, dot products and angles go through the primitives
of the differentiation core, so their derivatives (and their failures at
zero length / the origin) are the registered ones.
"""

from __future__ import annotations

import jax.numpy as jnp
from jax import Array

from diffphysics import autodiff as ad


Vector2 = Array  # Shape: (2,) - [x, y]


def vec2(x: float | Array, y: float | Array) -> Vector2:
    """Build a vector from its components."""
    return jnp.stack([jnp.asarray(x, dtype=float), jnp.asarray(y, dtype=float)])


ZERO = jnp.zeros(2)
UNIT_X = jnp.array([1.0, 0.0])
UNIT_Y = jnp.array([0.0, 1.0])


def dot(a: Vector2, b: Vector2) -> Array:
    return ad.dot(a, b)


def magnitude_squared(v: Vector2) -> Array:
    return ad.dot(v, v)


def magnitude(v: Vector2) -> Array:
    """Length of `v`. Raises DomainError for a zero vector."""
    return ad.norm(v)


def normalized(v: Vector2) -> Vector2:
    """Unit vector with the direction of `v`. Raises DomainError for a zero vector."""
    return ad.normalize(v)


def perpendicular(v: Vector2) -> Vector2:
    """`v` rotated by 90 degrees clockwise: (y, -x)."""
    return jnp.stack([v[..., 1], -v[..., 0]], axis=-1)


def cross(a: Vector2, b: Vector2) -> Array:
    """z-component of the 3D cross product of two planar vectors."""
    return a[..., 0] * b[..., 1] - a[..., 1] * b[..., 0]


def direction(v: Vector2) -> Array:
    """Angle of `v` from the x axis. Raises DomainError for a zero vector."""
    return ad.atan2(v[..., 1], v[..., 0])


def from_polar(length: float | Array, angle: float | Array) -> Vector2:
    """Vector of the given length pointing at `angle` radians."""
    return jnp.stack([length * ad.cos(angle), length * ad.sin(angle)], axis=-1)


def is_zero(v: Vector2) -> bool:
    """Stop-gradient test for an exactly zero vector."""
    return not ad.branch(jnp.any(v != 0))
