"""
Scalar Fields

A scalar field is a square 2D JAX array indexed [row][col] (water height on
a regular grid). The discrete Laplacian uses the five-point stencil

    Δu[x, y] = (u[x, y+1] + u[x, y-1] + u[x-1, y] + u[x+1, y] - 4 u[x, y]) / Δx²

and is evaluated on interior points only. Boundary rows and columns are
never written, so they keep whatever value they started with (a fixed
Dirichlet boundary, not necessarily zero).
"""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np
from jax import Array

from diffphysics.errors import require
from diffphysics.update import update


Field = Array  # Shape: (resolution, resolution)

INTERIOR = (slice(1, -1), slice(1, -1))


def require_square(u: Field, operation: str = "field") -> int:
    """Check that `u` is a square grid of at least 3x3 and return its resolution."""
    shape = jnp.shape(u)
    require(
        len(shape) == 2 and shape[0] == shape[1],
        operation, "field must be square", shape=shape,
    )
    require(shape[0] >= 3, operation, "field needs at least one interior point", shape=shape)
    return shape[0]


def laplacian(u: Field, dx: float) -> Array:
    """Five-point Laplacian on the interior, shape (n - 2, n - 2)."""
    return (
        u[1:-1, 2:] + u[1:-1, :-2] + u[:-2, 1:-1] + u[2:, 1:-1] - 4.0 * u[1:-1, 1:-1]
    ) / dx / dx


def laplacian_at(u: Field, x: int, y: int, dx: float) -> Array:
    """Five-point Laplacian at a single interior point."""
    n = jnp.shape(u)[0]
    require(0 < x < n - 1 and 0 < y < n - 1, "laplacian_at", "point is not interior", x=x, y=y)
    return (u[x, y + 1] + u[x, y - 1] + u[x - 1, y] + u[x + 1, y] - 4.0 * u[x, y]) / dx / dx


def update_interior(u: Field, values: Array) -> Field:
    """Replace the interior of `u`, leaving the boundary untouched."""
    return update(u, INTERIOR, values)


def zeros(resolution: int) -> Field:
    return jnp.zeros((resolution, resolution))


def impulse(resolution: int, row: int, col: int, height: float = 1.0) -> Field:
    """Flat field with a single raised cell."""
    return update(zeros(resolution), (row, col), height)


def centered_target(image: Array | np.ndarray, resolution: int) -> Field:
    """
    Prepare a grayscale image as an optimization target.

    The image must already be `resolution` x `resolution`; it is shifted to
    zero mean so that it is comparable with a water surface at rest.
    """
    image = jnp.asarray(image, dtype=float)
    require(
        image.shape == (resolution, resolution),
        "centered_target", "target image must match the field resolution",
        shape=image.shape, resolution=resolution,
    )
    return image - jnp.mean(image)
