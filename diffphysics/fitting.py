"""
Straight-Line Fitting

The smallest end-to-end use of the optimizer loop: a line y = slope * x +
offset is fitted to a cloud of points by gradient descent on

    error = sqrt(Σ (slope * x_i + offset - y_i)^2) / N

and every iterate is returned so the fit can be replayed or animated.
"""

from __future__ import annotations
from typing import NamedTuple

import jax.numpy as jnp
from jax import Array

from diffphysics import autodiff as ad
from diffphysics.errors import require
from diffphysics.optimization import optimize_gradient_descent


class Line(NamedTuple):
    """Straight line in the plane; a pytree, so it can be optimized directly."""
    slope: float | Array
    offset: float | Array

    def y(self, x: float | Array) -> Array:
        return self.slope * x + self.offset


def _check_points(points: Array, operation: str) -> Array:
    points = jnp.asarray(points, dtype=float)
    require(
        points.ndim == 2 and points.shape[1] == 2 and points.shape[0] > 0,
        operation, "points must have shape (N, 2) with N > 0", shape=points.shape,
    )
    return points


def line_error(line: Line, points: Array) -> Array:
    """
    Root of the summed squared vertical residuals, divided by the point count.

    A line through every point has no derivative here (sqrt at 0) and
    raises DomainError.
    """
    points = _check_points(points, "line_error")
    residuals = line.y(points[:, 0]) - points[:, 1]
    return ad.sqrt(jnp.sum(residuals * residuals)) / points.shape[0]


def fit_line(
    points: Array,
    initial: Line = Line(slope=0.0, offset=0.0),
    learning_rate: float = 0.02,
    num_iterations: int = 20,
) -> list[Line]:
    """
    Fit a line to `points` with plain gradient descent.

    Returns:
        The starting line followed by the line after each iteration
        (num_iterations + 1 entries)
    """
    points = _check_points(points, "fit_line")
    result = optimize_gradient_descent(
        lambda line: line_error(line, points),
        initial,
        learning_rate=learning_rate,
        num_iterations=num_iterations,
        record_params=True,
    )
    return [Line(*line) for line in result.history['params']] + [Line(*result.final_params)]
