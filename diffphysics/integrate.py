"""
Differentiable Quadrature and ODE Integration

Small numerical building blocks that differentiate like everything else:
trapezoid quadrature over sampled data and a fixed-step classical
Runge-Kutta integrator. Gradients with respect to the integrand's
parameters or the initial value come out of `jax.grad` directly.
"""

from __future__ import annotations
from typing import Callable

import jax.numpy as jnp
from jax import Array

from diffphysics.errors import require


def linspace(start: float, stop: float, count: int = 50) -> tuple[Array, float]:
    """
    Evenly spaced samples over the closed interval [start, stop].

    Returns:
        (samples, step)
    """
    require(count > 1, "linspace", "need at least two samples", count=count)
    step = (stop - start) / (count - 1)
    return start + step * jnp.arange(count), step


def trapz(x: Array, y: Array) -> Array:
    """Integral of samples `y` over the abscissae `x` with the trapezoid rule."""
    x = jnp.asarray(x, dtype=float)
    y = jnp.asarray(y, dtype=float)
    require(
        x.ndim == 1 and x.shape[0] > 1 and x.shape == y.shape,
        "trapz", "x and y must be 1D with equal length > 1", x=x.shape, y=y.shape,
    )
    return jnp.sum((y[1:] + y[:-1]) / 2 * (x[1:] - x[:-1]))


def rk4(
    f: Callable[[Array, Array], Array],
    t_span: tuple[float, float],
    y0: float | Array,
    num_points: int = 50,
) -> Array:
    """
    Solve y' = f(t, y) on `t_span` with the classical Runge-Kutta scheme.

    Args:
        f: Right-hand side
        t_span: (t_start, t_end)
        y0: Initial value
        num_points: Number of samples including both ends (> 2)

    Returns:
        Solution at the `num_points` sample times
    """
    require(num_points > 2, "rk4", "too few sample points", num_points=num_points)
    t, h = linspace(t_span[0], t_span[1], num_points)
    y = [jnp.asarray(y0, dtype=float)]
    for i in range(num_points - 1):
        k1 = h * f(t[i], y[i])
        k2 = h * f(t[i] + h / 2, y[i] + k1 / 2)
        k3 = h * f(t[i] + h / 2, y[i] + k2 / 2)
        k4 = h * f(t[i + 1], y[i] + k3)
        y.append(y[i] + (k1 + 2 * k2 + 2 * k3 + k4) / 6)
    return jnp.stack(y)
