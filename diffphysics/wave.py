"""
Differentiable Shallow Water Equation

Finite-difference solution of a damped wave (shallow water) equation on the
unit square, discretized with `resolution` grid points per side (Δx = 1 /
resolution). The update is explicit and second order in time:

    u2 = 2 u1 + (c² Δt² + c α Δt) Δu1 - u0 - c α Δt Δu0

applied to interior points only. The boundary keeps its initial value.
The time step is derived from Δx to stay below the CFL stability limit:

    Δt = (sqrt(α² + Δx² / 3) - α) / c

The stencil is vectorized over the interior and written back with the
differentiable update primitive, so gradients of an objective on the final
surface flow back to the initial water height.
"""

from __future__ import annotations
from typing import NamedTuple
import logging
import math

import jax.numpy as jnp
from jax import Array

from diffphysics.errors import require
from diffphysics.field import INTERIOR, Field, laplacian, require_square, update_interior
from diffphysics.rollout import evolve_compiled, record_for


logger = logging.getLogger(__name__)


class WaveConfig(NamedTuple):
    """
    Physical and numerical constants.

    Attributes:
        resolution: Grid points per side
        c: Wave propagation speed
        alpha: Dispersion (damping) coefficient
    """
    resolution: int = 64
    c: float = 340.0
    alpha: float = 0.001

    @property
    def dx(self) -> float:
        return 1.0 / self.resolution

    @property
    def dt(self) -> float:
        """Largest stable time step for the current Δx."""
        return (math.sqrt(self.alpha ** 2 + self.dx ** 2 / 3) - self.alpha) / self.c


class WaveState(NamedTuple):
    """
    Water surface at two consecutive time levels.

    Attributes:
        u0: Height at the previous time step
        u1: Height at the current time step
        time: Current time
    """
    u0: Field
    u1: Field
    time: float

    @property
    def water_level(self) -> Field:
        return self.u1


def initial_state(height: Field, time: float = 0.0) -> WaveState:
    """Surface at rest: both time levels equal `height`."""
    height = jnp.asarray(height, dtype=float)
    require_square(height, "wave.initial_state")
    return WaveState(u0=height, u1=height, time=float(time))


def step(state: WaveState, config: WaveConfig) -> WaveState:
    """Advance the surface by one time step Δt."""
    resolution = require_square(state.u1, "wave.step")
    require(
        resolution == config.resolution and state.u0.shape == state.u1.shape,
        "wave.step", "field shape does not match the configured resolution",
        u0=state.u0.shape, u1=state.u1.shape, resolution=config.resolution,
    )
    c, alpha, dt, dx = config.c, config.alpha, config.dt, config.dx
    u0, u1 = state.u0, state.u1

    interior = (
        2.0 * u1[INTERIOR]
        + (c * c * dt * dt + c * alpha * dt) * laplacian(u1, dx)
        - u0[INTERIOR]
        - c * alpha * dt * laplacian(u0, dx)
    )
    u2 = update_interior(u1, interior)
    return WaveState(u0=u1, u1=u2, time=state.time + dt)


def evolve(state: WaveState, num_steps: int, config: WaveConfig) -> list[WaveState]:
    """The `num_steps + 1` states starting with `state`."""
    return record_for(state, lambda s: step(s, config), num_steps)


def final_state(state: WaveState, num_steps: int, config: WaveConfig) -> WaveState:
    """State after `num_steps`, computed in one compiled loop."""
    state = state._replace(time=jnp.asarray(state.time, dtype=float))
    return evolve_compiled(state, lambda s: step(s, config), num_steps)


def mean_squared_error(state: WaveState, target: Field, config: WaveConfig) -> Array:
    """Area-weighted squared distance between the current surface and `target`."""
    require(
        jnp.shape(target) == state.u1.shape,
        "mean_squared_error", "target must match the field resolution",
        target=jnp.shape(target), field=state.u1.shape,
    )
    error = target - state.u1
    return jnp.sum(error * error) * config.dx * config.dx


def image_loss(
    height: Field,
    target: Field,
    num_steps: int,
    config: WaveConfig,
) -> Array:
    """Error between the surface after `num_steps` and `target`, given the initial height."""
    final = final_state(initial_state(height), num_steps, config)
    logger.debug("Wave evolved %d steps", num_steps)
    return mean_squared_error(final, target, config)
