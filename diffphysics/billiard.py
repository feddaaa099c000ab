"""
Differentiable Billiard

Balls roll on a table with linear friction, bounce off straight walls and
collide elastically with each other. For every target on the table the
simulation keeps the closest distance any ball has come to it so far, so an
objective like "sum of closest approaches" can be differentiated with
respect to the initial velocities.

Step order (one call to `step`):
1. Friction (and, optionally, a random kick) updates each velocity, then the
   position advances by dt * v.
2. Each ball bounces off the first wall it touches.
3. Every touching pair of balls exchanges an elastic impulse.
4. Closest-approach distances to the targets are updated.

Collision and friction-clamp predicates are stop-gradient selections, so
`step` traces without Python branches and compiles with `jax.jit`; the
gradient follows whichever branch the forward pass took.
"""

from __future__ import annotations
from typing import Callable, NamedTuple
import itertools
import logging

import jax
import jax.numpy as jnp
from jax import Array

from diffphysics import autodiff as ad
from diffphysics.errors import require
from diffphysics.rollout import evolve_until, record_until
from diffphysics.update import update
from diffphysics.vector import (
    UNIT_X,
    Vector2,
    direction,
    dot,
    from_polar,
    is_zero,
    magnitude,
    magnitude_squared,
    normalized,
    perpendicular,
    vec2,
)


logger = logging.getLogger(__name__)


# =============================================================================
# State and Configuration
# =============================================================================

class BilliardConfig(NamedTuple):
    """
    Configuration of a billiard simulation.

    Attributes:
        dt: Time step (seconds)
        friction: Deceleration due to rolling friction
        ball_radius: Radius shared by all balls
        kick_rate: Rate λ of random kicks; a kick happens with probability
            1 - exp(-λ dt) per ball and step. 0 disables kicks.
        settle_time: Simulations are considered settled after this time
            even if balls are still moving
    """
    dt: float = 0.02
    friction: float = 1.0
    ball_radius: float = 1.0
    kick_rate: float = 0.0
    settle_time: float = 7.0


class Wall(NamedTuple):
    """Straight wall segment from p1 to p2."""
    p1: Vector2
    p2: Vector2

    @staticmethod
    def create(p1: tuple[float, float], p2: tuple[float, float]) -> Wall:
        """
        Raises:
            PreconditionError: if both endpoints coincide, which leaves the
                wall without a direction
        """
        p1 = jnp.array(p1, dtype=float)
        p2 = jnp.array(p2, dtype=float)
        require(bool(jnp.any(p1 != p2)), "Wall.create", "wall endpoints must differ", p1=p1, p2=p2)
        return Wall(p1=p1, p2=p2)


class Table(NamedTuple):
    """Fixed scenery: target points and walls."""
    targets: Array            # Shape: (K, 2)
    walls: tuple[Wall, ...] = ()


class BilliardState(NamedTuple):
    """
    Snapshot of all balls plus the running closest approach to each target.

    Attributes:
        position: Ball centers, shape (N, 2)
        velocity: Ball velocities, shape (N, 2)
        mass: Ball masses, shape (N,)
        target_distances: Smallest ball distance seen so far per target, shape (K,)
        time: Elapsed simulation time
    """
    position: Array
    velocity: Array
    mass: Array
    target_distances: Array
    time: float

    @property
    def num_balls(self) -> int:
        return self.position.shape[0]


def initial_state(
    table: Table,
    positions: Array,
    velocities: Array,
    masses: Array | None = None,
    time: float = 0.0,
) -> BilliardState:
    """
    Create a state with the given balls and no recorded target approaches.

    Raises:
        PreconditionError: if positions, velocities and masses disagree in length
    """
    positions = jnp.asarray(positions, dtype=float)
    velocities = jnp.asarray(velocities, dtype=float)
    require(
        positions.ndim == 2 and positions.shape[1] == 2,
        "initial_state", "positions must have shape (N, 2)", shape=positions.shape,
    )
    require(
        velocities.shape == positions.shape,
        "initial_state", "one velocity per ball is required",
        positions=positions.shape, velocities=velocities.shape,
    )
    if masses is None:
        masses = jnp.ones(positions.shape[0])
    masses = jnp.asarray(masses, dtype=float)
    require(
        masses.shape == (positions.shape[0],),
        "initial_state", "one mass per ball is required", masses=masses.shape,
    )
    return BilliardState(
        position=positions,
        velocity=velocities,
        mass=masses,
        target_distances=jnp.full((table.targets.shape[0],), jnp.inf),
        time=float(time),
    )


# =============================================================================
# Single Ball Motion
# =============================================================================

def frictioned(velocity: Vector2, config: BilliardConfig) -> Vector2:
    """
    Apply one step of linear friction.

    The friction vector has magnitude `friction * dt` and points along the
    velocity. If it is larger than the speed the ball stops instead of
    reversing direction. A ball at rest stays at rest.
    """
    moving = jnp.any(velocity != 0)
    # Stand-in direction for a resting ball, so atan2 never sees the origin.
    heading = ad.select(moving, velocity, UNIT_X)
    deceleration = config.friction * config.dt
    stops = ~moving | (deceleration > magnitude(heading))
    slowed = heading - from_polar(deceleration, direction(heading))
    return ad.select(stops, jnp.zeros_like(velocity), slowed)


def kicked(velocity: Vector2, key: Array, config: BilliardConfig) -> Vector2:
    """
    Randomly perturb the velocity, proportionally to the speed.

    The draw itself is a constant for differentiation.
    """
    draw_key, kick_key = jax.random.split(key)
    threshold = jnp.exp(-config.kick_rate * config.dt)
    moving = jnp.any(velocity != 0)
    happens = moving & (jax.random.uniform(draw_key) > threshold)
    kick = ad.constant(jax.random.uniform(kick_key, (2,), minval=-0.5, maxval=0.5))
    speed = magnitude(ad.select(moving, velocity, UNIT_X))
    return ad.select(happens, velocity + speed * kick, velocity)


def ball_stepped(
    position: Vector2,
    velocity: Vector2,
    config: BilliardConfig,
    key: Array | None = None,
) -> tuple[Vector2, Vector2]:
    """Advance one ball by dt under friction (and kicks, if enabled)."""
    new_velocity = frictioned(velocity, config)
    if config.kick_rate > 0:
        new_velocity = kicked(new_velocity, key, config)
    return position + config.dt * new_velocity, new_velocity


# =============================================================================
# Walls
# =============================================================================

def projected(position: Vector2, wall: Wall) -> Array:
    """Parameter t of the projection of `position` onto the wall's line."""
    tangent = wall.p2 - wall.p1
    return dot(position - wall.p1, tangent) / magnitude_squared(tangent)


def projection(position: Vector2, wall: Wall) -> Vector2:
    t = projected(position, wall)
    return (1 - t) * wall.p1 + t * wall.p2


def touches_wall(position: Vector2, wall: Wall, radius: float) -> Array:
    """A ball touches a wall if it projects onto the segment within `radius`."""
    t = projected(position, wall)
    offset = position - projection(position, wall)
    within = magnitude_squared(offset) <= radius * radius
    return jax.lax.stop_gradient((t >= 0) & (t <= 1) & within)


def bounced(position: Vector2, velocity: Vector2, wall: Wall) -> Vector2:
    """
    Velocity after bouncing off `wall`.

    The tangential component is kept and the normal component reversed. A
    ball already moving away from the wall is left unchanged, so a ball that
    still overlaps the wall on the next step does not bounce back into it.
    """
    unit_tangent = normalized(wall.p2 - wall.p1)
    unit_normal = perpendicular(unit_tangent)
    displacement = position - projection(position, wall)
    reflected = dot(velocity, unit_tangent) * unit_tangent - dot(velocity, unit_normal) * unit_normal
    return ad.select(dot(velocity, displacement) > 0, velocity, reflected)


# =============================================================================
# Ball-Ball Collisions
# =============================================================================

def touches(position_a: Vector2, position_b: Vector2, radius: float) -> Array:
    return jax.lax.stop_gradient(magnitude_squared(position_b - position_a) <= (2 * radius) ** 2)


def collided(
    position_a: Vector2,
    velocity_a: Vector2,
    mass_a: Array,
    position_b: Vector2,
    velocity_b: Vector2,
    mass_b: Array,
) -> tuple[Vector2, Vector2]:
    """
    Velocities after a perfectly elastic collision.

    The impulse acts along the line of centers and conserves momentum and
    kinetic energy. Balls that are already separating are unchanged.
    """
    offset = position_b - position_a
    relative_velocity = velocity_b - velocity_a
    approach = dot(relative_velocity, offset)
    separating = approach > 0
    normal_change = (-approach / magnitude_squared(offset)) * offset
    total_mass = mass_a + mass_b
    new_a = velocity_a - (2 * mass_b / total_mass) * normal_change
    new_b = velocity_b + (2 * mass_a / total_mass) * normal_change
    return ad.select(separating, velocity_a, new_a), ad.select(separating, velocity_b, new_b)


# =============================================================================
# Targets
# =============================================================================

def closest_approach(
    position: Array,
    targets: Array,
    target_distances: Array,
    config: BilliardConfig,
) -> Array:
    """
    Update the running minimum ball-to-target distances.

    Distances are never credited below contact distance 2r, and the running
    minimum never increases. Ties for the closest ball go to the later one.
    """
    contact = 2 * config.ball_radius
    last = position.shape[0] - 1
    for k in range(targets.shape[0]):
        offsets = position - targets[k]
        squared = dot(offsets, offsets)
        closest = last - jnp.argmin(squared[::-1])
        within = squared[closest] <= contact * contact
        # Inside contact distance the norm is not needed and may be singular.
        outside = ad.select(within, jnp.full(2, contact), offsets[closest])
        distance = ad.select(within, contact, magnitude(outside))
        current = target_distances[k]
        target_distances = update(target_distances, k, ad.select(distance < current, distance, current))
    return target_distances


# =============================================================================
# Stepping
# =============================================================================

def step(
    state: BilliardState,
    table: Table,
    config: BilliardConfig = BilliardConfig(),
    key: Array | None = None,
) -> BilliardState:
    """
    Advance the table by one time step.

    Args:
        state: Current state
        table: Targets and walls
        config: Simulation configuration
        key: PRNG key, required when `config.kick_rate > 0`

    Returns:
        The next state
    """
    require(
        config.kick_rate <= 0 or key is not None,
        "billiard.step", "random kicks need a PRNG key", kick_rate=config.kick_rate,
    )
    num_balls = state.num_balls
    keys = jax.random.split(key, num_balls) if config.kick_rate > 0 else [None] * num_balls
    radius = config.ball_radius

    position, velocity = state.position, state.velocity
    for i in range(num_balls):
        p, v = ball_stepped(position[i], velocity[i], config, keys[i])
        # Only the first wall touched bounces the ball.
        bounced_once = jnp.zeros((), dtype=bool)
        for wall in table.walls:
            hit = touches_wall(p, wall, radius) & ~bounced_once
            v = ad.select(hit, bounced(p, v, wall), v)
            bounced_once = bounced_once | hit
        position = update(position, i, p)
        velocity = update(velocity, i, v)

    for i, j in itertools.combinations(range(num_balls), 2):
        hit = touches(position[i], position[j], radius)
        v_i, v_j = collided(
            position[i], velocity[i], state.mass[i],
            position[j], velocity[j], state.mass[j],
        )
        velocity = update(velocity, i, ad.select(hit, v_i, velocity[i]))
        velocity = update(velocity, j, ad.select(hit, v_j, velocity[j]))

    target_distances = closest_approach(position, table.targets, state.target_distances, config)

    return BilliardState(
        position=position,
        velocity=velocity,
        mass=state.mass,
        target_distances=target_distances,
        time=state.time + config.dt,
    )


# The table's wall count and the config are part of the compilation key.
compiled_step = jax.jit(step, static_argnames=("config",))


def settled(state: BilliardState, config: BilliardConfig = BilliardConfig()) -> bool:
    """All balls at rest, or the settle-time cap exceeded."""
    if ad.branch(state.time > config.settle_time):
        return True
    return is_zero(state.velocity)


def _stepper(
    table: Table,
    config: BilliardConfig,
    key: Array | None,
) -> Callable[[BilliardState], BilliardState]:
    def advance(state: BilliardState) -> BilliardState:
        nonlocal key
        step_key = None
        if key is not None:
            key, step_key = jax.random.split(key)
        return compiled_step(state, table, config=config, key=step_key)
    return advance


def simulate(
    state: BilliardState,
    table: Table,
    config: BilliardConfig = BilliardConfig(),
    key: Array | None = None,
) -> BilliardState:
    """Run until the table settles and return the final state."""
    final = evolve_until(state, _stepper(table, config, key), lambda s: settled(s, config))
    logger.debug("Billiard settled at t=%.2f", final.time)
    return final


def trajectory(
    state: BilliardState,
    table: Table,
    config: BilliardConfig = BilliardConfig(),
    key: Array | None = None,
) -> list[BilliardState]:
    """All states from `state` until the table settles (inclusive)."""
    return record_until(state, _stepper(table, config, key), lambda s: settled(s, config))


# =============================================================================
# Demo Scene and Objective
# =============================================================================

def demo_table() -> Table:
    """Three targets and a single wall."""
    return Table(
        targets=jnp.array([[0.0, 5.0], [-5.0, 15.0], [-2.0, -20.0]]),
        walls=(Wall.create((7.0, -10.0), (7.0, 20.0)),),
    )


def demo_state(first_velocity: Vector2, table: Table | None = None) -> BilliardState:
    """Cue ball at (-20, 0) shot with `first_velocity` at a resting ball at (-10, 0)."""
    if table is None:
        table = demo_table()
    first_velocity = jnp.asarray(first_velocity, dtype=float)
    return initial_state(
        table,
        positions=jnp.array([[-20.0, 0.0], [-10.0, 0.0]]),
        velocities=jnp.stack([first_velocity, vec2(0.0, 0.0)]),
    )


def target_loss(
    first_velocity: Vector2,
    table: Table | None = None,
    config: BilliardConfig = BilliardConfig(),
) -> Array:
    """Sum over targets of the closest approach after the table settles."""
    if table is None:
        table = demo_table()
    final = simulate(demo_state(first_velocity, table), table, config)
    return jnp.sum(final.target_distances)
