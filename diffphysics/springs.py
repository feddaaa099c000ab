"""
Differentiable Mass-Spring-Muscle Systems

Point masses connected by damped springs. Some springs are muscles: their
rest length is modulated by an activation signal produced by a `Brain`
(one sinusoid per connector), which lets a creature move.

Connector force (acting on `from`, opposite on `to`):

    F = k (L_eff * unit(d) - d) - c * Δv
    d = x_from - x_to,  Δv = v_from - v_to
    L_eff = L + activation * actuation   (muscles only)

Integration is semi-implicit Euler with a ground plane:

    v' = v + dt (F / m + g)
    x' = x + dt v'

When x' would end up below the ground and v'_y < contact_velocity, the
particle stops at the exact time of impact (ground - y) / v'_y inside the
step. Both predicates are stop-gradient branches; the second uses the
literal threshold on the vertical velocity alone rather than a combined
"below ground and moving down" test.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import NamedTuple
import logging
import math

import jax
import jax.numpy as jnp
from jax import Array

from diffphysics import autodiff as ad
from diffphysics.errors import require, require_domain
from diffphysics.rollout import evolve_compiled, record_until, steps_until
from diffphysics.update import update
from diffphysics.vector import Vector2, cross, normalized


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

class SpringConfig(NamedTuple):
    """
    Configuration of a mass-spring simulation.

    Attributes:
        dt: Time step (seconds)
        gravity: Gravitational acceleration (x, y)
        ground: Height of the ground plane; -inf disables ground contact
        contact_velocity: Vertical velocity below which a particle that
            crosses the ground comes to rest
    """
    dt: float = 0.01
    gravity: tuple[float, float] = (0.0, -9.81)
    ground: float = 0.0
    contact_velocity: float = 1e-4

    @property
    def gravity_array(self) -> Array:
        return jnp.array(self.gravity, dtype=float)


def creature_config() -> SpringConfig:
    """Stiff creatures need a millisecond time step."""
    return SpringConfig(dt=0.001)


def bounce_config() -> SpringConfig:
    """Free-floating system: no gravity and no ground."""
    return SpringConfig(dt=0.01, gravity=(0.0, 0.0), ground=-math.inf)


# =============================================================================
# Structures
# =============================================================================

class Particles(NamedTuple):
    """
    Point masses.

    Attributes:
        position: shape (N, 2)
        velocity: shape (N, 2)
        mass: shape (N,)
    """
    position: Array
    velocity: Array
    mass: Array

    @property
    def count(self) -> int:
        return self.position.shape[0]

    @staticmethod
    def create(positions, velocities=None, masses=None) -> Particles:
        positions = jnp.asarray(positions, dtype=float)
        require(
            positions.ndim == 2 and positions.shape[1] == 2,
            "Particles.create", "positions must have shape (N, 2)", shape=positions.shape,
        )
        velocities = jnp.zeros_like(positions) if velocities is None else jnp.asarray(velocities, dtype=float)
        masses = jnp.ones(positions.shape[0]) if masses is None else jnp.asarray(masses, dtype=float)
        require(
            velocities.shape == positions.shape,
            "Particles.create", "one velocity per particle is required",
            positions=positions.shape, velocities=velocities.shape,
        )
        require(
            masses.shape == (positions.shape[0],),
            "Particles.create", "one mass per particle is required", masses=masses.shape,
        )
        return Particles(position=positions, velocity=velocities, mass=masses)


class Connectors(NamedTuple):
    """
    Differentiable connector parameters, one entry per connector.

    `actuation` is the rest-length change per unit activation; it is only
    used for connectors marked as actuated in the topology.
    """
    rest_length: Array
    stiffness: Array
    damping: Array
    actuation: Array

    @property
    def count(self) -> int:
        return self.rest_length.shape[0]


@dataclass(frozen=True)
class Topology:
    """
    Static connectivity: which particles each connector attaches.

    Indices never change during a simulation. The class is registered as a
    static pytree node, so it passes through `jax.grad` without leaves.
    """
    pairs: tuple[tuple[int, int], ...]
    actuated: tuple[bool, ...]
    head: int = 0

    @property
    def num_connectors(self) -> int:
        return len(self.pairs)

    def validate(self, num_particles: int) -> None:
        require(
            len(self.actuated) == len(self.pairs),
            "Topology", "one actuation flag per connector is required",
            pairs=len(self.pairs), actuated=len(self.actuated),
        )
        for a, b in self.pairs:
            require(
                0 <= a < num_particles and 0 <= b < num_particles and a != b,
                "Topology", "connector attaches invalid particles",
                pair=(a, b), num_particles=num_particles,
            )
        require(
            0 <= self.head < num_particles,
            "Topology", "head index out of range", head=self.head, num_particles=num_particles,
        )


jax.tree_util.register_static(Topology)


class Creature(NamedTuple):
    """Particles, their connector parameters and the static topology."""
    particles: Particles
    connectors: Connectors
    topology: Topology

    @staticmethod
    def create(particles: Particles, connectors: Connectors, topology: Topology) -> Creature:
        topology.validate(particles.count)
        for name, values in connectors._asdict().items():
            require(
                jnp.shape(values) == (topology.num_connectors,),
                "Creature.create", "connector parameters do not match the topology",
                parameter=name, shape=jnp.shape(values), pairs=topology.num_connectors,
            )
        return Creature(particles=particles, connectors=connectors, topology=topology)

    def with_rest_lengths(self, rest_lengths: Array) -> Creature:
        return self._replace(connectors=self.connectors._replace(rest_length=rest_lengths))


class Brain(NamedTuple):
    """
    Open-loop muscle controller: one sinusoid per connector.

    activation_i(t) = amplitude_i * sin(2π f t + phase_i)
    """
    amplitudes: Array
    phases: Array
    frequency: float = 1.0

    @staticmethod
    def create(num_connectors: int, key: Array, amplitude: float = 0.005) -> Brain:
        """Small equal amplitudes and uniformly random phases."""
        return Brain(
            amplitudes=jnp.full((num_connectors,), amplitude),
            phases=jax.random.uniform(key, (num_connectors,), minval=-jnp.pi, maxval=jnp.pi),
        )

    def actuations(self, time: float | Array) -> Array:
        activations = jnp.zeros_like(self.amplitudes)
        for i in range(self.amplitudes.shape[0]):
            angle = 2 * jnp.pi * self.frequency * time + self.phases[i]
            activations = update(activations, i, self.amplitudes[i] * ad.sin(angle))
        return activations


class SpringState(NamedTuple):
    """A creature (or passive spring system), its optional brain and the time."""
    creature: Creature
    brain: Brain | None
    time: float


# =============================================================================
# Forces
# =============================================================================

def connector_force(creature: Creature, index: int, activation: Array | None = None) -> Vector2:
    """Force exerted by connector `index` on its `from` particle."""
    a, b = creature.topology.pairs[index]
    particles, connectors = creature.particles, creature.connectors
    displacement = particles.position[a] - particles.position[b]
    relative_velocity = particles.velocity[a] - particles.velocity[b]

    rest_length = connectors.rest_length[index]
    if activation is not None and creature.topology.actuated[index]:
        rest_length = rest_length + activation * connectors.actuation[index]

    tension = connectors.stiffness[index] * (rest_length * normalized(displacement) - displacement)
    return tension - connectors.damping[index] * relative_velocity


def net_forces(creature: Creature, activations: Array | None = None) -> Array:
    """Sum of connector forces on every particle, shape (N, 2)."""
    topology = creature.topology
    if activations is not None:
        require(
            activations.shape[0] == topology.num_connectors,
            "net_forces", "one activation per connector is required",
            activations=activations.shape[0], connectors=topology.num_connectors,
        )
    forces = jnp.zeros_like(creature.particles.position)
    for i, (a, b) in enumerate(topology.pairs):
        force = connector_force(creature, i, None if activations is None else activations[i])
        forces = update(forces, a, forces[a] + force)
        forces = update(forces, b, forces[b] - force)
    return forces


# =============================================================================
# Integration
# =============================================================================

def evolved(
    creature: Creature,
    config: SpringConfig = SpringConfig(),
    activations: Array | None = None,
) -> Creature:
    """Creature advanced by one semi-implicit Euler step with ground contact."""
    particles = creature.particles
    forces = net_forces(creature, activations)
    gravity = config.gravity_array
    dt = config.dt

    position, velocity = particles.position, particles.velocity
    for i in range(particles.count):
        old_position = particles.position[i]
        old_velocity = particles.velocity[i] + dt * (forces[i] / particles.mass[i] + gravity)

        below = old_position[1] + dt * old_velocity[1] < config.ground
        contact = below & (old_velocity[1] < config.contact_velocity)
        require_domain(
            ~(contact & (old_velocity[1] == 0)), "evolved",
            "time of impact undefined for zero vertical velocity",
            particle=i, position=old_position,
        )
        # Without contact the impact time is 0 / 1, keeping -inf ground finite.
        gap = ad.select(contact, config.ground - old_position[1], 0.0)
        time_of_impact = gap / ad.select(contact, old_velocity[1], 1.0)
        new_velocity = ad.select(contact, jnp.zeros_like(old_velocity), old_velocity)

        new_position = old_position + time_of_impact * old_velocity + (dt - time_of_impact) * new_velocity
        position = update(position, i, new_position)
        velocity = update(velocity, i, new_velocity)

    return creature._replace(particles=particles._replace(position=position, velocity=velocity))


def step(state: SpringState, config: SpringConfig = SpringConfig()) -> SpringState:
    """Advance by one time step, driving muscles from the brain if present."""
    activations = None if state.brain is None else state.brain.actuations(state.time)
    return SpringState(
        creature=evolved(state.creature, config, activations),
        brain=state.brain,
        time=state.time + config.dt,
    )


# Topology and config are static, so each creature shape compiles once.
compiled_step = jax.jit(step, static_argnames=("config",))


def evolve_until_time(
    state: SpringState,
    end_time: float,
    config: SpringConfig = SpringConfig(),
) -> SpringState:
    """
    Step while `time <= end_time`.

    The horizon is counted up front from the starting time, then the whole
    rollout runs as one compiled loop.
    """
    num_steps = steps_until(state.time, end_time, config.dt)
    logger.debug("Evolving spring system for %d steps", num_steps)
    state = state._replace(time=jnp.asarray(state.time, dtype=float))
    return evolve_compiled(state, lambda s: step(s, config), num_steps)


def trajectory(
    state: SpringState,
    end_time: float,
    config: SpringConfig = SpringConfig(),
) -> list[SpringState]:
    return record_until(state, lambda s: compiled_step(s, config=config), lambda s: s.time > end_time)


# =============================================================================
# Objectives
# =============================================================================

def triangle_area(particles: Particles) -> Array:
    """Signed area of the triangle spanned by the first three particles."""
    base = particles.position[1] - particles.position[0]
    side = particles.position[2] - particles.position[0]
    return 0.5 * cross(base, side)


def head_position(creature: Creature) -> Vector2:
    """Position of the creature's head particle."""
    return creature.particles.position[creature.topology.head]


def area_loss(
    rest_lengths: Array,
    creature: Creature,
    target_area: float,
    end_time: float = 5.0,
    config: SpringConfig = bounce_config(),
) -> Array:
    """Squared error of the triangle area after `end_time`, as a function of rest lengths."""
    state = SpringState(creature=creature.with_rest_lengths(rest_lengths), brain=None, time=0.0)
    final = evolve_until_time(state, end_time, config)
    error = triangle_area(final.creature.particles) - target_area
    return error * error


def distance_loss(
    brain: Brain,
    creature: Creature,
    end_time: float = 10.0,
    config: SpringConfig = creature_config(),
) -> Array:
    """Negative x position of the creature's head after `end_time`."""
    final = evolve_until_time(SpringState(creature=creature, brain=brain, time=0.0), end_time, config)
    return -head_position(final.creature)[0]
