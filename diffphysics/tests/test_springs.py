"""
Tests for Mass-Spring-Muscle Systems

Covers connector forces, semi-implicit integration with ground contact,
the creature presets and gradients with respect to rest lengths and the
brain.
"""

import time

import pytest
import jax
import jax.numpy as jnp
import numpy as np

from diffphysics import creatures, springs
from diffphysics.autodiff import gradient, value_and_gradient
from diffphysics.errors import DomainError, PreconditionError
from diffphysics.rollout import evolve_until
from diffphysics.springs import (
    Brain,
    Connectors,
    Creature,
    Particles,
    SpringConfig,
    SpringState,
    Topology,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def triangle():
    return creatures.triangle()


@pytest.fixture
def rod():
    """Two particles joined by one passive spring of rest length 1."""
    particles = Particles.create([[0.0, 0.5], [1.0, 0.5]])
    connectors = Connectors(
        rest_length=jnp.array([1.0]),
        stiffness=jnp.array([100.0]),
        damping=jnp.array([1.0]),
        actuation=jnp.array([0.0]),
    )
    return Creature.create(particles, connectors, Topology(pairs=((0, 1),), actuated=(False,)))


def with_velocity(creature, velocity):
    particles = creature.particles
    velocities = jnp.broadcast_to(jnp.asarray(velocity, dtype=float), particles.position.shape)
    return creature._replace(particles=particles._replace(velocity=velocities))


# =============================================================================
# Structures
# =============================================================================

class TestStructures:
    """Construction-time validation."""

    def test_topology_rejects_bad_pair(self):
        with pytest.raises(PreconditionError):
            Topology(pairs=((0, 3),), actuated=(False,)).validate(3)

    def test_topology_rejects_self_loop(self):
        with pytest.raises(PreconditionError):
            Topology(pairs=((1, 1),), actuated=(False,)).validate(3)

    def test_creature_rejects_mismatched_connectors(self, rod):
        with pytest.raises(PreconditionError):
            Creature.create(rod.particles, rod.connectors, Topology(pairs=((0, 1), (1, 0)), actuated=(False, False)))

    def test_particles_default_velocity_and_mass(self):
        particles = Particles.create([[0.0, 0.0], [1.0, 1.0]])
        np.testing.assert_array_equal(particles.velocity, np.zeros((2, 2)))
        np.testing.assert_array_equal(particles.mass, [1.0, 1.0])
        assert particles.count == 2

    def test_topology_is_static(self, triangle):
        leaves = jax.tree_util.tree_leaves(triangle)
        assert all(hasattr(leaf, "shape") for leaf in leaves)
        assert len(leaves) == 3 + 4


# =============================================================================
# Forces
# =============================================================================

class TestForces:
    """Damped spring and muscle forces."""

    def test_zero_force_at_rest_length(self, triangle):
        forces = springs.net_forces(triangle)
        np.testing.assert_allclose(forces, np.zeros((3, 2)), atol=1e-12)

    def test_stretched_spring_pulls_together(self, rod):
        stretched = rod.with_rest_lengths(jnp.array([0.5]))
        force = springs.connector_force(stretched, 0)
        # From-particle is on the left and is pulled right
        assert force[0] > 0
        assert jnp.isclose(force[1], 0.0)

    def test_forces_balance(self, rod):
        forces = springs.net_forces(rod.with_rest_lengths(jnp.array([0.7])))
        np.testing.assert_allclose(forces[0], -forces[1])

    def test_damping_opposes_relative_velocity(self, rod):
        particles = rod.particles._replace(velocity=jnp.array([[-1.0, 0.0], [0.0, 0.0]]))
        force = springs.connector_force(rod._replace(particles=particles), 0)
        assert jnp.isclose(force[0], 1.0)

    def test_muscle_changes_rest_length(self):
        creature = creatures.worm()
        activations = jnp.ones(creature.topology.num_connectors)
        forces = springs.net_forces(creature, activations)
        assert jnp.any(jnp.abs(forces) > 0)

    def test_activation_count_precondition(self, triangle):
        with pytest.raises(PreconditionError):
            springs.net_forces(triangle, jnp.zeros(2))


# =============================================================================
# Integration and Ground Contact
# =============================================================================

class TestIntegration:
    """Semi-implicit Euler with a ground plane."""

    def test_free_fall_step(self, rod):
        config = SpringConfig(dt=0.01)
        result = springs.evolved(rod, config)
        expected_vy = config.dt * config.gravity[1]
        np.testing.assert_allclose(result.particles.velocity[:, 1], expected_vy)
        np.testing.assert_allclose(result.particles.position[:, 1], 0.5 + config.dt * expected_vy)

    def test_ground_contact_stops_at_impact(self, rod):
        config = SpringConfig(dt=0.01)
        moved = rod._replace(particles=rod.particles._replace(position=jnp.array([[0.0, 0.005], [1.0, 0.005]])))
        falling = with_velocity(moved, [0.0, -1.0])
        result = springs.evolved(falling, config)
        np.testing.assert_allclose(result.particles.position[:, 1], 0.0, atol=1e-12)
        np.testing.assert_array_equal(result.particles.velocity, np.zeros((2, 2)))

    def test_zero_vertical_velocity_below_ground(self, rod):
        config = SpringConfig(gravity=(0.0, 0.0))
        buried = rod._replace(particles=rod.particles._replace(position=jnp.array([[0.0, -1.0], [1.0, -1.0]])))
        with pytest.raises(DomainError):
            springs.evolved(buried, config)

    def test_bounce_config_has_no_ground(self, rod):
        config = springs.bounce_config()
        falling = with_velocity(rod, [0.0, -100.0])
        result = springs.evolved(falling, config)
        assert jnp.all(result.particles.position[:, 1] < 0)

    def test_step_advances_time(self, triangle):
        state = SpringState(creature=triangle, brain=None, time=0.0)
        assert jnp.isclose(springs.step(state, springs.bounce_config()).time, 0.01)

    def test_evolve_until_time(self, triangle):
        state = SpringState(creature=triangle, brain=None, time=0.0)
        final = springs.evolve_until_time(state, 0.1, springs.bounce_config())
        assert final.time > 0.1
        assert final.time - 0.01 <= 0.1 + 1e-12

    def test_trajectory(self, triangle):
        state = SpringState(creature=triangle, brain=None, time=0.0)
        states = springs.trajectory(state, 0.05, springs.bounce_config())
        assert states[0] is state
        assert states[-1].time > 0.05


class TestAreaConservation:
    """A triangle at rest length keeps its area in free space."""

    def test_at_rest(self, triangle):
        state = SpringState(creature=triangle, brain=None, time=0.0)
        final = springs.evolve_until_time(state, 5.0, springs.bounce_config())
        assert jnp.isclose(springs.triangle_area(final.creature.particles), 0.5, atol=1e-9)

    def test_uniform_translation(self, triangle):
        moving = with_velocity(triangle, [0.3, -0.2])
        state = SpringState(creature=moving, brain=None, time=0.0)
        final = springs.evolve_until_time(state, 5.0, springs.bounce_config())
        assert jnp.isclose(springs.triangle_area(final.creature.particles), 0.5, atol=1e-9)
        assert final.creature.particles.position[0, 0] > 1.0


# =============================================================================
# Brain
# =============================================================================

class TestBrain:
    """Open-loop sinusoidal controller."""

    def test_actuations(self):
        brain = Brain(amplitudes=jnp.array([1.0, 0.5]), phases=jnp.array([0.0, 1.0]), frequency=2.0)
        t = 0.3
        expected = np.array([1.0, 0.5]) * np.sin(2 * np.pi * 2.0 * t + np.array([0.0, 1.0]))
        np.testing.assert_allclose(brain.actuations(t), expected)

    def test_create(self):
        brain = Brain.create(11, jax.random.PRNGKey(0))
        assert brain.amplitudes.shape == (11,)
        assert jnp.all(brain.amplitudes == 0.005)
        assert jnp.all(jnp.abs(brain.phases) <= jnp.pi)


# =============================================================================
# Presets
# =============================================================================

class TestPresets:
    """Creature presets are valid and start at rest."""

    @pytest.mark.parametrize("preset", [creatures.triangle, creatures.worm, creatures.dog, creatures.giraffe])
    def test_at_rest(self, preset):
        creature = preset()
        assert jnp.all(creature.connectors.rest_length > 0)
        np.testing.assert_allclose(springs.net_forces(creature), 0.0, atol=1e-9)

    def test_worm_shape(self):
        worm = creatures.worm()
        assert worm.particles.count == 6
        assert worm.topology.num_connectors == 11
        assert all(worm.topology.actuated)
        assert worm.topology.head == 5

    def test_builder_merges_shared_joints(self):
        builder = creatures.CreatureBuilder()
        builder.insert_square((0.0, 0.0))
        builder.insert_square((1.0, 0.0))
        assert builder.num_joints == 6
        # The shared edge is added in both directions
        assert builder.num_connectors == 12

    def test_triangle_hangs_below_square(self):
        builder = creatures.CreatureBuilder()
        builder.insert_square((0.0, 0.5))
        builder.insert_triangle((0.0, 0.5))
        assert builder.num_joints == 5
        assert builder.num_connectors == 8

    def test_square_muscles(self):
        builder = creatures.CreatureBuilder()
        builder.insert_square((0.0, 0.0), actuation=creatures.ACTUATION)
        creature = builder.build()
        assert sum(creature.topology.actuated) == 2


# =============================================================================
# Differentiability
# =============================================================================

class TestDifferentiability:
    """Gradients with respect to rest lengths and the brain."""

    def test_rest_length_gradient_matches_finite_difference(self, triangle):
        target_area = 0.3
        rest_lengths = triangle.connectors.rest_length * 1.1

        def loss(lengths):
            return springs.area_loss(lengths, triangle, target_area, end_time=0.3)

        g = gradient(rest_lengths, loss)
        eps = 1e-6
        for i in range(3):
            step = jnp.zeros(3).at[i].set(eps)
            numeric = (loss(rest_lengths + step) - loss(rest_lengths - step)) / (2 * eps)
            assert jnp.isclose(g[i], numeric, rtol=1e-4, atol=1e-10)

    def test_brain_gradient_finite(self):
        worm = creatures.worm()
        brain = Brain.create(worm.topology.num_connectors, jax.random.PRNGKey(1), amplitude=0.05)
        value, grads = value_and_gradient(
            brain, lambda b: springs.distance_loss(b, worm, end_time=0.02)
        )
        assert jnp.isfinite(value)
        assert grads.amplitudes.shape == (11,)
        assert jnp.all(jnp.isfinite(grads.amplitudes))
        assert jnp.all(jnp.isfinite(grads.phases))

    def test_head_position(self):
        worm = creatures.worm()
        np.testing.assert_array_equal(springs.head_position(worm), worm.particles.position[5])


# =============================================================================
# Compiled Stepping
# =============================================================================

@pytest.fixture
def driven_worm():
    worm = creatures.worm()
    brain = Brain.create(worm.topology.num_connectors, jax.random.PRNGKey(3), amplitude=0.5)
    return SpringState(creature=worm, brain=brain, time=0.0)


class TestCompiledStepping:
    """Steps trace without Python branches and compile with jax.jit."""

    def test_step_is_deterministic(self, driven_worm):
        config = springs.creature_config()
        first = springs.step(driven_worm, config)
        second = springs.step(driven_worm, config)
        for a, b in zip(jax.tree_util.tree_leaves(first), jax.tree_util.tree_leaves(second)):
            np.testing.assert_array_equal(a, b)

    def test_compiled_step_matches_eager(self, driven_worm):
        config = springs.creature_config()
        eager = springs.step(driven_worm, config)
        compiled = springs.compiled_step(driven_worm, config=config)
        np.testing.assert_allclose(compiled.creature.particles.position, eager.creature.particles.position, rtol=1e-12)
        np.testing.assert_allclose(compiled.creature.particles.velocity, eager.creature.particles.velocity, rtol=1e-9, atol=1e-12)

    def test_compiled_ground_contact(self, rod):
        config = SpringConfig(dt=0.01)
        moved = rod._replace(particles=rod.particles._replace(position=jnp.array([[0.0, 0.005], [1.0, 0.005]])))
        state = SpringState(creature=with_velocity(moved, [0.0, -1.0]), brain=None, time=0.0)
        result = springs.compiled_step(state, config=config)
        np.testing.assert_allclose(result.creature.particles.position[:, 1], 0.0, atol=1e-12)
        np.testing.assert_array_equal(result.creature.particles.velocity, np.zeros((2, 2)))

    def test_compiled_rollout_matches_eager_loop(self, driven_worm):
        config = springs.creature_config()
        end_time = 0.05
        eager = evolve_until(driven_worm, lambda s: springs.step(s, config), lambda s: s.time > end_time)
        compiled = springs.evolve_until_time(driven_worm, end_time, config)
        assert jnp.isclose(compiled.time, eager.time)
        np.testing.assert_allclose(
            compiled.creature.particles.position, eager.creature.particles.position, rtol=1e-9, atol=1e-12
        )

    def test_one_second_brain_gradient(self, driven_worm):
        start = time.perf_counter()
        value, grads = value_and_gradient(
            driven_worm.brain, lambda b: springs.distance_loss(b, driven_worm.creature, end_time=1.0)
        )
        elapsed = time.perf_counter() - start
        assert jnp.isfinite(value)
        assert jnp.all(jnp.isfinite(grads.amplitudes))
        assert jnp.any(grads.amplitudes != 0)
        assert elapsed < 120.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
