"""
Tests for the Shallow Water Equation
"""

import math

import pytest
import jax
import jax.numpy as jnp
import numpy as np

from diffphysics import field, wave
from diffphysics.autodiff import gradient
from diffphysics.errors import PreconditionError
from diffphysics.wave import WaveConfig


@pytest.fixture
def config():
    return WaveConfig(resolution=8)


@pytest.fixture
def impulse_state(config):
    return wave.initial_state(field.impulse(config.resolution, 4, 4))


class TestConfig:
    """Derived grid constants."""

    def test_dx(self, config):
        assert config.dx == 1.0 / 8

    def test_dt_below_cfl_limit(self, config):
        expected = (math.sqrt(config.alpha ** 2 + config.dx ** 2 / 3) - config.alpha) / config.c
        assert config.dt == pytest.approx(expected)
        # Undamped 2D limit is Δx / (c √2)
        assert config.dt < config.dx / (config.c * math.sqrt(2))


class TestStep:
    """One explicit time step."""

    def test_initial_state_at_rest(self, impulse_state):
        np.testing.assert_array_equal(impulse_state.u0, impulse_state.u1)
        np.testing.assert_array_equal(impulse_state.water_level, impulse_state.u1)

    def test_impulse_spreads_to_neighbours_only(self, config, impulse_state):
        next_state = wave.step(impulse_state, config)
        changed = np.argwhere(np.asarray(next_state.u1) != np.asarray(impulse_state.u1))
        assert {tuple(c) for c in changed} == {(4, 4), (3, 4), (5, 4), (4, 3), (4, 5)}

    def test_impulse_values(self, config, impulse_state):
        # With u0 == u1 the update reduces to u1 + c² Δt² Δu1
        next_state = wave.step(impulse_state, config)
        r = (config.c * config.dt / config.dx) ** 2
        assert jnp.isclose(next_state.u1[4, 4], 1.0 - 4 * r)
        assert jnp.isclose(next_state.u1[3, 4], r)

    def test_shifts_time_levels(self, config, impulse_state):
        next_state = wave.step(impulse_state, config)
        np.testing.assert_array_equal(next_state.u0, impulse_state.u1)
        assert next_state.time == pytest.approx(config.dt)

    def test_boundary_fixed(self, config):
        height = jnp.zeros((8, 8)).at[0, :].set(0.5).at[4, 4].set(1.0)
        states = wave.evolve(wave.initial_state(height), 20, config)
        for state in states:
            np.testing.assert_array_equal(state.u1[0, :], np.full(8, 0.5))
            np.testing.assert_array_equal(state.u1[-1, :], np.zeros(8))
            np.testing.assert_array_equal(state.u1[1:, -1], np.zeros(7))

    def test_flat_surface_stays_flat(self, config):
        state = wave.final_state(wave.initial_state(jnp.full((8, 8), 0.2)), 10, config)
        np.testing.assert_allclose(state.u1, 0.2)

    def test_stable(self, config, impulse_state):
        final = wave.final_state(impulse_state, 200, config)
        assert jnp.all(jnp.isfinite(final.u1))
        assert jnp.max(jnp.abs(final.u1)) < 10.0

    def test_deterministic(self, config, impulse_state):
        first = wave.step(impulse_state, config)
        second = wave.step(impulse_state, config)
        np.testing.assert_array_equal(first.u0, second.u0)
        np.testing.assert_array_equal(first.u1, second.u1)
        assert first.time == second.time

    def test_resolution_mismatch(self, impulse_state):
        with pytest.raises(PreconditionError):
            wave.step(impulse_state, WaveConfig(resolution=16))

    def test_non_square_rejected(self):
        with pytest.raises(PreconditionError):
            wave.initial_state(jnp.zeros((8, 6)))


class TestEvolve:
    """Trajectories and the image objective."""

    def test_evolve_length(self, config, impulse_state):
        states = wave.evolve(impulse_state, 5, config)
        assert len(states) == 6
        assert states[0] is impulse_state

    def test_final_state_matches_trajectory(self, config, impulse_state):
        states = wave.evolve(impulse_state, 12, config)
        final = wave.final_state(impulse_state, 12, config)
        np.testing.assert_allclose(final.u1, states[-1].u1, rtol=1e-10, atol=1e-14)
        np.testing.assert_allclose(final.u0, states[-1].u0, rtol=1e-10, atol=1e-14)
        assert jnp.isclose(final.time, states[-1].time)

    def test_mean_squared_error(self, config, impulse_state):
        target = jnp.zeros((8, 8))
        assert jnp.isclose(wave.mean_squared_error(impulse_state, target, config), config.dx ** 2)

    def test_target_shape_checked(self, config, impulse_state):
        with pytest.raises(PreconditionError):
            wave.mean_squared_error(impulse_state, jnp.zeros((4, 4)), config)

    def test_image_loss_gradient(self, config):
        target = field.centered_target(np.eye(8), 8)
        height = field.impulse(8, 3, 3, 0.1)
        g = gradient(height, lambda h: wave.image_loss(h, target, 10, config))
        assert g.shape == (8, 8)
        assert jnp.all(jnp.isfinite(g))
        assert jnp.any(g != 0)

    def test_image_loss_gradient_matches_finite_difference(self, config):
        target = field.centered_target(np.eye(8), 8)
        height = field.impulse(8, 3, 3, 0.1)
        loss = lambda h: wave.image_loss(h, target, 5, config)
        g = gradient(height, loss)
        eps = 1e-6
        for index in [(3, 3), (2, 4), (0, 0)]:
            bump = jnp.zeros((8, 8)).at[index].set(eps)
            numeric = (loss(height + bump) - loss(height - bump)) / (2 * eps)
            assert jnp.isclose(g[index], numeric, rtol=1e-4, atol=1e-10)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
