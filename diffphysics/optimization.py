"""
Gradient-Based Parameter Optimization

Runs a simulation forward, evaluates a scalar loss, takes its gradient with
respect to the parameters and steps downhill. Parameters can be any pytree
(a velocity vector, an array of rest lengths, a Brain, an initial height
field); the update is applied leaf by leaf.

Key Features:
- Plain gradient descent with a constant or scheduled learning rate
- Cosine learning-rate decay between a maximum and a minimum rate
- Adam (via optax) as an alternative update rule
- High-level helpers for each simulator's demo objective
"""

from __future__ import annotations
from typing import Any, Callable, NamedTuple
from dataclasses import dataclass, field
import logging

import jax
import jax.numpy as jnp
import optax
from tqdm import tqdm

from diffphysics import billiard, springs, wave
from diffphysics.autodiff import value_and_gradient
from diffphysics.errors import SimulationError, require


logger = logging.getLogger(__name__)


# =============================================================================
# Optimization State and History
# =============================================================================

class OptimizationResult(NamedTuple):
    """Result of an optimization run."""
    final_params: Any
    final_loss: float
    history: dict
    converged: bool
    num_iterations: int


@dataclass
class OptimizationHistory:
    """Tracks optimization progress."""
    losses: list[float] = field(default_factory=list)
    learning_rates: list[float] = field(default_factory=list)
    params: list[Any] = field(default_factory=list)
    gradients: list[Any] = field(default_factory=list)

    def record(self, loss: float, learning_rate: float, params: Any = None, gradient: Any = None):
        """Record a single optimization step."""
        self.losses.append(float(loss))
        self.learning_rates.append(float(learning_rate))
        if params is not None:
            self.params.append(params)
        if gradient is not None:
            self.gradients.append(gradient)

    def to_dict(self) -> dict:
        return {
            'losses': self.losses,
            'learning_rates': self.learning_rates,
            'params': self.params,
            'gradients': self.gradients,
            'num_steps': len(self.losses),
        }


# =============================================================================
# Learning Rate Schedules
# =============================================================================

def cosine_learning_rate(max_lr: float, min_lr: float, num_iterations: int) -> optax.Schedule:
    """
    Cosine decay from `max_lr` at iteration 0 to `min_lr` at `num_iterations`.

    lr(i) = (max_lr - min_lr) * (cos(pi * i / N) + 1) / 2 + min_lr
    """
    require(
        max_lr > 0 and 0 <= min_lr <= max_lr and num_iterations > 0,
        "cosine_learning_rate", "need 0 <= min_lr <= max_lr, max_lr > 0 and N > 0",
        max_lr=max_lr, min_lr=min_lr, num_iterations=num_iterations,
    )
    return optax.cosine_decay_schedule(
        init_value=max_lr,
        decay_steps=num_iterations,
        alpha=min_lr / max_lr,
    )


def _as_schedule(learning_rate: float | optax.Schedule) -> optax.Schedule:
    if callable(learning_rate):
        return learning_rate
    return optax.constant_schedule(learning_rate)


# =============================================================================
# Optimizers
# =============================================================================

def optimize_gradient_descent(
    loss_fn: Callable[[Any], jax.Array],
    initial_params: Any,
    learning_rate: float | optax.Schedule = 0.1,
    num_iterations: int = 100,
    convergence_threshold: float | None = None,
    verbose: bool = False,
    record_params: bool = False,
) -> OptimizationResult:
    """
    Minimize `loss_fn` with gradient descent: params <- params - lr(i) * grad.

    Args:
        loss_fn: Scalar function of the parameters (simulation + objective)
        initial_params: Starting parameters (any pytree)
        learning_rate: Constant rate or schedule i -> rate
        num_iterations: Number of iterations
        convergence_threshold: Stop early once the loss changes by less
            than this between iterations (None disables the check)
        verbose: Show a progress bar
        record_params: Keep every iterate and gradient in the history

    Returns:
        OptimizationResult with final params, loss, and history

    Raises:
        SimulationError: a precondition or domain failure aborts the run
    """
    schedule = _as_schedule(learning_rate)
    params = initial_params
    history = OptimizationHistory()
    prev_loss = float('inf')

    iterator = range(num_iterations)
    if verbose:
        iterator = tqdm(iterator, desc="Optimizing")

    for i in iterator:
        try:
            loss, gradient = value_and_gradient(params, loss_fn)
        except SimulationError as error:
            logger.error("Optimization aborted at iteration %d: %s", i, error)
            raise

        lr = schedule(i)
        history.record(
            loss, lr,
            params if record_params else None,
            gradient if record_params else None,
        )
        logger.debug("Iteration %d: loss %.6f, lr %.4g", i, float(loss), float(lr))

        if convergence_threshold is not None and abs(prev_loss - float(loss)) < convergence_threshold:
            logger.info("Converged at iteration %d with loss %.6f", i, float(loss))
            return OptimizationResult(
                final_params=params,
                final_loss=float(loss),
                history=history.to_dict(),
                converged=True,
                num_iterations=i + 1,
            )

        params = jax.tree_util.tree_map(lambda p, g: p - lr * g, params, gradient)
        prev_loss = float(loss)

        if verbose and i % 10 == 0:
            iterator.set_postfix({'loss': f'{float(loss):.4f}'})

    final_loss = loss_fn(params)
    logger.info("Finished %d iterations, final loss %.6f", num_iterations, float(final_loss))
    return OptimizationResult(
        final_params=params,
        final_loss=float(final_loss),
        history=history.to_dict(),
        converged=False,
        num_iterations=num_iterations,
    )


def optimize_adam(
    loss_fn: Callable[[Any], jax.Array],
    initial_params: Any,
    learning_rate: float | optax.Schedule = 0.01,
    num_iterations: int = 100,
    convergence_threshold: float | None = None,
    verbose: bool = False,
) -> OptimizationResult:
    """
    Minimize `loss_fn` with Adam (via optax).

    The update itself runs eagerly; billiard rollouts stop on a concrete
    settle test.
    """
    params = initial_params
    history = OptimizationHistory()
    schedule = _as_schedule(learning_rate)

    optimizer = optax.adam(learning_rate)
    opt_state = optimizer.init(params)
    prev_loss = float('inf')

    iterator = range(num_iterations)
    if verbose:
        iterator = tqdm(iterator, desc="Optimizing (Adam)")

    for i in iterator:
        try:
            loss, grads = value_and_gradient(params, loss_fn)
        except SimulationError as error:
            logger.error("Optimization aborted at iteration %d: %s", i, error)
            raise

        history.record(loss, schedule(i))
        if convergence_threshold is not None and abs(prev_loss - float(loss)) < convergence_threshold:
            logger.info("Converged at iteration %d with loss %.6f", i, float(loss))
            return OptimizationResult(
                final_params=params,
                final_loss=float(loss),
                history=history.to_dict(),
                converged=True,
                num_iterations=i + 1,
            )

        updates, opt_state = optimizer.update(grads, opt_state, params)
        params = optax.apply_updates(params, updates)
        prev_loss = float(loss)

        if verbose and i % 10 == 0:
            iterator.set_postfix({'loss': f'{float(loss):.4f}'})

    final_loss = loss_fn(params)
    return OptimizationResult(
        final_params=params,
        final_loss=float(final_loss),
        history=history.to_dict(),
        converged=False,
        num_iterations=num_iterations,
    )


# =============================================================================
# High-Level Optimization Functions
# =============================================================================

def optimize_billiard_shot(
    initial_velocity: tuple[float, float] = (20.0, 0.01),
    num_iterations: int = 100,
    max_lr: float = 1e-1,
    min_lr: float = 1e-2,
    config: billiard.BilliardConfig = billiard.BilliardConfig(),
    verbose: bool = False,
) -> OptimizationResult:
    """Find the cue velocity that brings the balls closest to all targets."""
    table = billiard.demo_table()
    return optimize_gradient_descent(
        lambda v0: billiard.target_loss(v0, table, config),
        jnp.asarray(initial_velocity, dtype=float),
        learning_rate=cosine_learning_rate(max_lr, min_lr, num_iterations),
        num_iterations=num_iterations,
        verbose=verbose,
    )


def optimize_rest_lengths(
    creature: springs.Creature,
    target_area: float = 0.1,
    end_time: float = 5.0,
    num_iterations: int = 50,
    learning_rate: float = 0.1,
    config: springs.SpringConfig = springs.bounce_config(),
    verbose: bool = False,
) -> OptimizationResult:
    """Tune spring rest lengths so the triangle reaches `target_area`."""
    return optimize_gradient_descent(
        lambda rest_lengths: springs.area_loss(rest_lengths, creature, target_area, end_time, config),
        creature.connectors.rest_length,
        learning_rate=learning_rate,
        num_iterations=num_iterations,
        verbose=verbose,
    )


def optimize_brain(
    creature: springs.Creature,
    brain: springs.Brain,
    end_time: float = 10.0,
    num_iterations: int = 50,
    learning_rate: float = 1.0,
    config: springs.SpringConfig = springs.creature_config(),
    verbose: bool = False,
) -> OptimizationResult:
    """
    Tune muscle amplitudes and phases so the creature's head moves furthest right.

    The brain's frequency stays fixed; `final_params` is a Brain.
    """
    def loss_fn(params):
        amplitudes, phases = params
        return springs.distance_loss(
            springs.Brain(amplitudes, phases, brain.frequency), creature, end_time, config
        )

    result = optimize_gradient_descent(
        loss_fn,
        (brain.amplitudes, brain.phases),
        learning_rate=learning_rate,
        num_iterations=num_iterations,
        verbose=verbose,
    )
    return result._replace(final_params=springs.Brain(*result.final_params, brain.frequency))


def optimize_initial_height(
    target: jax.Array,
    num_steps: int,
    config: wave.WaveConfig,
    initial_height: jax.Array | None = None,
    num_iterations: int = 50,
    learning_rate: float = 5.0,
    verbose: bool = False,
) -> OptimizationResult:
    """Find an initial water surface that evolves into `target` after `num_steps`."""
    if initial_height is None:
        initial_height = jnp.zeros((config.resolution, config.resolution))
    return optimize_gradient_descent(
        lambda height: wave.image_loss(height, target, num_steps, config),
        initial_height,
        learning_rate=learning_rate,
        num_iterations=num_iterations,
        verbose=verbose,
    )
