"""
diffphysics

Differentiable physics simulations built on JAX: billiards with wall and
ball collisions, mass-spring-muscle creatures and a shallow water equation.
Every step function is differentiable end-to-end, so simulation parameters
can be optimized by gradient descent against an objective on the final
state. A small line-fitting helper shows the optimizer loop on its own.
"""

import jax

# Finite-difference gradient checks need double precision.
jax.config.update("jax_enable_x64", True)

from diffphysics.errors import SimulationError, PreconditionError, DomainError
from diffphysics.autodiff import (
    PRIMITIVES,
    Primitive,
    register_primitive,
    branch,
    select,
    constant,
    gradient,
    value_and_gradient,
)
from diffphysics.rollout import (
    evolve_until,
    evolve_for,
    record_until,
    record_for,
    steps_until,
    evolve_compiled,
    stack_states,
)
from diffphysics.billiard import BilliardConfig, BilliardState, Table, Wall
from diffphysics.springs import (
    SpringConfig,
    Particles,
    Connectors,
    Topology,
    Creature,
    Brain,
    SpringState,
)
from diffphysics.creatures import CreatureBuilder
from diffphysics.wave import WaveConfig, WaveState
from diffphysics.optimization import (
    OptimizationResult,
    OptimizationHistory,
    cosine_learning_rate,
    optimize_gradient_descent,
    optimize_adam,
    optimize_billiard_shot,
    optimize_rest_lengths,
    optimize_brain,
    optimize_initial_height,
)
from diffphysics.fitting import Line, line_error, fit_line
from diffphysics.logging_config import setup_logging

__all__ = [
    # Errors
    "SimulationError",
    "PreconditionError",
    "DomainError",
    # Differentiation core
    "PRIMITIVES",
    "Primitive",
    "register_primitive",
    "branch",
    "select",
    "constant",
    "gradient",
    "value_and_gradient",
    # Rollouts
    "evolve_until",
    "evolve_for",
    "record_until",
    "record_for",
    "steps_until",
    "evolve_compiled",
    "stack_states",
    # Billiard
    "BilliardConfig",
    "BilliardState",
    "Table",
    "Wall",
    # Springs
    "SpringConfig",
    "Particles",
    "Connectors",
    "Topology",
    "Creature",
    "Brain",
    "SpringState",
    "CreatureBuilder",
    # Wave
    "WaveConfig",
    "WaveState",
    # Optimization
    "OptimizationResult",
    "OptimizationHistory",
    "cosine_learning_rate",
    "optimize_gradient_descent",
    "optimize_adam",
    "optimize_billiard_shot",
    "optimize_rest_lengths",
    "optimize_brain",
    "optimize_initial_height",
    # Line fitting
    "Line",
    "line_error",
    "fit_line",
    # Logging
    "setup_logging",
]
