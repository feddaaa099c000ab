"""
Simulation Errors

Two kinds of failure abort a computation:

- PreconditionError: the inputs have the wrong shape or count (actuation
  count != connector count, a non-square field, an index outside its
  container). Raised before any work is done.
- DomainError: a value or derivative is undefined at the given point
  (sqrt of a non-positive number, normalizing a zero vector, atan2 at the
  origin). Raised instead of letting NaN flow into a gradient.

Taking a non-differentiable branch (a collision, ground contact, a random
kick) is not an error: the branch predicate is simply a constant for
differentiation.
"""

from __future__ import annotations
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np


class SimulationError(Exception):
    """Base class for all failures raised by diffphysics."""

    def __init__(self, operation: str, message: str, values: dict[str, Any] | None = None):
        self.operation = operation
        self.message = message
        self.values = dict(values or {})
        details = ", ".join(f"{name}={describe(value)}" for name, value in self.values.items())
        text = f"{operation}: {message}"
        if details:
            text = f"{text} ({details})"
        super().__init__(text)


class PreconditionError(SimulationError, ValueError):
    """Inputs violate a shape, count or index precondition."""


class DomainError(SimulationError, ArithmeticError):
    """A value or its derivative is undefined for the given inputs."""


def describe(value: Any) -> str:
    """Render a (possibly traced) value for an error message."""
    if isinstance(value, jax.core.Tracer):
        to_concrete = getattr(value, "to_concrete_value", None)
        concrete = to_concrete() if to_concrete is not None else None
        if concrete is None:
            return f"<traced {value.aval.str_short()}>"
        value = concrete
    if isinstance(value, (jax.Array, np.ndarray, np.generic)):
        return np.array2string(np.asarray(value), precision=6)
    return repr(value)


def require(condition: bool, operation: str, message: str, **values: Any) -> None:
    """Raise PreconditionError unless the static `condition` holds."""
    if not condition:
        raise PreconditionError(operation, message, values)


def require_domain(condition: Any, operation: str, message: str, **values: Any) -> None:
    """
    Raise DomainError unless `condition` holds for every element.

    The check needs concrete values. While tracing under `jax.jit` or inside
    a compiled rollout the condition is abstract and the check is skipped; a
    singular value then surfaces as a non-finite result, which
    `value_and_gradient` reports as DomainError.
    """
    try:
        satisfied = bool(jnp.all(condition))
    except jax.errors.ConcretizationTypeError:
        return
    if not satisfied:
        raise DomainError(operation, message, values)
