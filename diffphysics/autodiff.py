"""
Differentiation Core

A small registry of primitive operations, each with a forward function and a
hand-written reverse-mode rule (its pullback). Every primitive is exposed as a
`jax.custom_vjp`, so when a simulation calls one of them under `jax.grad`
the registered pullback is exactly what propagates the sensitivity.

Primitives:
- sqrt, sin, cos, atan2
- add, sub, mul, div (elementwise, broadcasting)
- dot, norm, normalize (over the last axis)

Rules that are singular somewhere (sqrt at 0, atan2 at the origin, norm and
normalize of a zero vector, division by zero) raise DomainError on the
forward pass instead of producing NaN.

Branches on simulation values (collisions, ground contact) are taken with
`select`, which picks between two traced values under a stop-gradient
predicate, so simulation steps can be compiled with `jax.jit`. `branch`
evaluates a predicate as a Python boolean for host-side control flow such
as termination tests. Either way only the selected value is differentiated.
"""

from __future__ import annotations
from typing import Any, Callable, NamedTuple
import functools

import jax
import jax.numpy as jnp
from jax import Array

from diffphysics.errors import DomainError, require_domain


# =============================================================================
# Primitive Registry
# =============================================================================

class Primitive(NamedTuple):
    """
    A registered primitive operation.

    Attributes:
        name: Registry key
        forward: Computes the value, raising DomainError where undefined
        pullback: (*inputs, seed) -> tuple of input sensitivities
        apply: Differentiable callable (custom VJP using `pullback`)
    """
    name: str
    forward: Callable[..., Array]
    pullback: Callable[..., tuple[Array, ...]]
    apply: Callable[..., Array]


PRIMITIVES: dict[str, Primitive] = {}


def _as_float(x: Any) -> Array:
    x = jnp.asarray(x)
    if jnp.issubdtype(x.dtype, jnp.floating):
        return x
    return x.astype(jnp.result_type(float))


def _unbroadcast(sensitivity: Array, like: Array) -> Array:
    """Sum a broadcast sensitivity back down to the shape of `like`."""
    shape = jnp.shape(like)
    sensitivity = jnp.asarray(sensitivity)
    while sensitivity.ndim > len(shape):
        sensitivity = sensitivity.sum(axis=0)
    for axis, size in enumerate(shape):
        if size == 1 and sensitivity.shape[axis] != 1:
            sensitivity = sensitivity.sum(axis=axis, keepdims=True)
    return sensitivity.astype(jnp.result_type(like)).reshape(shape)


def register_primitive(name: str, pullback: Callable[..., tuple[Array, ...]]):
    """
    Register `forward` under `name` with the given pullback.

    The decorated function is replaced by its differentiable version.
    """
    def decorator(forward: Callable[..., Array]) -> Callable[..., Array]:
        @jax.custom_vjp
        def apply(*inputs):
            return forward(*inputs)

        def apply_fwd(*inputs):
            return forward(*inputs), inputs

        def apply_bwd(inputs, seed):
            sensitivities = pullback(*inputs, seed)
            return tuple(_unbroadcast(s, x) for s, x in zip(sensitivities, inputs))

        apply.defvjp(apply_fwd, apply_bwd)

        @functools.wraps(forward)
        def primitive(*inputs):
            return apply(*(_as_float(x) for x in inputs))

        PRIMITIVES[name] = Primitive(name, forward, pullback, primitive)
        return primitive

    return decorator


# =============================================================================
# Scalar Primitives
# =============================================================================

def _sqrt_pullback(x, seed):
    return (seed / (2.0 * jnp.sqrt(x)),)


@register_primitive("sqrt", _sqrt_pullback)
def sqrt(x):
    """Square root, undefined (with its derivative) for x <= 0."""
    require_domain(x > 0, "sqrt", "argument must be positive", x=x)
    return jnp.sqrt(x)


def _sin_pullback(x, seed):
    return (seed * jnp.cos(x),)


@register_primitive("sin", _sin_pullback)
def sin(x):
    return jnp.sin(x)


def _cos_pullback(x, seed):
    return (-seed * jnp.sin(x),)


@register_primitive("cos", _cos_pullback)
def cos(x):
    return jnp.cos(x)


def _atan2_pullback(y, x, seed):
    d = x * x + y * y
    return (seed * x / d, -seed * y / d)


@register_primitive("atan2", _atan2_pullback)
def atan2(y, x):
    """
    Angle of the point (x, y).

    atan2 is discontinuous at the origin and its derivative (-y/d, x/d)
    divides by d = x^2 + y^2 = 0 there, so the origin raises DomainError.
    """
    require_domain((x != 0) | (y != 0), "atan2", "undefined at the origin", y=y, x=x)
    return jnp.arctan2(y, x)


# =============================================================================
# Elementwise Arithmetic
# =============================================================================

def _add_pullback(a, b, seed):
    return (seed, seed)


@register_primitive("add", _add_pullback)
def add(a, b):
    return a + b


def _sub_pullback(a, b, seed):
    return (seed, -seed)


@register_primitive("sub", _sub_pullback)
def sub(a, b):
    return a - b


def _mul_pullback(a, b, seed):
    return (seed * b, seed * a)


@register_primitive("mul", _mul_pullback)
def mul(a, b):
    return a * b


def _div_pullback(a, b, seed):
    return (seed / b, -seed * a / (b * b))


@register_primitive("div", _div_pullback)
def div(a, b):
    require_domain(b != 0, "div", "division by zero", a=a, b=b)
    return a / b


# =============================================================================
# Vector Primitives
# =============================================================================

def _dot_pullback(a, b, seed):
    seed = jnp.expand_dims(seed, -1)
    return (seed * b, seed * a)


@register_primitive("dot", _dot_pullback)
def dot(a, b):
    """Dot product over the last axis."""
    return jnp.sum(a * b, axis=-1)


def _norm_pullback(v, seed):
    magnitude = jnp.sqrt(jnp.sum(v * v, axis=-1, keepdims=True))
    return (jnp.expand_dims(seed, -1) * v / magnitude,)


@register_primitive("norm", _norm_pullback)
def norm(v):
    """Euclidean length over the last axis; zero length raises DomainError."""
    squared = jnp.sum(v * v, axis=-1)
    require_domain(squared > 0, "norm", "zero-length vector has no derivative", v=v)
    return jnp.sqrt(squared)


def _normalize_pullback(v, seed):
    magnitude = jnp.sqrt(jnp.sum(v * v, axis=-1, keepdims=True))
    unit = v / magnitude
    radial = jnp.sum(unit * seed, axis=-1, keepdims=True)
    return ((seed - unit * radial) / magnitude,)


@register_primitive("normalize", _normalize_pullback)
def normalize(v):
    """Unit vector along `v`; a zero vector raises DomainError."""
    squared = jnp.sum(v * v, axis=-1, keepdims=True)
    require_domain(squared > 0, "normalize", "cannot normalize a zero-length vector", v=v)
    return v / jnp.sqrt(squared)


# =============================================================================
# Gradients and Stop-Gradient Helpers
# =============================================================================

def branch(predicate: Any) -> bool:
    """
    Evaluate a branch predicate as a constant.

    The predicate's own sensitivity is zero: differentiation follows the
    value computed inside whichever branch is selected. Requires concrete
    values, so simulations using it must not be wrapped in `jax.jit`.
    """
    return bool(jax.lax.stop_gradient(predicate))


def select(predicate: Any, on_true: Any, on_false: Any) -> Array:
    """
    Traceable branch: `on_true` where `predicate` holds, else `on_false`.

    Both values are computed, so the one not taken must stay finite for
    its zero sensitivity to stay zero.
    """
    return jnp.where(jax.lax.stop_gradient(predicate), on_true, on_false)


def constant(x: Any) -> Any:
    """Treat `x` as a constant for differentiation (e.g. a random draw)."""
    return jax.lax.stop_gradient(x)


def _check_finite(tree: Any, operation: str) -> None:
    leaves = jax.tree_util.tree_leaves(tree)
    for leaf in leaves:
        if not bool(jnp.all(jnp.isfinite(leaf))):
            raise DomainError(operation, "non-finite value or gradient", {"value": leaf})


def value_and_gradient(params: Any, f: Callable[[Any], Array]) -> tuple[Array, Any]:
    """
    Evaluate `f(params)` and its gradient with one reverse pass.

    Args:
        params: Any pytree of floating point arrays/scalars
        f: Scalar-valued function of `params`

    Returns:
        (value, gradient) where gradient has the same structure as `params`
    """
    params = jax.tree_util.tree_map(_as_float, params)
    value, grads = jax.value_and_grad(f)(params)
    _check_finite(grads, "value_and_gradient")
    return value, grads


def gradient(params: Any, f: Callable[[Any], Array]) -> Any:
    """Gradient of scalar `f` at `params` (same structure as `params`)."""
    return value_and_gradient(params, f)[1]
