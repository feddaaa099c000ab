"""
Rollouts

Drive a pure `step(state) -> state` function forward in time, either until a
termination predicate holds or for a fixed number of steps, and optionally
record the visited states as a trajectory.

Loops driven by a predicate are plain Python loops: termination predicates
are evaluated on concrete values and are not differentiated, while every
state produced along the way stays on the gradient path. Fixed-length
horizons can instead run as one compiled loop with `evolve_compiled`.
"""

from __future__ import annotations
from typing import Callable, Sequence, TypeVar

import jax
import jax.numpy as jnp


State = TypeVar("State")


def evolve_until(
    state: State,
    step: Callable[[State], State],
    done: Callable[[State], bool],
    callback: Callable[[State], None] | None = None,
) -> State:
    """
    Step `state` until `done(state)` is true.

    `callback` (if given) sees every state including the final one.
    """
    while not done(state):
        if callback is not None:
            callback(state)
        state = step(state)
    if callback is not None:
        callback(state)
    return state


def evolve_for(state: State, step: Callable[[State], State], num_steps: int) -> State:
    """Apply `step` exactly `num_steps` times."""
    for _ in range(num_steps):
        state = step(state)
    return state


def record_until(
    state: State,
    step: Callable[[State], State],
    done: Callable[[State], bool],
) -> list[State]:
    """Trajectory from `state` up to and including the first `done` state."""
    states: list[State] = []
    evolve_until(state, step, done, callback=states.append)
    return states


def record_for(state: State, step: Callable[[State], State], num_steps: int) -> list[State]:
    """Trajectory of `num_steps + 1` states starting at `state`."""
    states = [state]
    for _ in range(num_steps):
        state = step(state)
        states.append(state)
    return states


def steps_until(time: float, end_time: float, dt: float) -> int:
    """Number of steps of size `dt` taken while `time <= end_time`."""
    time = float(time)
    count = 0
    while not time > end_time:
        time += dt
        count += 1
    return count


def evolve_compiled(state: State, step: Callable[[State], State], num_steps: int) -> State:
    """
    Apply `step` exactly `num_steps` times inside one `jax.lax.fori_loop`.

    `step` is traced once and compiled, so it must not branch on values in
    Python. Reverse-mode differentiation works because the trip count is a
    static integer.
    """
    return jax.lax.fori_loop(0, num_steps, lambda _, s: step(s), state)


def stack_states(states: Sequence[State]) -> State:
    """
    Stack a trajectory into one state whose leaves gain a leading time axis.

    This is the form handed to visualization and export code.
    """
    return jax.tree_util.tree_map(lambda *leaves: jnp.stack(leaves), *states)
