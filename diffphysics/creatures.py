"""
Creature Presets

Mass-spring creatures assembled from unit squares (four edges plus two
diagonals) and triangles. Joints shared by neighbouring blocks are merged,
and every connector's rest length is taken from the initial geometry.

Presets:
- triangle: three joints, three passive springs (k = 1, c = 1)
- worm: two rows of three joints, every connector a muscle
- dog: two legs (a square on a triangle paw) under a three-square body
- giraffe: two-square legs, a three-square body and a two-square neck/head
"""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np

from diffphysics.springs import Connectors, Creature, Particles, Topology


STIFFNESS = 10_000.0
DAMPING = 1.0
ACTUATION = 0.15


class CreatureBuilder:
    """Incrementally collects joints and connectors, then builds a Creature."""

    def __init__(self, stiffness: float = STIFFNESS, damping: float = DAMPING):
        self.stiffness = stiffness
        self.damping = damping
        self._joints: list[tuple[float, float]] = []
        self._connectors: list[tuple[int, int, float, float, float | None]] = []

    @property
    def num_joints(self) -> int:
        return len(self._joints)

    @property
    def num_connectors(self) -> int:
        return len(self._connectors)

    def add_joint(self, position: tuple[float, float]) -> int:
        """Add a joint unless one already exists at `position`; return its index."""
        key = (round(float(position[0]), 9), round(float(position[1]), 9))
        if key in self._joints:
            return self._joints.index(key)
        self._joints.append(key)
        return len(self._joints) - 1

    def add_connector(
        self,
        a: int,
        b: int,
        stiffness: float | None = None,
        damping: float | None = None,
        actuation: float | None = None,
    ) -> int:
        """Connect joints `a` and `b`; an identical connector is only added once."""
        connector = (
            a,
            b,
            self.stiffness if stiffness is None else stiffness,
            self.damping if damping is None else damping,
            actuation,
        )
        if connector in self._connectors:
            return self._connectors.index(connector)
        self._connectors.append(connector)
        return len(self._connectors) - 1

    def insert_square(
        self,
        bottom_left: tuple[float, float],
        size: float = 1.0,
        actuation: float | None = None,
    ) -> None:
        """Square block; its vertical edges are muscles when `actuation` is given."""
        x, y = bottom_left
        bl = self.add_joint((x, y))
        br = self.add_joint((x + size, y))
        tr = self.add_joint((x + size, y + size))
        tl = self.add_joint((x, y + size))

        self.add_connector(bl, br)
        self.add_connector(br, tr, actuation=actuation)
        self.add_connector(tr, tl)
        self.add_connector(tl, bl, actuation=actuation)
        self.add_connector(bl, tr)
        self.add_connector(br, tl)

    def insert_triangle(self, top_left: tuple[float, float], size: float = 1.0) -> None:
        """Downward-pointing triangle hanging from `top_left`."""
        x, y = top_left
        tl = self.add_joint((x, y))
        tr = self.add_joint((x + size, y))
        bottom = self.add_joint((x + size / 2, y - size / 2))

        self.add_connector(tl, tr)
        self.add_connector(tl, bottom)
        self.add_connector(tr, bottom)

    def build(self, head: int = 0, mass: float = 1.0) -> Creature:
        """Creature at rest with rest lengths equal to the initial joint distances."""
        positions = np.array(self._joints, dtype=float)
        pairs = tuple((a, b) for a, b, *_ in self._connectors)
        rest_lengths = np.array(
            [np.linalg.norm(positions[a] - positions[b]) for a, b in pairs], dtype=float
        )
        connectors = Connectors(
            rest_length=jnp.asarray(rest_lengths),
            stiffness=jnp.array([c[2] for c in self._connectors], dtype=float),
            damping=jnp.array([c[3] for c in self._connectors], dtype=float),
            actuation=jnp.array([c[4] or 0.0 for c in self._connectors], dtype=float),
        )
        topology = Topology(
            pairs=pairs,
            actuated=tuple(c[4] is not None for c in self._connectors),
            head=head,
        )
        particles = Particles.create(positions, masses=np.full(len(positions), mass))
        return Creature.create(particles, connectors, topology)


# =============================================================================
# Presets
# =============================================================================

def triangle() -> Creature:
    builder = CreatureBuilder(stiffness=1.0, damping=1.0)
    joints = [builder.add_joint(p) for p in [(0.0, 0.0), (1.0, 0.0), (0.0, 1.0)]]
    builder.add_connector(joints[0], joints[1])
    builder.add_connector(joints[1], joints[2])
    builder.add_connector(joints[2], joints[0])
    return builder.build(head=0)


def worm() -> Creature:
    builder = CreatureBuilder()
    for position in [(0, 0), (1, 0.3), (2, 0), (0, 1), (1, 1), (2, 1)]:
        builder.add_joint(position)
    for a, b in [(0, 1), (1, 2), (3, 4), (4, 5), (0, 3), (2, 5),
                 (0, 4), (1, 4), (2, 4), (3, 1), (5, 1)]:
        builder.add_connector(a, b, actuation=ACTUATION)
    return builder.build(head=5)


def dog() -> Creature:
    builder = CreatureBuilder()

    rear_leg = (0.0, 0.5)
    builder.insert_square(rear_leg, actuation=ACTUATION)
    builder.insert_triangle(rear_leg)

    for corner in [(0.0, 1.5), (1.0, 1.5), (2.0, 1.5)]:
        builder.insert_square(corner)

    front_leg = (2.0, 0.5)
    builder.insert_square(front_leg, actuation=ACTUATION)
    builder.insert_triangle(front_leg)

    return builder.build(head=0)


def giraffe() -> Creature:
    builder = CreatureBuilder()

    for leg in [(0.0, 0.0), (0.0, 1.0)]:
        builder.insert_square(leg, actuation=ACTUATION)
    for corner in [(0.0, 2.0), (1.0, 2.0), (2.0, 2.0)]:
        builder.insert_square(corner)
    for corner in [(2.0, 4.0), (2.0, 3.0)]:
        builder.insert_square(corner)
    for leg in [(2.0, 0.0), (2.0, 1.0)]:
        builder.insert_square(leg, actuation=ACTUATION)

    return builder.build(head=0)
