# crtkcheck/cube/path_generator.py
# Random walk along the edges of a cube, never picking the same axis twice in a row

from __future__ import annotations

import logging
from enum import IntEnum
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger("crtkcheck.cube")

# occupancy bits: which face of each axis pair the vertex touches
FRONT_FACE = 0b001   # X
LEFT_FACE = 0b010    # Y
LOWER_FACE = 0b100   # Z

START_VERTEX = 0b110  # front-left-upper corner


class Axis(IntEnum):
    X = 0
    Y = 1
    Z = 2

    @property
    def face_bit(self) -> int:
        return 1 << int(self)

    @property
    def unit(self) -> np.ndarray:
        v = np.zeros(3)
        v[int(self)] = 1.0
        return v


@dataclass
class CubeTraversal:
    """Vertex (3-bit occupancy mask) plus the axis of the last edge walked."""
    occupancy_mask: int = START_VERTEX
    previous_axis: Axis = Axis.Z

    def __post_init__(self) -> None:
        self.occupancy_mask = int(self.occupancy_mask) & 0b111
        self.previous_axis = Axis(self.previous_axis)


def apply_move(state: CubeTraversal, axis: Axis) -> np.ndarray:
    """
    Walk the edge along `axis` from the current vertex.
    Leaving an occupied face clears its bit and moves toward negative;
    reaching the opposite face sets it and moves toward positive.
    """
    bit = axis.face_bit
    if state.occupancy_mask & bit:
        state.occupancy_mask &= ~bit & 0b111
        vec = -axis.unit
    else:
        state.occupancy_mask |= bit
        vec = axis.unit
    state.previous_axis = axis
    return vec


def pick_axis(previous: Axis, rng: np.random.Generator) -> Axis:
    # rejection sampling keeps the two remaining axes equally likely
    choice = previous
    while choice == previous:
        choice = Axis(int(rng.integers(0, 3)))
    return choice


def next_direction(
    state: CubeTraversal,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[Axis, np.ndarray]:
    rng = rng if rng is not None else np.random.default_rng()
    axis = pick_axis(state.previous_axis, rng)
    logger.debug("Picked %s from vertex %s", axis.name, format(state.occupancy_mask, "03b"))
    return axis, apply_move(state, axis)
