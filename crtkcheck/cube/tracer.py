# crtkcheck/cube/tracer.py
# Cube-tracing exercise: both arms walk random cube edges, each at its own pace

from __future__ import annotations

import logging
from enum import Enum, auto
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from crtkcheck.core.device_state import ArmView, Command, MotionDeviceView
from crtkcheck.cube.path_generator import START_VERTEX, Axis, CubeTraversal, next_direction

DOWN = -Axis.Z.unit

# closer than this to the edge target counts as arrived (metres)
ARRIVED_M = 1e-9


class TracePhase(Enum):
    PROMPT = auto()
    CONFIRM = auto()
    RESUME = auto()
    DESCEND = auto()
    TRACE = auto()


@dataclass
class ArmTrack:
    """
    Per-arm progress. `target` is the vertex the current edge ends on;
    vector/distance/duration describe the segment being sent, which is the
    whole edge or, after a failed move, what is left of it.
    """
    traversal: CubeTraversal
    target: Optional[np.ndarray] = None
    vector: Optional[np.ndarray] = None
    distance: float = 0.0
    duration: float = 0.0
    moving: bool = False
    restart: bool = False
    failing: bool = False
    edges: int = 0
    failures: int = 0


@dataclass
class TracerSettings:
    distance_m: float = 0.01
    duration_s: float = 1.0
    arms: int = 2
    start_vertex: int = START_VERTEX
    start_axis: Axis = Axis.Z
    seed: Optional[int] = None

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "TracerSettings":
        c = cfg or {}
        seed = c.get("seed")
        return cls(
            distance_m=float(c.get("distance_m", 0.01)),
            duration_s=float(c.get("duration_s", 1.0)),
            arms=int(c.get("arms", 2)),
            start_vertex=int(c.get("start_vertex", START_VERTEX)),
            start_axis=Axis[str(c.get("start_axis", "Z")).upper()],
            seed=None if seed is None else int(seed),
        )


def _always_confirmed() -> bool:
    return True


class CubeTracer:
    """
    Polled once per tick. Status codes:
      0  -> running
      <0 -> an arm reported a failed move this tick (it holds, then finishes the edge)
    """

    def __init__(
        self,
        settings: Optional[TracerSettings] = None,
        confirm: Optional[Callable[[], bool]] = None,
        rng: Optional[np.random.Generator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or TracerSettings()
        self.confirm = confirm or _always_confirmed
        self.rng = rng if rng is not None else np.random.default_rng(self.settings.seed)
        self.logger = logger or logging.getLogger("crtkcheck.cube")

        self.phase = TracePhase.PROMPT
        self.tracks: List[ArmTrack] = [
            ArmTrack(CubeTraversal(self.settings.start_vertex, self.settings.start_axis))
            for _ in range(self.settings.arms)
        ]
        self._descending = 0

    @property
    def edge_count(self) -> int:
        return sum(t.edges for t in self.tracks)

    def tick(self, device: MotionDeviceView, now: float) -> int:
        if self.phase == TracePhase.PROMPT:
            self.logger.info("======================= Starting servo_cr cube ======================= ")
            self.logger.info("Start and home robot if not already. (Press 'Enter' when done.)")
            self.logger.info("In this example, the arms should randomly trace a cube.")
            self.phase = TracePhase.CONFIRM
            return 0

        if self.phase == TracePhase.CONFIRM:
            if self.confirm():
                self.phase = TracePhase.RESUME
            return 0

        if self.phase == TracePhase.RESUME:
            device.send_command(Command.RESUME)
            self.logger.info("RESUME command sent. Waiting for robot to enter ENABLED state...")
            self.phase = TracePhase.DESCEND
            return 0

        if self.phase == TracePhase.DESCEND:
            return self._descend(device, now)

        return self._trace(device, now)

    # -----------------------------
    # Phases
    # -----------------------------

    def _descend(self, device: MotionDeviceView, now: float) -> int:
        # lower each arm by one edge, one arm after the other
        if not device.read_operating_state().enabled:
            return 0
        i = self._descending
        track, arm = self.tracks[i], device.arms[i]
        if track.target is None:
            self._begin(track, arm, DOWN, now)

        out = self._advance(i, track, arm, now)
        if out > 0:
            self._descending += 1
            if self._descending >= len(self.tracks):
                self.logger.info("Start randomly tracing a cube.")
                self.phase = TracePhase.TRACE
        return min(out, 0)

    def _trace(self, device: MotionDeviceView, now: float) -> int:
        status = 0
        for i, track in enumerate(self.tracks):
            arm = device.arms[i]
            if not track.moving:
                axis, unit = next_direction(track.traversal, self.rng)
                self.logger.debug("arm %d: edge %d along %s", i, track.edges + 1, axis.name)
                self._begin(track, arm, unit, now)
                track.edges += 1
            status = min(status, self._advance(i, track, arm, now))
        return status

    # -----------------------------
    # Edge motion
    # -----------------------------

    def _begin(self, track: ArmTrack, arm: ArmView, unit: np.ndarray, now: float) -> None:
        track.target = arm.measured_position() + unit * self.settings.distance_m
        track.vector = unit
        track.distance = self.settings.distance_m
        track.duration = self.settings.duration_s
        track.moving = True
        track.restart = False
        arm.start_motion(now)

    def _resume(self, track: ArmTrack, arm: ArmView, now: float) -> bool:
        """Re-aim at the edge target from wherever the failed move left the arm. False if already there."""
        track.restart = False
        remaining = track.target - arm.measured_position()
        dist = float(np.linalg.norm(remaining))
        if dist < ARRIVED_M:
            return False
        track.vector = remaining / dist
        track.distance = dist
        track.duration = self.settings.duration_s * dist / self.settings.distance_m
        arm.start_motion(now)
        return True

    def _advance(self, i: int, track: ArmTrack, arm: ArmView, now: float) -> int:
        if track.restart and not self._resume(track, arm, now):
            track.moving = False
            return 1

        out = arm.send_motion(track.vector, track.distance, track.duration, now)
        if out >= 0:
            track.failing = False
            track.moving = out == 0
        else:
            arm.hold()
            track.failures += 1
            track.restart = True
            if not track.failing:
                self.logger.warning("arm %d: move failed (%d); holding.", i, out)
            track.failing = True
        return out
