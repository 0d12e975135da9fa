# crtkcheck/drivers/sim_device.py
# In-process simulated robot: operating-state model with command latency + time-based arm motion

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from crtkcheck.core.device_state import Command, DeviceProfile, DeviceSnapshot, OperatingState


@dataclass
class SimSettings:
    command_latency_s: float = 0.2
    homing_duration_s: float = 6.0
    connect_delay_s: float = 0.5
    busy_when_ready: bool = True
    arms: int = 2

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "SimSettings":
        c = cfg or {}
        return cls(
            command_latency_s=float(c.get("command_latency_s", 0.2)),
            homing_duration_s=float(c.get("homing_duration_s", 6.0)),
            connect_delay_s=float(c.get("connect_delay_s", 0.5)),
            busy_when_ready=bool(c.get("busy_when_ready", True)),
            arms=int(c.get("arms", 2)),
        )


class SimulatedArm:
    """
    Relative Cartesian motion that completes after `duration` seconds.
    Fails (-1) while the device is not enabled.
    """

    def __init__(self, device: "SimulatedDevice", index: int):
        self.device = device
        self.index = index
        self.position = np.zeros(3)
        self.motions_sent = 0
        self.holds = 0
        self._origin = self.position.copy()
        self._motion_start: Optional[float] = None

    def measured_position(self) -> np.ndarray:
        return self.position.copy()

    def start_motion(self, now: float) -> None:
        self._motion_start = now
        self._origin = self.position.copy()

    def send_motion(self, vector: np.ndarray, distance: float, duration: float, now: float) -> int:
        if self.device.state != OperatingState.ENABLED:
            return -1
        if self._motion_start is None:
            self.start_motion(now)

        self.motions_sent += 1
        if duration <= 0:
            frac = 1.0
        else:
            frac = min(1.0, max(0.0, (now - self._motion_start) / duration))
        self.position = self._origin + np.asarray(vector, dtype=float) * float(distance) * frac
        return 1 if frac >= 1.0 else 0

    def hold(self) -> None:
        # identity motion: stay where we are
        self.holds += 1


class SimulatedDevice:
    """
    Honors the operating-state rules the conformance cases expect:
      - commands take effect command_latency_s after they are sent
      - Home enables the device and homes for homing_duration_s
      - Disable / Unhome during homing leave the device un-homed
      - Pause during homing disables (escalating families) or pauses
    Call update(now) once per tick before reading.
    """

    def __init__(
        self,
        settings: Optional[SimSettings] = None,
        profile: Optional[DeviceProfile] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or SimSettings()
        self.profile = profile or DeviceProfile()
        self.logger = logger or logging.getLogger("crtkcheck.sim")

        self.state = OperatingState.DISABLED
        self.homed = False
        self.homing = False
        self.connected = False

        self.now = 0.0
        self.received: List[Command] = []
        self.arms = [SimulatedArm(self, i) for i in range(self.settings.arms)]

        self._started_at: Optional[float] = None
        self._homing_done_at: Optional[float] = None
        self._pending: List[Tuple[float, Command]] = []

    # -----------------------------
    # Device view
    # -----------------------------

    def read_operating_state(self) -> DeviceSnapshot:
        busy = (
            self.settings.busy_when_ready
            and self.state == OperatingState.ENABLED
            and self.homed
            and not self.homing
        )
        return DeviceSnapshot(
            state=self.state,
            homed=self.homed,
            homing=self.homing,
            busy=busy,
            connected=self.connected,
        )

    def send_command(self, command: Command) -> None:
        self.received.append(command)
        self._pending.append((self.now + self.settings.command_latency_s, command))

    # -----------------------------
    # Simulation
    # -----------------------------

    def update(self, now: float) -> None:
        self.now = now
        if self._started_at is None:
            self._started_at = now
        if not self.connected and now - self._started_at >= self.settings.connect_delay_s:
            self.connected = True
            self.logger.info("Simulated robot connected (%s family).", self.profile.family)

        # process due events in time order
        while True:
            next_cmd = self._pending[0][0] if self._pending else None
            homing_due = self._homing_done_at
            if homing_due is not None and homing_due <= now and (next_cmd is None or homing_due <= next_cmd):
                self._finish_homing()
                continue
            if next_cmd is not None and next_cmd <= now:
                at, cmd = self._pending.pop(0)
                self._apply(cmd, at)
                continue
            break

    def _finish_homing(self) -> None:
        self._homing_done_at = None
        self.homing = False
        self.homed = True
        self.logger.debug("sim: homing complete")

    def _abort_homing(self) -> None:
        if self.homing:
            self.homing = False
            self.homed = False
        self._homing_done_at = None

    def _apply(self, cmd: Command, at: float) -> None:
        prev = self.state
        if cmd == Command.ENABLE:
            if self.state == OperatingState.DISABLED:
                self.state = OperatingState.ENABLED

        elif cmd == Command.DISABLE:
            self._abort_homing()
            self.state = OperatingState.DISABLED

        elif cmd == Command.HOME:
            self.state = OperatingState.ENABLED
            self.homing = True
            self.homed = False
            self._homing_done_at = at + self.settings.homing_duration_s

        elif cmd == Command.UNHOME:
            self._abort_homing()
            self.homed = False
            self.state = OperatingState.DISABLED

        elif cmd == Command.PAUSE:
            if self.state == OperatingState.ENABLED:
                if self.homing:
                    self._abort_homing()
                    if self.profile.pause_while_homing_disables:
                        self.state = OperatingState.DISABLED
                    else:
                        self.state = OperatingState.PAUSED
                else:
                    self.state = OperatingState.PAUSED

        elif cmd == Command.RESUME:
            if self.state == OperatingState.PAUSED:
                self.state = OperatingState.ENABLED

        self.logger.debug("sim: %s -> %s (%s)", cmd.name, self.state.name, prev.name)
