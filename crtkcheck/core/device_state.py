# crtkcheck/core/device_state.py
# Device State View: operating-state snapshot, command set, device-family profile

from __future__ import annotations

from enum import Enum
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence

import numpy as np


class OperatingState(Enum):
    DISABLED = "DISABLED"
    ENABLED = "ENABLED"
    PAUSED = "PAUSED"


class Command(Enum):
    ENABLE = "enable"
    DISABLE = "disable"
    HOME = "home"
    UNHOME = "unhome"
    PAUSE = "pause"
    RESUME = "resume"


@dataclass(frozen=True)
class DeviceSnapshot:
    """
    One observation of the device. Exactly one of disabled/enabled/paused holds;
    homed, homing and busy are modifiers observed alongside it.
    """
    state: OperatingState = OperatingState.DISABLED
    homed: bool = False
    homing: bool = False
    busy: bool = False
    connected: bool = False

    @property
    def disabled(self) -> bool:
        return self.state == OperatingState.DISABLED

    @property
    def enabled(self) -> bool:
        return self.state == OperatingState.ENABLED

    @property
    def paused(self) -> bool:
        return self.state == OperatingState.PAUSED

    def state_char(self) -> str:
        return self.state.value[0]

    def describe(self) -> str:
        mods = [name for name in ("homed", "homing", "busy") if getattr(self, name)]
        return "{%s}" % ", ".join([self.state.value.lower()] + mods)


class DeviceView(Protocol):
    """What the engine consumes from the device/transport side."""

    def read_operating_state(self) -> DeviceSnapshot: ...

    def send_command(self, command: Command) -> None: ...


class ArmView(Protocol):
    """
    One actuator of the device. send_motion() is polled every tick and returns
      1  -> motion complete
      0  -> still moving
      <0 -> motion failed
    """

    def measured_position(self) -> np.ndarray: ...

    def start_motion(self, now: float) -> None: ...

    def send_motion(self, vector: np.ndarray, distance: float, duration: float, now: float) -> int: ...

    def hold(self) -> None: ...


class MotionDeviceView(DeviceView, Protocol):
    arms: Sequence[ArmView]


# -----------------------------
# Device family
# -----------------------------

FAMILY_GENERIC = "generic"
FAMILY_RAVEN = "raven"


@dataclass(frozen=True)
class DeviceProfile:
    """
    Behavioral divergences between device families.

    pause_while_homing_disables:
        Pausing during homing escalates to a full disable (raven) instead of a soft pause.
    estop_cycle_on_home:
        Operator must press/release the e-stop and re-enable after Home (raven).
    """
    family: str = FAMILY_GENERIC
    pause_while_homing_disables: bool = False
    estop_cycle_on_home: bool = False

    @classmethod
    def for_family(cls, family: str, overrides: Optional[Dict[str, Any]] = None) -> "DeviceProfile":
        family = (family or FAMILY_GENERIC).lower()
        is_raven = family == FAMILY_RAVEN
        o = overrides or {}
        pwh = o.get("pause_while_homing_disables")
        eco = o.get("estop_cycle_on_home")
        return cls(
            family=family,
            pause_while_homing_disables=is_raven if pwh is None else bool(pwh),
            estop_cycle_on_home=is_raven if eco is None else bool(eco),
        )
