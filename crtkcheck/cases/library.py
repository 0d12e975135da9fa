# crtkcheck/cases/library.py
# The eight operating-state scenarios as step tables

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from crtkcheck.core.device_state import Command, DeviceProfile, DeviceSnapshot, DeviceView
from crtkcheck.core.step_machine import Step, StepMachine, Verdict
from crtkcheck.core.steps import (
    DEFAULT_RETRY_LIMIT,
    Check,
    Confirm,
    ExpectPauseOutcome,
    RetryUntil,
    Send,
    Settle,
    WaitFor,
)

HOME_HINT = "Press and release E-stop. Then re-enable!"
HOMING_STARTED = "Detected start of robot homing."
HOMING_DONE = "Detected completion of robot homing."

PROMPT_HOME = "Please home Robot and press 'Enter'."
PROMPT_BUSY = "Please make robot busy then press 'Enter'."
PROMPT_PAUSE = "Please pause Robot (if it's not already) and press 'Enter'."
PROMPT_RESTART = "Please terminate the robot software and restart it. Press 'Enter' when you're done!"


@dataclass(frozen=True)
class CaseTiming:
    """Settle delays, deadlines and retry bound. Empirical defaults from the bench."""
    short_settle_s: float = 1.0
    medium_settle_s: float = 3.0
    enable_wait_s: float = 10.0
    homing_start_timeout_s: float = 10.0
    homing_finish_timeout_s: float = 30.0
    retry_limit: int = DEFAULT_RETRY_LIMIT

    @classmethod
    def from_config(cls, suite_cfg: Optional[Dict[str, Any]] = None) -> "CaseTiming":
        s = suite_cfg or {}
        t = s.get("timing", {}) or {}
        return cls(
            short_settle_s=float(t.get("short_settle_s", 1.0)),
            medium_settle_s=float(t.get("medium_settle_s", 3.0)),
            enable_wait_s=float(t.get("enable_wait_s", 10.0)),
            homing_start_timeout_s=float(t.get("homing_start_timeout_s", 10.0)),
            homing_finish_timeout_s=float(t.get("homing_finish_timeout_s", 30.0)),
            retry_limit=int(s.get("retry_limit", DEFAULT_RETRY_LIMIT)),
        )


# -----------------------------
# Shared fragments
# -----------------------------

def _wait_homing_started(t: CaseTiming) -> Step:
    return WaitFor("homing", t.homing_start_timeout_s, announce=HOMING_STARTED)


def _wait_homed_then_pause(t: CaseTiming) -> Step:
    return WaitFor("homed", t.homing_finish_timeout_s, then=Command.PAUSE, announce=HOMING_DONE)


def _full_reinit(t: CaseTiming) -> List[Step]:
    # 1 confirm restart, 2 Enable, 3 Home, 4 wait for homing
    return [
        Confirm(PROMPT_RESTART),
        Send(Command.ENABLE),
        Send(Command.HOME, anchor=True),
        _wait_homing_started(t),
    ]


def _home_from_here(t: CaseTiming) -> List[Step]:
    # Home, wait for homing, settle, expect {enabled, homing}
    return [
        Send(Command.HOME, anchor=True, family_hint=HOME_HINT),
        _wait_homing_started(t),
        Settle(t.medium_settle_s),
        Check("enabled"),
        Check("homing"),
    ]


# -----------------------------
# Cases
# -----------------------------

def case_1(t: CaseTiming) -> List[Step]:
    """{disabled, ~homed} + enable/home -> {enabled}"""
    return [
        Check("disabled"),                  # 1
        Check("homed", expect=False),       # 2
        Send(Command.ENABLE),               # 3
        Send(Command.HOME, anchor=True),    # 4
        Settle(t.enable_wait_s),            # 5
        Check("enabled"),                   # 6
    ]


def case_2(t: CaseTiming) -> List[Step]:
    """
    {paused, homed} + resume -> {enabled}
    {enabled, busy} + pause -> {paused}
    """
    return [
        Confirm(PROMPT_HOME),                                               # 1
        RetryUntil("paused", Command.PAUSE, limit=t.retry_limit),           # 2
        Check("homed"),                                                     # 3
        RetryUntil("enabled", Command.RESUME, limit=t.retry_limit, anchor=True),  # 4
        Confirm(PROMPT_BUSY),                                               # 5
        Check("busy"),                                                      # 6
        Send(Command.PAUSE, anchor=True),                                   # 7
        Settle(t.medium_settle_s),                                          # 8
        Check("paused"),                                                    # 9
    ]


def case_3(t: CaseTiming) -> List[Step]:
    """
    {paused} + disable -> {disabled}
    {disabled, homed} + unhome -> {disabled, ~homed}
    """
    return [
        Confirm(PROMPT_PAUSE),              # 1
        Check("paused"),                    # 2
        Send(Command.DISABLE, anchor=True), # 3
        Settle(t.medium_settle_s),          # 4
        Check("disabled"),                  # 5
        Check("homed"),                     # 6
        Send(Command.UNHOME, anchor=True),  # 7
        Settle(t.short_settle_s),           # 8
        Check("homed", expect=False),       # 9
    ]


def case_4(t: CaseTiming) -> List[Step]:
    """
    {enabled, homing} + pause -> {disabled} on escalating families, {paused} otherwise
    {disabled, ~homed} + unhome -> {disabled, ~homed}
    """
    return _full_reinit(t) + [
        Settle(t.medium_settle_s),          # 5
        Send(Command.PAUSE, anchor=True),   # 6
        Settle(t.short_settle_s),           # 7
        ExpectPauseOutcome(),               # 8
        Check("homed", expect=False),       # 9
        Send(Command.UNHOME, anchor=True),  # 10
        Settle(t.short_settle_s),           # 11
        Check("homed", expect=False),       # 12
    ]


def case_5(t: CaseTiming) -> List[Step]:
    """{enabled, homing} + disable -> {disabled, ~homed}"""
    return _full_reinit(t) + [
        Settle(t.medium_settle_s),          # 5
        Send(Command.DISABLE, anchor=True), # 6
        Settle(t.short_settle_s),           # 7
        Check("disabled"),                  # 8
        Check("homed", expect=False),       # 9
    ]


def case_6(t: CaseTiming) -> List[Step]:
    """{enabled, homing} + unhome -> {disabled, ~homed}"""
    return _full_reinit(t) + [
        Settle(t.medium_settle_s),          # 5
        Send(Command.UNHOME, anchor=True),  # 6
        Settle(t.short_settle_s),           # 7
        Check("disabled"),                  # 8
        Check("homed", expect=False),       # 9
    ]


def case_7(t: CaseTiming) -> List[Step]:
    """{paused, homed} + unhome -> {disabled, ~homed}"""
    return _full_reinit(t) + [
        _wait_homed_then_pause(t),          # 5
        Send(Command.UNHOME, anchor=True),  # 6
        Settle(t.short_settle_s),           # 7
        Check("disabled"),                  # 8
        Check("homed", expect=False),       # 9
    ]


def case_8(t: CaseTiming) -> List[Step]:
    """
    home is reachable from
      {disabled, ~homed}  (steps 1-11)
      {paused, homed}     (steps 12-19)
      {enabled, homed}    (steps 20-28)
    """
    from_disabled = [
        Check("disabled"),                  # 1
        Check("homed", expect=False),       # 2
    ] + _home_from_here(t) + [              # 3-7
        _wait_homed_then_pause(t),          # 8
        Settle(t.short_settle_s),           # 9
        Check("paused"),                    # 10
        Check("homed"),                     # 11
    ]
    from_paused = _home_from_here(t) + [    # 12-16
        _wait_homed_then_pause(t),          # 17
        Settle(t.short_settle_s),           # 18
        Check("homed"),                     # 19
    ]
    from_enabled = [
        Send(Command.RESUME, anchor=True),  # 20
        Settle(t.short_settle_s),           # 21
        Check("enabled"),                   # 22
    ] + _home_from_here(t) + [              # 23-27
        WaitFor("homed", t.homing_finish_timeout_s, announce=HOMING_DONE),  # 28
    ]
    return from_disabled + from_paused + from_enabled


CASE_BUILDERS: Dict[int, Callable[[CaseTiming], List[Step]]] = {
    1: case_1,
    2: case_2,
    3: case_3,
    4: case_4,
    5: case_5,
    6: case_6,
    7: case_7,
    8: case_8,
}

CASE_COUNT = len(CASE_BUILDERS)


class StateCase:
    """One scenario: its number, title and the step machine that runs it."""

    def __init__(
        self,
        number: int,
        timing: Optional[CaseTiming] = None,
        profile: Optional[DeviceProfile] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if number not in CASE_BUILDERS:
            raise ValueError(f"unknown case {number}; valid cases are 1..{CASE_COUNT}")
        self.number = number
        self.timing = timing or CaseTiming()
        builder = CASE_BUILDERS[number]
        self.title = " / ".join(line.strip() for line in (builder.__doc__ or "").strip().splitlines() if line.strip())
        self.machine = StepMachine(
            builder(self.timing),
            name=f"case_{number}",
            profile=profile,
            logger=logger or logging.getLogger("crtkcheck.case"),
        )

    @property
    def verdict(self) -> Verdict:
        return self.machine.verdict

    @property
    def step(self) -> int:
        return self.machine.index

    def tick(
        self,
        snapshot: DeviceSnapshot,
        now: float,
        device: DeviceView,
        confirm: Optional[Callable[[], bool]] = None,
    ) -> Verdict:
        return self.machine.tick(snapshot, now, device, confirm)


def build_cases(
    first: int = 1,
    last: int = CASE_COUNT,
    timing: Optional[CaseTiming] = None,
    profile: Optional[DeviceProfile] = None,
    logger: Optional[logging.Logger] = None,
) -> List[StateCase]:
    if not (1 <= first <= last <= CASE_COUNT):
        raise ValueError(f"case range {first}..{last} outside 1..{CASE_COUNT}")
    return [StateCase(n, timing=timing, profile=profile, logger=logger) for n in range(first, last + 1)]
