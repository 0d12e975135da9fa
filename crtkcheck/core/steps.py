# crtkcheck/core/steps.py
# Step kinds for the step table. Each one reads the tick context and returns an Outcome.

from __future__ import annotations

from typing import Optional

from crtkcheck.core.device_state import Command, DeviceSnapshot
from crtkcheck.core.step_machine import (
    ADVANCE,
    ADVANCE_ANCHORED,
    HOLD,
    Outcome,
    Step,
    TickContext,
    fail,
)

DEFAULT_RETRY_LIMIT = 10


def _holds(snapshot: DeviceSnapshot, attr: str, expect: bool) -> bool:
    return bool(getattr(snapshot, attr)) == expect


def _cond(attr: str, expect: bool) -> str:
    return attr if expect else f"not {attr}"


class Check(Step):
    """Assert a state/modifier right now; fail this step if it does not hold."""

    def __init__(self, attr: str, expect: bool = True):
        self.attr = attr
        self.expect = expect
        self.label = f"check {_cond(attr, expect)}"

    def run(self, ctx: TickContext) -> Outcome:
        if _holds(ctx.snapshot, self.attr, self.expect):
            return ADVANCE
        ctx.logger.info("robot state = %s, should be %s", ctx.snapshot.describe(), _cond(self.attr, self.expect))
        return fail(f"expected {_cond(self.attr, self.expect)}, saw {ctx.snapshot.describe()}")


class Send(Step):
    """
    Fire one command and move on. anchor=True starts the clock for the wait that follows.
    family_hint is logged only on families that need an e-stop cycle after the command.
    """

    def __init__(self, command: Command, anchor: bool = False, family_hint: str = ""):
        self.command = command
        self.anchor = anchor
        self.family_hint = family_hint
        self.label = f"send {command.name}"

    def run(self, ctx: TickContext) -> Outcome:
        ctx.send(self.command)
        ctx.logger.info("%s command sent.", self.command.name)
        if self.family_hint and ctx.profile.estop_cycle_on_home:
            ctx.logger.info(self.family_hint)
        return ADVANCE_ANCHORED if self.anchor else ADVANCE


class Settle(Step):
    """Hold for a fixed time measured from the anchor."""

    def __init__(self, seconds: float):
        self.seconds = float(seconds)
        self.label = f"settle {self.seconds:g}s"

    def run(self, ctx: TickContext) -> Outcome:
        if ctx.elapsed >= self.seconds:
            return ADVANCE
        return HOLD


class WaitFor(Step):
    """
    Hold until a condition is observed, then re-anchor (and optionally send one command).
    Fails once the time since the anchor exceeds the deadline.
    """

    def __init__(
        self,
        attr: str,
        timeout: float,
        expect: bool = True,
        then: Optional[Command] = None,
        announce: str = "",
    ):
        self.attr = attr
        self.timeout = float(timeout)
        self.expect = expect
        self.then = then
        self.announce = announce
        self.label = f"wait for {_cond(attr, expect)} ({self.timeout:g}s)"

    def run(self, ctx: TickContext) -> Outcome:
        if _holds(ctx.snapshot, self.attr, self.expect):
            if self.then is not None:
                ctx.send(self.then)
            if self.announce:
                ctx.logger.info(self.announce)
            return ADVANCE_ANCHORED
        if ctx.elapsed > self.timeout:
            ctx.logger.error("Testing timeout...")
            return fail(f"timeout waiting for {_cond(self.attr, self.expect)}")
        return HOLD


class RetryUntil(Step):
    """
    Re-send a command each tick until the condition is observed.
    After `limit` unanswered commands the step fails.
    """

    def __init__(
        self,
        attr: str,
        command: Command,
        limit: int = DEFAULT_RETRY_LIMIT,
        expect: bool = True,
        anchor: bool = False,
    ):
        if int(limit) < 1:
            raise ValueError(f"retry limit must be >= 1, got {limit}")
        self.attr = attr
        self.command = command
        self.limit = int(limit)
        self.expect = expect
        self.anchor = anchor
        self.label = f"{command.name} until {_cond(attr, expect)} (x{self.limit})"

    def run(self, ctx: TickContext) -> Outcome:
        if _holds(ctx.snapshot, self.attr, self.expect):
            return ADVANCE_ANCHORED if self.anchor else ADVANCE
        if ctx.attempts < self.limit:
            ctx.send(self.command)
            ctx.attempts += 1
            return HOLD
        ctx.logger.error("No response after %d %s commands.", self.limit, self.command.name)
        return fail(f"retry limit {self.limit} reached")


class Confirm(Step):
    """Awaiting external confirmation: prompt once, hold until the operator confirms."""

    def __init__(self, prompt: str):
        self.prompt = prompt
        self.label = "confirm"

    def run(self, ctx: TickContext) -> Outcome:
        if ctx.entering:
            ctx.logger.info(self.prompt)
        if ctx.confirmed():
            return ADVANCE
        return HOLD


class ExpectPauseOutcome(Step):
    """
    Result of a Pause issued while homing.
    Families that escalate expect {disabled}; the others expect {paused}
    and are then disabled to get back to a common starting point.
    """

    label = "check pause-during-homing outcome"

    def run(self, ctx: TickContext) -> Outcome:
        snap = ctx.snapshot
        if ctx.profile.pause_while_homing_disables:
            if snap.disabled:
                return ADVANCE
            ctx.logger.info("robot state = %s, should be disabled", snap.describe())
            return fail(f"expected disabled, saw {snap.describe()}")

        if snap.paused:
            ctx.send(Command.DISABLE)
            return ADVANCE
        ctx.logger.info("robot state = %s, should be paused", snap.describe())
        return fail(f"expected paused, saw {snap.describe()}")
