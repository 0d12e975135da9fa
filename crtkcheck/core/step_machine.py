# crtkcheck/core/step_machine.py
# Resumable step primitive: step index + timer anchor + tri-state verdict, advanced once per tick

from __future__ import annotations

import logging
from enum import Enum, auto
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from crtkcheck.core.device_state import Command, DeviceProfile, DeviceSnapshot, DeviceView


class CommandBudgetExceeded(RuntimeError):
    """A step tried to send more than one command inside a single tick."""


# -----------------------------
# Verdict
# -----------------------------

@dataclass(frozen=True)
class Verdict:
    """
    Tri-state outcome, encoded the way the suite reports it:
      0  -> pending
      1  -> passed
      -n -> failed at step n
    """
    code: int = 0

    @property
    def pending(self) -> bool:
        return self.code == 0

    @property
    def passed(self) -> bool:
        return self.code > 0

    @property
    def failed(self) -> bool:
        return self.code < 0

    @property
    def terminal(self) -> bool:
        return self.code != 0

    @property
    def failed_step(self) -> Optional[int]:
        return -self.code if self.code < 0 else None

    @classmethod
    def fail_at(cls, step: int) -> "Verdict":
        if step < 1:
            raise ValueError(f"step numbers start at 1, got {step}")
        return cls(-step)

    def __int__(self) -> int:
        return self.code

    def __str__(self) -> str:
        if self.pending:
            return "PENDING"
        if self.passed:
            return "PASSED"
        return f"FAILED({self.code})"


PENDING = Verdict(0)
PASSED = Verdict(1)


# -----------------------------
# Step outcome
# -----------------------------

class OutcomeKind(Enum):
    ADVANCE = auto()
    HOLD = auto()
    FAIL = auto()
    SUCCEED = auto()


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    reset_anchor: bool = False
    reason: str = ""


ADVANCE = Outcome(OutcomeKind.ADVANCE)
ADVANCE_ANCHORED = Outcome(OutcomeKind.ADVANCE, reset_anchor=True)
HOLD = Outcome(OutcomeKind.HOLD)
SUCCEED = Outcome(OutcomeKind.SUCCEED)


def fail(reason: str = "") -> Outcome:
    return Outcome(OutcomeKind.FAIL, reason=reason)


# -----------------------------
# Tick context
# -----------------------------

def _never_confirmed() -> bool:
    return False


@dataclass
class TickContext:
    snapshot: DeviceSnapshot
    now: float
    anchor: Optional[float]
    attempts: int
    entering: bool
    profile: DeviceProfile
    logger: logging.Logger
    device: DeviceView
    confirm: Callable[[], bool] = _never_confirmed
    sent: List[Command] = field(default_factory=list)

    @property
    def elapsed(self) -> float:
        """Seconds since the last anchor reset (0 until a step sets one)."""
        if self.anchor is None:
            return 0.0
        return self.now - self.anchor

    def send(self, command: Command) -> None:
        if self.sent:
            raise CommandBudgetExceeded(
                f"second command {command.name} in one tick (already sent {self.sent[0].name})"
            )
        self.device.send_command(command)
        self.sent.append(command)

    def confirmed(self) -> bool:
        return bool(self.confirm())


class Step:
    """One entry of a step table. run() is a function of the tick context."""

    label: str = ""

    def run(self, ctx: TickContext) -> Outcome:
        raise NotImplementedError

    def describe(self) -> str:
        return self.label or type(self).__name__


# -----------------------------
# Step machine
# -----------------------------

@dataclass
class TraceEvent:
    ts: float
    step: int
    event: str
    detail: str = ""


class StepMachine:
    """
    Interprets an ordered step table, one step per tick.

    - index is 1-based so that Failed(-index) never collides with Pending (0)
    - the anchor is only moved by steps that ask for it (Outcome.reset_anchor)
    - running past the last step yields PASSED
    - once terminal, tick() returns the stored verdict and touches nothing
    """

    def __init__(
        self,
        steps: Sequence[Step],
        name: str = "",
        profile: Optional[DeviceProfile] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if not steps:
            raise ValueError("step table is empty")
        self.steps = list(steps)
        self.name = name or "steps"
        self.profile = profile or DeviceProfile()
        self.logger = logger or logging.getLogger("crtkcheck.case")

        self.index = 1
        self.anchor: Optional[float] = None
        self.attempts = 0
        self.verdict = PENDING
        self.trace: List[TraceEvent] = []
        self._entering = True

    @property
    def terminal(self) -> bool:
        return self.verdict.terminal

    def current_step(self) -> Optional[Step]:
        if self.terminal or self.index > len(self.steps):
            return None
        return self.steps[self.index - 1]

    def tick(
        self,
        snapshot: DeviceSnapshot,
        now: float,
        device: DeviceView,
        confirm: Optional[Callable[[], bool]] = None,
    ) -> Verdict:
        if self.terminal:
            return self.verdict

        step = self.steps[self.index - 1]
        ctx = TickContext(
            snapshot=snapshot,
            now=now,
            anchor=self.anchor,
            attempts=self.attempts,
            entering=self._entering,
            profile=self.profile,
            logger=self.logger,
            device=device,
            confirm=confirm or _never_confirmed,
        )
        if self._entering:
            self.logger.debug("%s step %d: %s", self.name, self.index, step.describe())
            self._record(now, "enter", step.describe())
        self._entering = False

        outcome = step.run(ctx)
        self.attempts = ctx.attempts
        for cmd in ctx.sent:
            self._record(now, "command", cmd.name)

        return self._apply(outcome, now)

    def _apply(self, outcome: Outcome, now: float) -> Verdict:
        if outcome.kind == OutcomeKind.HOLD:
            return PENDING

        if outcome.kind == OutcomeKind.FAIL:
            self.verdict = Verdict.fail_at(self.index)
            self._record(now, "fail", outcome.reason)
            return self.verdict

        if outcome.kind == OutcomeKind.SUCCEED:
            self.verdict = PASSED
            self._record(now, "pass")
            return self.verdict

        # advance
        if outcome.reset_anchor:
            self.anchor = now
        self.index += 1
        self.attempts = 0
        self._entering = True
        if self.index > len(self.steps):
            self.verdict = PASSED
            self._record(now, "pass")
            return self.verdict
        return PENDING

    def _record(self, ts: float, event: str, detail: str = "") -> None:
        self.trace.append(TraceEvent(ts=ts, step=self.index, event=event, detail=detail))
