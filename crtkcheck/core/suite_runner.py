# crtkcheck/core/suite_runner.py
# Test Suite Runner: activates cases in order, aggregates failures, safes the device at the end

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from crtkcheck.cases.library import CASE_COUNT, CaseTiming, StateCase, build_cases
from crtkcheck.core.device_state import Command, DeviceProfile, DeviceView
from crtkcheck.core.step_machine import PENDING, TraceEvent, Verdict

DEFAULT_CONNECT_SETTLE_S = 2.0


@dataclass
class CaseResult:
    number: int
    title: str
    verdict: Verdict = PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


@dataclass
class SuiteReport:
    results: List[CaseResult] = field(default_factory=list)
    errors: int = 0
    finished: bool = False

    @property
    def succeeded(self) -> bool:
        return self.finished and self.errors == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finished": self.finished,
            "errors": self.errors,
            "succeeded": self.succeeded,
            "cases": [
                {
                    "case": r.number,
                    "title": r.title,
                    "verdict": r.verdict.code,
                    "started_at": r.started_at,
                    "finished_at": r.finished_at,
                }
                for r in self.results
            ],
        }


class SuiteRunner:
    """
    Called once per polling tick:
      - waits for the device to report connected, then connect_settle_s more
      - runs the active case for one step
      - on a terminal verdict counts the failure (if any) and moves to the next case
      - after the last case sends Disable exactly once and reports
    """

    def __init__(
        self,
        cases: Sequence[StateCase],
        connect_settle_s: float = DEFAULT_CONNECT_SETTLE_S,
        confirm: Optional[Callable[[], bool]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.cases = list(cases)
        self.connect_settle_s = float(connect_settle_s)
        self.confirm = confirm
        self.logger = logger or logging.getLogger("crtkcheck.suite")

        self.errors = 0
        self.finished = False
        self._active = 0
        self._first_contact: Optional[float] = None
        self._waiting_logged = False
        self._results = [CaseResult(number=c.number, title=c.title) for c in self.cases]

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        profile: Optional[DeviceProfile] = None,
        confirm: Optional[Callable[[], bool]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "SuiteRunner":
        s = config.get("suite", {}) or {}
        cases = build_cases(
            first=int(s.get("first_case", 1)),
            last=int(s.get("last_case", CASE_COUNT)),
            timing=CaseTiming.from_config(s),
            profile=profile,
            logger=logging.getLogger("crtkcheck.case") if logger is None else logger.getChild("case"),
        )
        return cls(
            cases,
            connect_settle_s=float(s.get("connect_settle_s", DEFAULT_CONNECT_SETTLE_S)),
            confirm=confirm,
            logger=logger,
        )

    # -----------------------------
    # Queries
    # -----------------------------

    @property
    def active_case(self) -> Optional[StateCase]:
        if self._active < len(self.cases):
            return self.cases[self._active]
        return None

    @property
    def succeeded(self) -> bool:
        return self.finished and self.errors == 0

    def report(self) -> SuiteReport:
        return SuiteReport(results=list(self._results), errors=self.errors, finished=self.finished)

    def trace(self) -> List[Tuple[int, TraceEvent]]:
        out: List[Tuple[int, TraceEvent]] = []
        for case in self.cases:
            out.extend((case.number, ev) for ev in case.machine.trace)
        out.sort(key=lambda item: item[1].ts)
        return out

    # -----------------------------
    # Tick
    # -----------------------------

    def tick(self, device: DeviceView, now: float) -> Tuple[int, bool]:
        if self.finished:
            return self.errors, True

        snapshot = device.read_operating_state()

        if self._first_contact is None:
            if not snapshot.connected:
                if not self._waiting_logged:
                    self.logger.info("Robot not connected.")
                    self._waiting_logged = True
                return self.errors, False
            self._first_contact = now
            self.logger.info("Robot connected; starting in %.1f s.", self.connect_settle_s)

        # wait for a beat
        if now - self._first_contact < self.connect_settle_s:
            return self.errors, False

        case = self.active_case
        if case is None:
            self._finish(device)
            return self.errors, True

        result = self._results[self._active]
        if result.started_at is None:
            result.started_at = now
            self.logger.info("======================= Starting case_%d ======================= ", case.number)
            if case.title:
                self.logger.info("case_%d: %s", case.number, case.title)

        verdict = case.tick(snapshot, now, device, self.confirm)
        if verdict.failed:
            self.errors += 1
            self.logger.error("case_%d fail: %d", case.number, verdict.code)
            self._close_case(result, verdict, now)
        elif verdict.passed:
            self.logger.info("case_%d passed: %d", case.number, verdict.code)
            self._close_case(result, verdict, now)

        return self.errors, False

    def _close_case(self, result: CaseResult, verdict: Verdict, now: float) -> None:
        result.verdict = verdict
        result.finished_at = now
        self._active += 1

    def _finish(self, device: DeviceView) -> None:
        # after all cases, safe the device regardless of outcome
        device.send_command(Command.DISABLE)
        self.finished = True
        if self.errors:
            self.logger.error("We failed some things. errors=%d", self.errors)
        else:
            self.logger.info("We finished everything. Good job!!")
            self.logger.info("State testing success!!!")
        report = self.report()
        for r in report.results:
            self.logger.info("  - case_%d: %s", r.number, r.verdict)
        self.logger.info("Suite report: %s", json.dumps(report.to_dict(), sort_keys=True))
        for number, ev in self.trace():
            self.logger.debug("trace t=%.3f case_%d step %d %s %s", ev.ts, number, ev.step, ev.event, ev.detail)
