# crtkcheck/tests/test_step_machine.py
# Unit tests for core/step_machine.py and core/steps.py

import unittest

from crtkcheck.core.device_state import Command, DeviceProfile, DeviceSnapshot, OperatingState
from crtkcheck.core.step_machine import (
    ADVANCE,
    PASSED,
    PENDING,
    CommandBudgetExceeded,
    Step,
    StepMachine,
    Verdict,
)
from crtkcheck.core.steps import Check, Confirm, ExpectPauseOutcome, RetryUntil, Send, Settle, WaitFor


DISABLED = DeviceSnapshot(state=OperatingState.DISABLED, connected=True)
ENABLED = DeviceSnapshot(state=OperatingState.ENABLED, connected=True)
PAUSED = DeviceSnapshot(state=OperatingState.PAUSED, connected=True)
HOMING = DeviceSnapshot(state=OperatingState.ENABLED, homing=True, connected=True)


class RecordingDevice:
    def __init__(self, snapshot=DISABLED):
        self.snapshot = snapshot
        self.commands = []

    def read_operating_state(self):
        return self.snapshot

    def send_command(self, command):
        self.commands.append(command)


class DoubleSend(Step):
    def run(self, ctx):
        ctx.send(Command.ENABLE)
        ctx.send(Command.HOME)
        return ADVANCE


def run(machine, device, now, confirm=None):
    return machine.tick(device.read_operating_state(), now, device, confirm)


class TestVerdict(unittest.TestCase):
    def test_encoding(self):
        self.assertEqual(int(PENDING), 0)
        self.assertEqual(int(PASSED), 1)
        v = Verdict.fail_at(6)
        self.assertEqual(int(v), -6)
        self.assertTrue(v.failed)
        self.assertEqual(v.failed_step, 6)
        self.assertEqual(str(v), "FAILED(-6)")
        self.assertFalse(PENDING.terminal)

    def test_fail_at_rejects_step_zero(self):
        with self.assertRaises(ValueError):
            Verdict.fail_at(0)


class TestStepMachine(unittest.TestCase):
    def test_empty_table_rejected(self):
        with self.assertRaises(ValueError):
            StepMachine([])

    def test_one_step_per_tick_then_pass(self):
        dev = RecordingDevice(DISABLED)
        sm = StepMachine([Check("disabled"), Check("homed", expect=False), Send(Command.ENABLE)])

        self.assertEqual(run(sm, dev, 0.0), PENDING)
        self.assertEqual(sm.index, 2)
        self.assertEqual(run(sm, dev, 0.1), PENDING)
        self.assertEqual(dev.commands, [])
        self.assertEqual(run(sm, dev, 0.2), PASSED)
        self.assertEqual(dev.commands, [Command.ENABLE])

    def test_failure_code_is_negative_step(self):
        dev = RecordingDevice(ENABLED)
        sm = StepMachine([Check("enabled"), Check("paused")])
        run(sm, dev, 0.0)
        self.assertEqual(int(run(sm, dev, 0.1)), -2)

    def test_idempotent_after_termination(self):
        dev = RecordingDevice(DISABLED)
        sm = StepMachine([Send(Command.HOME), Check("enabled")])
        run(sm, dev, 0.0)
        verdict = run(sm, dev, 0.1)
        self.assertEqual(int(verdict), -2)

        for i, snap in enumerate([ENABLED, PAUSED, HOMING, DISABLED] * 5):
            dev.snapshot = snap
            self.assertEqual(run(sm, dev, 1.0 + i), verdict)
        self.assertEqual(dev.commands, [Command.HOME])
        self.assertEqual(sm.index, 2)

    def test_passed_is_idempotent_too(self):
        dev = RecordingDevice(DISABLED)
        sm = StepMachine([Send(Command.DISABLE)])
        self.assertEqual(run(sm, dev, 0.0), PASSED)
        for i in range(10):
            self.assertEqual(run(sm, dev, float(i)), PASSED)
        self.assertEqual(dev.commands, [Command.DISABLE])

    def test_second_command_in_one_tick_raises(self):
        dev = RecordingDevice()
        sm = StepMachine([DoubleSend()])
        with self.assertRaises(CommandBudgetExceeded):
            run(sm, dev, 0.0)
        self.assertEqual(dev.commands, [Command.ENABLE])

    def test_anchor_only_moves_when_asked(self):
        dev = RecordingDevice()
        sm = StepMachine([Send(Command.ENABLE), Send(Command.HOME, anchor=True), Settle(1.0)])
        run(sm, dev, 5.0)
        self.assertIsNone(sm.anchor)
        run(sm, dev, 6.0)
        self.assertEqual(sm.anchor, 6.0)

    def test_settle_measured_from_anchor(self):
        dev = RecordingDevice()
        sm = StepMachine([Send(Command.PAUSE, anchor=True), Settle(3.0), Check("disabled")])
        run(sm, dev, 10.0)
        self.assertEqual(run(sm, dev, 12.75), PENDING)
        self.assertEqual(sm.index, 2)
        run(sm, dev, 13.0)
        self.assertEqual(sm.index, 3)
        self.assertEqual(run(sm, dev, 13.25), PASSED)

    def test_trace_records_commands_and_verdict(self):
        dev = RecordingDevice(ENABLED)
        sm = StepMachine([Send(Command.PAUSE), Check("paused")], name="demo")
        run(sm, dev, 0.0)
        run(sm, dev, 0.5)
        events = [(ev.step, ev.event) for ev in sm.trace]
        self.assertIn((1, "command"), events)
        self.assertEqual(events[-1], (2, "fail"))
        self.assertIn("paused", sm.trace[-1].detail)


class TestWaitFor(unittest.TestCase):
    def test_times_out_after_deadline_not_before(self):
        dev = RecordingDevice(ENABLED)
        sm = StepMachine([Send(Command.HOME, anchor=True), WaitFor("homing", 10.0)])
        run(sm, dev, 0.0)

        t = 0.25
        while t <= 10.0:
            self.assertEqual(run(sm, dev, t), PENDING, f"failed early at t={t}")
            t += 0.25
        self.assertEqual(int(run(sm, dev, 10.25)), -2)

    def test_condition_met_reanchors_and_sends(self):
        dev = RecordingDevice(ENABLED)
        sm = StepMachine([
            Send(Command.HOME, anchor=True),
            WaitFor("homed", 30.0, then=Command.PAUSE),
            Settle(1.0),
        ])
        run(sm, dev, 0.0)
        run(sm, dev, 4.0)
        dev.snapshot = DeviceSnapshot(state=OperatingState.ENABLED, homed=True, connected=True)
        run(sm, dev, 8.0)
        self.assertEqual(sm.anchor, 8.0)
        self.assertEqual(dev.commands, [Command.HOME, Command.PAUSE])
        self.assertEqual(run(sm, dev, 8.5), PENDING)
        self.assertEqual(run(sm, dev, 9.0), PASSED)


class TestRetryUntil(unittest.TestCase):
    def test_fails_after_exactly_limit_attempts(self):
        dev = RecordingDevice(ENABLED)
        sm = StepMachine([RetryUntil("paused", Command.PAUSE, limit=10)])

        for i in range(10):
            self.assertEqual(run(sm, dev, i * 0.1), PENDING)
        self.assertEqual(len(dev.commands), 10)
        self.assertEqual(int(run(sm, dev, 1.0)), -1)
        self.assertEqual(len(dev.commands), 10)

    def test_succeeds_when_state_converges_within_bound(self):
        for k in (1, 4, 10):
            dev = RecordingDevice(ENABLED)
            sm = StepMachine([RetryUntil("paused", Command.PAUSE, limit=10), Check("paused")])
            t = 0.0
            while len(dev.commands) < k:
                run(sm, dev, t)
                t += 0.1
            dev.snapshot = PAUSED
            self.assertEqual(run(sm, dev, t), PENDING)
            self.assertEqual(run(sm, dev, t + 0.1), PASSED, f"k={k}")
            self.assertEqual(len(dev.commands), k)

    def test_attempts_reset_between_steps(self):
        dev = RecordingDevice(ENABLED)
        sm = StepMachine([
            RetryUntil("paused", Command.PAUSE, limit=3),
            RetryUntil("enabled", Command.RESUME, limit=3),
        ])
        run(sm, dev, 0.0)
        run(sm, dev, 0.1)
        dev.snapshot = PAUSED
        run(sm, dev, 0.2)
        self.assertEqual(sm.attempts, 0)
        for i in range(3):
            run(sm, dev, 0.3 + i * 0.1)
        self.assertEqual(dev.commands.count(Command.RESUME), 3)
        self.assertEqual(int(run(sm, dev, 1.0)), -2)

    def test_limit_must_be_positive(self):
        with self.assertRaises(ValueError):
            RetryUntil("paused", Command.PAUSE, limit=0)


class TestConfirm(unittest.TestCase):
    def test_holds_until_confirmed_and_prompts_once(self):
        dev = RecordingDevice()
        sm = StepMachine([Confirm("Press 'Enter'."), Send(Command.ENABLE)])
        answers = iter([False, False, True])

        with self.assertLogs("crtkcheck.case", level="INFO") as cm:
            for t in (0.0, 0.1, 0.2):
                run(sm, dev, t, confirm=lambda: next(answers))
        self.assertEqual(sum("Press 'Enter'." in line for line in cm.output), 1)
        self.assertEqual(sm.index, 2)
        self.assertEqual(dev.commands, [])

    def test_without_confirmation_source_it_waits(self):
        dev = RecordingDevice()
        sm = StepMachine([Confirm("go")])
        for t in range(20):
            self.assertEqual(run(sm, dev, float(t)), PENDING)


class TestExpectPauseOutcome(unittest.TestCase):
    def test_escalating_family_expects_disabled(self):
        dev = RecordingDevice(DISABLED)
        raven = DeviceProfile.for_family("raven")
        sm = StepMachine([ExpectPauseOutcome()], profile=raven)
        self.assertEqual(run(sm, dev, 0.0), PASSED)
        self.assertEqual(dev.commands, [])

        sm = StepMachine([ExpectPauseOutcome()], profile=raven)
        dev.snapshot = PAUSED
        self.assertEqual(int(run(sm, dev, 0.0)), -1)

    def test_generic_family_expects_paused_then_disables(self):
        dev = RecordingDevice(PAUSED)
        sm = StepMachine([ExpectPauseOutcome()], profile=DeviceProfile.for_family("generic"))
        self.assertEqual(run(sm, dev, 0.0), PASSED)
        self.assertEqual(dev.commands, [Command.DISABLE])

        dev = RecordingDevice(DISABLED)
        sm = StepMachine([ExpectPauseOutcome()], profile=DeviceProfile.for_family("generic"))
        self.assertEqual(int(run(sm, dev, 0.0)), -1)


if __name__ == "__main__":
    unittest.main()
