# crtkcheck/app.py
# CRTK state conformance - main entrypoint (fixed-rate polling loop, safe shutdown)

from __future__ import annotations

import os
import sys
import time
import queue
import signal
import logging
import argparse
import threading
import traceback
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from crtkcheck.core.config_manager import ConfigManager
from crtkcheck.core.device_state import Command, DeviceProfile
from crtkcheck.core.suite_runner import SuiteRunner
from crtkcheck.cube.tracer import CubeTracer, TracerSettings
from crtkcheck.drivers.sim_device import SimSettings, SimulatedDevice

# -----------------------------
# Helpers
# -----------------------------

def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _setup_logging(log_dir: str, level: str = "INFO", file_enabled: bool = True) -> logging.Logger:
    logger = logging.getLogger("crtkcheck")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    fmt = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Console
    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    # File
    if file_enabled:
        _ensure_dir(log_dir)
        fh_path = os.path.join(log_dir, "crtkcheck.log")
        fh = logging.FileHandler(fh_path, encoding="utf-8")
        fh.setFormatter(fmt)
        logger.addHandler(fh)
        logger.info("Logging initialized. log_file=%s", fh_path)
    return logger


class StdinConfirmer:
    """
    Operator confirmation without blocking the polling loop:
    a daemon thread reads lines, each empty line ('Enter') is one confirmation.
    """

    def __init__(self, stream=None):
        self._stream = stream or sys.stdin
        self._q: "queue.Queue[str]" = queue.Queue()
        self._thread = threading.Thread(target=self._reader, name="stdin-confirm", daemon=True)
        self._thread.start()

    def _reader(self) -> None:
        for line in self._stream:
            self._q.put(line.strip())

    def __call__(self) -> bool:
        try:
            return self._q.get_nowait() == ""
        except queue.Empty:
            return False


def _auto_confirm() -> bool:
    return True


def _build_sim_device(cfg: Dict[str, Any], profile: DeviceProfile, logger: logging.Logger) -> SimulatedDevice:
    sim_cfg = dict(cfg["device"].get("sim", {}) or {})
    sim_cfg["arms"] = int(cfg["cube"].get("arms", 2))
    return SimulatedDevice(SimSettings.from_config(sim_cfg), profile=profile, logger=logger.getChild("sim"))


# device.backend -> factory
DEVICE_BACKENDS = {
    "sim": _build_sim_device,
}


# -----------------------------
# App Context
# -----------------------------

@dataclass
class AppContext:
    config: Dict[str, Any]
    logger: logging.Logger
    profile: DeviceProfile
    device: SimulatedDevice
    suite: Optional[SuiteRunner] = None
    tracer: Optional[CubeTracer] = None


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="crtkcheck", description="CRTK operating-state conformance tests and cube tracing.")
    p.add_argument("--mode", choices=("states", "cube"), help="run the state suite or the cube-tracing exercise")
    p.add_argument("--family", choices=("generic", "raven"), help="device family")
    p.add_argument("--first-case", type=int, help="skip ahead to this case")
    p.add_argument("--interactive", action="store_true", help="wait for 'Enter' at operator prompts")
    p.add_argument("--config", help="path to settings.yaml (same as CRTK_CONFIG_PATH)")
    p.add_argument("--save-config", action="store_true", help="write the effective settings (with these flags applied) back to settings.yaml")
    return p.parse_args(argv)


def _apply_args(mgr: ConfigManager, args: argparse.Namespace) -> None:
    if args.mode:
        mgr.set("app.mode", args.mode)
    if args.family:
        mgr.set("device.family", args.family)
    if args.first_case is not None:
        mgr.set("suite.first_case", max(1, min(args.first_case, int(mgr.get("suite.last_case", 8)))))
    if args.interactive:
        mgr.set("suite.interactive", True)
        mgr.set("cube.interactive", True)


def build_context(args: argparse.Namespace) -> AppContext:
    if args.config:
        os.environ["CRTK_CONFIG_PATH"] = args.config

    mgr = ConfigManager()
    cfg = mgr.load()
    _apply_args(mgr, args)
    if args.save_config:
        mgr.save()

    log_cfg = cfg.get("logging", {})
    logger = _setup_logging(
        log_dir=os.path.join(os.getcwd(), str(log_cfg.get("dir", "logs"))),
        level=os.environ.get("CRTK_LOG_LEVEL", str(log_cfg.get("level", "INFO"))),
        file_enabled=bool(log_cfg.get("file_enabled", True)),
    )

    dev_cfg = cfg.get("device", {})
    profile = DeviceProfile.for_family(dev_cfg.get("family", "generic"), dev_cfg)
    logger.info("Device family=%s (pause_while_homing_disables=%s, estop_cycle_on_home=%s)",
                profile.family, profile.pause_while_homing_disables, profile.estop_cycle_on_home)

    backend = str(dev_cfg.get("backend", "sim"))
    if backend not in DEVICE_BACKENDS:
        raise ValueError(f"unknown device.backend {backend!r}; expected one of {sorted(DEVICE_BACKENDS)}")
    device = DEVICE_BACKENDS[backend](cfg, profile, logger)
    logger.info("Device backend=%s", backend)

    ctx = AppContext(config=cfg, logger=logger, profile=profile, device=device)
    if cfg["app"]["mode"] == "cube":
        confirm = StdinConfirmer() if cfg["cube"].get("interactive") else _auto_confirm
        ctx.tracer = CubeTracer(TracerSettings.from_config(cfg["cube"]), confirm=confirm, logger=logger.getChild("cube"))
    else:
        confirm = StdinConfirmer() if cfg["suite"].get("interactive") else _auto_confirm
        ctx.suite = SuiteRunner.from_config(cfg, profile=profile, confirm=confirm, logger=logger.getChild("suite"))
    return ctx

# -----------------------------
# Graceful shutdown
# -----------------------------

_SHUTDOWN = False


def _handle_signal(sig, frame):
    global _SHUTDOWN
    _SHUTDOWN = True


def safe_shutdown(ctx: AppContext) -> None:
    ctx.logger.info("Shutting down safely...")
    suite_done = ctx.suite is not None and ctx.suite.finished
    if not suite_done:
        # the suite disables the device itself when it finishes
        try:
            ctx.device.send_command(Command.DISABLE)
        except Exception:
            ctx.logger.error("Error disabling device:\n%s", traceback.format_exc())
    if ctx.tracer is not None:
        ctx.logger.info("Cube edges traced: %d", ctx.tracer.edge_count)
    ctx.logger.info("Shutdown complete.")

# -----------------------------
# Main
# -----------------------------

def run_loop(ctx: AppContext) -> int:
    tick_s = max(0.001, int(ctx.config["app"]["tick_ms"]) / 1000.0)
    ctx.logger.info("Running polling loop. tick_ms=%d mode=%s", ctx.config["app"]["tick_ms"], ctx.config["app"]["mode"])

    while not _SHUTDOWN:
        now = time.monotonic()
        ctx.device.update(now)
        if ctx.suite is not None:
            _, finished = ctx.suite.tick(ctx.device, now)
            if finished:
                return 0 if ctx.suite.succeeded else 1
        else:
            ctx.tracer.tick(ctx.device, now)
        time.sleep(tick_s)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    global _SHUTDOWN

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    ctx = build_context(_parse_args(argv))
    log = ctx.logger

    try:
        log.info("Starting %s (%s)", ctx.config["app"]["name"], ctx.config["app"]["version"])
        return run_loop(ctx)
    except Exception:
        log.error("Fatal error:\n%s", traceback.format_exc())
        return 2
    finally:
        safe_shutdown(ctx)


if __name__ == "__main__":
    raise SystemExit(main())
