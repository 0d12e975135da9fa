# crtkcheck/core/config_manager.py
# ConfigManager: loads config/settings.yaml + validates with config/schema.json
# Safe defaults + merge + hard guards on timing/retry values

from __future__ import annotations

import os
import copy
import json
import logging
from typing import Any, Dict, Optional

import jsonschema
import yaml

PACKAGE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# -----------------------------
# Default Config
# -----------------------------

DEFAULT_CONFIG: Dict[str, Any] = {
    "app": {
        "name": "CRTK State Conformance",
        "version": "0.3.0",
        "tick_ms": 10,          # 100 Hz polling loop
        "mode": "states",       # states | cube
    },
    "device": {
        "family": "generic",    # generic | raven
        "backend": "sim",
        "sim": {
            "command_latency_s": 0.2,
            "homing_duration_s": 6.0,
            "connect_delay_s": 0.5,
            "busy_when_ready": True,
        },
    },
    "suite": {
        "first_case": 1,
        "last_case": 8,
        "connect_settle_s": 2.0,
        "interactive": False,
        "retry_limit": 10,
        "timing": {
            "short_settle_s": 1.0,
            "medium_settle_s": 3.0,
            "enable_wait_s": 10.0,
            "homing_start_timeout_s": 10.0,
            "homing_finish_timeout_s": 30.0,
        },
    },
    "cube": {
        "distance_m": 0.01,     # 10 mm per edge
        "duration_s": 1.0,
        "arms": 2,
        "start_vertex": 6,      # 0b110, front left upper
        "start_axis": "Z",
        "seed": None,
        "interactive": False,
    },
    "logging": {
        "level": "INFO",
        "dir": "logs",
        "file_enabled": True,
    },
}

MAX_WAIT_S = 300.0
KNOWN_BACKENDS = ("sim",)
CASE_MIN = 1
CASE_MAX = 8


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merges override into base (override wins)."""
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _load_yaml(path: str) -> Dict[str, Any]:
    data = yaml.safe_load(_read_text(path)) or {}
    if not isinstance(data, dict):
        raise ValueError("settings.yaml must be a mapping (dict) at root.")
    return data


def _load_json(path: str) -> Dict[str, Any]:
    data = json.loads(_read_text(path) or "{}")
    if not isinstance(data, dict):
        raise ValueError("schema.json must be a JSON object.")
    return data


class ConfigManager:
    """
    Loads configuration from crtkcheck/config/settings.yaml and validates with crtkcheck/config/schema.json.
    Env overrides:
      - CRTK_CONFIG_PATH: full path to settings.yaml
      - CRTK_SCHEMA_PATH: full path to schema.json
    """

    def __init__(self, base_dir: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.base_dir = base_dir or PACKAGE_DIR
        self.logger = logger or logging.getLogger("crtkcheck.config")

        self.config_dir = os.path.join(self.base_dir, "config")
        self.default_settings_path = os.path.join(self.config_dir, "settings.yaml")
        self.default_schema_path = os.path.join(self.config_dir, "schema.json")
        self.settings_path = os.environ.get("CRTK_CONFIG_PATH", self.default_settings_path)
        self.schema_path = os.environ.get("CRTK_SCHEMA_PATH", self.default_schema_path)

        self._config_dict: Optional[Dict[str, Any]] = None

    def load(self) -> Dict[str, Any]:
        """Returns merged config dict (DEFAULT_CONFIG + yaml overrides), validated and guarded."""
        cfg = copy.deepcopy(DEFAULT_CONFIG)

        if os.path.exists(self.settings_path):
            try:
                user_cfg = _load_yaml(self.settings_path)
                cfg = _deep_merge(cfg, user_cfg)
                self.logger.info("Loaded settings.yaml: %s", self.settings_path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                self.logger.error("Failed to read settings.yaml, using defaults. err=%s", e)
        else:
            self.logger.warning("settings.yaml not found at %s (using defaults).", self.settings_path)

        self._validate(cfg)
        self._apply_hard_guards(cfg)

        self._config_dict = cfg
        return cfg

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value using dot-notation key (e.g., "suite.retry_limit")."""
        if self._config_dict is None:
            self._config_dict = self.load()

        value: Any = self._config_dict
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set a config value using dot-notation key. Creates nested dicts as needed."""
        if self._config_dict is None:
            self._config_dict = self.load()

        keys = key.split(".")
        target = self._config_dict
        for k in keys[:-1]:
            if not isinstance(target.get(k), dict):
                target[k] = {}
            target = target[k]
        target[keys[-1]] = value

    def save(self) -> bool:
        """Save current config dict to settings.yaml."""
        if self._config_dict is None:
            self.logger.warning("No config loaded to save.")
            return False

        try:
            os.makedirs(os.path.dirname(self.settings_path) or ".", exist_ok=True)
            with open(self.settings_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(self._config_dict, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            self.logger.info("Settings saved to: %s", self.settings_path)
            return True
        except OSError as e:
            self.logger.error("Failed to save settings.yaml: %s", e)
            return False

    # -----------------------------
    # Validation
    # -----------------------------

    def _validate(self, cfg: Dict[str, Any]) -> None:
        self._basic_validate(cfg)

        if not os.path.exists(self.schema_path):
            self.logger.warning("schema.json not found at %s (basic validation only).", self.schema_path)
            return

        try:
            schema = _load_json(self.schema_path)
        except (OSError, ValueError) as e:
            self.logger.warning("schema.json read failed (%s). Skipping schema validation.", e)
            return

        try:
            jsonschema.validate(instance=cfg, schema=schema)
            self.logger.info("Config validated via jsonschema: %s", self.schema_path)
        except jsonschema.ValidationError as e:
            # do not crash; basic checks + guards keep the values usable
            self.logger.error("Schema validation failed: %s", e.message)

    def _basic_validate(self, cfg: Dict[str, Any]) -> None:
        mode = cfg["app"].get("mode", "states")
        if mode not in ("states", "cube"):
            self.logger.warning("Invalid app.mode=%s; forcing states", mode)
            cfg["app"]["mode"] = "states"

        family = str(cfg["device"].get("family", "generic")).lower()
        if family not in ("generic", "raven"):
            self.logger.warning("Unknown device.family=%s; forcing generic", family)
            family = "generic"
        cfg["device"]["family"] = family

        backend = str(cfg["device"].get("backend", "sim")).lower()
        if backend not in KNOWN_BACKENDS:
            self.logger.warning("Unknown device.backend=%s; forcing sim", backend)
            backend = "sim"
        cfg["device"]["backend"] = backend

        axis = str(cfg["cube"].get("start_axis", "Z")).upper()
        if axis not in ("X", "Y", "Z"):
            self.logger.warning("Invalid cube.start_axis=%s; forcing Z", axis)
            axis = "Z"
        cfg["cube"]["start_axis"] = axis

        try:
            cfg["suite"]["retry_limit"] = int(cfg["suite"].get("retry_limit", 10))
        except (TypeError, ValueError):
            cfg["suite"]["retry_limit"] = 10

        try:
            cfg["app"]["tick_ms"] = int(cfg["app"].get("tick_ms", 10))
        except (TypeError, ValueError):
            cfg["app"]["tick_ms"] = 10

    def _apply_hard_guards(self, cfg: Dict[str, Any]) -> None:
        suite = cfg["suite"]

        if suite["retry_limit"] < 1:
            self.logger.warning("retry_limit=%d invalid. Forcing to 10.", suite["retry_limit"])
            suite["retry_limit"] = 10

        timing = suite.setdefault("timing", {})
        defaults = DEFAULT_CONFIG["suite"]["timing"]
        for key, default in defaults.items():
            try:
                val = float(timing.get(key, default))
            except (TypeError, ValueError):
                val = default
            if val <= 0 or val > MAX_WAIT_S:
                self.logger.warning("suite.timing.%s=%s out of range. Forcing to %s.", key, val, default)
                val = default
            timing[key] = val

        try:
            settle = float(suite.get("connect_settle_s", 2.0))
        except (TypeError, ValueError):
            settle = 2.0
        suite["connect_settle_s"] = min(max(settle, 0.0), MAX_WAIT_S)

        try:
            first = int(suite.get("first_case", CASE_MIN))
            last = int(suite.get("last_case", CASE_MAX))
        except (TypeError, ValueError):
            first, last = CASE_MIN, CASE_MAX
        if not (CASE_MIN <= first <= last <= CASE_MAX):
            self.logger.warning("Case range %s..%s invalid; running %d..%d", first, last, CASE_MIN, CASE_MAX)
            first, last = CASE_MIN, CASE_MAX
        suite["first_case"], suite["last_case"] = first, last

        tick_ms = cfg["app"]["tick_ms"]
        if tick_ms < 1 or tick_ms > 1000:
            self.logger.warning("tick_ms=%d out of range. Forcing to 10.", tick_ms)
            cfg["app"]["tick_ms"] = 10

        cube = cfg["cube"]
        try:
            cube["start_vertex"] = int(cube.get("start_vertex", 6)) & 0b111
        except (TypeError, ValueError):
            cube["start_vertex"] = 6
        if int(cube.get("arms", 2)) < 1:
            self.logger.warning("cube.arms=%s invalid. Forcing to 2.", cube.get("arms"))
            cube["arms"] = 2
