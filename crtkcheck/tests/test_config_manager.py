# crtkcheck/tests/test_config_manager.py
# Unit tests for core/config_manager.py

import os
import copy
import tempfile
import unittest
from unittest import mock

import yaml

from crtkcheck.core.config_manager import DEFAULT_CONFIG, ConfigManager


class ConfigTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.settings_path = os.path.join(self._tmp.name, "settings.yaml")
        self._env = mock.patch.dict(os.environ, {"CRTK_CONFIG_PATH": self.settings_path})
        self._env.start()

    def tearDown(self):
        self._env.stop()
        self._tmp.cleanup()

    def write(self, data):
        with open(self.settings_path, "w", encoding="utf-8") as f:
            if isinstance(data, str):
                f.write(data)
            else:
                yaml.safe_dump(data, f)


class TestLoad(ConfigTestCase):
    def test_defaults_when_missing(self):
        with self.assertLogs("crtkcheck.config", level="WARNING"):
            cfg = ConfigManager().load()
        self.assertEqual(cfg["suite"]["retry_limit"], 10)
        self.assertEqual(cfg["suite"]["timing"], DEFAULT_CONFIG["suite"]["timing"])
        self.assertEqual(cfg["device"]["family"], "generic")

    def test_yaml_overrides_merge(self):
        self.write({"device": {"family": "raven"}, "suite": {"timing": {"short_settle_s": 0.5}}})
        cfg = ConfigManager().load()
        self.assertEqual(cfg["device"]["family"], "raven")
        self.assertEqual(cfg["suite"]["timing"]["short_settle_s"], 0.5)
        self.assertEqual(cfg["suite"]["timing"]["medium_settle_s"], 3.0)
        self.assertEqual(cfg["device"]["sim"]["homing_duration_s"], 6.0)

    def test_defaults_not_mutated(self):
        before = copy.deepcopy(DEFAULT_CONFIG)
        self.write({"suite": {"timing": {"short_settle_s": 0.5}}})
        mgr = ConfigManager()
        mgr.load()
        mgr.set("suite.retry_limit", 3)
        self.assertEqual(DEFAULT_CONFIG, before)

    def test_non_mapping_root_falls_back(self):
        self.write("- just\n- a list\n")
        with self.assertLogs("crtkcheck.config", level="ERROR"):
            cfg = ConfigManager().load()
        self.assertEqual(cfg["app"]["mode"], "states")

    def test_schema_error_is_logged_not_raised(self):
        self.write({"cube": {"seed": "abc"}})
        with self.assertLogs("crtkcheck.config", level="ERROR") as cm:
            ConfigManager().load()
        self.assertTrue(any("Schema validation failed" in line for line in cm.output))


class TestHardGuards(ConfigTestCase):
    def test_out_of_range_values_forced(self):
        self.write({
            "app": {"tick_ms": 5000, "mode": "dance"},
            "device": {"family": "RAVEN"},
            "suite": {
                "retry_limit": 0,
                "first_case": 6,
                "last_case": 3,
                "connect_settle_s": -1,
                "timing": {"short_settle_s": -1, "homing_finish_timeout_s": 1000},
            },
            "cube": {"start_vertex": 14, "arms": 0, "start_axis": "w"},
        })
        cfg = ConfigManager().load()
        self.assertEqual(cfg["app"]["tick_ms"], 10)
        self.assertEqual(cfg["app"]["mode"], "states")
        self.assertEqual(cfg["device"]["family"], "raven")
        self.assertEqual(cfg["suite"]["retry_limit"], 10)
        self.assertEqual((cfg["suite"]["first_case"], cfg["suite"]["last_case"]), (1, 8))
        self.assertEqual(cfg["suite"]["connect_settle_s"], 0.0)
        self.assertEqual(cfg["suite"]["timing"]["short_settle_s"], 1.0)
        self.assertEqual(cfg["suite"]["timing"]["homing_finish_timeout_s"], 30.0)
        self.assertEqual(cfg["cube"]["start_vertex"], 0b110)
        self.assertEqual(cfg["cube"]["arms"], 2)
        self.assertEqual(cfg["cube"]["start_axis"], "Z")

    def test_unknown_backend_forced_to_sim(self):
        self.write({"device": {"backend": "Serial"}})
        with self.assertLogs("crtkcheck.config", level="WARNING") as cm:
            cfg = ConfigManager().load()
        self.assertEqual(cfg["device"]["backend"], "sim")
        self.assertTrue(any("device.backend" in line for line in cm.output))

    def test_valid_range_kept(self):
        self.write({"suite": {"first_case": 4, "last_case": 6, "retry_limit": "5"}})
        cfg = ConfigManager().load()
        self.assertEqual((cfg["suite"]["first_case"], cfg["suite"]["last_case"]), (4, 6))
        self.assertEqual(cfg["suite"]["retry_limit"], 5)


class TestGetSetSave(ConfigTestCase):
    def test_dot_notation(self):
        mgr = ConfigManager()
        self.assertEqual(mgr.get("suite.timing.enable_wait_s"), 10.0)
        self.assertIsNone(mgr.get("suite.nope"))
        self.assertEqual(mgr.get("suite.nope", 7), 7)
        mgr.set("cube.seed", 42)
        self.assertEqual(mgr.get("cube.seed"), 42)
        mgr.set("extra.nested.key", True)
        self.assertTrue(mgr.get("extra.nested.key"))

    def test_save_roundtrip(self):
        mgr = ConfigManager()
        mgr.load()
        mgr.set("suite.first_case", 5)
        self.assertTrue(mgr.save())
        self.assertEqual(ConfigManager().load()["suite"]["first_case"], 5)

    def test_save_without_load(self):
        self.assertFalse(ConfigManager().save())


if __name__ == "__main__":
    unittest.main()
