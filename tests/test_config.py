"""Tests for client.config -- layered configuration and persistence."""

import json
import os
import tempfile
import unittest
from unittest import mock

from client.config import (
    DEFAULTS,
    ConfigurationError,
    SpeedTestConfig,
    get_config_value,
    load_config,
    save_config,
    set_config_value,
)


class TestSpeedTestConfig(unittest.TestCase):
    def test_defaults(self):
        cfg = SpeedTestConfig()
        self.assertEqual(cfg.ping_measurements, 10)
        self.assertEqual(cfg.jitter_measurements, 20)
        self.assertEqual(cfg.deadline_s, 120.0)
        self.assertEqual(cfg.timeout, 30.0)
        self.assertEqual(cfg.ping_timeout, 3.0)
        self.assertEqual(cfg.download_sizes, sorted(cfg.download_sizes))
        self.assertIs(cfg.validate(), cfg)

    def test_defaults_not_shared(self):
        a, b = SpeedTestConfig(), SpeedTestConfig()
        a.download_sizes.append(1)
        self.assertNotEqual(a.download_sizes, b.download_sizes)

    def test_defaults_have_required_keys(self):
        for key in ("server_url", "ping_servers", "download_sizes", "upload_sizes",
                    "min_ping_ms", "max_ping_ms", "deadline_s", "history_limit"):
            self.assertIn(key, DEFAULTS)

    def test_invalid_values(self):
        cases = [
            {"timeout_ms": 0},
            {"ping_timeout_ms": -5},
            {"ping_measurements": 0},
            {"jitter_measurements": 101},
            {"ping_delay_ms": -1},
            {"download_sizes": []},
            {"upload_sizes": [1024, 0]},
            {"min_ping_ms": 500.0, "max_ping_ms": 100.0},
            {"overhead_compensation": 0},
            {"deadline_s": -1},
        ]
        for overrides in cases:
            with self.assertRaises(ConfigurationError, msg=str(overrides)):
                SpeedTestConfig(**overrides).validate()

    def test_zero_deadline_disables(self):
        SpeedTestConfig(deadline_s=0).validate()

    def test_from_dict_ignores_unknown_keys(self):
        with self.assertLogs("client.config", level="WARNING") as logs:
            cfg = SpeedTestConfig.from_dict({"ping_measurements": 5, "connections": 4})
        self.assertEqual(cfg.ping_measurements, 5)
        self.assertIn("connections", logs.output[0])

    def test_round_trip_dict(self):
        cfg = SpeedTestConfig(ping_measurements=7, ping_servers=["https://a.example"])
        self.assertEqual(SpeedTestConfig.from_dict(cfg.to_dict()), cfg)


class ConfigFileTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "nested", "config.json")
        patcher = mock.patch("client.config._config_path", return_value=self.path)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self._tmp.cleanup)

    def write(self, text):
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write(text)


class TestLoadSaveConfig(ConfigFileTestCase):
    def test_load_defaults_when_missing(self):
        cfg = load_config(environ={})
        self.assertEqual(cfg, SpeedTestConfig())

    def test_save_and_load(self):
        save_config({"ping_measurements": 4, "server_url": "http://speed.example:9000"})
        cfg = load_config(environ={})
        self.assertEqual(cfg.ping_measurements, 4)
        self.assertEqual(cfg.server_url, "http://speed.example:9000")
        # Untouched keys keep their defaults.
        self.assertEqual(cfg.jitter_measurements, 20)

    def test_saved_file_is_json(self):
        path = save_config({"deadline_s": 60.0})
        with open(path, encoding="utf-8") as fh:
            self.assertEqual(json.load(fh), {"deadline_s": 60.0})

    def test_corrupt_file_returns_defaults(self):
        self.write("NOT JSON")
        with self.assertLogs("client.config", level="WARNING"):
            cfg = load_config(environ={})
        self.assertEqual(cfg.ping_measurements, 10)

    def test_non_object_file_ignored(self):
        self.write("[1, 2, 3]")
        self.assertEqual(load_config(environ={}), SpeedTestConfig())

    def test_invalid_file_value_is_fatal(self):
        self.write(json.dumps({"ping_measurements": 0}))
        with self.assertRaises(ConfigurationError):
            load_config(environ={})

    def test_environment_overrides_file(self):
        save_config({"ping_measurements": 4, "timeout_ms": 5000})
        cfg = load_config(environ={
            "SPEEDCHECK_PING_MEASUREMENTS": "6",
            "SPEEDCHECK_DOWNLOAD_SIZES": "1024, 4096",
            "SPEEDCHECK_PING_SERVERS": "https://a.example,https://b.example",
            "SPEEDCHECK_DEADLINE_S": "30.5",
        })
        self.assertEqual(cfg.ping_measurements, 6)
        self.assertEqual(cfg.timeout_ms, 5000)
        self.assertEqual(cfg.download_sizes, [1024, 4096])
        self.assertEqual(cfg.ping_servers, ["https://a.example", "https://b.example"])
        self.assertEqual(cfg.deadline_s, 30.5)

    def test_blank_environment_value_ignored(self):
        cfg = load_config(environ={"SPEEDCHECK_TIMEOUT_MS": "  "})
        self.assertEqual(cfg.timeout_ms, 30_000)

    def test_malformed_environment_value(self):
        with self.assertRaises(ConfigurationError):
            load_config(environ={"SPEEDCHECK_JITTER_MEASUREMENTS": "lots"})

    def test_get_set_value(self):
        set_config_value("ping_measurements", 12)
        self.assertEqual(get_config_value("ping_measurements"), 12)
        self.assertEqual(get_config_value("jitter_measurements"), 20)

    def test_set_unknown_key(self):
        with self.assertRaises(ConfigurationError):
            set_config_value("connections", 8)
        self.assertFalse(os.path.exists(self.path))


if __name__ == "__main__":
    unittest.main()
