import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from devicelab.config import EngineSettings
from devicelab.services.settings_service import SettingsService


class SettingsServiceTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "settings" / "devicelab.json"

    def tearDown(self):
        self._tmp.cleanup()

    @mock.patch.dict(os.environ, {}, clear=True)
    def test_defaults_without_file(self):
        service = SettingsService(self.path)
        service.load()
        self.assertEqual(service.engine_settings(), EngineSettings())
        self.assertEqual(service.mqtt_settings().port, 1883)

    @mock.patch.dict(os.environ, {}, clear=True)
    def test_file_values_are_merged_over_defaults(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"engine": {"history_limit": 10}}), encoding="utf-8")
        service = SettingsService(self.path)
        service.load()
        engine = service.engine_settings()
        self.assertEqual(engine.history_limit, 10)
        self.assertEqual(engine.poll_interval_ms, 500)

    @mock.patch.dict(os.environ, {"MQTT_HOST": "broker.lan", "MQTT_PORT": "8883", "MQTT_USER": "lab"})
    def test_environment_overrides_broker(self):
        service = SettingsService(self.path)
        service.load()
        mqtt = service.mqtt_settings()
        self.assertEqual((mqtt.host, mqtt.port, mqtt.username), ("broker.lan", 8883, "lab"))

    @mock.patch.dict(os.environ, {}, clear=True)
    def test_malformed_file_falls_back_to_defaults(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        service = SettingsService(self.path)
        with self.assertLogs("devicelab.services.settings_service", level="WARNING"):
            service.load()
        self.assertEqual(service.engine_settings().history_limit, 100)

    def test_engine_settings_tolerate_bad_values(self):
        engine = EngineSettings.from_dict({"history_limit": "lots", "enforce_run_deadline": "off"})
        self.assertEqual(engine.history_limit, 100)
        self.assertFalse(engine.enforce_run_deadline)


if __name__ == "__main__":
    unittest.main()
