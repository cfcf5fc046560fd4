"""Settings service for the engine and the MQTT broker connection."""
from __future__ import annotations

import json
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

from devicelab.config import EngineSettings, MqttSettings
from devicelab.services.logging_service import logging_service
from devicelab.utils.paths import SETTINGS_FILE

DEFAULT_CONFIGS: Dict[str, Any] = {
    "engine": {
        "history_limit": 100,
        "poll_interval_ms": 500,
        "command_timeout_ms": 5000,
        "enforce_run_deadline": True,
        "deadline_grace_ms": 5000,
        "single_run_per_device": False,
        "default_device_id": "esp32-s3-1",
    },
    "mqtt": {
        "host": "localhost",
        "port": 1883,
        "username": "",
        "password": "",
        "keepalive": 60,
        "client_id_prefix": "devicelab",
        "command_topic": "device/{device_id}/command/{command}",
        "response_topics": ["device/+/response/#", "device/+/status"],
        "offline_after_s": 120,
    },
}

# environment variable -> (section, key)
ENV_OVERRIDES = {
    "MQTT_HOST": ("mqtt", "host"),
    "MQTT_PORT": ("mqtt", "port"),
    "MQTT_USER": ("mqtt", "username"),
    "MQTT_PASSWORD": ("mqtt", "password"),
}


class SettingsService:
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or SETTINGS_FILE
        self._configs: Dict[str, Any] = deepcopy(DEFAULT_CONFIGS)
        self._logger = logging_service.get_logger(__name__)

    def load(self) -> Dict[str, Any]:
        raw_configs = self._read_json(self.path, default={})
        merged = self._merge_with_defaults(raw_configs)
        self._apply_env(merged)
        self._configs = merged
        self._logger.info(
            "Settings loaded from %s (broker %s:%s)",
            self.path,
            merged["mqtt"]["host"],
            merged["mqtt"]["port"],
        )
        return self._configs

    def _read_json(self, path: Path, default):
        if not path.exists():
            return default
        with path.open("r", encoding="utf-8") as handle:
            try:
                return json.load(handle)
            except json.JSONDecodeError as exc:
                self._logger.warning("Ignoring malformed settings file %s: %s", path, exc)
                return default

    def _merge_with_defaults(self, configs: Dict[str, Any]) -> Dict[str, Any]:
        merged = deepcopy(DEFAULT_CONFIGS)
        if isinstance(configs, dict):
            self._deep_update(merged, configs)
        return merged

    def _deep_update(self, target: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in updates.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                self._deep_update(target[key], value)
            else:
                target[key] = value
        return target

    def _apply_env(self, configs: Dict[str, Any]) -> None:
        for variable, (section, key) in ENV_OVERRIDES.items():
            value = os.environ.get(variable)
            if value:
                configs[section][key] = value

    def engine_settings(self) -> EngineSettings:
        return EngineSettings.from_dict(self._configs.get("engine", {}))

    def mqtt_settings(self) -> MqttSettings:
        return MqttSettings.from_dict(self._configs.get("mqtt", {}))
