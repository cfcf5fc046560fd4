"""Typed views over the persisted engine and broker settings."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


def _as_int(section: Dict[str, Any], key: str, fallback: int) -> int:
    try:
        return int(section.get(key, fallback))
    except (TypeError, ValueError):
        return fallback


def _as_bool(section: Dict[str, Any], key: str, fallback: bool) -> bool:
    value = section.get(key, fallback)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass
class EngineSettings:
    history_limit: int = 100
    poll_interval_ms: int = 500
    command_timeout_ms: int = 5000
    enforce_run_deadline: bool = True
    deadline_grace_ms: int = 5000
    single_run_per_device: bool = False
    default_device_id: str = "esp32-s3-1"

    @classmethod
    def from_dict(cls, section: Dict[str, Any]) -> "EngineSettings":
        defaults = cls()
        return cls(
            history_limit=max(1, _as_int(section, "history_limit", defaults.history_limit)),
            poll_interval_ms=max(1, _as_int(section, "poll_interval_ms", defaults.poll_interval_ms)),
            command_timeout_ms=max(
                1, _as_int(section, "command_timeout_ms", defaults.command_timeout_ms)
            ),
            enforce_run_deadline=_as_bool(
                section, "enforce_run_deadline", defaults.enforce_run_deadline
            ),
            deadline_grace_ms=max(
                0, _as_int(section, "deadline_grace_ms", defaults.deadline_grace_ms)
            ),
            single_run_per_device=_as_bool(
                section, "single_run_per_device", defaults.single_run_per_device
            ),
            default_device_id=str(section.get("default_device_id") or defaults.default_device_id),
        )


@dataclass
class MqttSettings:
    host: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    keepalive: int = 60
    client_id_prefix: str = "devicelab"
    command_topic: str = "device/{device_id}/command/{command}"
    response_topics: tuple = ("device/+/response/#", "device/+/status")
    offline_after_s: int = 120

    @classmethod
    def from_dict(cls, section: Dict[str, Any]) -> "MqttSettings":
        defaults = cls()
        topics = section.get("response_topics") or defaults.response_topics
        return cls(
            host=str(section.get("host") or defaults.host),
            port=_as_int(section, "port", defaults.port),
            username=str(section.get("username") or ""),
            password=str(section.get("password") or ""),
            keepalive=_as_int(section, "keepalive", defaults.keepalive),
            client_id_prefix=str(section.get("client_id_prefix") or defaults.client_id_prefix),
            command_topic=str(section.get("command_topic") or defaults.command_topic),
            response_topics=tuple(str(topic) for topic in topics),
            offline_after_s=_as_int(section, "offline_after_s", defaults.offline_after_s),
        )
