"""MQTT implementation of the device command channel."""
from __future__ import annotations

import asyncio
import json
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt

from devicelab.config import MqttSettings
from devicelab.errors import CommandTimeoutError, DeviceUnavailableError
from devicelab.services.command_channel import CommandResponse
from devicelab.services.logging_service import logging_service

_logger = logging_service.get_logger(__name__)


@dataclass
class DevicePresence:
    online: bool
    last_seen: float


class MqttCommandChannel:
    """Publishes commands to ``device/<id>/command/<name>`` and awaits replies.

    Replies are matched to requests through the ``messageId`` the channel
    injects into every command payload. paho runs its network loop on a
    background thread, so replies are handed over to the asyncio loop with
    ``call_soon_threadsafe``.
    """

    def __init__(self, settings: MqttSettings, client: Optional[mqtt.Client] = None) -> None:
        self.settings = settings
        self.connected = False
        self._client = client or mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"{settings.client_id_prefix}_{uuid.uuid4().hex[:8]}",
            clean_session=True,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._presence: Dict[str, DevicePresence] = {}
        self._presence_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self.settings.username:
            self._client.username_pw_set(self.settings.username, self.settings.password or None)
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)
        _logger.info(
            "Connecting to MQTT broker %s:%s", self.settings.host, self.settings.port
        )
        self._client.connect_async(
            self.settings.host, self.settings.port, keepalive=self.settings.keepalive
        )
        self._client.loop_start()

    async def close(self) -> None:
        _logger.info("Disconnecting MQTT client")
        self._client.disconnect()
        self._client.loop_stop()
        self.connected = False
        self._fail_pending("MQTT client closed")

    # ------------------------------------------------------------------
    # Command channel contract
    # ------------------------------------------------------------------
    def is_available(self, device_id: str) -> bool:
        if not self.connected:
            return False
        with self._presence_lock:
            presence = self._presence.get(device_id)
        if presence is None:
            return True
        if not presence.online:
            return False
        return time.monotonic() - presence.last_seen <= self.settings.offline_after_s

    async def send(
        self,
        device_id: str,
        command: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout_ms: int = 5000,
    ) -> CommandResponse:
        if not self.connected or self._loop is None:
            raise DeviceUnavailableError("MQTT not connected")
        message_id = f"{command}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
        topic = self.settings.command_topic.format(device_id=device_id, command=command)
        body = json.dumps(
            {**(payload or {}), "messageId": message_id, "timestamp": int(time.time() * 1000)}
        )
        future: asyncio.Future = self._loop.create_future()
        self._pending[message_id] = future
        try:
            info = self._client.publish(topic, body, qos=1)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise DeviceUnavailableError(
                    f"Failed to publish to {topic}: {mqtt.error_string(info.rc)}"
                )
            _logger.debug("Published %s to %s", command, topic)
            try:
                reply = await asyncio.wait_for(future, timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise CommandTimeoutError(command, timeout_ms) from None
        finally:
            self._pending.pop(message_id, None)
        return CommandResponse.from_message(reply)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            _logger.error("MQTT connection refused: %s", reason_code)
            return
        self.connected = True
        client.subscribe([(topic, 1) for topic in self.settings.response_topics])
        _logger.info("MQTT connected, subscribed to %s", ", ".join(self.settings.response_topics))

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        self.connected = False
        _logger.warning("MQTT disconnected: %s", reason_code)
        self._call_in_loop(self._fail_pending, "MQTT connection closed")

    def _on_message(self, client, userdata, message) -> None:
        parts = message.topic.split("/")
        if len(parts) < 3:
            _logger.warning("Invalid topic format: %s", message.topic)
            return
        device_id = parts[1]
        try:
            data = json.loads(message.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            data = {"raw": message.payload.decode("utf-8", errors="replace")}
        if not isinstance(data, dict):
            data = {"data": data}
        if parts[2] == "status":
            self._record_presence(device_id, data)
        message_id = data.get("messageId")
        if message_id:
            self._call_in_loop(self._resolve, message_id, data)

    # ------------------------------------------------------------------
    def _record_presence(self, device_id: str, data: Dict[str, Any]) -> None:
        online = data.get("online", True)
        with self._presence_lock:
            self._presence[device_id] = DevicePresence(bool(online), time.monotonic())

    def _call_in_loop(self, callback, *args) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Event loop might not be available during shutdown.
            pass

    def _resolve(self, message_id: str, data: Dict[str, Any]) -> None:
        future = self._pending.get(message_id)
        if future is not None and not future.done():
            future.set_result(data)

    def _fail_pending(self, reason: str) -> None:
        for message_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(DeviceUnavailableError(reason))
        self._pending.clear()
