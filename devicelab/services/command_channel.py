"""Contract between the diagnostics engine and the device command channel."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

# keys the channel adds to every command and strips from replies
ENVELOPE_KEYS = ("messageId", "timestamp", "deviceId", "success", "message")


@dataclass
class CommandResponse:
    success: bool
    data: Any = None
    message: Optional[str] = None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "CommandResponse":
        """Build a response from a decoded device reply.

        Replies are flat JSON objects; everything besides the envelope keys is
        treated as payload. A reply without a ``success`` flag counts as
        successful unless it carries an ``error``.
        """
        if not isinstance(message, dict):
            return cls(success=True, data=message)
        if "data" in message:
            data = message["data"]
        else:
            data = {key: value for key, value in message.items() if key not in ENVELOPE_KEYS}
        success = message.get("success")
        if success is None:
            success = "error" not in message
        text = message.get("message") or message.get("error")
        return cls(success=bool(success), data=data, message=text)

    def field(self, key: str, default: Any = None) -> Any:
        if isinstance(self.data, dict):
            return self.data.get(key, default)
        return default

    @property
    def text(self) -> str:
        """Flatten the reply into text for substring checks and parsers."""
        if isinstance(self.data, str):
            body = self.data
        elif isinstance(self.data, dict) and isinstance(self.data.get("response"), str):
            body = self.data["response"]
        elif self.data is None:
            body = ""
        else:
            body = json.dumps(self.data, sort_keys=True)
        if self.message:
            return f"{body}\n{self.message}" if body else self.message
        return body


class CommandChannel(Protocol):
    """Request/response bridge to a physical device."""

    async def send(
        self,
        device_id: str,
        command: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout_ms: int = 5000,
    ) -> CommandResponse:
        """Send *command* and wait for the correlated reply.

        Raises ``CommandTimeoutError`` when no reply arrives in time and
        ``DeviceUnavailableError`` when the device cannot be reached.
        """
        ...

    def is_available(self, device_id: str) -> bool:
        ...
