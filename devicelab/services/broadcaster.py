"""Publishes run progress and status events onto the event bus."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from devicelab.services.event_bus import EventBus
from devicelab.services.logging_service import logging_service

TEST_CHANNEL = "tests"
PROGRESS_TOPIC = "test:progress"
STATUS_TOPIC = "test:status"

_logger = logging_service.get_logger(__name__)


class ProgressBroadcaster:
    """Fire-and-forget sink for ``test:progress`` and ``test:status`` events.

    Every event carries ``deviceId`` and ``runId`` so subscribers watching
    several runs can tell them apart.
    """

    def __init__(self, event_bus: EventBus, channel: str = TEST_CHANNEL) -> None:
        self.event_bus = event_bus
        self.channel = channel

    async def publish(self, topic: str, event: Dict[str, Any]) -> None:
        message = {
            "event": topic,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **event,
        }
        try:
            await self.event_bus.publish(self.channel, message)
        except Exception:
            _logger.exception("Dropping %s event for run %s", topic, event.get("runId"))

    async def progress(
        self,
        device_id: str,
        run_id: str,
        progress: int,
        message: str,
        parent_run_id: Optional[str] = None,
    ) -> None:
        event: Dict[str, Any] = {
            "deviceId": device_id,
            "runId": run_id,
            "progress": progress,
            "message": message,
        }
        if parent_run_id:
            event["parentRunId"] = parent_run_id
        await self.publish(PROGRESS_TOPIC, event)

    async def status(
        self,
        device_id: str,
        run_id: str,
        status: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        event: Dict[str, Any] = {
            "deviceId": device_id,
            "runId": run_id,
            "status": status,
            "message": message,
        }
        if details is not None:
            event["details"] = details
        await self.publish(STATUS_TOPIC, event)
