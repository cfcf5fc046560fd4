"""Per-run execution context handed to executors and operations."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Optional

from devicelab.config import EngineSettings
from devicelab.diagnostics.models import TestDefinition
from devicelab.errors import RunStopped
from devicelab.services.command_channel import CommandChannel, CommandResponse
from devicelab.services.logging_service import logging_service

ProgressReporter = Callable[[int, str], Awaitable[None]]

_logger = logging_service.get_logger(__name__)


@dataclass
class RunContext:
    """Everything a test body needs, without access to the run stores.

    Stopping is advisory: ``send`` refuses to start a new command once the
    run is stopped and discards the reply of a command that was already in
    flight, and ``sleep`` wakes up as soon as the stop flag is raised.
    Cleanup commands bypass the stop flag.
    """

    device_id: str
    run_id: str
    definition: TestDefinition
    parameters: Dict[str, Any]
    channel: CommandChannel
    settings: EngineSettings
    report: ProgressReporter
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    @property
    def poll_interval(self) -> float:
        return self.settings.poll_interval_ms / 1000

    def param(self, name: str, default: Any = None) -> Any:
        return self.parameters.get(name, default)

    def checkpoint(self) -> None:
        if self.stop_event.is_set():
            raise RunStopped(self.run_id)

    async def progress(self, percent: float, message: str) -> None:
        self.checkpoint()
        await self.report(int(percent), message)

    async def send(
        self,
        command: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> CommandResponse:
        self.checkpoint()
        response = await self.channel.send(
            self.device_id,
            command,
            payload or {},
            timeout_ms or self.settings.command_timeout_ms,
        )
        self.checkpoint()
        return response

    async def sleep(self, seconds: float) -> None:
        self.checkpoint()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise RunStopped(self.run_id)

    async def cleanup(self, command: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Best-effort cleanup; failures are logged and never raised."""
        try:
            response = await self.channel.send(
                self.device_id, command, payload or {}, self.settings.command_timeout_ms
            )
        except Exception as exc:
            _logger.warning("Cleanup %s for run %s failed: %s", command, self.run_id, exc)
            return False
        if not response.success:
            _logger.warning(
                "Cleanup %s for run %s rejected: %s", command, self.run_id, response.message
            )
        return response.success

    def deadline(self, seconds: float) -> float:
        return time.monotonic() + seconds

    def derive(
        self,
        run_id: str,
        definition: TestDefinition,
        parameters: Dict[str, Any],
        report: ProgressReporter,
    ) -> "RunContext":
        """Context for a sub-test sharing this run's stop flag."""
        return replace(
            self, run_id=run_id, definition=definition, parameters=parameters, report=report
        )
