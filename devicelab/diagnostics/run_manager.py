from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from functools import partial
from typing import Any, Dict, List, Optional, Union

from devicelab.config import EngineSettings
from devicelab.diagnostics.catalog import TestCatalog
from devicelab.diagnostics.composite import CompositeComposer
from devicelab.diagnostics.context import RunContext
from devicelab.diagnostics.executor import StepExecutor
from devicelab.diagnostics.history import HistoryStore
from devicelab.diagnostics.models import HistoryEntry, RunRecord, RunStatus, TestDefinition, mask_parameters
from devicelab.diagnostics.run_store import RunStore
from devicelab.errors import (
    DeviceBusyError,
    DeviceLabError,
    NotFoundError,
    ParameterValidationError,
    RunStopped,
    VerificationFailure,
)
from devicelab.services.broadcaster import ProgressBroadcaster
from devicelab.services.command_channel import CommandChannel
from devicelab.services.logging_service import logging_service

_logger = logging_service.get_logger(__name__)


class RunManager:
    """Owns the lifecycle of diagnostic runs.

    ``start`` validates and registers a run, then executes it in a background
    task. Every run ends in exactly one call to ``complete``, which moves the
    record into history and publishes the terminal status.
    """

    def __init__(
        self,
        catalog: TestCatalog,
        channel: CommandChannel,
        broadcaster: ProgressBroadcaster,
        settings: Optional[EngineSettings] = None,
        runs: Optional[RunStore] = None,
        history: Optional[HistoryStore] = None,
        executor: Optional[StepExecutor] = None,
        composer: Optional[CompositeComposer] = None,
    ) -> None:
        self.catalog = catalog
        self.channel = channel
        self.broadcaster = broadcaster
        self.settings = settings or EngineSettings()
        self.runs = runs or RunStore()
        self.history_store = history or HistoryStore(self.settings.history_limit)
        self.executor = executor or StepExecutor()
        self.composer = composer or CompositeComposer(catalog, self.executor)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_events: Dict[str, asyncio.Event] = {}
        self._start_lock = asyncio.Lock()
        self._ids = itertools.count(1)

    def _new_run_id(self, test_id: str) -> str:
        millis = int(time.time() * 1000)
        return f"{test_id}_{millis}_{next(self._ids):x}{uuid.uuid4().hex[:4]}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(
        self, device_id: str, test_id: str, parameters: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        definition = self.catalog.get(test_id)
        validated = self.catalog.validate(test_id, parameters)
        async with self._start_lock:
            if self.settings.single_run_per_device and await self.runs.count_active(device_id):
                raise DeviceBusyError(f"Device {device_id} already has a test running")
            record = RunRecord(
                run_id=self._new_run_id(test_id),
                device_id=device_id,
                definition=definition,
                parameters=validated,
                start_time=time.time(),
            )
            await self.runs.add(record)

        run_id = record.run_id
        stop_event = asyncio.Event()
        self._stop_events[run_id] = stop_event
        _logger.info(
            "Starting %s on %s as %s with %s",
            test_id,
            device_id,
            run_id,
            mask_parameters(definition, validated),
        )
        await self.broadcaster.status(device_id, run_id, RunStatus.RUNNING.value, record.message)
        task = asyncio.create_task(self._run(record, stop_event), name=f"run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _task, key=run_id: self._tasks.pop(key, None))
        return {"runId": run_id, "estimatedSeconds": definition.estimated_seconds}

    async def _run(self, record: RunRecord, stop_event: asyncio.Event) -> None:
        device_id, run_id = record.device_id, record.run_id
        ctx = RunContext(
            device_id=device_id,
            run_id=run_id,
            definition=record.definition,
            parameters=dict(record.parameters),
            channel=self.channel,
            settings=self.settings,
            report=partial(self.report_progress, device_id, run_id),
            stop_event=stop_event,
        )
        limit = self._time_limit(record.definition, record.parameters)
        try:
            if limit is None:
                result = await self._dispatch(ctx)
            else:
                result = await asyncio.wait_for(self._dispatch(ctx), timeout=limit)
        except RunStopped:
            _logger.info("Run %s halted after stop request", run_id)
        except VerificationFailure as exc:
            await self.complete(device_id, run_id, RunStatus.FAILED, exc.message, exc.details)
        except DeviceLabError as exc:
            _logger.warning("Run %s failed: %s", run_id, exc.message)
            await self.complete(device_id, run_id, RunStatus.FAILED, exc.message)
        except asyncio.TimeoutError:
            message = f"{record.definition.name} exceeded time limit of {limit:g}s"
            _logger.warning("Run %s: %s", run_id, message)
            await self.complete(device_id, run_id, RunStatus.FAILED, message)
        except asyncio.CancelledError:
            await self.complete(device_id, run_id, RunStatus.FAILED, "Run cancelled")
            raise
        except Exception as exc:
            _logger.exception("Run %s crashed", run_id)
            await self.complete(
                device_id, run_id, RunStatus.FAILED, str(exc) or exc.__class__.__name__
            )
        else:
            await self.complete(
                device_id, run_id, RunStatus.COMPLETED, "Test completed successfully", result
            )
        finally:
            self._stop_events.pop(run_id, None)

    async def _dispatch(self, ctx: RunContext) -> Dict[str, Any]:
        if ctx.definition.is_composite:
            report_sub = partial(self.report_sub_progress, ctx.device_id, ctx.run_id)
            return await self.composer.run(ctx, report_sub)
        return await self.executor.execute(ctx)

    def _time_limit(
        self, definition: TestDefinition, parameters: Dict[str, Any]
    ) -> Optional[float]:
        if not self.settings.enforce_run_deadline:
            return None
        return (self._allowed_ms(definition, parameters) + self.settings.deadline_grace_ms) / 1000

    def _allowed_ms(self, definition: TestDefinition, parameters: Dict[str, Any]) -> float:
        if not definition.is_composite:
            return self.executor.allowance_ms(definition, parameters, self.settings)
        needed = 0.0
        for test_id in definition.components:
            component = self.catalog.get(test_id)
            try:
                defaults = self.catalog.validate(test_id, {})
            except ParameterValidationError:
                # the composer records this component as failed without running it
                continue
            needed += self._allowed_ms(component, defaults)
        return max(definition.timeout_ms, needed)

    async def get_status(self, device_id: str, run_id: str) -> Dict[str, Any]:
        record = await self.runs.get_active(device_id, run_id)
        if record is None:
            record = await self.runs.get_finished(device_id, run_id)
        if record is not None:
            return record.to_dict()
        entry = await self.history_store.get(device_id, run_id)
        if entry is None:
            raise NotFoundError(f"Run {run_id} not found for device {device_id}")
        payload = entry.to_dict()
        payload["completed"] = True
        return payload

    async def stop(self, device_id: str, run_id: str) -> Dict[str, Any]:
        """Finalize an active run as stopped.

        A command already awaiting the device is not interrupted; its reply is
        discarded and no further step starts. Cleanup still runs.
        """
        if await self.runs.get_active(device_id, run_id) is None:
            raise NotFoundError(f"Run {run_id} is not active on device {device_id}")
        if not await self.complete(device_id, run_id, RunStatus.STOPPED, "Stopped by user"):
            raise NotFoundError(f"Run {run_id} finished before it could be stopped")
        event = self._stop_events.get(run_id)
        if event is not None:
            event.set()
        return {"runId": run_id, "status": RunStatus.STOPPED.value}

    async def report_progress(self, device_id: str, run_id: str, percent: int, message: str) -> None:
        progress = await self.runs.update_progress(device_id, run_id, int(percent), message)
        if progress is None:
            return
        await self.broadcaster.progress(device_id, run_id, progress, message)

    async def report_sub_progress(
        self, device_id: str, parent_run_id: str, sub_run_id: str, percent: int, message: str
    ) -> None:
        if await self.runs.get_active(device_id, parent_run_id) is None:
            return
        progress = max(0, min(int(percent), 100))
        await self.broadcaster.progress(
            device_id, sub_run_id, progress, message, parent_run_id=parent_run_id
        )

    async def complete(
        self,
        device_id: str,
        run_id: str,
        status: Union[RunStatus, str],
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move an active run to a terminal state; ``False`` if it already left it."""
        status = RunStatus(status)
        record = await self.runs.finish(device_id, run_id, status, message, details)
        if record is None:
            _logger.debug("Ignoring %s for inactive run %s", status.value, run_id)
            return False
        evicted = await self.history_store.append(device_id, HistoryEntry.from_record(record))
        if evicted:
            await self.runs.forget(device_id, evicted)
        _logger.info("Run %s %s after %.1fs: %s", run_id, status.value, record.duration, message)
        await self.broadcaster.status(device_id, run_id, status.value, message, details)
        await self.broadcaster.progress(device_id, run_id, record.progress, message)
        return True

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------
    async def history(self, device_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        entries = await self.history_store.list(device_id, limit)
        return [entry.to_dict() for entry in entries]

    async def clear_history(self, device_id: str) -> int:
        removed = await self.history_store.clear(device_id)
        await self.runs.purge_finished(device_id)
        _logger.info("Cleared %d history entries for %s", removed, device_id)
        return removed

    async def remove_result(self, device_id: str, run_id: str) -> bool:
        removed = await self.history_store.remove(device_id, run_id)
        if removed:
            await self.runs.forget(device_id, [run_id])
        return removed

    async def list_active(self, device_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in await self.runs.list_active(device_id)]

    async def device_status(self, device_id: str) -> Dict[str, Any]:
        return {
            "deviceId": device_id,
            "available": self.channel.is_available(device_id),
            "activeRuns": await self.runs.count_active(device_id),
        }

    async def join(self, run_id: Optional[str] = None) -> None:
        """Wait for one run's task, or for every task currently in flight."""
        if run_id is not None:
            tasks = [self._tasks[run_id]] if run_id in self._tasks else []
        else:
            tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        _logger.info("Run manager stopped (%d runs cancelled)", len(tasks))
