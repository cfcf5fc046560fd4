"""Lock-protected store of active and recently finished runs."""
from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from devicelab.diagnostics.models import RunRecord, RunStatus


class RunStore:
    """Runs keyed by device id, then run id.

    A record lives in the active map while it is running. ``finish`` moves it
    into the finished map in the same critical section, so a run is never in
    both and a second terminal transition is refused.
    """

    def __init__(self) -> None:
        self._active: Dict[str, Dict[str, RunRecord]] = defaultdict(dict)
        self._finished: Dict[str, Dict[str, RunRecord]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def add(self, record: RunRecord) -> None:
        async with self._lock:
            if record.run_id in self._active[record.device_id]:
                raise ValueError(f"Run {record.run_id} is already active")
            self._active[record.device_id][record.run_id] = record

    async def get_active(self, device_id: str, run_id: str) -> Optional[RunRecord]:
        async with self._lock:
            return self._active.get(device_id, {}).get(run_id)

    async def update_progress(
        self, device_id: str, run_id: str, percent: int, message: str
    ) -> Optional[int]:
        """Raise the run's progress to *percent* and return the stored value.

        Lower values keep the current maximum. Returns ``None`` when the run
        is not active.
        """
        async with self._lock:
            record = self._active.get(device_id, {}).get(run_id)
            if record is None:
                return None
            record.progress = max(record.progress, min(percent, 99))
            if message:
                record.message = message
            return record.progress

    async def finish(
        self,
        device_id: str,
        run_id: str,
        status: RunStatus,
        message: str,
        result: Optional[Dict[str, Any]] = None,
    ) -> Optional[RunRecord]:
        if not status.terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        async with self._lock:
            record = self._active.get(device_id, {}).pop(run_id, None)
            if record is None:
                return None
            record.status = status
            record.message = message
            record.result = result
            record.progress = 100
            record.end_time = time.time()
            self._finished[device_id][run_id] = record
            return record

    async def get_finished(self, device_id: str, run_id: str) -> Optional[RunRecord]:
        async with self._lock:
            return self._finished.get(device_id, {}).get(run_id)

    async def forget(self, device_id: str, run_ids: Iterable[str]) -> None:
        async with self._lock:
            finished = self._finished.get(device_id)
            if not finished:
                return
            for run_id in run_ids:
                finished.pop(run_id, None)

    async def purge_finished(self, device_id: str) -> int:
        async with self._lock:
            return len(self._finished.pop(device_id, {}))

    async def list_active(self, device_id: Optional[str] = None) -> List[RunRecord]:
        async with self._lock:
            if device_id is not None:
                return list(self._active.get(device_id, {}).values())
            return [record for runs in self._active.values() for record in runs.values()]

    async def count_active(self, device_id: str) -> int:
        async with self._lock:
            return len(self._active.get(device_id, {}))
