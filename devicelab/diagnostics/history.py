"""Bounded per-device history of finished runs."""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional

from devicelab.diagnostics.models import HistoryEntry


class HistoryStore:
    """Keep the most recent finished runs per device, newest first.

    Entries beyond ``limit`` are dropped from the tail on every append.
    """

    def __init__(self, limit: int = 100) -> None:
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self.limit = limit
        self._entries: Dict[str, List[HistoryEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, device_id: str, entry: HistoryEntry) -> List[str]:
        """Prepend *entry* and return the run ids evicted to respect the limit."""
        async with self._lock:
            entries = self._entries[device_id]
            entries.insert(0, entry)
            evicted = entries[self.limit:]
            del entries[self.limit:]
        return [item.run_id for item in evicted]

    async def list(self, device_id: str, limit: Optional[int] = None) -> List[HistoryEntry]:
        async with self._lock:
            entries = list(self._entries.get(device_id, ()))
        if limit is not None and limit >= 0:
            return entries[:limit]
        return entries

    async def get(self, device_id: str, run_id: str) -> Optional[HistoryEntry]:
        async with self._lock:
            for entry in self._entries.get(device_id, ()):
                if entry.run_id == run_id:
                    return entry
        return None

    async def clear(self, device_id: str) -> int:
        async with self._lock:
            removed = self._entries.pop(device_id, [])
        return len(removed)

    async def remove(self, device_id: str, run_id: str) -> bool:
        async with self._lock:
            entries = self._entries.get(device_id)
            if not entries:
                return False
            for index, entry in enumerate(entries):
                if entry.run_id == run_id:
                    del entries[index]
                    return True
        return False
