from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from devicelab.services.broadcaster import TEST_CHANNEL
from devicelab.services.event_bus import EventBus, EventFilter

router = APIRouter(tags=["websocket"])

Snapshot = Callable[[], Awaitable[dict]]


def _for_device(device_id: Optional[str]) -> Optional[EventFilter]:
    if not device_id:
        return None
    return lambda event: event.get("deviceId") == device_id


async def _stream_channel(
    websocket: WebSocket,
    channel: str,
    accept: Optional[EventFilter] = None,
    snapshot: Optional[Snapshot] = None,
) -> None:
    event_bus: EventBus = websocket.app.state.event_bus
    await websocket.accept()
    # subscribe before taking the snapshot so no event falls in between
    queue = await event_bus.get_queue(channel)
    try:
        if snapshot is not None:
            await websocket.send_json(await snapshot())
        while True:
            event = await queue.get()
            if accept is None or accept(event):
                await websocket.send_json(event)
    except WebSocketDisconnect:
        pass
    finally:
        await event_bus.unsubscribe(channel, queue)


@router.websocket("/ws/tests")
async def tests_ws(websocket: WebSocket, deviceId: Optional[str] = None) -> None:
    run_manager = websocket.app.state.run_manager

    async def active_runs() -> dict:
        return {"event": "test:active", "runs": await run_manager.list_active(deviceId)}

    await _stream_channel(websocket, TEST_CHANNEL, _for_device(deviceId), active_runs)
