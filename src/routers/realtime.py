from __future__ import annotations

import asyncio
import contextlib

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from src.config import settings
from src.observability import log_event
from src.realtime.broadcaster import QueueSubscriber


router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def realtime_events(websocket: WebSocket):
    await websocket.accept()
    broadcaster = websocket.app.state.broadcaster
    subscriber = QueueSubscriber(asyncio.get_running_loop(), settings.realtime_subscriber_queue_size)
    broadcaster.add(subscriber)

    async def _drain_client() -> None:
        # Inbound frames are ignored; receiving surfaces the disconnect.
        while True:
            await websocket.receive_text()

    receiver = asyncio.create_task(_drain_client())
    try:
        while True:
            getter = asyncio.create_task(subscriber.next_message())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.remove(subscriber)
        receiver.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
            await receiver
        log_event("realtime_subscriber_disconnected")
