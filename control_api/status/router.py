"""
Live status: latest snapshot over HTTP and a websocket stream.
"""

import asyncio
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from loguru import logger
from control_api.config import settings
from control_api.conductor import Conductor, get_conductor
from control_api.server.schemas import ServerStatusUpdate

router = APIRouter()
ws_router = APIRouter()


@router.get("")
async def get_status(conductor: Conductor = Depends(get_conductor)):
    """
    Latest health check results (empty until the first cycle completes).
    """
    latest = conductor.broadcaster.latest or ServerStatusUpdate()
    return latest.model_dump(mode="json", by_alias=True)


@ws_router.websocket("/ws/status")
async def status_stream(websocket: WebSocket):
    """
    Sends the latest snapshot immediately, then one message per health check tick.
    """
    broadcaster = websocket.app.state.conductor.broadcaster
    await websocket.accept()
    subscription = broadcaster.subscribe()
    logger.info(f"Status websocket connected: {websocket.client}")

    async def _receive():
        # Client messages are ignored, reading only surfaces the disconnect.
        while True:
            await websocket.receive_text()

    pump = asyncio.create_task(
        broadcaster.pump(subscription, websocket.send_text, settings.broadcast_send_timeout)
    )
    receiver = asyncio.create_task(_receive())
    try:
        done, _ = await asyncio.wait({pump, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.warning(f"Status websocket closed after error: {exc}")
        if pump in done and receiver not in done:
            try:
                await websocket.close(code=1011)
            except RuntimeError as exc:
                logger.debug(f"Status websocket already closed: {exc}")
    finally:
        for task in (pump, receiver):
            task.cancel()
        await asyncio.gather(pump, receiver, return_exceptions=True)
        broadcaster.unsubscribe(subscription)
        logger.info(f"Status websocket disconnected: {websocket.client}")
