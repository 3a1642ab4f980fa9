"""
WebSocket push endpoint

每個連線開一個 PushChangeFeed，把過濾後的事件以 JSON 推給 client。
client 可以在連線時帶 after_message_id / after_spin_id，避免重收已經有的紀錄。
"""
import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core.change_feed import PushChangeFeed
from core.exceptions import InvalidInput
from services.naming_service import validate_room_code

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)


async def _forward(websocket: WebSocket, feed: PushChangeFeed) -> None:
    async for event in feed.events():
        await websocket.send_json(event.model_dump(mode="json"))


async def _close_with_error(websocket: WebSocket) -> None:
    try:
        await websocket.close(code=1011)
    except RuntimeError:
        # client 已經斷線
        logger.debug("WebSocket already closed")


async def _wait_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/rooms/{code}")
async def room_events(
    websocket: WebSocket,
    code: str,
    after_message_id: int = 0,
    after_spin_id: int = 0,
):
    try:
        code = validate_room_code(code)
    except InvalidInput:
        await websocket.close(code=1008)
        return

    store = websocket.app.state.store
    await websocket.accept()

    feed = PushChangeFeed(
        store,
        code,
        last_message_id=after_message_id,
        last_spin_event_id=after_spin_id,
    )
    forward = asyncio.create_task(_forward(websocket, feed))
    disconnect = asyncio.create_task(_wait_disconnect(websocket))
    logger.info(f"WebSocket subscribed to room {code}")

    try:
        done, _ = await asyncio.wait({forward, disconnect}, return_when=asyncio.FIRST_COMPLETED)
        if forward in done and not forward.cancelled():
            error = forward.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error(f"WebSocket for room {code} failed: {error}", exc_info=error)
                await _close_with_error(websocket)
    finally:
        await feed.close()
        for task in (forward, disconnect):
            task.cancel()
        await asyncio.gather(forward, disconnect, return_exceptions=True)
        logger.info(f"WebSocket for room {code} closed")
