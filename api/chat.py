"""
Chat API Endpoints

訊息只會新增；輪詢時帶上 after_id 取得之後的所有訊息，不會漏掉任何一筆。
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
import logging

from api.dependencies import get_store
from core.exceptions import InvalidInput, RoomNotFound, TransientStoreError
from core.store import RoomStore
from schemas import ChatMessageSnapshot, MessageSubmit
from services.naming_service import validate_display_name, validate_room_code

router = APIRouter(prefix="/api/rooms", tags=["chat"])
logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000


@router.get("/{code}/messages", response_model=List[ChatMessageSnapshot])
async def list_messages(
    code: str,
    after_id: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=500),
    store: RoomStore = Depends(get_store),
):
    """
    取得訊息（依時間遞增）

    參數：
        after_id: 只回傳 id 大於此值的訊息
        limit: 只取最新的 limit 筆
    """
    try:
        return await store.list_messages(validate_room_code(code), after_id=after_id, limit=limit)

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/{code}/messages", response_model=ChatMessageSnapshot)
async def send_message(code: str, message_data: MessageSubmit, store: RoomStore = Depends(get_store)):
    """
    發送聊天訊息

    前置條件：
    - 房間必須存在
    - 內容去除空白後不可為空
    """
    try:
        code = validate_room_code(code)
        sender = validate_display_name(message_data.sender_name)
        text = message_data.text.strip()
        if not text:
            raise InvalidInput("Message is empty")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise InvalidInput(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")

        return await store.append_message(
            code,
            sender,
            text,
            sender_identity=message_data.sender_identity,
            sender_avatar=message_data.sender_avatar,
        )

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to send message: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
