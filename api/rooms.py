"""
Room API Endpoints

職責：
1. 建立房間（host）
2. 加入前的存在檢查（不修改參與者列表）
3. 房間快照（短輪詢用）
4. 參與者加入 / 離開、heartbeat
5. 選項更新（owner 限定，建議性檢查）
"""
from fastapi import APIRouter, Depends, HTTPException
import logging

from api.dependencies import get_store
from core.exceptions import (
    CodeGenerationExhausted,
    Forbidden,
    InvalidInput,
    RoomNotFound,
    TransientStoreError,
    VersionConflict,
)
from core.ownership import JoinRequest, resolve_ownership
from core.store import RoomStore
from schemas import (
    OptionsUpdate,
    ParticipantAdd,
    RoomCreate,
    RoomCreateResponse,
    RoomJoin,
    RoomJoinResponse,
    RoomSnapshot,
    StatusResponse,
)
from services.naming_service import validate_display_name, validate_room_code

router = APIRouter(prefix="/api/rooms", tags=["rooms"])
logger = logging.getLogger(__name__)


@router.post("", response_model=RoomCreateResponse)
async def create_room(room_data: RoomCreate, store: RoomStore = Depends(get_store)):
    """
    建立房間（Host endpoint）

    流程：
    1. 驗證 host 名稱
    2. 生成唯一代碼（碰撞最多重試 10 次）
    3. 建立 Room（預設轉盤，host 為 owner 與唯一參與者）

    返回：
        - roomCode: 6 位房間代碼
        - hostName: host 名稱
    """
    try:
        host_name = validate_display_name(room_data.host_name)
        room = await store.create_room(host_name, owner_identity=room_data.host_identity)

        logger.info(f"Room created: {room.code} by {host_name}")
        return RoomCreateResponse(room_code=room.code, host_name=host_name)

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CodeGenerationExhausted:
        raise HTTPException(status_code=500, detail="Failed to generate unique room code")
    except TransientStoreError as e:
        logger.error(f"Failed to create room: {e}")
        raise HTTPException(status_code=500, detail="Failed to create room in database")
    except Exception as e:
        logger.error(f"Failed to create room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/join", response_model=RoomJoinResponse)
async def join_room(join_data: RoomJoin, store: RoomStore = Depends(get_store)):
    """
    加入房間前的存在檢查

    不修改參與者列表：實際加入發生在 RoomSession.join（或 POST /participants）。
    """
    try:
        code = validate_room_code(join_data.room_code)
        name = validate_display_name(join_data.name)
        await store.require_room(code)

        return RoomJoinResponse(room_code=code, name=name)

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except Exception as e:
        logger.error(f"Failed to join room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to join room")


@router.get("/{code}", response_model=RoomSnapshot)
async def get_room(code: str, store: RoomStore = Depends(get_store)):
    """
    取得房間快照（短輪詢）

    前端比較 state_version 決定是否需要重新渲染。
    """
    try:
        return await store.require_room(validate_room_code(code))

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/{code}/participants", response_model=RoomSnapshot)
async def add_participant(code: str, participant: ParticipantAdd, store: RoomStore = Depends(get_store)):
    """加入參與者列表（冪等）"""
    try:
        code = validate_room_code(code)
        name = validate_display_name(participant.name)
        return await store.add_participant(code, name)

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.delete("/{code}/participants/{name}", response_model=RoomSnapshot)
async def remove_participant(code: str, name: str, store: RoomStore = Depends(get_store)):
    """離開房間（頁面關閉時呼叫，best-effort）"""
    try:
        return await store.remove_participant(validate_room_code(code), name)

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/{code}/heartbeat", response_model=StatusResponse)
async def heartbeat(code: str, store: RoomStore = Depends(get_store)):
    try:
        await store.touch(validate_room_code(code))
        return StatusResponse(status="ok")

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.put("/{code}/options", response_model=RoomSnapshot)
async def update_options(code: str, update: OptionsUpdate, store: RoomStore = Depends(get_store)):
    """
    更新轉盤選項（owner endpoint）

    owner 檢查只是建議性的（identity 或名稱比對），不是安全邊界。

    參數：
        update.expected_version: 帶上時做版本檢查，不符回 409
    """
    try:
        code = validate_room_code(code)
        room = await store.require_room(code)

        request = JoinRequest(name=update.actor, identity=update.identity)
        if not resolve_ownership(room, request):
            raise Forbidden(f"{update.actor} is not the owner of room {code}")

        return await store.update_options(code, update.options, expected_version=update.expected_version)

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Forbidden as e:
        raise HTTPException(status_code=403, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except VersionConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to update options: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
