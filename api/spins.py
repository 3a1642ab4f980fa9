"""
Spin API Endpoints

- POST /spin：owner 觸發（伺服器端執行 SpinCoordinator，settle 計時器跑在伺服器的 event loop）
- GET /spins：spin 稽核紀錄
- POST /spin/reset：管理用，把卡在 spinning 的房間恢復成 idle
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
import logging

from api.dependencies import get_coordinator, get_store
from core.exceptions import (
    AlreadySpinning,
    Forbidden,
    InvalidInput,
    RoomNotFound,
    SpinFailed,
    TransientStoreError,
)
from core.ownership import JoinRequest, resolve_ownership
from core.spin_coordinator import SpinCoordinator
from core.store import RoomStore
from schemas import RoomSnapshot, SpinEventSnapshot, SpinRequest, SpinResponse
from services.naming_service import validate_room_code

router = APIRouter(prefix="/api/rooms", tags=["spins"])
logger = logging.getLogger(__name__)


@router.post("/{code}/spin", response_model=SpinResponse)
async def spin(
    code: str,
    spin_data: SpinRequest,
    store: RoomStore = Depends(get_store),
    coordinator: SpinCoordinator = Depends(get_coordinator),
):
    """
    轉動轉盤（owner endpoint）

    效果：
    - 立刻寫入 spin_state=spinning 與最終結果
    - spin_duration 秒後寫回 idle（結果不變）

    返回：
        - result: 中選的選項
        - spin_id: 這次 spin 的識別
        - room: 寫入後的房間快照
    """
    try:
        code = validate_room_code(code)
        room = await store.require_room(code)

        request = JoinRequest(name=spin_data.actor, identity=spin_data.identity)
        if not resolve_ownership(room, request):
            raise Forbidden(f"{spin_data.actor} is not the owner of room {code}")

        outcome = await coordinator.spin(room, actor=spin_data.actor)
        return SpinResponse(result=outcome.result, spin_id=outcome.spin_id, room=outcome.snapshot)

    except InvalidInput as e:
        # 包含 NoOptions
        raise HTTPException(status_code=400, detail=str(e))
    except Forbidden as e:
        raise HTTPException(status_code=403, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except AlreadySpinning as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (SpinFailed, TransientStoreError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to spin: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{code}/spins", response_model=List[SpinEventSnapshot])
async def list_spins(
    code: str,
    after_id: int = Query(0, ge=0),
    store: RoomStore = Depends(get_store),
):
    try:
        return await store.list_spin_events(validate_room_code(code), after_id=after_id)

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/{code}/spin/reset", response_model=RoomSnapshot)
async def reset_spin(code: str, coordinator: SpinCoordinator = Depends(get_coordinator)):
    """
    管理用：恢復卡住的 spin

    用途：
    - owner 在動畫延遲中途斷線，idle 從未寫入
    """
    try:
        return await coordinator.reap_stranded(validate_room_code(code))

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
