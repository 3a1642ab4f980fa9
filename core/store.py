"""
RoomStore：RoomManager 的非同步外觀

client 核心（RoomSession / ChangeFeed / SpinCoordinator）和 API 層都只透過這裡存取資料：
- 每個操作在 thread pool 內開一個 DB session 執行，不阻塞 event loop
- 同一個 store 的操作以 lock 序列化（SQLite 共用連線時必要）
- session 關閉前就把 ORM row 轉成 pydantic 快照
- SQLAlchemyError 一律轉成 TransientStoreError
- 寫入成功後發佈事件到 RoomEventBus（有設定的話）
"""
import logging
import threading
from typing import List, Optional, Sequence

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from core.events import ChatAppended, RoomEventBus, RoomUpdated, SpinAppended
from core.exceptions import RoomNotFound, TransientStoreError
from core.room_manager import RoomManager
from schemas import ChatMessageSnapshot, RoomSnapshot, SpinEventSnapshot, WheelOption

logger = logging.getLogger(__name__)


def _room_snapshot(room) -> Optional[RoomSnapshot]:
    if room is None:
        return None
    return RoomSnapshot.model_validate(room)


class RoomStore:

    def __init__(self, session_factory, bus: Optional[RoomEventBus] = None, code_generation_attempts: int = 10):
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self.bus = bus
        self.code_generation_attempts = code_generation_attempts

    def _call(self, func, *args, **kwargs):
        with self._lock:
            db = self._session_factory()
            try:
                return func(db, *args, **kwargs)
            finally:
                db.close()

    async def _run(self, func, *args, **kwargs):
        try:
            return await run_in_threadpool(self._call, func, *args, **kwargs)
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Storage operation {func.__name__} failed: {e}") from e

    def _publish_room(self, snapshot: RoomSnapshot) -> None:
        if self.bus is not None:
            self.bus.publish(RoomUpdated(snapshot=snapshot))

    async def _write_room(self, func, *args, **kwargs) -> RoomSnapshot:
        def unit(db, *a, **kw):
            return _room_snapshot(func(db, *a, **kw))

        snapshot = await self._run(unit, *args, **kwargs)
        self._publish_room(snapshot)
        return snapshot

    # ============ Room ============

    async def get_room(self, code: str) -> Optional[RoomSnapshot]:
        def unit(db):
            return _room_snapshot(RoomManager.get_room_by_code(db, code))

        return await self._run(unit)

    async def require_room(self, code: str) -> RoomSnapshot:
        room = await self.get_room(code)
        if room is None:
            raise RoomNotFound(code)
        return room

    async def create_room(
        self,
        owner_name: str,
        owner_identity: Optional[str] = None,
        code: Optional[str] = None,
        options: Optional[Sequence[WheelOption]] = None,
    ) -> RoomSnapshot:
        return await self._write_room(
            RoomManager.create_room,
            owner_name,
            owner_identity=owner_identity,
            code=code,
            options=options,
            max_attempts=self.code_generation_attempts,
        )

    async def add_participant(self, code: str, name: str) -> RoomSnapshot:
        return await self._write_room(RoomManager.add_participant, code, name)

    async def remove_participant(self, code: str, name: str) -> RoomSnapshot:
        return await self._write_room(RoomManager.remove_participant, code, name)

    async def touch(self, code: str) -> RoomSnapshot:
        # heartbeat 不發佈事件
        def unit(db):
            return _room_snapshot(RoomManager.touch_room(db, code))

        return await self._run(unit)

    async def update_options(
        self, code: str, options: Sequence[WheelOption], expected_version: Optional[int] = None
    ) -> RoomSnapshot:
        return await self._write_room(
            RoomManager.update_options, code, options, expected_version=expected_version
        )

    async def begin_spin(self, code: str, result: str, actor: str, spin_id: str) -> RoomSnapshot:
        return await self._write_room(RoomManager.begin_spin, code, result, actor, spin_id)

    async def finish_spin(self, code: str, spin_id: str) -> RoomSnapshot:
        return await self._write_room(RoomManager.finish_spin, code, spin_id)

    async def reset_spin(self, code: str) -> RoomSnapshot:
        return await self._write_room(RoomManager.reset_spin, code)

    # ============ Chat ============

    async def append_message(
        self,
        code: str,
        sender_name: str,
        text: str,
        sender_identity: Optional[str] = None,
        sender_avatar: Optional[str] = None,
    ) -> ChatMessageSnapshot:
        def unit(db):
            row = RoomManager.append_message(
                db, code, sender_name, text,
                sender_identity=sender_identity,
                sender_avatar=sender_avatar,
            )
            return ChatMessageSnapshot.model_validate(row)

        message = await self._run(unit)
        if self.bus is not None:
            self.bus.publish(ChatAppended(message=message))
        return message

    async def list_messages(
        self, code: str, after_id: int = 0, limit: Optional[int] = None
    ) -> List[ChatMessageSnapshot]:
        def unit(db):
            rows = RoomManager.list_messages(db, code, after_id=after_id, limit=limit)
            return [ChatMessageSnapshot.model_validate(row) for row in rows]

        return await self._run(unit)

    # ============ Spin events ============

    async def append_spin_event(
        self, code: str, result: str, spun_by: str, spin_id: Optional[str] = None
    ) -> SpinEventSnapshot:
        def unit(db):
            row = RoomManager.append_spin_event(db, code, result, spun_by, spin_id=spin_id)
            return SpinEventSnapshot.model_validate(row)

        event = await self._run(unit)
        if self.bus is not None:
            self.bus.publish(SpinAppended(event=event))
        return event

    async def list_spin_events(
        self, code: str, after_id: int = 0, limit: Optional[int] = None
    ) -> List[SpinEventSnapshot]:
        def unit(db):
            rows = RoomManager.list_spin_events(db, code, after_id=after_id, limit=limit)
            return [SpinEventSnapshot.model_validate(row) for row in rows]

        return await self._run(unit)
