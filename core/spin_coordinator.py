"""
Spin Coordinator：owner 觸發的 spin 流程

流程：
1. 房間正在轉 -> AlreadySpinning（超過 stale_spin_timeout 的卡住 spin 先回收）
2. 沒有可轉的選項 -> NoOptions（完全不寫入）
3. 在任何寫入之前抽選一次，所有人最後都會停在這個結果
4. 一次原子寫入：spin_state=spinning + current_result=結果
5. 新增 SpinEvent 稽核紀錄
6. 固定延遲（動畫長度，所有 client 相同）後寫回 spin_state=idle，結果不變

第 6 步是 fire-and-forget 計時器：
如果 owner 的 process 在延遲中途死掉，房間會停在 spinning，
直到 stale_spin_timeout 之後下一次 spin 回收，或管理者呼叫 reset。
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Optional, Set

from pydantic import BaseModel

from core.exceptions import AlreadySpinning, SpinFailed, WheelRoomError
from models import SpinState, utcnow
from schemas import RoomSnapshot
from services.option_service import ensure_spinnable
from services.selection_service import select_option

logger = logging.getLogger(__name__)


class SpinOutcome(BaseModel):
    snapshot: RoomSnapshot
    result: str
    spin_id: str


class SpinCoordinator:

    def __init__(self, store, spin_duration: float = 4.0, rng=None, stale_spin_timeout: Optional[float] = None):
        self.store = store
        self.spin_duration = spin_duration
        self.rng = rng
        self.stale_spin_timeout = stale_spin_timeout
        self._pending: Set[asyncio.Task] = set()

    def is_stranded(self, room: RoomSnapshot) -> bool:
        """spinning 超過 stale_spin_timeout 視為卡住"""
        if room.spin_state != SpinState.SPINNING or not self.stale_spin_timeout:
            return False
        if room.spin_started_at is None:
            return True
        age = utcnow() - room.spin_started_at
        return age > timedelta(seconds=self.stale_spin_timeout)

    async def reap_stranded(self, code: str) -> RoomSnapshot:
        logger.warning(f"Reaping stranded spin in room {code}")
        return await self.store.reset_spin(code)

    async def spin(self, room: RoomSnapshot, actor: str) -> SpinOutcome:
        """
        執行一次 spin

        參數：
            room: 呼叫者最後看到的房間快照
            actor: 觸發者名稱（寫入稽核紀錄）

        返回：
            SpinOutcome（寫入後的快照、結果、spin_id）

        異常：
            AlreadySpinning: 房間正在轉
            NoOptions: 沒有可轉的選項
            SpinFailed: 權威寫入失敗
        """
        # 1. 檢查是否正在轉
        if room.spin_state == SpinState.SPINNING:
            if not self.is_stranded(room):
                raise AlreadySpinning(room.code)
            try:
                await self.reap_stranded(room.code)
            except WheelRoomError as e:
                raise SpinFailed(f"Could not recover stranded spin in room {room.code}: {e}") from e

        # 2. 檢查選項
        ensure_spinnable(room.wheel_options, room.code)

        # 3. 抽選（只做一次）
        winner = select_option(room.wheel_options, self.rng)
        spin_id = uuid.uuid4().hex

        # 4. 權威寫入
        try:
            snapshot = await self.store.begin_spin(room.code, winner.label, actor, spin_id)
        except AlreadySpinning:
            raise
        except WheelRoomError as e:
            logger.error(f"Spin write failed for room {room.code}: {e}")
            raise SpinFailed(f"Failed to start spin in room {room.code}") from e

        # 5. 稽核紀錄（失敗不影響這次 spin）
        try:
            await self.store.append_spin_event(room.code, winner.label, actor, spin_id=spin_id)
        except WheelRoomError as e:
            logger.error(f"Failed to record spin event for room {room.code}: {e}")

        # 6. 延遲後結束
        self._schedule_settle(room.code, spin_id)

        return SpinOutcome(snapshot=snapshot, result=winner.label, spin_id=spin_id)

    def _schedule_settle(self, code: str, spin_id: str) -> None:
        task = asyncio.create_task(self._settle_after_delay(code, spin_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _settle_after_delay(self, code: str, spin_id: str) -> None:
        await asyncio.sleep(self.spin_duration)
        try:
            await self.store.finish_spin(code, spin_id)
        except WheelRoomError as e:
            logger.error(f"Failed to settle spin {spin_id} in room {code}: {e}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """等待所有尚未完成的 settle 寫入"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def cancel(self) -> None:
        """取消所有 settle 計時器（process 關閉時；房間會留在 spinning）"""
        for task in list(self._pending):
            task.cancel()
