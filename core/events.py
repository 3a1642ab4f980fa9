"""
Feed events 與 in-process 推播匯流排

RoomStore 每次寫入成功後發佈事件到 RoomEventBus（push 模式的來源）；
ChangeFeed 把事件過濾、補上 diff 之後交給 RoomSession。
"""
import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Set, Union

from pydantic import BaseModel

from schemas import ChatMessageSnapshot, RoomSnapshot, SpinEventSnapshot

logger = logging.getLogger(__name__)


class RoomUpdated(BaseModel):
    """
    房間快照更新（latest-state，中間狀態可能被合併掉）

    joined / left / spin_started / spin_settled 是和上一個快照比較的結果，
    由 ChangeFeed 填入；bus 上原始事件這些欄位都是空的。
    """
    type: str = "room_updated"
    snapshot: RoomSnapshot
    joined: List[str] = []
    left: List[str] = []
    spin_started: bool = False
    spin_settled: bool = False


class ChatAppended(BaseModel):
    type: str = "chat_appended"
    message: ChatMessageSnapshot


class SpinAppended(BaseModel):
    type: str = "spin_appended"
    event: SpinEventSnapshot


FeedEvent = Union[RoomUpdated, ChatAppended, SpinAppended]


def event_room_code(event: FeedEvent) -> str:
    if isinstance(event, RoomUpdated):
        return event.snapshot.code
    if isinstance(event, ChatAppended):
        return event.message.room_code
    return event.event.room_code


class RoomEventBus:
    """
    以房間代碼分組的訂閱表

    只在單一 event loop 內使用：publish 必須在 loop thread 上呼叫
    （RoomStore 在 await thread pool 回來之後才發佈）。
    """

    def __init__(self, max_queue_size: int = 1000):
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)
        # 曾經滿到丟事件的 queue，訂閱者下次讀取前要先 resync
        self._overflowed: Set[asyncio.Queue] = set()
        self._max_queue_size = max_queue_size

    def subscribe(self, code: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[code].add(queue)
        logger.debug(f"Subscriber added for room {code} ({len(self._subscribers[code])} total)")
        return queue

    def unsubscribe(self, code: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(code)
        if not subscribers:
            return
        subscribers.discard(queue)
        self._overflowed.discard(queue)
        if not subscribers:
            del self._subscribers[code]

    def subscriber_count(self, code: str) -> int:
        return len(self._subscribers.get(code, ()))

    def publish(self, event: FeedEvent) -> None:
        code = event_room_code(event)
        for queue in list(self._subscribers.get(code, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self._overflowed.add(queue)
                logger.warning(f"Dropping {event.type} for slow subscriber in room {code}")

    def take_overflow(self, queue: asyncio.Queue) -> bool:
        """回傳 queue 是否丟過事件，並清除標記"""
        if queue in self._overflowed:
            self._overflowed.discard(queue)
            return True
        return False
