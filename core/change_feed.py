"""
ChangeFeed：把 push 訂閱與短輪詢統一成同一種事件串流

RoomSession 只看到 RoomUpdated / ChatAppended / SpinAppended，
不需要知道事件是推播來的還是輪詢比對出來的。

共同保證：
- RoomUpdated 依 state_version 遞增送出，舊的或重複的快照直接丟掉
- 房間快照是 latest-state：輪詢之間加入又離開的人不會產生事件
- ChatAppended / SpinAppended 逐筆送出、不跳過（id 大於最後看過的 id 才送）
- 背景抓取失敗（儲存層錯誤、資料列無法轉換）只記 log，下一輪再試
"""
import asyncio
import logging
from typing import AsyncIterator, List, Optional

from core.events import ChatAppended, FeedEvent, RoomUpdated, SpinAppended
from core.exceptions import classify_error
from models import SpinState
from schemas import ChatMessageSnapshot, RoomSnapshot, SpinEventSnapshot

logger = logging.getLogger(__name__)

PUSH = "push"
POLL = "poll"


def diff_snapshots(previous: Optional[RoomSnapshot], current: RoomSnapshot) -> RoomUpdated:
    """
    比較兩個房間快照，產生帶有變化摘要的 RoomUpdated

    spin 的邊緣觸發：
    - 非 spinning -> spinning，或 spin_id 換了：新的一次 spin 開始
    - spinning -> 非 spinning：spin 結束
    """
    if previous is None:
        return RoomUpdated(
            snapshot=current,
            joined=list(current.participants),
            spin_started=current.spin_state == SpinState.SPINNING,
        )

    before = set(previous.participants)
    after = set(current.participants)

    was_spinning = previous.spin_state == SpinState.SPINNING
    is_spinning = current.spin_state == SpinState.SPINNING
    new_spin = is_spinning and (not was_spinning or previous.spin_id != current.spin_id)

    return RoomUpdated(
        snapshot=current,
        joined=[p for p in current.participants if p not in before],
        left=[p for p in previous.participants if p not in after],
        spin_started=new_spin,
        spin_settled=was_spinning and not is_spinning,
    )


class ChangeFeed:
    """push 與 poll 共用的過濾 / 比對邏輯"""

    mode = None

    def __init__(
        self,
        store,
        code: str,
        baseline: Optional[RoomSnapshot] = None,
        last_message_id: int = 0,
        last_spin_event_id: int = 0,
    ):
        self.store = store
        self.code = code
        self.last_snapshot = baseline
        self.last_message_id = last_message_id
        self.last_spin_event_id = last_spin_event_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def accept_room(self, snapshot: RoomSnapshot) -> Optional[RoomUpdated]:
        """版本不比上一個新的快照回傳 None"""
        previous = self.last_snapshot
        if previous is not None and snapshot.state_version <= previous.state_version:
            return None
        self.last_snapshot = snapshot
        return diff_snapshots(previous, snapshot)

    def accept_message(self, message: ChatMessageSnapshot) -> Optional[ChatAppended]:
        if message.id <= self.last_message_id:
            return None
        self.last_message_id = message.id
        return ChatAppended(message=message)

    def accept_spin_event(self, event: SpinEventSnapshot) -> Optional[SpinAppended]:
        if event.id <= self.last_spin_event_id:
            return None
        self.last_spin_event_id = event.id
        return SpinAppended(event=event)

    def accept(self, event: FeedEvent) -> Optional[FeedEvent]:
        if isinstance(event, RoomUpdated):
            return self.accept_room(event.snapshot)
        if isinstance(event, ChatAppended):
            return self.accept_message(event.message)
        if isinstance(event, SpinAppended):
            return self.accept_spin_event(event.event)
        return None

    async def fetch_room(self) -> List[FeedEvent]:
        snapshot = await self.store.get_room(self.code)
        if snapshot is None:
            return []
        event = self.accept_room(snapshot)
        return [event] if event else []

    async def fetch_messages(self) -> List[FeedEvent]:
        messages = await self.store.list_messages(self.code, after_id=self.last_message_id)
        return [e for e in (self.accept_message(m) for m in messages) if e]

    async def fetch_spin_events(self) -> List[FeedEvent]:
        events = await self.store.list_spin_events(self.code, after_id=self.last_spin_event_id)
        return [e for e in (self.accept_spin_event(s) for s in events) if e]

    async def resync(self) -> List[FeedEvent]:
        """重新抓房間、以及所有比最後看過的 id 更新的訊息與 spin 紀錄"""
        events: List[FeedEvent] = []
        events.extend(await self.guarded(self.fetch_room, "Room fetch"))
        events.extend(await self.guarded(self.fetch_spin_events, "Spin history fetch"))
        events.extend(await self.guarded(self.fetch_messages, "Chat fetch"))
        return events

    async def guarded(self, fetch, action: str) -> List[FeedEvent]:
        """執行一次抓取；任何失敗都歸類後記 log，回傳空列表"""
        try:
            return await fetch()
        except Exception as e:
            error = classify_error(e)
            logger.warning(
                f"{action} for room {self.code} failed, will retry: {error}",
                exc_info=error is not e,
            )
            return []

    def events(self) -> AsyncIterator[FeedEvent]:
        raise NotImplementedError

    async def close(self) -> None:
        self._closed = True


class PushChangeFeed(ChangeFeed):
    """
    訂閱 RoomEventBus

    訂閱之後立刻做一次 resync，補上「join 寫入」到「開始訂閱」之間已提交的變更。
    """

    mode = PUSH

    def __init__(self, store, code: str, **kwargs):
        super().__init__(store, code, **kwargs)
        self._queue: Optional[asyncio.Queue] = None

    def _subscribe(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = self.store.bus.subscribe(self.code)
        return self._queue

    async def events(self) -> AsyncIterator[FeedEvent]:
        queue = self._subscribe()
        bus = self.store.bus

        for event in await self.resync():
            yield event

        while not self._closed:
            raw = await queue.get()
            if raw is None:
                break
            # queue 滿過：中間丟掉的事件只能靠 resync 補回
            if bus.take_overflow(queue):
                for event in await self.resync():
                    yield event
            for event in await self._handle(raw):
                yield event

    async def _handle(self, raw: FeedEvent) -> List[FeedEvent]:
        """
        聊天與 spin 紀錄只把推播當作「有新資料」的通知，實際資料列從 store 讀

        兩個寫入的發佈順序可能和 id 順序相反；直接信任推播的資料列會讓較小的 id 被過濾掉。
        """
        if isinstance(raw, ChatAppended):
            return await self.guarded(self.fetch_messages, "Chat fetch")
        if isinstance(raw, SpinAppended):
            return await self.guarded(self.fetch_spin_events, "Spin history fetch")
        event = self.accept(raw)
        return [event] if event else []

    async def close(self) -> None:
        if self._closed:
            return
        await super().close()
        if self._queue is not None:
            self.store.bus.unsubscribe(self.code, self._queue)
            # 喚醒正在等待的 events()；queue 已滿時 events() 下一次讀取就會看到 closed
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                pass


class PollingChangeFeed(ChangeFeed):
    """
    定期重新抓取並和最後看到的快照比較

    - 房間與 spin 紀錄：每 room_interval 秒
    - 聊天訊息：每 chat_interval 秒
    - 儲存層暫時性錯誤只記 log，下一輪再試
    """

    mode = POLL

    def __init__(self, store, code: str, room_interval: float = 0.5, chat_interval: float = 3.0, **kwargs):
        super().__init__(store, code, **kwargs)
        self.room_interval = room_interval
        self.chat_interval = chat_interval
        self._last_chat_poll: Optional[float] = None
        self._wakeup = asyncio.Event()

    async def poll_once(self, include_chat: bool = True) -> List[FeedEvent]:
        events: List[FeedEvent] = []
        events.extend(await self.guarded(self.fetch_room, "Room poll"))
        events.extend(await self.guarded(self.fetch_spin_events, "Spin history poll"))
        if include_chat:
            events.extend(await self.guarded(self.fetch_messages, "Chat poll"))
        return events

    def _chat_due(self, now: float) -> bool:
        if self._last_chat_poll is None or now - self._last_chat_poll >= self.chat_interval:
            self._last_chat_poll = now
            return True
        return False

    async def events(self) -> AsyncIterator[FeedEvent]:
        loop = asyncio.get_running_loop()
        while not self._closed:
            for event in await self.poll_once(include_chat=self._chat_due(loop.time())):
                yield event
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.room_interval)
            except asyncio.TimeoutError:
                pass

    async def close(self) -> None:
        await super().close()
        self._wakeup.set()


def open_change_feed(
    store,
    code: str,
    mode: str = PUSH,
    room_interval: float = 0.5,
    chat_interval: float = 3.0,
    **kwargs,
) -> ChangeFeed:
    """
    建立 ChangeFeed（每個 session 只決定一次）

    優先使用 push；store 沒有 bus 或指定 poll 時退回輪詢。
    """
    if mode == PUSH and getattr(store, "bus", None) is not None:
        return PushChangeFeed(store, code, **kwargs)
    if mode not in (PUSH, POLL):
        raise ValueError(f"Unknown feed mode: {mode}")
    return PollingChangeFeed(
        store, code, room_interval=room_interval, chat_interval=chat_interval, **kwargs
    )
