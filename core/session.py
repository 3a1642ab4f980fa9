"""
Room Session：單一參與者在單一房間內的狀態機

狀態：DISCONNECTED -> JOINING -> JOINED(OWNER | MEMBER) -> DISCONNECTED

規則：
- 遠端變更只透過 on_change() 進來，整個取代本地快照（不做欄位合併）
- 本地直接修改只用於自己剛寫入成功的結果（optimistic echo）
- 使用者動作（join / update_options / send_message / spin）不會丟出異常：
  回傳 ActionOutcome，失敗時加入可關閉的 Notice，本地狀態維持動作前的樣子
- 背景工作（heartbeat、輪詢）失敗只記 log

本地 spin 呈現：idle -> spinning -> settled
收到帶有結果的 spinning 快照就開始本地動畫，固定延遲後自行停在該結果，
不需要等 owner 的 idle 寫入；但 idle 先到的話會立即停下（晚加入的 client 也靠它同步）。
"""
import asyncio
import itertools
import logging
from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, ValidationError

from core.change_feed import ChangeFeed, diff_snapshots, open_change_feed
from core.events import ChatAppended, FeedEvent, RoomUpdated, SpinAppended
from core.exceptions import (
    ErrorKind,
    Forbidden,
    InvalidInput,
    RoomAlreadyExists,
    RoomNotFound,
    VersionConflict,
    WheelRoomError,
    classify_error,
)
from core.ownership import JoinRequest, resolve_ownership
from core.spin_coordinator import SpinCoordinator
from database import Settings, get_settings
from models import SpinState
from schemas import ChatMessageSnapshot, RoomSnapshot, SpinEventSnapshot, WheelOption
from services.naming_service import validate_display_name, validate_room_code

logger = logging.getLogger(__name__)

OPTIONS_WRITE_ATTEMPTS = 3


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    JOINING = "joining"
    JOINED = "joined"


class Role(str, Enum):
    OWNER = "owner"
    MEMBER = "member"


class ActionOutcome(BaseModel):
    ok: bool
    value: Any = None
    kind: Optional[ErrorKind] = None
    error: Optional[str] = None


class Notice(BaseModel):
    id: int
    action: str
    kind: ErrorKind
    message: str


class SpinPresenter:
    """動畫 / 音效等呈現層的介面（預設什麼都不做）"""

    def spin_started(self, target: str, duration: float) -> None:
        pass

    def spin_settled(self, result: str) -> None:
        pass


class RoomSession:

    def __init__(
        self,
        store,
        settings: Optional[Settings] = None,
        coordinator: Optional[SpinCoordinator] = None,
        presenter: Optional[SpinPresenter] = None,
        rng=None,
        feed_mode: Optional[str] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.coordinator = coordinator or SpinCoordinator(
            store,
            spin_duration=self.settings.spin_duration_seconds,
            rng=rng,
            stale_spin_timeout=self.settings.stale_spin_timeout,
        )
        self.presenter = presenter or SpinPresenter()
        self.feed_mode = feed_mode or self.settings.feed_mode

        self.state = SessionState.DISCONNECTED
        self.role: Optional[Role] = None
        self.ownership_rule: Optional[str] = None
        self.code: Optional[str] = None
        self.name: Optional[str] = None
        self.identity: Optional[str] = None

        self.room: Optional[RoomSnapshot] = None
        self.messages: List[ChatMessageSnapshot] = []
        self.spin_history: List[SpinEventSnapshot] = []
        self.draft = ""
        self.notices: List[Notice] = []

        # 本地呈現用的 spin 狀態
        self.spin_state = SpinState.IDLE
        self.target_result: Optional[str] = None
        self.displayed_result: Optional[str] = None
        self.local_spin_id: Optional[str] = None

        self.feed: Optional[ChangeFeed] = None
        self._feed_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._spin_timer: Optional[asyncio.Task] = None
        self._notice_ids = itertools.count(1)

    @property
    def is_owner(self) -> bool:
        return self.role == Role.OWNER

    @property
    def participants(self) -> List[str]:
        return list(self.room.participants) if self.room else []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.leave()

    # ============ 結果 / 通知 ============

    def _ok(self, value=None) -> ActionOutcome:
        return ActionOutcome(ok=True, value=value)

    def _fail(self, action: str, exc: BaseException) -> ActionOutcome:
        error = classify_error(exc)
        if error is not exc:
            logger.error(f"Unexpected failure during {action}: {exc}", exc_info=exc)
        else:
            logger.info(f"{action} failed ({error.kind.value}): {error}")

        notice = Notice(
            id=next(self._notice_ids),
            action=action,
            kind=error.kind,
            message=str(error),
        )
        self.notices.append(notice)
        return ActionOutcome(ok=False, kind=error.kind, error=str(error))

    def dismiss_notice(self, notice_id: int) -> None:
        self.notices = [n for n in self.notices if n.id != notice_id]

    # ============ Join / Leave ============

    async def join(
        self,
        code: str,
        name: str,
        is_owner_claim: bool = False,
        identity: Optional[str] = None,
        subscribe: bool = True,
    ) -> ActionOutcome:
        """
        加入房間

        流程：
        1. 在送出任何請求前驗證代碼與名稱
        2. 讀取房間；不存在且宣告 owner 時建立（預設選項，自己是唯一參與者）
        3. 判定 owner（explicit claim -> identity -> name，判定一次並快取）
        4. 名稱不在列表時加入（資料庫端 set-union，重複 join 不會重複加入）
        5. 載入最近的聊天紀錄與 spin 紀錄
        6. subscribe=True 時開啟 ChangeFeed 與 heartbeat

        返回：
            ActionOutcome，value 為加入後的房間快照
        """
        # 1. 驗證輸入
        try:
            code = validate_room_code(code)
            name = validate_display_name(name)
        except WheelRoomError as e:
            return self._fail("join", e)

        if self.state == SessionState.JOINED and (code, name) != (self.code, self.name):
            await self.leave()

        previous_state = self.state
        self.state = SessionState.JOINING
        request = JoinRequest(name=name, identity=identity, is_owner_claim=is_owner_claim)

        try:
            # 2-4. 讀取 / 建立 / 加入
            room, rule = await self._enter_room(code, request)

            # 5. 歷史紀錄
            limit = self.settings.chat_history_limit
            messages = await self.store.list_messages(code, limit=limit)
            spin_events = await self.store.list_spin_events(code, limit=limit)
        except Exception as e:
            self.state = previous_state
            return self._fail("join", e)

        rejoin = previous_state == SessionState.JOINED
        if not rejoin:
            self._reset_projection()
        self.code = code
        self.name = name
        self.identity = identity
        self.ownership_rule = rule
        self.role = Role.OWNER if rule else Role.MEMBER
        self.state = SessionState.JOINED

        for message in messages:
            self._append_message(message)
        for spin_event in spin_events:
            self._record_spin_event(spin_event)
        self._apply_room(RoomUpdated(snapshot=room))

        logger.info(
            f"{name} joined room {code} as {self.role.value}"
            + (f" ({rule})" if rule else "")
        )

        # 6. 訂閱
        if subscribe and not rejoin:
            self._start_background(room)

        return self._ok(room)

    def _reset_projection(self) -> None:
        self.room = None
        self.messages = []
        self.spin_history = []
        self.spin_state = SpinState.IDLE
        self.target_result = None
        self.displayed_result = None
        self.local_spin_id = None

    async def _enter_room(self, code: str, request: JoinRequest):
        room = await self.store.get_room(code)

        if room is None:
            if not request.is_owner_claim:
                raise RoomNotFound(code)
            try:
                room = await self.store.create_room(
                    request.name, owner_identity=request.identity, code=code
                )
            except RoomAlreadyExists:
                # 另一個 owner 裝置剛好先建立了
                room = await self.store.require_room(code)

        rule = resolve_ownership(room, request)

        if request.name not in room.participants:
            room = await self.store.add_participant(code, request.name)

        return room, rule

    def _start_background(self, room: RoomSnapshot) -> None:
        self.feed = open_change_feed(
            self.store,
            self.code,
            mode=self.feed_mode,
            room_interval=self.settings.room_poll_interval,
            chat_interval=self.settings.chat_poll_interval,
            baseline=room,
            last_message_id=max((m.id for m in self.messages), default=0),
            last_spin_event_id=max((s.id for s in self.spin_history), default=0),
        )
        logger.debug(f"Room {self.code} feed opened in {self.feed.mode} mode")
        self._feed_task = asyncio.create_task(self._consume_feed(self.feed))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def leave(self) -> None:
        """
        離開房間（best-effort）

        送不出去（process 被殺、網路斷線）時名稱會留在列表上，
        直到外部清理；這裡不保證存活狀態。
        owner 已排程的 settle 寫入不受影響。
        """
        if self.state == SessionState.DISCONNECTED:
            return

        tasks = [t for t in (self._feed_task, self._heartbeat_task, self._spin_timer) if t]
        for task in tasks:
            task.cancel()
        if self.feed is not None:
            await self.feed.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        code, name = self.code, self.name
        try:
            await self.store.remove_participant(code, name)
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"Could not remove {name} from room {code}: {error}", exc_info=error is not e)

        self.feed = None
        self._feed_task = None
        self._heartbeat_task = None
        self._spin_timer = None
        self.state = SessionState.DISCONNECTED
        self.role = None
        self.ownership_rule = None
        logger.info(f"{name} left room {code}")

    # ============ 背景工作 ============

    async def heartbeat(self) -> None:
        """更新房間的 last-modified；失敗只記 log"""
        if self.state != SessionState.JOINED:
            return
        try:
            await self.store.touch(self.code)
        except WheelRoomError as e:
            logger.warning(f"Heartbeat for room {self.code} failed: {e}")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            try:
                await self.heartbeat()
            except Exception:
                logger.error(f"Heartbeat loop error in room {self.code}", exc_info=True)

    async def _consume_feed(self, feed: ChangeFeed) -> None:
        """feed 的 iterator 意外結束時重新開始讀取，直到 feed 被關閉"""
        while not feed.closed:
            try:
                async for event in feed.events():
                    try:
                        self.on_change(event)
                    except Exception:
                        logger.error(f"Failed to apply {event.type} in room {self.code}", exc_info=True)
            except Exception:
                logger.error(f"Feed for room {self.code} stopped, reopening", exc_info=True)
                await asyncio.sleep(self.settings.room_poll_interval)

    # ============ 遠端變更 ============

    def on_change(self, event: FeedEvent) -> None:
        """ChangeFeed 送來的事件（遠端變更的唯一入口）"""
        if isinstance(event, RoomUpdated):
            self._apply_room(event)
        elif isinstance(event, ChatAppended):
            self._append_message(event.message)
        elif isinstance(event, SpinAppended):
            self._record_spin_event(event.event)

    def _apply_room(self, event: RoomUpdated) -> None:
        snapshot = event.snapshot
        if self.room is not None and snapshot.state_version < self.room.state_version:
            return

        self.room = snapshot

        if snapshot.spin_state == SpinState.SPINNING:
            if snapshot.spin_id != self.local_spin_id:
                self._begin_local_spin(snapshot)
            return

        if self.spin_state == SpinState.SPINNING:
            # 權威的 idle 比本地計時器先到
            self._settle_local_spin()
        elif snapshot.spin_id and snapshot.spin_id != self.local_spin_id:
            # 整段 spinning 都沒看到（晚加入或輪詢合併），直接顯示結果
            self.local_spin_id = snapshot.spin_id
            self.target_result = snapshot.current_result
            self._settle_local_spin()

    def _append_message(self, message: ChatMessageSnapshot) -> None:
        if any(m.id == message.id for m in self.messages):
            return
        self.messages.append(message)
        self.messages.sort(key=lambda m: (m.created_at, m.id))

    def _record_spin_event(self, spin_event: SpinEventSnapshot) -> None:
        if any(s.id == spin_event.id for s in self.spin_history):
            return
        self.spin_history.append(spin_event)

    # ============ 本地 spin 呈現 ============

    def _begin_local_spin(self, snapshot: RoomSnapshot) -> None:
        if self._spin_timer is not None:
            self._spin_timer.cancel()

        self.local_spin_id = snapshot.spin_id
        self.target_result = snapshot.current_result
        self.spin_state = SpinState.SPINNING

        duration = self.coordinator.spin_duration
        self._notify_presenter("spin_started", self.target_result, duration)
        self._spin_timer = asyncio.create_task(self._local_spin_timer(snapshot.spin_id, duration))

    async def _local_spin_timer(self, spin_id: str, duration: float) -> None:
        await asyncio.sleep(duration)
        if self.local_spin_id == spin_id and self.spin_state == SpinState.SPINNING:
            self._spin_timer = None
            self._settle_local_spin()

    def _settle_local_spin(self) -> None:
        if self._spin_timer is not None:
            self._spin_timer.cancel()
            self._spin_timer = None

        self.spin_state = SpinState.SETTLED
        self.displayed_result = self.target_result
        self._notify_presenter("spin_settled", self.displayed_result)

    def _notify_presenter(self, hook: str, *args) -> None:
        try:
            getattr(self.presenter, hook)(*args)
        except Exception:
            logger.error(f"Presenter hook {hook} failed", exc_info=True)

    # ============ 使用者動作 ============

    def _require_joined(self) -> None:
        if self.state != SessionState.JOINED:
            raise InvalidInput("Join a room first")

    def _require_owner(self, action: str) -> None:
        self._require_joined()
        if not self.is_owner:
            raise Forbidden(f"Only the room owner can {action}")

    async def update_options(self, options: Iterable[Any]) -> ActionOutcome:
        """
        整批替換選項（owner 限定）

        寫入時帶上最後看到的 state_version；
        版本衝突時重新讀取房間再寫，最多 OPTIONS_WRITE_ATTEMPTS 次。
        """
        try:
            self._require_owner("edit options")
            parsed = [
                option if isinstance(option, WheelOption) else WheelOption.model_validate(option)
                for option in options
            ]
        except ValidationError as e:
            return self._fail("update_options", InvalidInput(f"Invalid wheel option: {e}"))
        except WheelRoomError as e:
            return self._fail("update_options", e)

        conflict: Optional[VersionConflict] = None
        for _ in range(OPTIONS_WRITE_ATTEMPTS):
            try:
                room = await self.store.update_options(
                    self.code, parsed, expected_version=self.room.state_version
                )
            except VersionConflict as e:
                conflict = e
                try:
                    latest = await self.store.require_room(self.code)
                except Exception as refresh_error:
                    return self._fail("update_options", refresh_error)
                self._apply_room(diff_snapshots(self.room, latest))
                continue
            except Exception as e:
                return self._fail("update_options", e)

            self._apply_room(diff_snapshots(self.room, room))
            return self._ok(room)

        return self._fail("update_options", conflict)

    async def send_message(self, text: Optional[str] = None) -> ActionOutcome:
        """
        送出聊天訊息

        text 為 None 時送出 draft；送出前先清空 draft，失敗時還原。
        """
        raw = self.draft if text is None else text
        cleaned = (raw or "").strip()

        try:
            self._require_joined()
            if not cleaned:
                raise InvalidInput("Message is empty")
        except WheelRoomError as e:
            return self._fail("send_message", e)

        self.draft = ""
        try:
            message = await self.store.append_message(
                self.code, self.name, cleaned, sender_identity=self.identity
            )
        except Exception as e:
            self.draft = raw
            return self._fail("send_message", e)

        self._append_message(message)
        return self._ok(message)

    async def spin(self) -> ActionOutcome:
        """
        觸發 spin（owner 限定）

        結果在寫入前就決定，寫入後的快照直接當作 optimistic echo 套用，
        本地動畫立刻開始；feed 之後送來同一個 spin_id 的快照會被忽略。
        """
        try:
            self._require_owner("spin the wheel")
            outcome = await self.coordinator.spin(self.room, actor=self.name)
        except Exception as e:
            return self._fail("spin", e)

        self._apply_room(diff_snapshots(self.room, outcome.snapshot))
        return self._ok(outcome)
