"""
Room Manager：房間資料列的所有讀寫

職責：
1. 建立 Room（代碼唯一性重試）
2. participants 的原子 set-union / 移除
3. options 更新（可選的版本檢查）
4. spin 狀態轉換（idle -> spinning -> idle）
5. Chat / SpinEvent 的新增與查詢

原則：
- 全部同步、全部在一個 transaction 內（@transactional）
- 修改 Room 前一律先鎖定該列
- 只回傳 ORM 物件，轉換成快照由 RoomStore 負責
"""
from sqlalchemy.orm import Session
from typing import Callable, List, Optional, Sequence
import logging

from models import Room, ChatMessage, SpinEvent, SpinState, utcnow
from schemas import WheelOption
from core.locks import with_room_lock
from core.exceptions import (
    AlreadySpinning,
    CodeGenerationExhausted,
    RoomAlreadyExists,
    RoomNotFound,
    VersionConflict,
)
from services.naming_service import generate_room_code
from services.option_service import default_wheel_options, serialize_options
from services.state_service import bump_state_version, touch
from database import transactional

logger = logging.getLogger(__name__)


def _locked_room(db: Session, code: str) -> Room:
    room = with_room_lock(code, db).first()
    if not room:
        raise RoomNotFound(code)
    return room


class RoomManager:
    """Room 資料列管理器"""

    @staticmethod
    @transactional
    def create_room(
        db: Session,
        owner_name: str,
        owner_identity: Optional[str] = None,
        code: Optional[str] = None,
        options: Optional[Sequence[WheelOption]] = None,
        max_attempts: int = 10,
        code_generator: Callable[[], str] = generate_room_code,
    ) -> Room:
        """
        建立新房間

        流程：
        1. 決定房間代碼（指定的代碼或隨機生成）
        2. 建立 Room，owner 為唯一的參與者

        參數：
            db: SQLAlchemy Session
            owner_name: owner 顯示名稱
            owner_identity: owner 的永久識別（email 等，可為 None）
            code: 指定的房間代碼；None 表示自動生成
            options: 初始選項；None 使用預設轉盤
            max_attempts: 自動生成代碼的最大嘗試次數

        返回：
            新建立的 Room

        異常：
            RoomAlreadyExists: 指定的代碼已被使用
            CodeGenerationExhausted: 重試 max_attempts 次仍然碰撞
        """
        # 1. 決定房間代碼
        if code is not None:
            if db.query(Room).filter(Room.code == code).first():
                raise RoomAlreadyExists(code)
        else:
            for _ in range(max_attempts):
                candidate = code_generator()
                if not db.query(Room).filter(Room.code == candidate).first():
                    code = candidate
                    break
                logger.warning(f"Room code collision detected, regenerating: {candidate}")
            else:
                raise CodeGenerationExhausted(max_attempts)

        # 2. 建立 Room
        if options is None:
            options = default_wheel_options()

        now = utcnow()
        room = Room(
            code=code,
            owner_name=owner_name,
            owner_identity=owner_identity,
            participants=[owner_name],
            wheel_options=serialize_options(options),
            spin_state=SpinState.IDLE,
            current_result=None,
            state_version=1,
            created_at=now,
            updated_at=now,
        )
        db.add(room)
        db.flush()

        logger.info(f"Created room {code} owned by {owner_name}")
        return room

    @staticmethod
    def get_room_by_code(db: Session, code: str) -> Optional[Room]:
        """透過房間代碼取得 Room（不存在回傳 None）"""
        return db.query(Room).filter(Room.code == code).first()

    @staticmethod
    @transactional
    def add_participant(db: Session, code: str, name: str) -> Room:
        """
        把名稱加入參與者列表（set-union，冪等）

        在資料庫端、鎖定該列後做 union，取代 client 端的
        read-modify-write，避免兩人同時加入時後寫的蓋掉先寫的。
        """
        room = _locked_room(db, code)
        if name in room.participants:
            return room

        # JSON 欄位要整個重新指定，SQLAlchemy 才偵測得到變更
        room.participants = list(room.participants) + [name]
        bump_state_version(room, reason="participant_joined")
        logger.info(f"{name} joined room {code}")
        return room

    @staticmethod
    @transactional
    def remove_participant(db: Session, code: str, name: str) -> Room:
        """從參與者列表移除名稱（不存在時不做事）"""
        room = _locked_room(db, code)
        if name not in room.participants:
            return room

        room.participants = [p for p in room.participants if p != name]
        bump_state_version(room, reason="participant_left")
        logger.info(f"{name} left room {code}")
        return room

    @staticmethod
    @transactional
    def touch_room(db: Session, code: str) -> Room:
        """heartbeat：只更新 updated_at"""
        room = _locked_room(db, code)
        touch(room)
        return room

    @staticmethod
    @transactional
    def update_options(
        db: Session,
        code: str,
        options: Sequence[WheelOption],
        expected_version: Optional[int] = None,
    ) -> Room:
        """
        整批替換轉盤選項

        參數：
            expected_version: 呼叫者最後看到的 state_version；
                              不為 None 且與資料庫不同時拒絕寫入

        異常：
            VersionConflict: 版本不符
        """
        room = _locked_room(db, code)
        if expected_version is not None and room.state_version != expected_version:
            raise VersionConflict(code, expected_version, room.state_version)

        room.wheel_options = serialize_options(options)
        bump_state_version(room, reason="options_updated")
        return room

    @staticmethod
    @transactional
    def begin_spin(db: Session, code: str, result: str, actor: str, spin_id: str) -> Room:
        """
        開始轉動（狀態轉換 idle/settled -> spinning）

        一次寫入 spin_state 與最終結果：
        每個 client 收到這次更新時就已經知道答案，
        各自播放動畫並停在同一個結果上。

        異常：
            AlreadySpinning: 房間已在轉動中
        """
        room = _locked_room(db, code)
        if room.spin_state == SpinState.SPINNING:
            raise AlreadySpinning(code)

        room.spin_state = SpinState.SPINNING
        room.current_result = result
        room.spin_id = spin_id
        room.spin_started_at = utcnow()
        bump_state_version(room, reason="spin_started")

        logger.info(f"Room {code} spin {spin_id} started by {actor}: {result}")
        return room

    @staticmethod
    @transactional
    def finish_spin(db: Session, code: str, spin_id: str) -> Room:
        """
        結束轉動（spinning -> idle），結果保持不變

        只有 spin_id 仍是目前這一次 spin 時才會寫入，
        避免舊的計時器把新的 spin 提早結束。
        """
        room = _locked_room(db, code)
        if room.spin_state != SpinState.SPINNING or room.spin_id != spin_id:
            logger.debug(f"Ignoring stale settle for room {code} spin {spin_id}")
            return room

        room.spin_state = SpinState.IDLE
        bump_state_version(room, reason="spin_settled")

        logger.info(f"Room {code} spin {spin_id} settled on {room.current_result}")
        return room

    @staticmethod
    @transactional
    def reset_spin(db: Session, code: str) -> Room:
        """管理用：強制把卡在 spinning 的房間恢復成 idle"""
        room = _locked_room(db, code)
        if room.spin_state != SpinState.SPINNING:
            return room

        room.spin_state = SpinState.IDLE
        bump_state_version(room, reason="spin_reset")
        logger.warning(f"Room {code} spin {room.spin_id} reset to idle")
        return room

    # ============ Chat / SpinEvent ============

    @staticmethod
    @transactional
    def append_message(
        db: Session,
        code: str,
        sender_name: str,
        text: str,
        sender_identity: Optional[str] = None,
        sender_avatar: Optional[str] = None,
    ) -> ChatMessage:
        if not RoomManager.get_room_by_code(db, code):
            raise RoomNotFound(code)

        message = ChatMessage(
            room_code=code,
            sender_name=sender_name,
            sender_identity=sender_identity,
            sender_avatar=sender_avatar,
            text=text,
            created_at=utcnow(),
        )
        db.add(message)
        db.flush()
        return message

    @staticmethod
    def list_messages(
        db: Session, code: str, after_id: int = 0, limit: Optional[int] = None
    ) -> List[ChatMessage]:
        """
        取得 after_id 之後的所有訊息（依 id 遞增）

        limit 有值時取「最新的 limit 筆」，但仍以遞增順序回傳。
        """
        query = db.query(ChatMessage).filter(
            ChatMessage.room_code == code,
            ChatMessage.id > after_id,
        )
        if limit is None:
            return query.order_by(ChatMessage.id).all()

        rows = query.order_by(ChatMessage.id.desc()).limit(limit).all()
        return list(reversed(rows))

    @staticmethod
    @transactional
    def append_spin_event(
        db: Session, code: str, result: str, spun_by: str, spin_id: Optional[str] = None
    ) -> SpinEvent:
        event = SpinEvent(
            room_code=code,
            result=result,
            spun_by=spun_by,
            spin_id=spin_id,
            created_at=utcnow(),
        )
        db.add(event)
        db.flush()
        return event

    @staticmethod
    def list_spin_events(
        db: Session, code: str, after_id: int = 0, limit: Optional[int] = None
    ) -> List[SpinEvent]:
        query = db.query(SpinEvent).filter(
            SpinEvent.room_code == code,
            SpinEvent.id > after_id,
        )
        if limit is None:
            return query.order_by(SpinEvent.id).all()

        rows = query.order_by(SpinEvent.id.desc()).limit(limit).all()
        return list(reversed(rows))
