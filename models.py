"""
ORM models：Room、ChatMessage、SpinEvent

Room 是唯一的共享可變資源；ChatMessage 和 SpinEvent 只會新增（append-only）。
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Integer, JSON, String, Text

from database import Base


def utcnow() -> datetime:
    # SQLite 不保存時區，統一存 naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SpinState(str, enum.Enum):
    IDLE = "idle"
    SPINNING = "spinning"
    SETTLED = "settled"


class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(6), unique=True, index=True, nullable=False)

    owner_name = Column(String(40), nullable=False)
    owner_identity = Column(String(255), nullable=True)

    participants = Column(JSON, nullable=False, default=list)
    wheel_options = Column(JSON, nullable=False, default=list)

    spin_state = Column(Enum(SpinState), nullable=False, default=SpinState.IDLE)
    current_result = Column(String(255), nullable=True)
    spin_id = Column(String(32), nullable=True)
    spin_started_at = Column(DateTime, nullable=True)

    state_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_code = Column(String(6), index=True, nullable=False)
    sender_name = Column(String(40), nullable=False)
    sender_identity = Column(String(255), nullable=True)
    sender_avatar = Column(String(1024), nullable=True)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class SpinEvent(Base):
    __tablename__ = "spin_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_code = Column(String(6), index=True, nullable=False)
    result = Column(String(255), nullable=False)
    spun_by = Column(String(40), nullable=False)
    spin_id = Column(String(32), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
