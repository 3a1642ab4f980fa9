"""
Pydantic schemas

兩種用途：
1. API 的 request / response body
2. RoomStore 回傳給 client 核心的快照（從 ORM row 轉換，session 關閉後仍可安全使用）
"""
from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from models import SpinState


# ============ 快照 ============

class WheelOption(BaseModel):
    id: str
    label: str = Field(..., min_length=1, max_length=255)
    color: str = "#3b82f6"
    weight: float = Field(1.0, gt=0)
    # 舊版前端送 "count"
    segment_count: int = Field(
        1,
        ge=1,
        validation_alias=AliasChoices("segment_count", "segmentCount", "count"),
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("label")
    @classmethod
    def label_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("label must not be blank")
        return value


class RoomSnapshot(BaseModel):
    code: str
    owner_name: str
    owner_identity: Optional[str] = None
    participants: List[str] = []
    wheel_options: List[WheelOption] = []
    spin_state: SpinState = SpinState.IDLE
    current_result: Optional[str] = None
    spin_id: Optional[str] = None
    spin_started_at: Optional[datetime] = None
    state_version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ChatMessageSnapshot(BaseModel):
    id: int
    room_code: str
    sender_name: str
    sender_identity: Optional[str] = None
    sender_avatar: Optional[str] = None
    text: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SpinEventSnapshot(BaseModel):
    id: int
    room_code: str
    result: str
    spun_by: str
    spin_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============ Room API ============

class RoomCreate(BaseModel):
    host_name: str = Field(..., alias="hostName")
    host_identity: Optional[str] = Field(None, alias="hostIdentity")

    model_config = ConfigDict(populate_by_name=True)


class RoomCreateResponse(BaseModel):
    room_code: str = Field(..., serialization_alias="roomCode")
    host_name: str = Field(..., serialization_alias="hostName")


class RoomJoin(BaseModel):
    room_code: str = Field(..., alias="roomCode")
    name: str

    model_config = ConfigDict(populate_by_name=True)


class RoomJoinResponse(BaseModel):
    success: bool = True
    room_code: str = Field(..., serialization_alias="roomCode")
    name: str


class ParticipantAdd(BaseModel):
    name: str


class OptionsUpdate(BaseModel):
    actor: str
    identity: Optional[str] = None
    options: List[WheelOption]
    expected_version: Optional[int] = None


class StatusResponse(BaseModel):
    status: str


# ============ Chat / Spin API ============

class MessageSubmit(BaseModel):
    sender_name: str
    text: str
    sender_identity: Optional[str] = None
    sender_avatar: Optional[str] = None


class SpinRequest(BaseModel):
    actor: str
    identity: Optional[str] = None


class SpinResponse(BaseModel):
    result: str
    spin_id: str
    room: RoomSnapshot
