"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層與 RoomSession 統一處理。

每個異常都帶有一個 ErrorKind，呈現層只需要看 kind 就知道該怎麼反應：
- VALIDATION：輸入錯誤，在送出任何網路請求前就拒絕
- NOT_FOUND：房間不存在，提示使用者重試或建立
- CONFLICT：唯一性 / 版本 / 狀態衝突，可重試
- TRANSIENT：儲存層暫時性錯誤，背景工作靜默重試，使用者動作顯示通知
- AUTHORIZATION：非 owner 執行 owner 動作（只是建議性的檢查，不是安全邊界）
"""
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    AUTHORIZATION = "authorization"


class WheelRoomError(Exception):
    """所有房間異常的基類"""
    kind = ErrorKind.TRANSIENT


# ============ 輸入驗證 ============

class InvalidInput(WheelRoomError):
    """名稱、房間代碼或選項格式錯誤"""
    kind = ErrorKind.VALIDATION


class InvalidSelectionInput(InvalidInput):
    """選項為空或總有效權重不為正數，無法抽選"""
    pass


class NoOptions(InvalidInput):
    """房間沒有可以轉的選項"""
    def __init__(self, room_code=None):
        self.room_code = room_code
        super().__init__(f"Room {room_code} has no options with positive weight")


# ============ Room 相關異常 ============

class RoomNotFound(WheelRoomError):
    """房間不存在"""
    kind = ErrorKind.NOT_FOUND

    def __init__(self, room_code):
        self.room_code = room_code
        super().__init__(f"Room {room_code} not found")


class RoomAlreadyExists(WheelRoomError):
    """指定的房間代碼已被使用"""
    kind = ErrorKind.CONFLICT

    def __init__(self, room_code):
        self.room_code = room_code
        super().__init__(f"Room {room_code} already exists")


class CodeGenerationExhausted(WheelRoomError):
    """多次重試仍無法產生唯一的房間代碼"""
    kind = ErrorKind.CONFLICT

    def __init__(self, attempts):
        self.attempts = attempts
        super().__init__(f"Failed to generate a unique room code after {attempts} attempts")


class VersionConflict(WheelRoomError):
    """寫入時的 state_version 與資料庫不符（有人先寫了）"""
    kind = ErrorKind.CONFLICT

    def __init__(self, room_code, expected, actual):
        self.room_code = room_code
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Room {room_code} changed (expected version {expected}, found {actual})"
        )


# ============ Spin 相關異常 ============

class AlreadySpinning(WheelRoomError):
    """房間正在轉動中，不接受新的 spin"""
    kind = ErrorKind.CONFLICT

    def __init__(self, room_code):
        self.room_code = room_code
        super().__init__(f"Room {room_code} is already spinning")


class SpinFailed(WheelRoomError):
    """spin 的權威寫入失敗（只回報給 owner）"""
    kind = ErrorKind.TRANSIENT


# ============ 儲存層 / 權限 ============

class TransientStoreError(WheelRoomError):
    """儲存層暫時性錯誤（網路、鎖、連線）"""
    kind = ErrorKind.TRANSIENT


class Forbidden(WheelRoomError):
    """非 owner 嘗試 owner 專屬動作"""
    kind = ErrorKind.AUTHORIZATION


def classify_error(exc: BaseException) -> WheelRoomError:
    """
    把任意異常歸類成 WheelRoomError

    已經是 WheelRoomError 的直接回傳；資料庫 / IO 錯誤視為暫時性錯誤；
    其他未知錯誤也歸為 TRANSIENT，讓呈現層一律顯示可關閉的通知。
    """
    if isinstance(exc, WheelRoomError):
        return exc
    if isinstance(exc, (SQLAlchemyError, OSError)):
        wrapped = TransientStoreError(f"Storage unavailable: {exc}")
    else:
        wrapped = TransientStoreError(f"Unexpected error: {exc}")
    wrapped.__cause__ = exc
    return wrapped
