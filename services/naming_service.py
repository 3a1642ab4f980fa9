"""
命名服務：生成與驗證 Room Code、驗證顯示名稱

純計算邏輯，不涉及狀態轉換
"""
import random
import re

from core.exceptions import InvalidInput

# 排除容易混淆的字元：0/O、1/I
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 6
MAX_NAME_LENGTH = 40

_ROOM_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$")
_rng = random.SystemRandom()


def generate_room_code() -> str:
    """
    生成隨機的 6 位房間代碼

    範例：K7PQ2M, XYZ9AB

    注意：
    - 不檢查唯一性（由呼叫者負責重試）
    - 32^6 ≈ 10 億種可能，碰撞機率極低
    """
    return ''.join(_rng.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def normalize_room_code(code: str) -> str:
    """去除空白並轉大寫"""
    return (code or "").strip().upper()


def validate_room_code(code: str) -> str:
    """
    驗證並正規化房間代碼

    生成時使用無歧義字母表，但接受任何 6 位大寫英數字
    （使用者自訂的代碼，例如 ABC123）。

    異常：
        InvalidInput: 空字串或格式錯誤
    """
    normalized = normalize_room_code(code)
    if not normalized:
        raise InvalidInput("Room code is required")
    if not _ROOM_CODE_PATTERN.match(normalized):
        raise InvalidInput(
            f"Room code must be {ROOM_CODE_LENGTH} letters or digits, got {code!r}"
        )
    return normalized


def validate_display_name(name: str) -> str:
    """
    驗證顯示名稱

    返回：
        去除前後空白的名稱

    異常：
        InvalidInput: 空白或過長
    """
    normalized = (name or "").strip()
    if not normalized:
        raise InvalidInput("Name is required")
    if len(normalized) > MAX_NAME_LENGTH:
        raise InvalidInput(f"Name must be at most {MAX_NAME_LENGTH} characters")
    return normalized
