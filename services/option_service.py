"""
選項服務：預設轉盤與選項檢查

純計算邏輯，不碰資料庫
"""
from typing import List, Sequence

from schemas import WheelOption
from core.exceptions import NoOptions
from services.selection_service import total_effective_weight


DEFAULT_OPTIONS = [
    ("1", "Apple", "#ef4444"),
    ("2", "Banana", "#eab308"),
    ("3", "Orange", "#f97316"),
    ("4", "Grape", "#8b5cf6"),
]


def default_wheel_options() -> List[WheelOption]:
    """新房間的預設轉盤（4 個選項，權重 1，區塊數 1）"""
    return [
        WheelOption(id=option_id, label=label, color=color, weight=1, segment_count=1)
        for option_id, label, color in DEFAULT_OPTIONS
    ]


def ensure_spinnable(options: Sequence[WheelOption], room_code: str = None) -> None:
    """
    檢查選項是否可以轉

    異常：
        NoOptions: 選項為空或總有效權重為 0
    """
    if not options or total_effective_weight(options) <= 0:
        raise NoOptions(room_code)


def serialize_options(options: Sequence[WheelOption]) -> list:
    """轉成存進 JSON 欄位的 dict list（保持順序）"""
    return [option.model_dump() for option in options]
