"""
抽選服務：加權輪盤選擇（weighted roulette）

純計算邏輯，沒有 I/O。

有效權重 = weight × segment_count
- segment_count 同時放大視覺上的區塊數與機率，兩者一致
- 不是只看 weight，也不是只看 segment_count

決定性：相同的 (options, r) 一定回傳相同的選項，
所以選項必須以固定順序（加入順序）走訪。
"""
import random
from typing import Optional, Sequence

from schemas import WheelOption
from core.exceptions import InvalidSelectionInput

_system_rng = random.SystemRandom()


def effective_weight(option: WheelOption) -> float:
    return option.weight * option.segment_count


def total_effective_weight(options: Sequence[WheelOption]) -> float:
    return sum(effective_weight(option) for option in options)


def _check_options(options: Sequence[WheelOption]) -> float:
    if not options:
        raise InvalidSelectionInput("Cannot select from an empty option list")

    for option in options:
        if effective_weight(option) < 0:
            raise InvalidSelectionInput(
                f"Option {option.id!r} has a negative effective weight"
            )

    total = total_effective_weight(options)
    if total <= 0:
        raise InvalidSelectionInput("Total effective weight must be positive")
    return total


def pick_by_draw(options: Sequence[WheelOption], r: float) -> WheelOption:
    """
    用指定的抽選值 r 選出選項

    演算法：
    1. 依序累加每個選項的有效權重
    2. 回傳第一個「累加值 > r」的選項
    3. 浮點誤差導致沒有選項命中時，回傳最後一個有效權重 > 0 的選項
       （上界視為閉區間，不會默默退回第一個選項）

    參數：
        options: 選項（順序即走訪順序）
        r: 落在 [0, total) 的抽選值

    返回：
        中選的 WheelOption（一定是 options 的成員）

    異常：
        InvalidSelectionInput: 選項為空、有負權重、或總權重不為正數
    """
    _check_options(options)

    cumulative = 0.0
    for option in options:
        weight = effective_weight(option)
        if weight <= 0:
            continue
        cumulative += weight
        if cumulative > r:
            return option

    # r 落在上界（或因捨入超出），取最後一個有權重的選項
    for option in reversed(options):
        if effective_weight(option) > 0:
            return option

    raise InvalidSelectionInput("Total effective weight must be positive")


def select_option(options: Sequence[WheelOption], rng: Optional[random.Random] = None) -> WheelOption:
    """
    加權隨機選出一個選項

    參數：
        options: 選項列表
        rng: 任何有 random() 方法的亂數來源，預設使用 SystemRandom

    返回：
        中選的 WheelOption
    """
    total = _check_options(options)
    source = rng or _system_rng
    r = source.random() * total
    return pick_by_draw(options, r)
