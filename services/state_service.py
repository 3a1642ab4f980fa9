"""
State version 服務

每次房間狀態有意義的變更都會提升 state_version，
ChangeFeed 靠它判斷快照的先後順序、丟棄過期的快照。
heartbeat 只更新 updated_at，不提升版本。
"""
import logging

from models import Room, utcnow

logger = logging.getLogger(__name__)


def bump_state_version(room: Room, reason: str) -> int:
    """
    提升房間的 state_version 並更新 updated_at

    參數：
        room: 已鎖定的 Room row
        reason: 變更原因（只用於 log）

    返回：
        新的版本號
    """
    room.state_version = (room.state_version or 0) + 1
    room.updated_at = utcnow()
    logger.debug(
        "Room %s bumped to version %s (%s)", room.code, room.state_version, reason
    )
    return room.state_version


def touch(room: Room) -> None:
    """只更新 last-modified（heartbeat 用）"""
    room.updated_at = utcnow()
