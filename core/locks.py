"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

在 PostgreSQL 上使用 SELECT ... FOR UPDATE 實現悲觀鎖；
SQLite 會忽略 FOR UPDATE，由 RoomStore 的 process-level lock 序列化寫入。
"""
from sqlalchemy.orm import Session, Query

from models import Room


def with_room_lock(code: str, db: Session) -> Query:
    """
    鎖定一個 Room（行級鎖）

    使用場景：
    - participants 的 set-union / 移除
    - spin 狀態轉換（檢查 spinning 與寫入必須在同一個 transaction）
    - 帶 expected_version 的 options 更新

    範例：
        room = with_room_lock(code, db).first()
        if not room:
            raise RoomNotFound(code)
        room.spin_state = SpinState.SPINNING
        db.commit()

    參數：
        code: 房間代碼
        db: SQLAlchemy Session

    返回：
        Query object（需要呼叫 .first() 取得結果）
    """
    return db.query(Room).filter(
        Room.code == code
    ).with_for_update(nowait=False)
