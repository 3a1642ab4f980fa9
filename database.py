from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, Session
from sqlalchemy.pool import StaticPool
from pydantic_settings import BaseSettings
from functools import lru_cache, wraps
import logging

from core.exceptions import WheelRoomError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./wheel_rooms.db"
    log_level: str = "INFO"

    # Spin presentation delay, identical for every client
    spin_duration_seconds: float = 4.0
    # 0 disables the stranded-spin reaper
    stale_spin_timeout: float = 30.0

    room_poll_interval: float = 0.5
    chat_poll_interval: float = 3.0
    heartbeat_interval: float = 30.0
    feed_mode: str = "push"

    code_generation_attempts: int = 10
    chat_history_limit: int = 50

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()


def build_engine(database_url: str):
    """
    建立 SQLAlchemy engine

    SQLite 需要 check_same_thread=False：RoomStore 會在 thread pool 內存取連線。
    In-memory SQLite 另外需要 StaticPool，否則每條連線都是一個全新的空資料庫。
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


Base = declarative_base()


def transactional(func):
    """
    Transaction decorator：確保資料庫操作的原子性

    使用方式：
        @transactional
        def some_business_logic(db: Session, ...):
            room = Room(...)
            db.add(room)
            # 不需要手動 commit，decorator 會處理

    如果函式內發生異常：
        - 自動 rollback
        - 異常會被重新拋出（讓上層處理）
        - 業務異常（WheelRoomError）只記 info，其他異常記 error + traceback

    注意：
        - 第一個參數必須是 db: Session
        - 不要在函式內手動 commit
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = None
        if args and isinstance(args[0], Session):
            db = args[0]
        elif 'db' in kwargs:
            db = kwargs['db']

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except WheelRoomError as e:
            logger.info(f"Transaction {func.__name__} rejected: {e}")
            db.rollback()
            raise
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper
