import asyncio

import pytest
from sqlalchemy.orm import sessionmaker

import models  # noqa: F401  (registers tables on Base.metadata)
from core.events import RoomEventBus
from core.store import RoomStore
from database import Base, Settings, build_engine


class FixedDraw:
    """亂數來源替身：random() 永遠回傳固定比例"""

    def __init__(self, fraction):
        self.fraction = fraction

    def random(self):
        return self.fraction


def corrupt_room(session_factory, code, version):
    """直接寫入一個無法轉成快照的房間列（weight 0 的選項）"""
    with session_factory() as db:
        row = db.query(models.Room).filter(models.Room.code == code).one()
        row.wheel_options = [{"id": "1", "label": "Broken", "weight": 0}]
        row.state_version = version
        db.commit()


async def wait_for(predicate, timeout=1.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        log_level="DEBUG",
        spin_duration_seconds=0.05,
        stale_spin_timeout=30.0,
        room_poll_interval=0.02,
        chat_poll_interval=0.05,
        heartbeat_interval=0.05,
        feed_mode="push",
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def bus():
    return RoomEventBus()


@pytest.fixture
def store(session_factory, bus):
    return RoomStore(session_factory, bus=bus)


@pytest.fixture
def poll_store(session_factory):
    """沒有 bus 的 store：只能用輪詢"""
    return RoomStore(session_factory)
