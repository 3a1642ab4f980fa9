import pytest

from core.exceptions import (
    AlreadySpinning,
    CodeGenerationExhausted,
    RoomAlreadyExists,
    RoomNotFound,
    VersionConflict,
)
from core.events import ChatAppended, RoomUpdated
from core.room_manager import RoomManager
from models import SpinState
from schemas import WheelOption


async def test_create_room_uses_default_wheel(store):
    room = await store.create_room("Alice")

    assert len(room.code) == 6
    assert room.owner_name == "Alice"
    assert room.participants == ["Alice"]
    assert [o.label for o in room.wheel_options] == ["Apple", "Banana", "Orange", "Grape"]
    assert all(o.weight == 1 and o.segment_count == 1 for o in room.wheel_options)
    assert room.spin_state == SpinState.IDLE
    assert room.current_result is None


async def test_snapshot_round_trip_preserves_options_and_order(store):
    options = [
        WheelOption(id="x9", label="Pizza", color="#111111", weight=2.5, segment_count=3),
        WheelOption(id="a1", label="Sushi", color="#222222", weight=1, segment_count=1),
        WheelOption(id="m5", label="Tacos", color="#333333", weight=0.5, segment_count=2),
    ]
    await store.create_room("Alice", code="ROUND1", options=options)
    for name in ["Zed", "Bob", "Carol"]:
        await store.add_participant("ROUND1", name)

    room = await store.get_room("ROUND1")

    assert room.wheel_options == options
    assert room.participants == ["Alice", "Zed", "Bob", "Carol"]


async def test_explicit_code_collision(store):
    await store.create_room("Alice", code="ABC123")
    with pytest.raises(RoomAlreadyExists):
        await store.create_room("Mallory", code="ABC123")


def test_code_generation_gives_up_after_max_attempts(db):
    RoomManager.create_room(db, "Alice", code="AAAAAA")

    with pytest.raises(CodeGenerationExhausted):
        RoomManager.create_room(db, "Bob", max_attempts=10, code_generator=lambda: "AAAAAA")


def test_code_generation_retries_collisions(db):
    RoomManager.create_room(db, "Alice", code="AAAAAA")
    codes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])

    room = RoomManager.create_room(db, "Bob", code_generator=lambda: next(codes))

    assert room.code == "BBBBBB"


async def test_add_participant_is_idempotent(store):
    room = await store.create_room("Alice")
    first = await store.add_participant(room.code, "Bob")
    second = await store.add_participant(room.code, "Bob")

    assert second.participants == ["Alice", "Bob"]
    assert second.state_version == first.state_version


async def test_remove_participant(store):
    room = await store.create_room("Alice")
    await store.add_participant(room.code, "Bob")

    after = await store.remove_participant(room.code, "Alice")
    again = await store.remove_participant(room.code, "Alice")

    assert after.participants == ["Bob"]
    assert again.state_version == after.state_version


async def test_missing_room(store):
    assert await store.get_room("NOPE42") is None
    with pytest.raises(RoomNotFound):
        await store.add_participant("NOPE42", "Bob")
    with pytest.raises(RoomNotFound):
        await store.append_message("NOPE42", "Bob", "hi")


async def test_touch_does_not_bump_version(store):
    room = await store.create_room("Alice")
    touched = await store.touch(room.code)

    assert touched.state_version == room.state_version
    assert touched.updated_at >= room.updated_at


async def test_update_options_version_check(store):
    room = await store.create_room("Alice")
    await store.add_participant(room.code, "Bob")
    options = [WheelOption(id="1", label="Yes"), WheelOption(id="2", label="No")]

    with pytest.raises(VersionConflict):
        await store.update_options(room.code, options, expected_version=room.state_version)

    latest = await store.get_room(room.code)
    updated = await store.update_options(room.code, options, expected_version=latest.state_version)
    assert [o.label for o in updated.wheel_options] == ["Yes", "No"]


async def test_spin_transitions(store):
    room = await store.create_room("Alice")

    spinning = await store.begin_spin(room.code, "Banana", "Alice", "spin-1")
    assert spinning.spin_state == SpinState.SPINNING
    assert spinning.current_result == "Banana"
    assert spinning.spin_started_at is not None

    with pytest.raises(AlreadySpinning):
        await store.begin_spin(room.code, "Apple", "Alice", "spin-2")

    # 別的 spin 的 settle 不生效
    stale = await store.finish_spin(room.code, "other")
    assert stale.spin_state == SpinState.SPINNING

    settled = await store.finish_spin(room.code, "spin-1")
    assert settled.spin_state == SpinState.IDLE
    assert settled.current_result == "Banana"


async def test_messages_are_listed_after_id(store):
    room = await store.create_room("Alice")
    sent = [await store.append_message(room.code, "Alice", f"m{i}") for i in range(5)]

    assert [m.text for m in await store.list_messages(room.code)] == ["m0", "m1", "m2", "m3", "m4"]
    assert [m.text for m in await store.list_messages(room.code, after_id=sent[2].id)] == ["m3", "m4"]
    assert [m.text for m in await store.list_messages(room.code, limit=2)] == ["m3", "m4"]


async def test_writes_are_published_to_bus(store, bus):
    room = await store.create_room("Alice")
    queue = bus.subscribe(room.code)

    await store.add_participant(room.code, "Bob")
    await store.touch(room.code)
    await store.append_message(room.code, "Bob", "hello")

    first = queue.get_nowait()
    second = queue.get_nowait()
    assert isinstance(first, RoomUpdated)
    assert first.snapshot.participants == ["Alice", "Bob"]
    assert isinstance(second, ChatAppended)
    assert queue.empty()
