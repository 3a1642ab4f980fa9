import asyncio

import pytest

from core.change_feed import (
    PollingChangeFeed,
    PushChangeFeed,
    diff_snapshots,
    open_change_feed,
)
from core.events import ChatAppended, RoomEventBus, RoomUpdated, SpinAppended
from core.store import RoomStore
from models import Room, SpinState
from schemas import RoomSnapshot
from tests.conftest import corrupt_room, wait_for


def snapshot(version, participants, spin_state=SpinState.IDLE, spin_id=None, result=None):
    return RoomSnapshot(
        code="ABC123",
        owner_name="Alice",
        participants=participants,
        spin_state=spin_state,
        spin_id=spin_id,
        current_result=result,
        state_version=version,
    )


def test_diff_detects_joins_and_leaves():
    before = snapshot(1, ["Alice", "Bob"])
    after = snapshot(2, ["Alice", "Carol"])

    event = diff_snapshots(before, after)

    assert event.joined == ["Carol"]
    assert event.left == ["Bob"]
    assert not event.spin_started and not event.spin_settled


def test_diff_spin_edges():
    idle = snapshot(1, ["Alice"])
    spinning = snapshot(2, ["Alice"], SpinState.SPINNING, "s1", "Banana")
    settled = snapshot(3, ["Alice"], SpinState.IDLE, "s1", "Banana")
    next_spin = snapshot(4, ["Alice"], SpinState.SPINNING, "s2", "Apple")

    assert diff_snapshots(idle, spinning).spin_started
    assert diff_snapshots(spinning, settled).spin_settled
    assert not diff_snapshots(spinning, settled).spin_started
    # 中間的 idle 被合併掉，但 spin_id 換了
    assert diff_snapshots(spinning, next_spin).spin_started


def test_stale_and_duplicate_snapshots_are_dropped(store):
    feed = PollingChangeFeed(store, "ABC123", baseline=snapshot(5, ["Alice"]))

    assert feed.accept_room(snapshot(4, ["Alice", "Old"])) is None
    assert feed.accept_room(snapshot(5, ["Alice"])) is None
    assert feed.accept_room(snapshot(6, ["Alice", "Bob"])).joined == ["Bob"]


async def test_poll_synthesizes_participant_changes(poll_store):
    room = await poll_store.create_room("Alice", code="ABC123")
    feed = PollingChangeFeed(poll_store, room.code, baseline=room)

    assert await feed.poll_once() == []

    await poll_store.add_participant(room.code, "Bob")
    events = await feed.poll_once()
    assert len(events) == 1
    assert events[0].joined == ["Bob"]

    # 在兩次輪詢之間加入又離開：看不到
    await poll_store.add_participant(room.code, "Carol")
    await poll_store.remove_participant(room.code, "Carol")
    await poll_store.remove_participant(room.code, "Bob")
    events = await feed.poll_once()
    assert events[0].joined == []
    assert events[0].left == ["Bob"]


async def test_poll_reports_spin_start_and_settle(poll_store):
    room = await poll_store.create_room("Alice", code="ABC123")
    feed = PollingChangeFeed(poll_store, room.code, baseline=room)

    await poll_store.begin_spin(room.code, "Banana", "Alice", "s1")
    await poll_store.append_spin_event(room.code, "Banana", "Alice", spin_id="s1")
    started = await feed.poll_once()

    assert isinstance(started[0], RoomUpdated) and started[0].spin_started
    assert started[0].snapshot.current_result == "Banana"
    assert isinstance(started[1], SpinAppended)

    await poll_store.finish_spin(room.code, "s1")
    settled = await feed.poll_once()
    assert settled[0].spin_settled
    assert settled[0].snapshot.current_result == "Banana"


async def test_poll_delivers_every_chat_row(poll_store):
    room = await poll_store.create_room("Alice", code="ABC123")
    feed = PollingChangeFeed(poll_store, room.code, baseline=room)

    for text in ["one", "two", "three"]:
        await poll_store.append_message(room.code, "Alice", text)

    events = await feed.poll_once()
    assert [e.message.text for e in events if isinstance(e, ChatAppended)] == ["one", "two", "three"]

    await poll_store.append_message(room.code, "Alice", "four")
    events = await feed.poll_once(include_chat=False)
    assert events == []
    events = await feed.poll_once()
    assert [e.message.text for e in events] == ["four"]


async def test_poll_survives_store_errors(poll_store, monkeypatch):
    from core.exceptions import TransientStoreError

    room = await poll_store.create_room("Alice", code="ABC123")
    feed = PollingChangeFeed(poll_store, room.code, baseline=room)

    async def flaky_get_room(code):
        raise TransientStoreError("timeout")

    monkeypatch.setattr(poll_store, "get_room", flaky_get_room)
    assert await feed.poll_once() == []


async def test_polling_iterator_runs_until_closed(poll_store):
    room = await poll_store.create_room("Alice", code="ABC123")
    feed = PollingChangeFeed(poll_store, room.code, room_interval=0.01, chat_interval=0.01, baseline=room)
    received = []

    async def consume():
        async for event in feed.events():
            received.append(event)

    task = asyncio.create_task(consume())
    await poll_store.add_participant(room.code, "Bob")
    await poll_store.append_message(room.code, "Bob", "hi")
    await asyncio.sleep(0.1)
    await feed.close()
    await asyncio.wait_for(task, timeout=1)

    assert any(isinstance(e, RoomUpdated) and e.joined == ["Bob"] for e in received)
    assert any(isinstance(e, ChatAppended) for e in received)


async def test_push_resync_catches_writes_before_subscribe(store):
    room = await store.create_room("Alice", code="ABC123")
    feed = PushChangeFeed(store, room.code, baseline=room)
    await store.add_participant(room.code, "Bob")

    events = feed.events()
    first = await asyncio.wait_for(events.__anext__(), timeout=1)

    assert isinstance(first, RoomUpdated)
    assert first.joined == ["Bob"]
    await feed.close()
    await events.aclose()


async def test_push_delivers_bus_events(store, bus):
    room = await store.create_room("Alice", code="ABC123")
    feed = PushChangeFeed(store, room.code, baseline=room)
    events = feed.events()

    async def next_event():
        return await events.__anext__()

    pending = asyncio.create_task(next_event())
    await asyncio.sleep(0.05)
    assert bus.subscriber_count(room.code) == 1

    await store.append_message(room.code, "Alice", "hello")
    event = await asyncio.wait_for(pending, timeout=1)

    assert isinstance(event, ChatAppended)
    assert event.message.text == "hello"

    await feed.close()
    await events.aclose()
    assert bus.subscriber_count(room.code) == 0


def test_open_change_feed_prefers_push(store, poll_store):
    assert isinstance(open_change_feed(store, "ABC123", mode="push"), PushChangeFeed)
    assert isinstance(open_change_feed(store, "ABC123", mode="poll"), PollingChangeFeed)
    assert isinstance(open_change_feed(poll_store, "ABC123", mode="push"), PollingChangeFeed)
    with pytest.raises(ValueError):
        open_change_feed(poll_store, "ABC123", mode="carrier-pigeon")


async def test_poll_survives_rows_that_fail_validation(poll_store, session_factory):
    room = await poll_store.create_room("Alice", code="ABC123")
    feed = PollingChangeFeed(poll_store, room.code, baseline=room)

    corrupt_room(session_factory, room.code, version=5)
    await poll_store.append_message(room.code, "Bob", "still here")

    events = await feed.poll_once()
    assert [type(e) for e in events] == [ChatAppended]

    with session_factory() as db:
        row = db.query(Room).filter(Room.code == room.code).one()
        row.wheel_options = [{"id": "1", "label": "Fixed"}]
        row.state_version = 6
        db.commit()

    events = await feed.poll_once()
    assert events[0].snapshot.state_version == 6
    assert events[0].snapshot.wheel_options[0].label == "Fixed"


async def test_bus_marks_overflowed_subscriber(store):
    room = await store.create_room("Alice", code="ABC123")
    bus = RoomEventBus(max_queue_size=1)
    queue = bus.subscribe(room.code)

    bus.publish(RoomUpdated(snapshot=room))
    assert not bus.take_overflow(queue)

    bus.publish(RoomUpdated(snapshot=room))
    assert bus.take_overflow(queue)
    assert not bus.take_overflow(queue)
    assert queue.qsize() == 1


async def collect(feed, received):
    async for event in feed.events():
        received.append(event)


async def test_push_fetches_rows_published_out_of_order(store, poll_store, bus):
    room = await store.create_room("Alice", code="ABC123")
    feed = PushChangeFeed(store, room.code, baseline=room)
    received = []
    task = asyncio.create_task(collect(feed, received))
    await wait_for(lambda: bus.subscriber_count(room.code) == 1)
    await asyncio.sleep(0.05)

    # 不經過 bus 寫入，再以相反順序發佈
    first = await poll_store.append_message(room.code, "Alice", "one")
    second = await poll_store.append_message(room.code, "Bob", "two")
    bus.publish(ChatAppended(message=second))
    bus.publish(ChatAppended(message=first))

    await wait_for(lambda: len(received) == 2)
    await asyncio.sleep(0.05)

    assert [e.message.text for e in received] == ["one", "two"]
    await feed.close()
    await asyncio.wait_for(task, timeout=1)


async def test_push_resyncs_after_queue_overflow(session_factory):
    bus = RoomEventBus(max_queue_size=1)
    store = RoomStore(session_factory, bus=bus)
    writer = RoomStore(session_factory)

    room = await store.create_room("Alice", code="ABC123")
    feed = PushChangeFeed(store, room.code, baseline=room)
    received = []
    task = asyncio.create_task(collect(feed, received))
    await wait_for(lambda: bus.subscriber_count(room.code) == 1)
    await asyncio.sleep(0.05)

    messages = [await writer.append_message(room.code, "Alice", text) for text in ["one", "two", "three"]]
    spin_event = await writer.append_spin_event(room.code, "Apple", "Alice", spin_id="s1")

    # queue 只放得下已經看過的房間快照，其餘事件全部被丟掉
    bus.publish(RoomUpdated(snapshot=room))
    for message in messages:
        bus.publish(ChatAppended(message=message))
    bus.publish(SpinAppended(event=spin_event))

    await wait_for(lambda: len(received) == 4)

    assert [e.message.text for e in received if isinstance(e, ChatAppended)] == ["one", "two", "three"]
    assert [e.event.result for e in received if isinstance(e, SpinAppended)] == ["Apple"]

    await feed.close()
    await asyncio.wait_for(task, timeout=1)
