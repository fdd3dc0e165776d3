import asyncio

import pytest

from evi_bridge.broadcast import Broadcast


def drain(sub) -> list:
    items = []
    while True:
        try:
            items.append(sub.get_nowait())
        except asyncio.QueueEmpty:
            return items


def test_late_subscriber_gets_replay():
    channel = Broadcast(replay=10, buffer=32)
    for i in range(12):
        channel.publish(i)
    sub = channel.subscribe()
    assert drain(sub) == list(range(2, 12))
    assert channel.replay_cache() == list(range(2, 12))


def test_replay_disabled():
    channel = Broadcast(replay=0, buffer=8)
    channel.publish("early")
    sub = channel.subscribe()
    channel.publish("late")
    assert drain(sub) == ["late"]


def test_every_subscriber_sees_every_item_in_order():
    channel = Broadcast(replay=0, buffer=8)
    first = channel.subscribe()
    second = channel.subscribe()
    for item in ("a", "b", "c"):
        assert channel.publish(item)
    assert drain(first) == ["a", "b", "c"]
    assert drain(second) == ["a", "b", "c"]
    assert channel.subscriber_count == 2


def test_full_subscriber_drops_without_blocking_others():
    channel = Broadcast(replay=0, buffer=2)
    slow = channel.subscribe()
    assert channel.publish(1)
    fast = channel.subscribe()
    assert channel.publish(2)
    assert not channel.publish(3)
    assert slow.dropped == 1
    assert fast.dropped == 0
    assert channel.dropped == 1
    assert drain(slow) == [1, 2]
    assert drain(fast) == [2, 3]


def test_close_ends_iteration():
    async def _run():
        channel = Broadcast(replay=0, buffer=8)
        sub = channel.subscribe()
        received = []

        async def consume():
            async for item in sub:
                received.append(item)

        consumer = asyncio.create_task(consume())
        channel.publish("x")
        channel.publish("y")
        await asyncio.sleep(0)
        channel.close()
        await asyncio.wait_for(consumer, timeout=1.0)
        return received

    assert asyncio.run(_run()) == ["x", "y"]


def test_close_is_idempotent_and_rejects_publish():
    channel = Broadcast(replay=5, buffer=8)
    channel.publish("kept")
    channel.close()
    channel.close()
    assert channel.closed
    assert not channel.publish("ignored")
    assert channel.replay_cache() == ["kept"]


def test_subscribe_after_close_replays_then_ends():
    async def _run():
        channel = Broadcast(replay=5, buffer=8)
        channel.publish(1)
        channel.publish(2)
        channel.close()
        return [item async for item in channel.subscribe()]

    assert asyncio.run(_run()) == [1, 2]


def test_unsubscribe():
    channel = Broadcast(replay=0, buffer=8)
    sub = channel.subscribe()
    sub.close()
    assert channel.subscriber_count == 0
    assert sub.closed
    channel.publish("after")
    assert drain(sub) == []


def test_buffer_must_be_positive():
    with pytest.raises(ValueError):
        Broadcast(buffer=0)
