import asyncio
import threading

from fakeredis import aioredis as fake_aioredis
import pytest

from booking_chat.core.config import settings
from booking_chat.crud import crud_message
from booking_chat.realtime import bus
from booking_chat.realtime import hub as realtime
from booking_chat.realtime.hub import Envelope, Hub
from booking_chat.services import redis_client


def test_fifo_per_subscriber():
    async def run():
        h = Hub(instance_id="t")
        sub = h.subscribe("conversation:1")
        for i in range(5):
            await h.publish("conversation:1", Envelope(type="message.created", payload={"n": i}), publish=False)
        got = [(await sub.get(timeout=1)).payload["n"] for _ in range(5)]
        sub.close()
        return got

    assert asyncio.run(run()) == [0, 1, 2, 3, 4]


def test_topics_are_isolated():
    async def run():
        h = Hub(instance_id="t")
        one = h.subscribe("conversation:1")
        two = h.subscribe("conversation:2")
        await h.publish("conversation:2", Envelope(type="typing"), publish=False)
        assert one.pending() == 0
        env = await two.get(timeout=1)
        assert env.topic == "conversation:2"
        one.close()
        two.close()

    asyncio.run(run())


def test_close_is_idempotent_and_ends_iteration():
    async def run():
        h = Hub(instance_id="t")
        sub = h.subscribe("user:1")
        assert h.subscriber_count("user:1") == 1
        seen = []

        async def consume():
            async for env in sub:
                seen.append(env.type)

        task = asyncio.create_task(consume())
        await h.publish("user:1", Envelope(type="messages.changed"), publish=False)
        await asyncio.sleep(0)
        sub.close()
        sub.close()
        await asyncio.wait_for(task, 1)
        assert seen == ["messages.changed"]
        assert h.subscriber_count() == 0
        # Closed subscriptions drop late envelopes
        assert h.deliver_local("user:1", Envelope(type="late")) == 0
        assert await sub.get() is None

    asyncio.run(run())


def test_delivery_from_another_thread():
    async def run():
        h = Hub(instance_id="t")
        sub = h.subscribe("typing:9")
        worker = threading.Thread(
            target=h.deliver_local, args=("typing:9", Envelope(type="typing", payload={"user_id": 4}))
        )
        worker.start()
        env = await sub.get(timeout=1)
        worker.join()
        sub.close()
        return env

    assert asyncio.run(run()).payload == {"user_id": 4}


def test_envelope_from_garbage():
    assert Envelope.from_raw("nope").type == ""
    env = Envelope.from_raw({"type": "ping", "payload": ["not", "a", "dict"]})
    assert env.type == "ping"
    assert env.payload == {}
    assert Envelope(type="pong").to_json() == '{"v":1,"type":"pong","payload":{}}'


def test_publish_helpers_signal_affected_users(db, people, booking):
    customer = people["customer"]
    provider_user = people["provider_user"]
    msg = crud_message.append(db, booking.id, customer.id, body="hello")

    async def run():
        h = Hub(instance_id="t")
        room, typing = realtime.open_conversation_feeds(booking.id, target=h)
        receiver = realtime.open_user_feed(provider_user.id, target=h)
        sender = realtime.open_user_feed(customer.id, target=h)

        await realtime.publish_message_created(msg, target=h)
        created = await room.get(timeout=1)
        assert created.type == realtime.MESSAGE_CREATED
        assert created.payload["message"]["body"] == "hello"
        nudge = await receiver.get(timeout=1)
        assert nudge.type == realtime.MESSAGES_CHANGED
        assert nudge.payload == {"reason": "created", "booking_id": booking.id}
        assert sender.pending() == 0

        await realtime.publish_messages_read(booking.id, provider_user.id, [], target=h)
        assert room.pending() == 0

        await realtime.publish_typing(booking.id, customer.id, target=h)
        assert (await typing.get(timeout=1)).payload["user_id"] == customer.id
        assert room.pending() == 0

        await realtime.publish_message_deleted(msg, target=h)
        deleted = await room.get(timeout=1)
        assert deleted.payload == {"id": msg.id, "booking_id": booking.id}
        assert (await receiver.get(timeout=1)).payload["reason"] == "deleted"
        assert (await sender.get(timeout=1)).payload["reason"] == "deleted"
        h.reset()

    asyncio.run(run())


def test_bus_disabled_without_redis():
    assert not bus.bus_enabled()

    async def run():
        # No Redis configured: publishing is a silent no-op
        await bus.publish_topic("conversation:1", {"type": "typing"})
        return await bus.start_pattern_consumer(lambda topic, data: None)

    assert asyncio.run(run()) is None


def test_bus_mirrors_to_other_instances(monkeypatch):
    monkeypatch.setattr(settings, "WS_BUS_ENABLED", True)

    async def run():
        fake = fake_aioredis.FakeRedis(decode_responses=True)
        redis_client.set_redis(fake)
        assert bus.bus_enabled()

        here = Hub(instance_id="here")
        there = Hub(instance_id="there")
        local_sub = here.subscribe("conversation:5")
        remote_sub = there.subscribe("conversation:5")

        async def fan_out(topic, data):
            await here.dispatch_from_bus(topic, data)
            await there.dispatch_from_bus(topic, data)

        task = await bus.start_pattern_consumer(fan_out)
        assert task is not None
        try:
            await here.publish("conversation:5", Envelope(type="message.deleted", payload={"id": 3}))
            remote = await remote_sub.get(timeout=2)
            local = await local_sub.get(timeout=1)
        finally:
            await bus.stop_pattern_consumer()
            await redis_client.close_redis_client()

        # The publishing instance ignores its own echo
        assert local_sub.pending() == 0
        return remote, local

    remote, local = asyncio.run(run())
    assert remote.type == local.type == "message.deleted"
    assert remote.payload == {"id": 3}
    assert remote.topic == "conversation:5"


def test_bus_publish_failure_is_logged(monkeypatch, caplog):
    class FailingRedis:
        async def publish(self, channel, data):
            raise OSError("connection refused")

    monkeypatch.setattr(settings, "WS_BUS_ENABLED", True)
    redis_client.set_redis(FailingRedis())

    async def run():
        h = Hub(instance_id="t")
        sub = h.subscribe("typing:1")
        delivered = await h.publish("typing:1", Envelope(type="typing"))
        sub.close()
        return delivered

    assert asyncio.run(run()) == 1
    assert "Bus publish failed" in caplog.text


@pytest.mark.parametrize("topic_fn,expected", [
    (realtime.conversation_topic, "conversation:12"),
    (realtime.typing_topic, "typing:12"),
    (realtime.user_topic, "user:12"),
])
def test_topic_names(topic_fn, expected):
    assert topic_fn("12") == expected
