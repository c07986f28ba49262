import pytest

from relay.services.chat_service import ChatService
from relay.services.delivery import MessageDispatcher, user_channel
from relay.utils.websocket_manager import ConnectionManager


class RecordingDispatcher:
    """Stands in for MessageDispatcher; `online` decides who has a live channel."""

    def __init__(self, online=()):
        self.online = set(online)
        self.events = []

    async def dispatch(self, user_id, event):
        self.events.append((user_id, event))
        return user_id in self.online


class FakePubSub:
    def __init__(self, receivers):
        self.receivers = receivers
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return self.receivers


class FakeWebSocket:
    def __init__(self):
        self.sent = []

    async def accept(self):
        pass

    async def send_text(self, text):
        self.sent.append(text)

    async def close(self, code=1000, reason=None):
        pass


async def test_deliver_to_online_receiver_marks_delivered(session, users):
    alice, bob, _ = users
    dispatcher = RecordingDispatcher(online={bob.id, alice.id})
    service = ChatService(session, dispatcher=dispatcher)
    message = service.send_message(alice.id, bob.id, text="hi")

    assert await service.deliver(message) is True

    (first_user, pushed), (second_user, receipt) = dispatcher.events
    assert first_user == bob.id
    assert pushed["type"] == "new_message"
    assert pushed["data"]["status"] == "sent"
    assert second_user == alice.id
    assert receipt["type"] == "message_delivered"
    assert service.store.get(message.id).status == "delivered"


async def test_deliver_to_offline_receiver_leaves_message_sent(session, users):
    alice, bob, _ = users
    dispatcher = RecordingDispatcher()
    service = ChatService(session, dispatcher=dispatcher)
    message = service.send_message(alice.id, bob.id, text="hi")

    assert await service.deliver(message) is False

    assert len(dispatcher.events) == 1
    assert service.store.get(message.id).status == "sent"


async def test_notify_read_skips_empty_batches(session, users):
    alice, bob, _ = users
    dispatcher = RecordingDispatcher(online={alice.id})
    service = ChatService(session, dispatcher=dispatcher)

    assert await service.notify_read(bob.id, alice.id, []) is False
    assert await service.notify_read(bob.id, alice.id, [1, 2]) is True
    assert dispatcher.events[0][1]["data"]["message_ids"] == [1, 2]


async def test_local_dispatch_uses_connection_registry():
    connections = ConnectionManager()
    dispatcher = MessageDispatcher(connections, FakePubSub(receivers=0))
    websocket = FakeWebSocket()
    await connections.connect(websocket, 3)

    assert await dispatcher.dispatch(3, {"type": "new_message"}) is True
    assert await dispatcher.dispatch(4, {"type": "new_message"}) is False


@pytest.mark.parametrize("receivers, expected", [(0, False), (2, True)])
async def test_redis_dispatch_counts_subscribers(monkeypatch, receivers, expected):
    monkeypatch.setattr(MessageDispatcher, "uses_redis", property(lambda self: True))
    pubsub = FakePubSub(receivers=receivers)
    dispatcher = MessageDispatcher(ConnectionManager(), pubsub)

    assert await dispatcher.dispatch(9, {"type": "new_message"}) is expected
    assert pubsub.published[0][0] == user_channel(9)


async def test_forwarded_event_reaches_local_channel():
    connections = ConnectionManager()
    dispatcher = MessageDispatcher(connections, FakePubSub(receivers=1))
    websocket = FakeWebSocket()
    await connections.connect(websocket, 12)

    await dispatcher._forward(user_channel(12), {"type": "new_message", "data": {}})

    assert len(websocket.sent) == 2
