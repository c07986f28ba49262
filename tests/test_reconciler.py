import asyncio
from datetime import datetime, timedelta

import pytest

from relay.client.reconciler import MessageReconciler, SendFailed, SendState
from relay.core.exceptions import ValidationError

ME, BOB, CAROL = 1, 2, 3
T0 = datetime(2024, 1, 1, 12, 0, 0)


def payload(message_id, sender_id, receiver_id, seconds, text="hi", status="sent"):
    return {
        "id": message_id,
        "sender_id": sender_id,
        "receiver_id": receiver_id,
        "text": text,
        "image": None,
        "status": status,
        "created_at": (T0 + timedelta(seconds=seconds)).isoformat(),
    }


class FakeAPI:
    """Answers history immediately unless a peer is gated; sends wait for the test."""

    def __init__(self, history=None):
        self.history = history or {}
        self.gates = {}
        self.sends = []

    def gate(self, peer_id):
        self.gates[peer_id] = asyncio.get_running_loop().create_future()
        return self.gates[peer_id]

    async def messages_between(self, peer_id, before=None, after=None, limit=None):
        if peer_id in self.gates:
            await self.gates.pop(peer_id)
        return {"messages": list(self.history.get(peer_id, [])), "has_more": False}

    async def send_message(self, peer_id, text=None, image=None):
        future = asyncio.get_running_loop().create_future()
        self.sends.append((peer_id, text, future))
        return await future


async def settle():
    for _ in range(3):
        await asyncio.sleep(0)


def ids(reconciler):
    return [message.id for message in reconciler.messages]


@pytest.fixture()
def api():
    return FakeAPI(history={
        BOB: [payload(11, ME, BOB, 1), payload(10, BOB, ME, 0)],
        CAROL: [payload(20, CAROL, ME, 5)],
    })


@pytest.fixture()
def reconciler(api):
    return MessageReconciler(api, ME, clock=lambda: T0 + timedelta(seconds=30))


async def test_open_conversation_loads_sorted_history(reconciler):
    assert await reconciler.open_conversation(BOB) is True

    assert reconciler.peer_id == BOB
    assert ids(reconciler) == [10, 11]


async def test_stale_fetch_is_discarded(api, reconciler):
    gate = api.gate(BOB)
    slow = asyncio.create_task(reconciler.open_conversation(BOB))
    await settle()

    await reconciler.open_conversation(CAROL)
    gate.set_result(None)

    assert await slow is False
    assert reconciler.peer_id == CAROL
    assert ids(reconciler) == [20]


async def test_push_during_fetch_survives_the_load(api, reconciler):
    gate = api.gate(BOB)
    loading = asyncio.create_task(reconciler.open_conversation(BOB))
    await settle()

    reconciler.receive_push(payload(12, BOB, ME, 2))
    gate.set_result(None)
    await loading

    assert ids(reconciler) == [10, 11, 12]


async def test_send_replaces_optimistic_entry(api, reconciler):
    await reconciler.open_conversation(BOB)

    sending = asyncio.create_task(reconciler.send("  hello  "))
    await settle()
    assert reconciler.pending_count == 1
    assert reconciler.messages[-1].text == "hello"
    assert reconciler.in_flight[0].state is SendState.PENDING

    _, _, future = api.sends[0]
    future.set_result(payload(13, ME, BOB, 3, text="hello"))
    confirmed = await sending

    assert confirmed.id == 13
    assert reconciler.pending_count == 0
    assert reconciler.in_flight == ()
    assert ids(reconciler) == [10, 11, 13]


async def test_push_before_send_confirmation_is_not_duplicated(api, reconciler):
    await reconciler.open_conversation(BOB)
    sending = asyncio.create_task(reconciler.send("hello"))
    await settle()

    echoed = payload(13, ME, BOB, 3, text="hello")
    reconciler.receive_push(echoed)
    assert reconciler.pending_count == 0

    api.sends[0][2].set_result(echoed)
    await sending

    assert ids(reconciler) == [10, 11, 13]


async def test_failed_send_removes_entry_and_raises(api, reconciler):
    await reconciler.open_conversation(BOB)
    sending = asyncio.create_task(reconciler.send("too spicy"))
    await settle()

    api.sends[0][2].set_exception(ValidationError("Invalid image URL format", field="image"))

    with pytest.raises(SendFailed) as exc_info:
        await sending

    assert exc_info.value.outgoing.state is SendState.FAILED
    assert exc_info.value.status_code == 400
    assert reconciler.pending_count == 0
    assert ids(reconciler) == [10, 11]
    assert len(api.sends) == 1


async def test_send_result_after_switching_conversation_is_ignored(api, reconciler):
    await reconciler.open_conversation(BOB)
    sending = asyncio.create_task(reconciler.send("hello"))
    await settle()

    await reconciler.open_conversation(CAROL)
    api.sends[0][2].set_result(payload(13, ME, BOB, 3, text="hello"))
    await sending

    assert ids(reconciler) == [20]


async def test_send_requires_open_conversation(reconciler):
    with pytest.raises(RuntimeError):
        await reconciler.send("hello")


async def test_pushes_are_filtered_and_deduplicated(reconciler):
    await reconciler.open_conversation(BOB)

    assert reconciler.receive_push(payload(30, CAROL, ME, 4)) is False
    assert reconciler.receive_push(payload(12, BOB, ME, 2)) is True
    assert reconciler.receive_push(payload(12, BOB, ME, 2)) is True

    assert ids(reconciler) == [10, 11, 12]


async def test_late_push_is_ordered_by_timestamp(reconciler):
    await reconciler.open_conversation(BOB)

    reconciler.receive_push(payload(9, BOB, ME, -5))

    assert ids(reconciler) == [9, 10, 11]


async def test_receipts_update_statuses(reconciler):
    await reconciler.open_conversation(BOB)

    assert reconciler.handle_event({"type": "message_delivered", "data": {"message_id": 11}}) is True
    assert reconciler.messages[-1].status == "delivered"

    reconciler.handle_event({"type": "messages_read", "data": {"message_ids": [11]}})
    assert reconciler.messages[-1].status == "read"

    reconciler.handle_event({"type": "message_delivered", "data": {"message_id": 11}})
    assert reconciler.messages[-1].status == "read"


async def test_new_message_event_is_merged(reconciler):
    await reconciler.open_conversation(BOB)

    reconciler.handle_event({"type": "new_message", "data": payload(14, BOB, ME, 6)})

    assert ids(reconciler)[-1] == 14


async def test_closed_conversation_ignores_pushes(reconciler):
    await reconciler.open_conversation(BOB)
    reconciler.close_conversation()

    assert reconciler.receive_push(payload(12, BOB, ME, 2)) is False
    assert reconciler.messages == ()
    assert reconciler.peer_id is None


async def test_cancelled_send_does_not_leave_a_pending_entry(api, reconciler):
    await reconciler.open_conversation(BOB)
    sending = asyncio.create_task(reconciler.send("hello"))
    await settle()
    outgoing = reconciler.in_flight[0]

    sending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await sending

    assert outgoing.state is SendState.FAILED
    assert reconciler.pending_count == 0
    assert reconciler.in_flight == ()
    assert ids(reconciler) == [10, 11]


async def test_send_timing_out_in_wait_for_is_cleaned_up(api, reconciler):
    await reconciler.open_conversation(BOB)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(reconciler.send("hello"), 0.01)

    assert reconciler.pending_count == 0
    assert ids(reconciler) == [10, 11]


async def test_equal_timestamps_are_ordered_by_id_with_pending_last():
    api = FakeAPI(history={
        BOB: [payload(42, BOB, ME, 0), payload(40, ME, BOB, 0), payload(41, BOB, ME, 0)],
    })
    reconciler = MessageReconciler(api, ME, clock=lambda: T0)

    await reconciler.open_conversation(BOB)
    assert ids(reconciler) == [40, 41, 42]

    reconciler.receive_push(payload(39, BOB, ME, 0))
    assert ids(reconciler) == [39, 40, 41, 42]

    sending = asyncio.create_task(reconciler.send("same second"))
    await settle()
    assert ids(reconciler) == [39, 40, 41, 42, None]
    assert reconciler.messages[-1].pending is True

    api.sends[0][2].set_result(payload(43, ME, BOB, 0, text="same second"))
    await sending

    assert ids(reconciler) == [39, 40, 41, 42, 43]
