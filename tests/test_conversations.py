import random
from datetime import datetime

import pytest
from sqlalchemy import or_
from sqlmodel import select

from relay.models.chat import ChatMessage
from relay.services.conversation_service import ConversationAggregator, total_unread
from relay.services.message_store import MessageStore


@pytest.fixture()
def store(session):
    return MessageStore(session)


@pytest.fixture()
def aggregator(session):
    return ConversationAggregator(session)


def test_no_messages_yields_empty_list(aggregator, users):
    alice, _, _ = users

    assert aggregator.list_conversations(alice.id) == []


def test_three_party_exchange(store, aggregator, users):
    alice, bob, carol = users
    store.append(alice.id, bob.id, text="hi")
    store.append(bob.id, alice.id, text="yo")
    store.append(carol.id, alice.id, text="hey")
    store.append(carol.id, alice.id, text="there")

    conversations = aggregator.list_conversations(alice.id)

    assert [c.peer_id for c in conversations] == [carol.id, bob.id]
    with_carol, with_bob = conversations
    assert with_carol.username == "carol"
    assert with_carol.full_name == "Carol"
    assert with_carol.last_message.text == "there"
    assert with_carol.last_message.is_from_me is False
    assert with_carol.unread_count == 2
    assert with_bob.last_message.text == "yo"
    assert with_bob.unread_count == 1
    assert total_unread(conversations) == 3

    bobs_view = aggregator.list_conversations(bob.id)
    assert [c.peer_id for c in bobs_view] == [alice.id]
    assert bobs_view[0].last_message.is_from_me is True
    assert bobs_view[0].unread_count == 1


def test_reading_a_conversation_clears_its_unread_count(store, aggregator, users):
    alice, bob, carol = users
    store.append(bob.id, alice.id, text="one")
    store.append(carol.id, alice.id, text="two")
    store.append(carol.id, alice.id, text="three")

    store.mark_conversation_read(alice.id, carol.id)
    conversations = {c.peer_id: c for c in aggregator.list_conversations(alice.id)}

    assert conversations[carol.id].unread_count == 0
    assert conversations[carol.id].last_message.status == "read"
    assert conversations[bob.id].unread_count == 1
    assert total_unread(conversations.values()) == 1


def test_own_messages_never_count_as_unread(store, aggregator, users):
    alice, bob, _ = users
    for i in range(3):
        store.append(alice.id, bob.id, text=f"m{i}")

    summary, = aggregator.list_conversations(alice.id)

    assert summary.unread_count == 0
    assert summary.last_message.status == "sent"


def test_last_message_status_follows_delivery(store, aggregator, users):
    alice, bob, _ = users
    message = store.append(alice.id, bob.id, text="ping")
    store.mark_delivered(message.id)

    summary, = aggregator.list_conversations(alice.id)

    assert summary.last_message.status == "delivered"


def test_timestamp_ties_resolve_to_highest_id(session, aggregator, users):
    alice, bob, _ = users
    moment = datetime(2024, 3, 3, 3, 3, 3)
    rows = [ChatMessage(sender_id=bob.id, receiver_id=alice.id, text=f"tie {i}", created_at=moment) for i in range(3)]
    session.add_all(rows)
    session.commit()

    summary, = aggregator.list_conversations(alice.id)

    assert summary.last_message.id == max(row.id for row in rows)
    assert summary.last_message.text == "tie 2"
    assert summary.unread_count == 3


def test_limit_keeps_most_recent_conversations(store, aggregator, users, make_user):
    alice, bob, carol = users
    dave = make_user("dave")
    store.append(bob.id, alice.id, text="old")
    store.append(carol.id, alice.id, text="newer")
    store.append(dave.id, alice.id, text="newest")

    conversations = aggregator.list_conversations(alice.id, limit=2)

    assert [c.peer_id for c in conversations] == [dave.id, carol.id]


def test_summaries_match_the_message_log(store, aggregator, users, make_user):
    alice = users[0]
    peers = list(users[1:]) + [make_user(f"peer{i}") for i in range(4)]
    rng = random.Random(7)

    for _ in range(60):
        peer = rng.choice(peers)
        if rng.random() < 0.5:
            store.append(alice.id, peer.id, text="out")
        else:
            store.append(peer.id, alice.id, text="in")
        if rng.random() < 0.1:
            store.mark_conversation_read(alice.id, peer.id)

    log = store.db.exec(
        select(ChatMessage).where(or_(ChatMessage.sender_id == alice.id, ChatMessage.receiver_id == alice.id))
    ).all()
    expected = {}
    for row in log:
        peer_id = row.receiver_id if row.sender_id == alice.id else row.sender_id
        entry = expected.setdefault(peer_id, {"last": None, "unread": 0})
        if entry["last"] is None or (row.created_at, row.id) > (entry["last"].created_at, entry["last"].id):
            entry["last"] = row
        if row.receiver_id == alice.id and not row.read:
            entry["unread"] += 1

    conversations = aggregator.list_conversations(alice.id)

    assert len(conversations) == len(expected)
    assert len({c.peer_id for c in conversations}) == len(conversations)
    for summary in conversations:
        assert summary.last_message.id == expected[summary.peer_id]["last"].id
        assert summary.unread_count == expected[summary.peer_id]["unread"]
    ordering = [(c.last_message.created_at, c.last_message.id) for c in conversations]
    assert ordering == sorted(ordering, reverse=True)


def test_reading_one_message_decrements_unread_by_one(store, aggregator, users):
    alice, bob, _ = users
    first = store.append(alice.id, bob.id, text="first")
    store.append(alice.id, bob.id, text="second")
    latest = store.append(alice.id, bob.id, text="third")

    store.mark_read(first.id)
    summary, = aggregator.list_conversations(bob.id)

    assert summary.unread_count == 2
    assert summary.last_message.id == latest.id


def test_unread_count_moves_only_with_incoming_unread_messages(store, aggregator, users):
    alice, bob, _ = users
    store.append(bob.id, alice.id, text="one")
    before, = aggregator.list_conversations(alice.id)

    store.append(alice.id, bob.id, text="reply")
    after_reply, = aggregator.list_conversations(alice.id)
    store.append(bob.id, alice.id, text="two")
    after_incoming, = aggregator.list_conversations(alice.id)

    assert before.unread_count == after_reply.unread_count == 1
    assert after_incoming.unread_count == 2
