import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chat import ChatConnection, ChatRouter, LocalChatTransport, messages_path, topic
from database import MemoryDocumentStore
from errors import DependencyError, ValidationError


class FakeConnection(ChatConnection):
    def __init__(self):
        self.events = []

    async def send(self, event, data):
        self.events.append((event, data))

    def named(self, event):
        return [data for name, data in self.events if name == event]


class DeadConnection(ChatConnection):
    async def send(self, event, data):
        raise RuntimeError("socket closed")


class FailingStore(MemoryDocumentStore):
    def add(self, path, data):
        raise DependencyError()


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def router(store):
    return ChatRouter(store, LocalChatTransport())


def test_join_replays_history_in_timestamp_order(router, store):
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    for minutes, text in ((3, "third"), (1, "first"), (2, "second")):
        store.add(messages_path("g1"), {
            "userId": "alice",
            "message": text,
            "timestamp": base + timedelta(minutes=minutes),
        })
    store.add(messages_path("g2"), {"userId": "bob", "message": "elsewhere", "timestamp": base})

    conn = FakeConnection()
    run(router.join(conn, "g1"))

    [history] = conn.named("chatHistory")
    assert [m["message"] for m in history] == ["first", "second", "third"]


def test_history_goes_to_the_joiner_only(router):
    first, second = FakeConnection(), FakeConnection()
    run(router.join(first, "g1"))
    run(router.join(second, "g1"))
    assert len(first.named("chatHistory")) == 1
    assert len(second.named("chatHistory")) == 1


def test_send_persists_then_broadcasts_to_whole_room(router, store):
    sender, other, outsider = FakeConnection(), FakeConnection(), FakeConnection()
    run(router.join(sender, "g1"))
    run(router.join(other, "g1"))
    run(router.join(outsider, "g2"))

    record = run(router.send_message("g1", "alice", "On my way"))

    stored = store.query(messages_path("g1"))
    assert len(stored) == 1
    assert stored[0]["id"] == record["id"]
    assert stored[0]["message"] == "On my way"
    assert stored[0]["userId"] == "alice"
    assert sender.named("newMessage") == [record]
    assert other.named("newMessage") == [record]
    assert outsider.named("newMessage") == []


def test_failed_write_is_not_broadcast():
    router = ChatRouter(FailingStore())
    sender, other = FakeConnection(), FakeConnection()
    run(router.join(sender, "g1"))
    run(router.join(other, "g1"))

    run(router.handle_event(sender, "alice", {
        "event": "sendMessage",
        "data": {"gigId": "g1", "userId": "alice", "message": "hello"},
    }))

    assert sender.named("newMessage") == []
    assert other.named("newMessage") == []
    assert sender.named("error") == [DependencyError().to_dict()]
    assert other.named("error") == []


def test_typing_skips_the_sender(router):
    typist, other = FakeConnection(), FakeConnection()
    run(router.join(typist, "g1"))
    run(router.join(other, "g1"))

    run(router.typing(typist, "g1", "alice"))

    assert other.named("userTyping") == ["alice"]
    assert typist.named("userTyping") == []


def test_leave_stops_delivery(router):
    conn = FakeConnection()
    run(router.join(conn, "g1"))
    run(router.join(conn, "g2"))
    run(router.leave(conn, "g1"))
    run(router.send_message("g1", "bob", "gone?"))
    run(router.send_message("g2", "bob", "still here"))
    assert [m["message"] for m in conn.named("newMessage")] == ["still here"]

    run(router.leave(conn))
    assert router.transport.rooms == {}


def test_dead_connections_are_dropped(router):
    alive, dead = FakeConnection(), DeadConnection()
    router.transport.subscribe(topic("g1"), dead)
    run(router.join(alive, "g1"))

    run(router.send_message("g1", "alice", "ping"))

    assert len(alive.named("newMessage")) == 1
    assert router.transport.members(topic("g1")) == {alive}


def test_events_dispatch(router, store):
    conn = FakeConnection()
    run(router.handle_event(conn, "alice", {"event": "joinGigChat", "data": "g1"}))
    run(router.handle_event(conn, "alice", {"event": "sendMessage", "data": {"gigId": "g1", "message": " hi "}}))
    assert [m["message"] for m in conn.named("newMessage")] == ["hi"]

    run(router.handle_event(conn, "alice", {"event": "leaveGigChat", "data": {"gigId": "g1"}}))
    assert router.transport.rooms == {}


def test_event_errors_are_reported_to_the_client(router):
    conn = FakeConnection()
    run(router.handle_event(conn, "alice", {"event": "sendMessage",
                                            "data": {"gigId": "g1", "userId": "bob", "message": "hi"}}))
    run(router.handle_event(conn, "alice", {"event": "sendMessage", "data": {"gigId": "g1", "message": "   "}}))
    run(router.handle_event(conn, "alice", {"event": "dance", "data": {}}))
    run(router.handle_event(conn, "alice", ["not", "a", "frame"]))
    run(router.handle_event(conn, "alice", {"event": "typing", "data": {}}))

    codes = [err["code"] for err in conn.named("error")]
    assert codes == [
        "authorization_error",
        "validation_error",
        "validation_error",
        "validation_error",
        "validation_error",
    ]


def test_socket_requires_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/chat"):
            pass
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/chat?token=garbage"):
            pass


def test_socket_chat_between_two_users(app, authenticator):
    alice_token = authenticator.create_access_token("alice")
    bob_headers = {"Authorization": f"Bearer {authenticator.create_access_token('bob')}"}

    with TestClient(app) as client:
        with client.websocket_connect(f"/ws/chat?token={alice_token}") as alice, \
                client.websocket_connect("/ws/chat", headers=bob_headers) as bob:
            alice.send_json({"event": "joinGigChat", "data": "g1"})
            assert alice.receive_json() == {"event": "chatHistory", "data": []}
            bob.send_json({"event": "joinGigChat", "data": {"gigId": "g1"}})
            assert bob.receive_json() == {"event": "chatHistory", "data": []}

            bob.send_json({"event": "typing", "data": {"gigId": "g1", "userId": "bob"}})
            assert alice.receive_json() == {"event": "userTyping", "data": "bob"}

            alice.send_json({"event": "sendMessage", "data": {"gigId": "g1", "userId": "alice", "message": "Hi Bob"}})
            for ws in (alice, bob):
                frame = ws.receive_json()
                assert frame["event"] == "newMessage"
                assert frame["data"]["userId"] == "alice"
                assert frame["data"]["message"] == "Hi Bob"

            alice.send_text("{broken")
            assert alice.receive_json()["data"]["code"] == "validation_error"

        with client.websocket_connect(f"/ws/chat?token={alice_token}") as again:
            again.send_json({"event": "joinGigChat", "data": "g1"})
            history = again.receive_json()["data"]
            assert [m["message"] for m in history] == ["Hi Bob"]


class FailingHistoryStore(MemoryDocumentStore):
    def query(self, path, **kwargs):
        raise DependencyError()


def test_failed_history_read_leaves_the_room():
    router = ChatRouter(FailingHistoryStore())
    conn = FakeConnection()
    run(router.handle_event(conn, "alice", {"event": "joinGigChat", "data": "g1"}))

    assert conn.named("error") == [DependencyError().to_dict()]
    assert conn.named("chatHistory") == []
    assert router.transport.rooms == {}


@pytest.mark.parametrize("gig_id", ["a/b", "a/b/c"])
def test_gig_ids_with_slashes_are_reported_to_the_client(router, gig_id):
    conn = FakeConnection()
    run(router.handle_event(conn, "alice", {"event": "joinGigChat", "data": gig_id}))
    run(router.handle_event(conn, "alice", {"event": "sendMessage", "data": {"gigId": gig_id, "message": "hi"}}))
    assert [err["code"] for err in conn.named("error")] == ["validation_error", "validation_error"]
    assert router.transport.rooms == {}

    with pytest.raises(ValidationError):
        run(router.join(conn, gig_id))
    assert router.transport.rooms == {}


def test_socket_survives_a_slashed_gig_id(app, authenticator):
    token = authenticator.create_access_token("alice")
    with TestClient(app) as client:
        with client.websocket_connect(f"/ws/chat?token={token}") as ws:
            ws.send_json({"event": "joinGigChat", "data": "a/b"})
            assert ws.receive_json()["data"]["code"] == "validation_error"

            ws.send_json({"event": "joinGigChat", "data": "g1"})
            assert ws.receive_json() == {"event": "chatHistory", "data": []}
