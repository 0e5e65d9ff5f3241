"""Async unit tests for SessionManager using in-process fake sockets.

These drive open/dispatch/close directly, which makes the disconnect path
(offline persistence and user_offline fan-out) observable without a real
WebSocket transport.
"""
import asyncio
import threading

import pytest

from collera.chat.manager import AUTH_FAILURE_CLOSE_CODE, ConnectionState, SessionManager
from collera.chat.presence import PresenceRegistry
from collera.chat.service import ChatService
from collera.chat.store import ChatStore
from collera.identity.service import UserDirectory


class FakeWebSocket:
    """Records everything the manager writes to it."""

    def __init__(self, broken: bool = False):
        self.sent = []
        self.accepted = False
        self.close_code = None
        self.broken = broken

    async def accept(self):
        self.accepted = True

    async def close(self, code: int = 1000):
        self.close_code = code

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    def types(self):
        return [event["type"] for event in self.sent]

    def last(self):
        return self.sent[-1]


@pytest.fixture
def directory():
    users = UserDirectory(db_path=":memory:", secret_key="test-secret")
    yield users
    users.close()


@pytest.fixture
def store():
    chat_store = ChatStore(db_path=":memory:")
    yield chat_store
    chat_store.close()


@pytest.fixture
def people(directory):
    alice = directory.create_user("Alice", "Rao")["id"]
    bob = directory.create_user("Bob", "Mehta")["id"]
    carol = directory.create_user("Carol", "Singh")["id"]
    directory.add_connection(alice, bob)
    return alice, bob, carol


@pytest.fixture
def manager(directory, store):
    return SessionManager(PresenceRegistry(), ChatService(store, directory), directory)


async def _connect(manager, directory, user_id, websocket=None):
    websocket = websocket or FakeWebSocket()
    session = await manager.open(websocket, directory.issue_token(user_id))
    assert session is not None
    return session, websocket


class TestOpen:
    @pytest.mark.asyncio
    async def test_rejected_credential_closes_before_accept(self, manager, people):
        ws = FakeWebSocket()
        session = await manager.open(ws, "not-a-jwt")

        assert session is None
        assert ws.close_code == AUTH_FAILURE_CLOSE_CODE
        assert ws.accepted is False
        assert ws.sent == []
        assert len(manager.registry) == 0

    @pytest.mark.asyncio
    async def test_missing_credential_rejected(self, manager, people):
        ws = FakeWebSocket()
        assert await manager.open(ws, None) is None
        assert ws.close_code == AUTH_FAILURE_CLOSE_CODE

    @pytest.mark.asyncio
    async def test_unverified_user_rejected(self, manager, directory):
        pending = directory.create_user("Dan", "Roy", is_verified=False)["id"]
        ws = FakeWebSocket()
        assert await manager.open(ws, directory.issue_token(pending)) is None
        assert ws.close_code == AUTH_FAILURE_CLOSE_CODE

    @pytest.mark.asyncio
    async def test_accepted_connection_is_registered(self, manager, directory, people):
        alice, _, _ = people
        session, ws = await _connect(manager, directory, alice)

        assert session.state is ConnectionState.ACTIVE
        assert ws.accepted
        assert ws.sent[0] == {"type": "connected", "userId": alice, "connectionId": session.id}
        assert manager.registry.connections_for(alice) == {session.id}
        assert directory.get_user_summary(alice)["isOnline"] is True

    @pytest.mark.asyncio
    async def test_online_connections_are_told(self, manager, directory, people):
        alice, bob, carol = people
        _, bob_ws = await _connect(manager, directory, bob)
        _, carol_ws = await _connect(manager, directory, carol)

        await _connect(manager, directory, alice)

        assert bob_ws.last() == {"type": "user_online", "userId": alice}
        # carol is not connected to alice
        assert carol_ws.types() == ["connected"]


class TestClose:
    @pytest.mark.asyncio
    async def test_last_connection_goes_offline(self, manager, directory, people):
        alice, bob, _ = people
        _, bob_ws = await _connect(manager, directory, bob)
        session, _ = await _connect(manager, directory, alice)

        await manager.close(session)

        assert not manager.registry.is_online(alice)
        assert session.id not in manager.sockets
        offline = bob_ws.last()
        assert offline["type"] == "user_offline"
        assert offline["userId"] == alice
        assert offline["lastSeen"]
        summary = directory.get_user_summary(alice)
        assert summary["isOnline"] is False
        assert summary["lastSeen"] is not None

    @pytest.mark.asyncio
    async def test_close_runs_once(self, manager, directory, people):
        alice, bob, _ = people
        _, bob_ws = await _connect(manager, directory, bob)
        session, _ = await _connect(manager, directory, alice)

        await manager.close(session)
        await manager.close(session)

        assert bob_ws.types().count("user_offline") == 1
        assert session.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_other_device_keeps_user_online(self, manager, directory, people):
        alice, bob, _ = people
        _, bob_ws = await _connect(manager, directory, bob)
        laptop, _ = await _connect(manager, directory, alice)
        phone, _ = await _connect(manager, directory, alice)

        await manager.close(laptop)

        assert manager.registry.connections_for(alice) == {phone.id}
        assert "user_offline" not in bob_ws.types()
        assert directory.get_user_summary(alice)["isOnline"] is True

    @pytest.mark.asyncio
    async def test_events_after_close_are_ignored(self, manager, directory, people):
        alice, bob, _ = people
        session, ws = await _connect(manager, directory, alice)
        await manager.close(session)
        sent_before = len(ws.sent)

        await manager.dispatch(session, {"type": "send_message", "recipientId": bob, "content": "hi"})

        assert len(ws.sent) == sent_before
        assert manager.service.store.list_conversations_for(alice) == []


class HeldOfflineDirectory(UserDirectory):
    """User directory whose offline writes wait until the test releases them."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.offline_write_started = threading.Event()
        self.release_offline_write = threading.Event()

    def set_presence(self, user_id, online, last_seen):
        if not online:
            self.offline_write_started.set()
            self.release_offline_write.wait(timeout=5)
        super().set_presence(user_id, online, last_seen)


@pytest.fixture
def held_directory():
    users = HeldOfflineDirectory(db_path=":memory:", secret_key="test-secret")
    yield users
    users.release_offline_write.set()
    users.close()


class TestConcurrentPresence:
    @pytest.mark.asyncio
    async def test_reconnect_during_offline_write_ends_online(self, held_directory, store):
        directory = held_directory
        manager = SessionManager(PresenceRegistry(), ChatService(store, directory), directory)
        alice = directory.create_user("Alice", "Rao")["id"]
        bob = directory.create_user("Bob", "Mehta")["id"]
        directory.add_connection(alice, bob)
        _, bob_ws = await _connect(manager, directory, bob)
        session, _ = await _connect(manager, directory, alice)

        closing = asyncio.create_task(manager.close(session))
        while not directory.offline_write_started.is_set():
            await asyncio.sleep(0.01)

        new_ws = FakeWebSocket()
        reopening = asyncio.create_task(manager.open(new_ws, directory.issue_token(alice)))
        while not new_ws.accepted:
            await asyncio.sleep(0.01)

        directory.release_offline_write.set()
        await closing
        reopened = await reopening

        assert manager.registry.connections_for(alice) == {reopened.id}
        assert directory.get_user_summary(alice)["isOnline"] is True
        assert bob_ws.types()[-2:] == ["user_offline", "user_online"]
        assert new_ws.last()["type"] == "connected"

    @pytest.mark.asyncio
    async def test_simultaneous_closes_go_offline_once(self, manager, directory, people):
        alice, bob, _ = people
        _, bob_ws = await _connect(manager, directory, bob)
        laptop, _ = await _connect(manager, directory, alice)
        phone, _ = await _connect(manager, directory, alice)

        await asyncio.gather(manager.close(laptop), manager.close(phone))

        assert not manager.registry.is_online(alice)
        assert bob_ws.types().count("user_offline") == 1
        assert directory.get_user_summary(alice)["isOnline"] is False
        assert manager._presence_locks == {}


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_offline_recipient_gets_persisted_message(self, manager, directory, store, people):
        alice, bob, _ = people
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "send_message", "recipientId": bob, "content": "hey"})

        ack = ws.last()
        assert ack["type"] == "message_sent"
        assert ack["delivered"] is False
        assert ack["message"]["content"] == "hey"
        assert ack["message"]["senderId"] == alice
        conversation = store.get_conversation(ack["conversationId"])
        assert conversation.unread_for(bob) == 1
        assert conversation.lastMessageId == ack["message"]["id"]

    @pytest.mark.asyncio
    async def test_every_recipient_device_gets_one_copy(self, manager, directory, people):
        alice, bob, _ = people
        _, phone = await _connect(manager, directory, bob)
        _, laptop = await _connect(manager, directory, bob)
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "send_message", "recipientId": bob, "content": "hey"})

        for device in (phone, laptop):
            assert device.types().count("new_message") == 1
            assert device.last()["message"]["content"] == "hey"
        assert ws.last()["delivered"] is True

    @pytest.mark.asyncio
    async def test_broken_socket_does_not_block_other_devices(self, manager, directory, people):
        alice, bob, _ = people
        await _connect(manager, directory, bob, FakeWebSocket(broken=True))
        _, healthy = await _connect(manager, directory, bob)
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "send_message", "recipientId": bob, "content": "hey"})

        assert healthy.last()["type"] == "new_message"
        assert ws.last()["delivered"] is True

    @pytest.mark.asyncio
    async def test_failed_socket_is_no_longer_written(self, manager, directory, people):
        alice, bob, _ = people
        dead, dead_ws = await _connect(manager, directory, bob, FakeWebSocket(broken=True))
        _, healthy = await _connect(manager, directory, bob)
        session, _ = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "send_message", "recipientId": bob, "content": "one"})

        assert dead.id not in manager.sockets
        # presence is released by the connection's own close
        assert dead.id in manager.registry.connections_for(bob)
        assert await manager.send_to_user(bob, {"type": "ping"}) == 1
        assert healthy.last() == {"type": "ping"}

        await manager.close(dead)
        assert manager.registry.is_online(bob)

    @pytest.mark.asyncio
    async def test_non_connection_is_refused_without_writes(self, manager, directory, store, people):
        alice, _, carol = people
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "send_message", "recipientId": carol, "content": "hi"})

        error = ws.last()
        assert error["type"] == "error"
        assert error["code"] == "forbidden"
        assert error["event"] == "send_message"
        assert store.list_conversations_for(alice) == []

    @pytest.mark.asyncio
    async def test_unknown_recipient(self, manager, directory, people):
        alice, _, _ = people
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "send_message", "recipientId": "ghost", "content": "hi"})

        assert ws.last()["code"] == "not_found"

    @pytest.mark.asyncio
    async def test_mismatched_conversation_id(self, manager, directory, store, people):
        alice, bob, carol = people
        other = store.find_or_create_conversation(bob, carol)
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {
            "type": "send_message",
            "recipientId": bob,
            "content": "hi",
            "conversationId": other.id,
        })

        assert ws.last()["code"] == "not_found"
        assert store.list_messages(other.id).total == 0

    @pytest.mark.asyncio
    async def test_blank_content_is_validation_error(self, manager, directory, store, people):
        alice, bob, _ = people
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "send_message", "recipientId": bob, "content": "   "})

        assert ws.last()["code"] == "validation_error"
        assert store.list_conversations_for(alice) == []

    @pytest.mark.asyncio
    async def test_missing_field_is_validation_error(self, manager, directory, people):
        alice, bob, _ = people
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "send_message", "recipientId": bob})

        error = ws.last()
        assert error["code"] == "validation_error"
        assert "content" in error["error"]

    @pytest.mark.asyncio
    async def test_storage_failure_reported_to_sender_only(self, manager, directory, store, people):
        alice, bob, _ = people
        _, bob_ws = await _connect(manager, directory, bob)
        session, ws = await _connect(manager, directory, alice)
        store.close()

        await manager.dispatch(session, {"type": "send_message", "recipientId": bob, "content": "hi"})

        assert ws.last()["code"] == "delivery_failed"
        assert "error" not in bob_ws.types()


class TestOtherEvents:
    @pytest.mark.asyncio
    async def test_unknown_event_type(self, manager, directory, people):
        alice, _, _ = people
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "dance"})

        assert ws.last() == {
            "type": "error",
            "code": "unknown_event",
            "error": "Unknown event type: dance",
            "event": "dance",
        }

    @pytest.mark.asyncio
    async def test_non_string_event_type_keeps_session_alive(self, manager, directory, people):
        alice, bob, _ = people
        _, bob_ws = await _connect(manager, directory, bob)
        session, ws = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": ["send_message"]})
        assert ws.last()["code"] == "unknown_event"

        await manager.dispatch(session, {"type": {"name": "typing_start"}})
        assert ws.last()["code"] == "unknown_event"

        await manager.dispatch(session, {"type": "send_message", "recipientId": bob, "content": "still here"})
        assert bob_ws.last()["type"] == "new_message"

    @pytest.mark.asyncio
    async def test_typing_to_offline_user_is_silent(self, manager, directory, people):
        alice, bob, _ = people
        session, ws = await _connect(manager, directory, alice)
        sent_before = len(ws.sent)

        await manager.dispatch(session, {"type": "typing_start", "recipientId": bob})

        assert len(ws.sent) == sent_before

    @pytest.mark.asyncio
    async def test_typing_relayed(self, manager, directory, people):
        alice, bob, _ = people
        _, bob_ws = await _connect(manager, directory, bob)
        session, _ = await _connect(manager, directory, alice)

        await manager.dispatch(session, {"type": "typing_start", "recipientId": bob, "conversationId": "c1"})
        assert bob_ws.last() == {"type": "user_typing", "userId": alice, "conversationId": "c1"}

        await manager.dispatch(session, {"type": "typing_stop", "recipientId": bob, "conversationId": "c1"})
        assert bob_ws.last() == {"type": "user_stopped_typing", "userId": alice, "conversationId": "c1"}

    @pytest.mark.asyncio
    async def test_typing_extra_fields_relayed(self, manager, directory, people):
        alice, bob, _ = people
        _, bob_ws = await _connect(manager, directory, bob)
        session, _ = await _connect(manager, directory, alice)

        await manager.dispatch(session, {
            "type": "typing_start",
            "recipientId": bob,
            "conversationId": "c1",
            "draftLength": 3,
            "userId": "spoofed",
        })

        assert bob_ws.last() == {
            "type": "user_typing",
            "userId": alice,
            "conversationId": "c1",
            "draftLength": 3,
        }

    @pytest.mark.asyncio
    async def test_mark_read_notifies_other_participant(self, manager, directory, store, people):
        alice, bob, _ = people
        _, alice_ws = await _connect(manager, directory, alice)
        bob_session, bob_ws = await _connect(manager, directory, bob)
        conversation = store.find_or_create_conversation(alice, bob)
        message = store.append_message(conversation.id, alice, "read me")
        store.record_delivery(conversation.id, message, bob)

        await manager.dispatch(bob_session, {"type": "mark_read", "conversationId": conversation.id})

        receipt = alice_ws.last()
        assert receipt["type"] == "messages_read"
        assert receipt["conversationId"] == conversation.id
        assert receipt["readBy"] == bob
        assert receipt["count"] == 1
        assert store.get_conversation(conversation.id).unread_for(bob) == 0
        assert "error" not in bob_ws.types()

    @pytest.mark.asyncio
    async def test_mark_read_by_outsider(self, manager, directory, store, people):
        alice, bob, carol = people
        conversation = store.find_or_create_conversation(alice, bob)
        session, ws = await _connect(manager, directory, carol)

        await manager.dispatch(session, {"type": "mark_read", "conversationId": conversation.id})

        assert ws.last()["code"] == "not_found"

    @pytest.mark.asyncio
    async def test_connection_request_relayed_with_extra_fields(self, manager, directory, people):
        alice, _, carol = people
        _, carol_ws = await _connect(manager, directory, carol)
        session, _ = await _connect(manager, directory, alice)

        await manager.dispatch(session, {
            "type": "connection_request",
            "targetUserId": carol,
            "message": "Same hostel?",
        })

        assert carol_ws.last() == {
            "type": "new_connection_request",
            "fromUserId": alice,
            "message": "Same hostel?",
        }

    @pytest.mark.asyncio
    async def test_connection_accepted_relayed(self, manager, directory, people):
        alice, _, carol = people
        _, alice_ws = await _connect(manager, directory, alice)
        session, _ = await _connect(manager, directory, carol)

        await manager.dispatch(session, {"type": "connection_accepted", "targetUserId": alice})

        event = alice_ws.last()
        assert event["type"] == "connection_accepted_notification"
        assert event["fromUserId"] == carol
