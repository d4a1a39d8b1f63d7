"""Tests for the chat coordinator: invitation handshake, relay and teardown."""

import asyncio
import time
from datetime import timedelta

import pytest

from conftest import FakeConnection
from petchat.domain.chat import errors
from petchat.domain.chat.coordinator import ChatCoordinator
from petchat.domain.chat.errors import ChatError, MessageError
from petchat.domain.chat.presence import WS_CLOSE_SESSION_REPLACED, PresenceDirectory
from petchat.domain.chat.sessions import JoinState, RoomStatus


class DenyAll:
    def allow(self, scope, user_id):
        return False


class SlowLimiter:
    """Blocks like a limiter waiting on a slow Redis"""

    def __init__(self, delay):
        self.delay = delay
        self.calls = []

    def allow(self, scope, user_id):
        time.sleep(self.delay)
        self.calls.append(scope)
        return True


async def max_loop_gap(operation, tick=0.02):
    """Run ``operation`` beside a ticker; return the longest pause between ticks"""
    gaps = []
    done = asyncio.Event()

    async def ticker():
        last = time.monotonic()
        while not done.is_set():
            await asyncio.sleep(tick)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    task = asyncio.create_task(ticker())
    try:
        result = await operation
    finally:
        done.set()
        await task
    return result, max(gaps)


@pytest.fixture
def coordinator(eligibility):
    return ChatCoordinator(
        PresenceDirectory(),
        eligibility,
        invitation_ttl_seconds=60,
        max_messages=50,
        max_message_length=100,
    )


@pytest.fixture
def staff_conn(coordinator, staff_ref):
    conn = FakeConnection()
    coordinator.connect(staff_ref, conn)
    return conn


@pytest.fixture
def client_conn(coordinator, client_ref):
    conn = FakeConnection()
    coordinator.connect(client_ref, conn)
    return conn


async def open_room(coordinator, inviter, invitee):
    room = await coordinator.start_chat(inviter, invitee.id)
    coordinator.accept_chat(invitee, room.id)
    return room


class TestInvitationHandshake:
    @pytest.mark.asyncio
    async def test_invitation_reaches_target_with_appointment(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        assert room.status == RoomStatus.PENDING
        invitation = client_conn.last("chat_invitation")
        assert invitation["roomId"] == room.id
        assert invitation["from"] == {"id": "1", "name": "Sam Staff"}
        assert invitation["appointmentDetails"]["service"] == "Full Groom"
        assert "Full Groom" in invitation["message"]
        assert staff_conn.events() == []

    @pytest.mark.asyncio
    async def test_accept_activates_room_for_both(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await open_room(coordinator, staff_ref, client_ref)

        assert room.status == RoomStatus.ACTIVE
        assert room.invitation is None
        assert staff_conn.events() == ["chat_started", "chat_accepted"]
        assert client_conn.events() == ["chat_invitation", "chat_started"]

        started = client_conn.last("chat_started")
        assert started["status"] == "active"
        assert {p["state"] for p in started["participants"]} == {"joined"}
        assert started["messages"] == []
        assert staff_conn.last("chat_accepted")["by"] == {"id": "2", "name": "Cara Client"}

    @pytest.mark.asyncio
    async def test_only_invitee_can_accept(self, coordinator, staff_ref, client_ref, staff_conn, client_conn):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        with pytest.raises(ChatError) as exc:
            coordinator.accept_chat(staff_ref, room.id)
        assert exc.value.code == errors.NOT_FOUND

        with pytest.raises(ChatError) as exc:
            coordinator.accept_chat(client_ref, "no-such-room")
        assert exc.value.code == errors.NOT_FOUND
        assert room.status == RoomStatus.PENDING

    @pytest.mark.asyncio
    async def test_accepting_twice_is_rejected(self, coordinator, staff_ref, client_ref, staff_conn, client_conn):
        room = await open_room(coordinator, staff_ref, client_ref)

        with pytest.raises(ChatError) as exc:
            coordinator.accept_chat(client_ref, room.id)
        assert exc.value.code == errors.NOT_FOUND


class TestStartChatRules:
    @pytest.mark.asyncio
    async def test_ineligible_pair_creates_no_room(self, coordinator, staff_ref, stranger_ref, staff_conn):
        stranger_conn = FakeConnection()
        coordinator.connect(stranger_ref, stranger_conn)

        with pytest.raises(ChatError) as exc:
            await coordinator.start_chat(staff_ref, stranger_ref.id)

        assert exc.value.code == errors.INELIGIBLE
        assert coordinator.rooms == {}
        assert stranger_conn.events() == []

    @pytest.mark.asyncio
    async def test_unknown_target_is_ineligible(self, coordinator, staff_ref, staff_conn):
        with pytest.raises(ChatError) as exc:
            await coordinator.start_chat(staff_ref, "999")
        assert exc.value.code == errors.INELIGIBLE
        assert exc.value.message == "Target user not found"

    @pytest.mark.asyncio
    async def test_self_chat_rejected_before_eligibility(self, coordinator, eligibility, staff_ref, staff_conn):
        with pytest.raises(ChatError) as exc:
            await coordinator.start_chat(staff_ref, staff_ref.id)

        assert exc.value.code == errors.INVALID_TARGET
        assert eligibility.checks == 0

    @pytest.mark.asyncio
    async def test_missing_target_rejected(self, coordinator, staff_ref, staff_conn):
        with pytest.raises(ChatError) as exc:
            await coordinator.start_chat(staff_ref, None)
        assert exc.value.code == errors.INVALID_TARGET

    @pytest.mark.asyncio
    async def test_duplicate_invite_in_either_direction(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        with pytest.raises(ChatError) as exc:
            await coordinator.start_chat(staff_ref, client_ref.id)
        assert exc.value.code == errors.DUPLICATE_INVITE
        assert exc.value.room_id == room.id

        with pytest.raises(ChatError) as exc:
            await coordinator.start_chat(client_ref, staff_ref.id)
        assert exc.value.code == errors.DUPLICATE_INVITE
        assert len(coordinator.rooms) == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_one_room(
        self, coordinator, eligibility, staff_ref, client_ref, staff_conn, client_conn
    ):
        eligibility.gate = asyncio.Event()
        first = asyncio.create_task(coordinator.start_chat(staff_ref, client_ref.id))
        second = asyncio.create_task(coordinator.start_chat(client_ref, staff_ref.id))
        await asyncio.sleep(0)
        eligibility.gate.set()

        results = await asyncio.gather(first, second, return_exceptions=True)

        failures = [r for r in results if isinstance(r, ChatError)]
        assert len(coordinator.rooms) == 1
        assert len(failures) == 1
        assert failures[0].code == errors.DUPLICATE_INVITE

    @pytest.mark.asyncio
    async def test_eligibility_failure_reported_as_ineligible(
        self, coordinator, eligibility, staff_ref, client_ref, staff_conn
    ):
        eligibility.fail = True

        with pytest.raises(ChatError) as exc:
            await coordinator.start_chat(staff_ref, client_ref.id)

        assert exc.value.code == errors.INELIGIBLE
        assert coordinator.rooms == {}

    @pytest.mark.asyncio
    async def test_rate_limited_start(self, eligibility, staff_ref, client_ref):
        coordinator = ChatCoordinator(PresenceDirectory(), eligibility, rate_limiter=DenyAll())

        with pytest.raises(ChatError) as exc:
            await coordinator.start_chat(staff_ref, client_ref.id)

        assert exc.value.code == errors.RATE_LIMITED
        assert eligibility.checks == 0

    @pytest.mark.asyncio
    async def test_slow_limiter_runs_off_the_event_loop(self, eligibility, staff_ref, client_ref):
        coordinator = ChatCoordinator(PresenceDirectory(), eligibility, rate_limiter=SlowLimiter(0.3))
        coordinator.connect(staff_ref, FakeConnection())
        coordinator.connect(client_ref, FakeConnection())

        room, gap = await max_loop_gap(coordinator.start_chat(staff_ref, client_ref.id))

        assert gap < 0.2
        assert room.status == RoomStatus.PENDING

    @pytest.mark.asyncio
    async def test_offline_target_gets_invitation_on_connect(self, coordinator, staff_ref, client_ref, staff_conn):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        unreachable = staff_conn.last(errors.CHAT_ERROR_EVENT)
        assert unreachable["code"] == errors.TARGET_UNREACHABLE
        assert unreachable["roomId"] == room.id
        assert room.id in coordinator.rooms

        client_conn = FakeConnection()
        coordinator.connect(client_ref, client_conn)
        assert client_conn.last("chat_invitation")["roomId"] == room.id


class TestMessaging:
    @pytest.mark.asyncio
    async def test_messages_relayed_in_order_to_both_members(
        self, coordinator, eligibility, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await open_room(coordinator, staff_ref, client_ref)

        await coordinator.send_temp_message(staff_ref, room.id, "Hi Cara")
        await coordinator.send_temp_message(client_ref, room.id, "  Hello!  ")
        await coordinator.send_temp_message(staff_ref, room.id, "See you Tuesday")

        staff_view = staff_conn.payloads("new_temp_message")
        client_view = client_conn.payloads("new_temp_message")
        assert staff_view == client_view
        assert [m["seq"] for m in staff_view] == [1, 2, 3]
        assert [m["message"] for m in staff_view] == ["Hi Cara", "Hello!", "See you Tuesday"]
        assert staff_view[1]["from"]["id"] == client_ref.id
        assert eligibility.activity == ["10", "10", "10"]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, eligibility, staff_ref, client_ref):
        coordinator = ChatCoordinator(PresenceDirectory(), eligibility, max_messages=3)
        coordinator.connect(staff_ref, FakeConnection())
        coordinator.connect(client_ref, FakeConnection())
        room = await open_room(coordinator, staff_ref, client_ref)

        for i in range(5):
            await coordinator.send_temp_message(staff_ref, room.id, f"message {i}")

        assert [m.seq for m in room.messages] == [3, 4, 5]
        message = await coordinator.send_temp_message(client_ref, room.id, "next")
        assert message.seq == 6

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["", "   ", None, "x" * 101])
    async def test_invalid_bodies_rejected(self, coordinator, staff_ref, client_ref, staff_conn, client_conn, body):
        room = await open_room(coordinator, staff_ref, client_ref)

        with pytest.raises(MessageError) as exc:
            await coordinator.send_temp_message(staff_ref, room.id, body)

        assert exc.value.code == errors.INVALID_MESSAGE
        assert exc.value.event == errors.MESSAGE_ERROR_EVENT
        assert len(room.messages) == 0

    @pytest.mark.asyncio
    async def test_unsupported_type_rejected(self, coordinator, staff_ref, client_ref, staff_conn, client_conn):
        room = await open_room(coordinator, staff_ref, client_ref)

        with pytest.raises(MessageError) as exc:
            await coordinator.send_temp_message(staff_ref, room.id, "hi", kind="image")
        assert exc.value.code == errors.INVALID_MESSAGE

    @pytest.mark.asyncio
    async def test_send_rules_for_pending_room(
        self, coordinator, staff_ref, client_ref, stranger_ref, staff_conn, client_conn
    ):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        with pytest.raises(MessageError) as exc:
            await coordinator.send_temp_message(staff_ref, room.id, "hello?")
        assert exc.value.code == errors.ROOM_NOT_ACTIVE

        with pytest.raises(MessageError) as exc:
            await coordinator.send_temp_message(client_ref, room.id, "hello?")
        assert exc.value.code == errors.NOT_MEMBER

        with pytest.raises(MessageError) as exc:
            await coordinator.send_temp_message(stranger_ref, room.id, "hello?")
        assert exc.value.code == errors.NOT_MEMBER

        with pytest.raises(MessageError) as exc:
            await coordinator.send_temp_message(staff_ref, "missing", "hello?")
        assert exc.value.code == errors.NOT_FOUND

    @pytest.mark.asyncio
    async def test_rate_limited_message(self, eligibility, staff_ref, client_ref):
        coordinator = ChatCoordinator(PresenceDirectory(), eligibility)
        coordinator.connect(staff_ref, FakeConnection())
        coordinator.connect(client_ref, FakeConnection())
        room = await open_room(coordinator, staff_ref, client_ref)
        coordinator.rate_limiter = DenyAll()

        with pytest.raises(MessageError) as exc:
            await coordinator.send_temp_message(staff_ref, room.id, "hi")
        assert exc.value.code == errors.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_slow_limiter_does_not_stall_other_rooms(self, eligibility, staff_ref, client_ref):
        coordinator = ChatCoordinator(PresenceDirectory(), eligibility)
        staff_conn, client_conn = FakeConnection(), FakeConnection()
        coordinator.connect(staff_ref, staff_conn)
        coordinator.connect(client_ref, client_conn)
        room = await open_room(coordinator, staff_ref, client_ref)
        coordinator.rate_limiter = SlowLimiter(0.3)

        message, gap = await max_loop_gap(coordinator.send_temp_message(staff_ref, room.id, "hi"))

        assert gap < 0.2
        assert message.seq == 1
        assert coordinator.rate_limiter.calls == ["send_temp_message"]

    @pytest.mark.asyncio
    async def test_room_closed_during_rate_check_rejects_message(self, eligibility, staff_ref, client_ref):
        coordinator = ChatCoordinator(PresenceDirectory(), eligibility)
        coordinator.connect(staff_ref, FakeConnection())
        client_conn = FakeConnection()
        coordinator.connect(client_ref, client_conn)
        room = await open_room(coordinator, staff_ref, client_ref)
        coordinator.rate_limiter = SlowLimiter(0.1)

        sending = asyncio.create_task(coordinator.send_temp_message(staff_ref, room.id, "too late"))
        await asyncio.sleep(0.02)
        coordinator.leave_chat(client_ref, room.id)

        with pytest.raises(MessageError) as exc:
            await sending
        assert exc.value.code == errors.ROOM_NOT_ACTIVE
        assert len(room.messages) == 0

    @pytest.mark.asyncio
    async def test_activity_failure_does_not_block_relay(
        self, coordinator, eligibility, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await open_room(coordinator, staff_ref, client_ref)

        async def broken(appointment_id):
            raise RuntimeError("write failed")

        eligibility.record_chat_activity = broken
        await coordinator.send_temp_message(staff_ref, room.id, "still delivered")

        assert client_conn.last("new_temp_message")["message"] == "still delivered"

    @pytest.mark.asyncio
    async def test_typing_goes_to_the_other_member_only(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await open_room(coordinator, staff_ref, client_ref)

        coordinator.set_typing(staff_ref, room.id, True)
        coordinator.set_typing(staff_ref, "missing", True)

        assert "user_typing" not in staff_conn.events()
        typing = client_conn.last("user_typing")
        assert typing == {"roomId": room.id, "user": staff_ref.to_dict(), "typing": True}


class TestLeavingAndDisconnects:
    @pytest.mark.asyncio
    async def test_leave_closes_room(self, coordinator, staff_ref, client_ref, staff_conn, client_conn):
        room = await open_room(coordinator, staff_ref, client_ref)

        coordinator.leave_chat(client_ref, room.id)

        assert room.status == RoomStatus.CLOSED
        assert room.participant(client_ref.id).state == JoinState.LEFT
        assert staff_conn.last("user_left_chat") == {"roomId": room.id, "user": client_ref.to_dict()}

        with pytest.raises(MessageError) as exc:
            await coordinator.send_temp_message(client_ref, room.id, "wait")
        assert exc.value.code == errors.NOT_MEMBER

        with pytest.raises(MessageError) as exc:
            await coordinator.send_temp_message(staff_ref, room.id, "hello?")
        assert exc.value.code == errors.ROOM_NOT_ACTIVE

    @pytest.mark.asyncio
    async def test_room_discarded_when_everyone_left(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await open_room(coordinator, staff_ref, client_ref)

        coordinator.leave_chat(client_ref, room.id)
        coordinator.leave_chat(staff_ref, room.id)

        assert room.id not in coordinator.rooms
        with pytest.raises(ChatError) as exc:
            coordinator.leave_chat(staff_ref, room.id)
        assert exc.value.code == errors.NOT_FOUND

    @pytest.mark.asyncio
    async def test_pair_can_chat_again_after_leaving(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        first = await open_room(coordinator, staff_ref, client_ref)
        coordinator.leave_chat(staff_ref, first.id)

        second = await coordinator.start_chat(client_ref, staff_ref.id)

        assert second.id != first.id
        assert second.status == RoomStatus.PENDING

    @pytest.mark.asyncio
    async def test_leave_requires_membership(self, coordinator, staff_ref, client_ref, stranger_ref, staff_conn):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        with pytest.raises(ChatError) as exc:
            coordinator.leave_chat(stranger_ref, room.id)
        assert exc.value.code == errors.NOT_MEMBER

    @pytest.mark.asyncio
    async def test_disconnect_notifies_remaining_member(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await open_room(coordinator, staff_ref, client_ref)

        coordinator.disconnect(staff_ref, staff_conn)

        assert not coordinator.presence.is_online(staff_ref.id)
        assert room.status == RoomStatus.CLOSED
        assert client_conn.last("user_disconnected") == {"roomId": room.id, "user": staff_ref.to_dict()}

    @pytest.mark.asyncio
    async def test_inviter_disconnect_withdraws_invitation(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        coordinator.disconnect(staff_ref, staff_conn)

        assert coordinator.rooms == {}
        withdrawn = client_conn.last("chat_invitation_withdrawn")
        assert withdrawn["roomId"] == room.id
        assert withdrawn["reason"] == "disconnected"

    @pytest.mark.asyncio
    async def test_inviter_leave_withdraws_invitation(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        coordinator.leave_chat(staff_ref, room.id)

        assert client_conn.last("chat_invitation_withdrawn")["reason"] == "withdrawn"
        with pytest.raises(ChatError):
            coordinator.accept_chat(client_ref, room.id)

    @pytest.mark.asyncio
    async def test_invitee_disconnect_keeps_invitation(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        coordinator.disconnect(client_ref, client_conn)

        assert coordinator.rooms[room.id].status == RoomStatus.PENDING
        assert staff_conn.events() == []

    @pytest.mark.asyncio
    async def test_invitee_leave_declines(self, coordinator, staff_ref, client_ref, staff_conn, client_conn):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        coordinator.leave_chat(client_ref, room.id)

        assert coordinator.rooms == {}
        assert staff_conn.last("user_left_chat")["roomId"] == room.id

    @pytest.mark.asyncio
    async def test_superseded_connection_does_not_close_rooms(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await open_room(coordinator, staff_ref, client_ref)
        newer = FakeConnection()
        coordinator.connect(staff_ref, newer)

        coordinator.disconnect(staff_ref, staff_conn)
        await coordinator.send_temp_message(client_ref, room.id, "still here?")

        assert room.status == RoomStatus.ACTIVE
        assert newer.last("new_temp_message")["message"] == "still here?"
        assert "new_temp_message" not in staff_conn.events()

    @pytest.mark.asyncio
    async def test_superseded_connection_is_told_and_closed(self, coordinator, staff_ref, staff_conn):
        newer = FakeConnection()
        coordinator.connect(staff_ref, newer)

        assert staff_conn.last(errors.CHAT_ERROR_EVENT)["code"] == errors.SESSION_REPLACED
        assert staff_conn.close_code == WS_CLOSE_SESSION_REPLACED
        assert newer.close_code is None

    @pytest.mark.asyncio
    async def test_superseded_connection_is_not_served(self, coordinator, staff_ref, client_ref, staff_conn):
        newer = FakeConnection()
        coordinator.connect(staff_ref, newer)
        staff_conn.frames.clear()

        await coordinator.handle(staff_ref, staff_conn, "get_active_chats", {})
        await coordinator.handle(staff_ref, staff_conn, "start_chat", {"targetUserId": client_ref.id})

        assert staff_conn.events() == [errors.CHAT_ERROR_EVENT, errors.CHAT_ERROR_EVENT]
        assert {p["code"] for p in staff_conn.payloads(errors.CHAT_ERROR_EVENT)} == {errors.SESSION_REPLACED}
        assert coordinator.rooms == {}
        assert newer.events() == []

    @pytest.mark.asyncio
    async def test_both_members_disconnecting_removes_room(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await open_room(coordinator, staff_ref, client_ref)

        coordinator.disconnect(staff_ref, staff_conn)
        coordinator.disconnect(client_ref, client_conn)

        assert coordinator.rooms == {}
        assert room.all_left()
        assert len(client_conn.payloads("user_disconnected")) == 1
        assert "user_disconnected" not in staff_conn.events()
        assert coordinator.stats()["connectedUsers"] == 0


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_sweep_expires_old_invitations(
        self, coordinator, staff_ref, client_ref, staff_conn, client_conn
    ):
        room = await coordinator.start_chat(staff_ref, client_ref.id)

        assert coordinator.sweep_expired_invitations(now=room.created_at + timedelta(seconds=30)) == 0
        assert coordinator.sweep_expired_invitations(now=room.created_at + timedelta(seconds=61)) == 1

        assert coordinator.rooms == {}
        assert staff_conn.last(errors.CHAT_ERROR_EVENT)["code"] == errors.INVITATION_EXPIRED
        assert client_conn.last("chat_invitation_withdrawn")["reason"] == "expired"

    @pytest.mark.asyncio
    async def test_sweep_ignores_active_rooms(self, coordinator, staff_ref, client_ref, staff_conn, client_conn):
        room = await open_room(coordinator, staff_ref, client_ref)

        assert coordinator.sweep_expired_invitations(now=room.created_at + timedelta(hours=1)) == 0
        assert room.id in coordinator.rooms

    def test_sweep_disabled_without_ttl(self, eligibility):
        coordinator = ChatCoordinator(PresenceDirectory(), eligibility, invitation_ttl_seconds=0)
        assert coordinator.sweep_expired_invitations() == 0

    @pytest.mark.asyncio
    async def test_active_chats_room_info_and_stats(
        self, coordinator, staff_ref, client_ref, stranger_ref, staff_conn, client_conn
    ):
        room = await open_room(coordinator, staff_ref, client_ref)
        await coordinator.send_temp_message(staff_ref, room.id, "hello")

        chats = coordinator.get_active_chats(client_ref)
        assert len(chats) == 1
        assert chats[0]["participants"][0]["id"] == staff_ref.id
        assert chats[0]["lastMessage"]["message"] == "hello"

        info = coordinator.room_info(staff_ref.id, room.id)
        assert info["messageCount"] == 1
        assert "messages" not in info

        with pytest.raises(ChatError) as exc:
            coordinator.room_info(stranger_ref.id, room.id)
        assert exc.value.code == errors.NOT_MEMBER

        assert coordinator.stats() == {
            "rooms": 1,
            "pending": 0,
            "active": 1,
            "closed": 0,
            "connectedUsers": 2,
        }


class TestDispatch:
    @pytest.mark.asyncio
    async def test_full_flow_through_handle(self, coordinator, staff_ref, client_ref, staff_conn, client_conn):
        await coordinator.handle(staff_ref, staff_conn, "start_chat", {"targetUserId": 2, "appointmentId": "10"})
        room_id = client_conn.last("chat_invitation")["roomId"]

        await coordinator.handle(client_ref, client_conn, "accept_chat", {"roomId": room_id})
        await coordinator.handle(client_ref, client_conn, "send_temp_message", {"roomId": room_id, "message": "Hi"})
        await coordinator.handle(staff_ref, staff_conn, "get_active_chats", None)

        assert staff_conn.last("new_temp_message")["message"] == "Hi"
        assert staff_conn.last("active_chats")[0]["roomId"] == room_id

    @pytest.mark.asyncio
    async def test_errors_go_to_caller_only(self, coordinator, staff_ref, client_ref, staff_conn, client_conn):
        await coordinator.handle(staff_ref, staff_conn, "accept_chat", {"roomId": "missing"})

        assert staff_conn.last(errors.CHAT_ERROR_EVENT)["code"] == errors.NOT_FOUND
        assert client_conn.events() == []

    @pytest.mark.asyncio
    async def test_message_failures_use_message_error(self, coordinator, staff_ref, staff_conn):
        await coordinator.handle(staff_ref, staff_conn, "send_temp_message", {"roomId": "missing", "message": "x"})
        await coordinator.handle(staff_ref, staff_conn, "send_temp_message", {})

        codes = [p["code"] for p in staff_conn.payloads(errors.MESSAGE_ERROR_EVENT)]
        assert codes == [errors.NOT_FOUND, errors.INVALID_REQUEST]

    @pytest.mark.asyncio
    async def test_unknown_command(self, coordinator, staff_ref, staff_conn):
        await coordinator.handle(staff_ref, staff_conn, "delete_everything", {})

        assert staff_conn.last(errors.CHAT_ERROR_EVENT)["code"] == errors.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_unexpected_failure_reported_as_internal_error(self, coordinator, staff_ref, staff_conn):
        def explode(user):
            raise KeyError("boom")

        coordinator.get_active_chats = explode
        await coordinator.handle(staff_ref, staff_conn, "get_active_chats", {})

        assert staff_conn.last(errors.CHAT_ERROR_EVENT)["code"] == errors.INTERNAL_ERROR
