"""
Chat Session Coordinator - the single authority over temporary chat rooms.

Room lifecycle:

    NO_ROOM --start_chat--> PENDING --accept_chat--> ACTIVE --leave/drop--> CLOSED

Every mutation happens synchronously on the event loop after the last
suspension point of a command (the rate limit and eligibility checks), and
room state is re-validated after each await, so operations on one room never
interleave. Events are pushed through the presence directory;
connections queue them, so every member sees a room's messages in the order
they were appended.

Errors are raised as ChatError before anything changes and are delivered to
the calling connection only.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import ValidationError

from ...config import (
    CHAT_INVITATION_TTL_SECONDS,
    CHAT_MAX_MESSAGE_LENGTH,
    CHAT_MAX_MESSAGES_PER_ROOM,
)
from ...rate_limiter import UserRateLimiter
from ...shared.validators import normalize_message_body
from . import errors
from .eligibility import NOT_ALLOWED_REASON, EligibilityProvider
from .errors import ChatError, MessageError
from .presence import WS_CLOSE_SESSION_REPLACED, ChatConnection, PresenceDirectory
from .schemas import RoomPayload, SendMessagePayload, StartChatPayload
from .sessions import (
    ChatMessage,
    ChatRoom,
    Invitation,
    JoinState,
    Participant,
    RoomStatus,
    UserRef,
    pair_key,
    utcnow,
)

logger = logging.getLogger(__name__)

SUPPORTED_MESSAGE_TYPES = ("text",)


class ChatCoordinator:
    def __init__(
        self,
        presence: PresenceDirectory,
        eligibility: EligibilityProvider,
        invitation_ttl_seconds: int = CHAT_INVITATION_TTL_SECONDS,
        max_messages: int = CHAT_MAX_MESSAGES_PER_ROOM,
        max_message_length: int = CHAT_MAX_MESSAGE_LENGTH,
        rate_limiter: Optional[UserRateLimiter] = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.presence = presence
        self.eligibility = eligibility
        self.invitation_ttl_seconds = invitation_ttl_seconds
        self.max_messages = max_messages
        self.max_message_length = max_message_length
        self.rate_limiter = rate_limiter
        self._new_id = id_factory
        self.rooms: dict[str, ChatRoom] = {}
        # Unordered pair -> id of its pending/active room
        self._open_by_pair: dict[frozenset, str] = {}

    # ========================================================================
    # CONNECTION LIFECYCLE
    # ========================================================================

    def connect(self, user: UserRef, connection: ChatConnection) -> None:
        """Register the connection and redeliver invitations waiting for this user"""
        previous = self.presence.register(user.id, connection)
        if previous is not None:
            previous.send(
                errors.CHAT_ERROR_EVENT,
                {"message": "Chat opened in another window", "code": errors.SESSION_REPLACED},
            )
            previous.terminate(WS_CLOSE_SESSION_REPLACED)
        logger.info(f"🔌 User {user.id} ({user.role}) connected to temp chat")

        for room in self.rooms.values():
            invitation = room.invitation
            if room.status == RoomStatus.PENDING and invitation and invitation.invitee.id == user.id:
                connection.send("chat_invitation", invitation.to_payload())
                logger.info(f"📨 Redelivered invitation {room.id} to user {user.id}")

    def disconnect(self, user: UserRef, connection: ChatConnection) -> None:
        """Treat a dropped connection as an implicit leave from every room"""
        if not self.presence.unregister(user.id, connection):
            logger.info(f"🔌 Superseded connection of user {user.id} closed")
            return
        logger.info(f"🔌 User {user.id} disconnected from temp chat")

        for room in list(self.rooms.values()):
            participant = room.participant(user.id)
            if participant is None or participant.state == JoinState.LEFT:
                continue
            # An invitee going offline keeps the invitation for when they return
            if room.status == RoomStatus.PENDING and participant.state == JoinState.INVITED:
                continue
            self._depart(room, participant, graceful=False)

    # ========================================================================
    # COMMANDS
    # ========================================================================

    async def start_chat(
        self, caller: UserRef, target_user_id: Any, appointment_id: Any = None
    ) -> ChatRoom:
        target_id = str(target_user_id).strip() if target_user_id is not None else ""
        if not target_id:
            raise ChatError(errors.INVALID_TARGET, "Target user is required")
        if target_id == caller.id:
            raise ChatError(errors.INVALID_TARGET, "You cannot start a chat with yourself")

        self._ensure_no_open_room(caller.id, target_id)
        await self._check_rate("start_chat", caller.id, ChatError)

        appointment_ref = str(appointment_id) if appointment_id is not None else None
        try:
            fact = await self.eligibility.check(caller, target_id, appointment_ref)
        except Exception as e:
            logger.error(f"❌ Eligibility check failed for {caller.id} -> {target_id}: {e}")
            raise ChatError(
                errors.INELIGIBLE, "Unable to verify chat permissions, please try again"
            ) from e

        if not fact.eligible or fact.target is None:
            logger.warning(f"🚫 Chat {caller.id} -> {target_id} refused: {fact.reason}")
            raise ChatError(errors.INELIGIBLE, fact.reason or NOT_ALLOWED_REASON)

        target = fact.target
        if target.id == caller.id:
            raise ChatError(errors.INVALID_TARGET, "You cannot start a chat with yourself")
        # The eligibility await may have let a competing start_chat through
        self._ensure_no_open_room(caller.id, target.id)

        now = utcnow()
        room_id = self._new_id()
        appointment = fact.appointments[0] if fact.appointments else None
        invitation = Invitation(
            room_id=room_id,
            inviter=caller,
            invitee=target,
            appointment=appointment,
            created_at=now,
        )
        room = ChatRoom(
            id=room_id,
            participants=[
                Participant(user=caller, state=JoinState.JOINED, joined_at=now),
                Participant(user=target, state=JoinState.INVITED),
            ],
            appointment=appointment,
            invitation=invitation,
            max_messages=self.max_messages,
            created_at=now,
            last_activity=now,
        )
        self.rooms[room_id] = room
        self._open_by_pair[room.pair] = room_id
        logger.info(
            f"💬 Chat room {room_id} pending: {caller.id} invited {target.id}"
            f"{f' (appointment {appointment.id})' if appointment else ''}"
        )

        if not self._notify(target.id, "chat_invitation", invitation.to_payload()):
            logger.warning(f"⚠️ Invitee {target.id} offline, invitation {room_id} kept for reconnect")
            self._notify(
                caller.id,
                errors.CHAT_ERROR_EVENT,
                ChatError(
                    errors.TARGET_UNREACHABLE,
                    f"{target.name} is not online right now. They will see your invitation when they connect.",
                    room_id=room_id,
                ).to_payload(),
            )
        return room

    def accept_chat(self, user: UserRef, room_id: str) -> ChatRoom:
        room = self.rooms.get(room_id)
        invitation = room.invitation if room else None
        if (
            room is None
            or room.status != RoomStatus.PENDING
            or invitation is None
            or invitation.invitee.id != user.id
        ):
            raise ChatError(errors.NOT_FOUND, "Chat invitation not found", room_id=room_id)

        participant = room.participant(user.id)
        participant.state = JoinState.JOINED
        participant.joined_at = utcnow()
        room.status = RoomStatus.ACTIVE
        room.invitation = None
        room.last_activity = participant.joined_at
        logger.info(f"✅ Chat room {room.id} active: {user.id} accepted {invitation.inviter.id}")

        snapshot = room.snapshot()
        for member in room.joined_members():
            self._notify(member.id, "chat_started", snapshot)
        self._notify(
            invitation.inviter.id,
            "chat_accepted",
            {"roomId": room.id, "by": {"id": participant.user.id, "name": participant.user.name}},
        )
        return room

    async def send_temp_message(
        self, user: UserRef, room_id: str, message: Optional[str], kind: str = "text"
    ) -> ChatMessage:
        body = normalize_message_body(message)
        if not body:
            raise MessageError(errors.INVALID_MESSAGE, "Message cannot be empty", room_id=room_id)
        if len(body) > self.max_message_length:
            raise MessageError(
                errors.INVALID_MESSAGE,
                f"Message is too long (max {self.max_message_length} characters)",
                room_id=room_id,
            )
        if kind not in SUPPORTED_MESSAGE_TYPES:
            raise MessageError(errors.INVALID_MESSAGE, f"Unsupported message type: {kind}", room_id=room_id)

        self._sendable_room(user, room_id)
        await self._check_rate("send_temp_message", user.id, MessageError, room_id)
        # The room may have closed while the limiter was consulted
        room, participant = self._sendable_room(user, room_id)

        chat_message = room.append_message(self._new_id(), participant.user, body, kind)
        payload = chat_message.to_dict()
        # The sender gets the relayed copy too, so every client renders one stream
        for member in room.joined_members():
            self._notify(member.id, "new_temp_message", payload)

        if room.appointment:
            try:
                await self.eligibility.record_chat_activity(room.appointment.id)
            except Exception as e:
                logger.error(f"❌ Error updating appointment {room.appointment.id} chat activity: {e}")
        return chat_message

    def _sendable_room(self, user: UserRef, room_id: str) -> tuple[ChatRoom, Participant]:
        room = self.rooms.get(room_id)
        if room is None:
            raise MessageError(errors.NOT_FOUND, "Chat room not found", room_id=room_id)
        participant = room.participant(user.id)
        if participant is None or participant.state != JoinState.JOINED:
            raise MessageError(errors.NOT_MEMBER, "Not joined to this chat room", room_id=room_id)
        if room.status != RoomStatus.ACTIVE:
            raise MessageError(errors.ROOM_NOT_ACTIVE, "Chat room is not active", room_id=room_id)
        return room, participant

    def leave_chat(self, user: UserRef, room_id: str) -> None:
        room = self.rooms.get(room_id)
        if room is None:
            raise ChatError(errors.NOT_FOUND, "Chat room not found", room_id=room_id)
        participant = room.participant(user.id)
        if participant is None or participant.state == JoinState.LEFT:
            raise ChatError(errors.NOT_MEMBER, "You are not a member of this chat room", room_id=room_id)
        self._depart(room, participant, graceful=True)

    def set_typing(self, user: UserRef, room_id: Optional[str], typing: bool) -> None:
        """Relay a typing indicator; silently ignored when it cannot apply"""
        room = self.rooms.get(room_id) if room_id else None
        if room is None or room.status != RoomStatus.ACTIVE:
            return
        participant = room.participant(user.id)
        if participant is None or participant.state != JoinState.JOINED:
            return
        payload = {"roomId": room.id, "user": participant.user.to_dict(), "typing": typing}
        for other in room.others(user.id):
            if other.state == JoinState.JOINED:
                self._notify(other.id, "user_typing", payload)

    def get_active_chats(self, user: UserRef) -> list[dict]:
        return [
            room.summary_for(user.id)
            for room in self.rooms.values()
            if room.is_member(user.id)
        ]

    def room_info(self, user_id: str, room_id: str) -> dict:
        room = self.rooms.get(room_id)
        if room is None:
            raise ChatError(errors.NOT_FOUND, "Chat room not found", room_id=room_id)
        if room.participant(user_id) is None:
            raise ChatError(errors.NOT_MEMBER, "Access denied to this chat room", room_id=room_id)
        info = room.snapshot()
        info["messageCount"] = len(room.messages)
        del info["messages"]
        return info

    # ========================================================================
    # DISPATCH
    # ========================================================================

    async def handle(self, user: UserRef, connection: ChatConnection, event: str, data: Optional[dict]) -> None:
        """Run one client command; failures go back to ``connection`` only"""
        data = data or {}
        error_event = errors.MESSAGE_ERROR_EVENT if event == "send_temp_message" else errors.CHAT_ERROR_EVENT
        if self.presence.get(user.id) is not connection:
            logger.warning(f"⚠️ Ignoring {event} from superseded connection of user {user.id}")
            connection.send(
                error_event,
                {"message": "Chat opened in another window", "code": errors.SESSION_REPLACED},
            )
            return
        try:
            if event == "start_chat":
                payload = StartChatPayload(**data)
                await self.start_chat(user, payload.targetUserId, payload.appointmentId)
            elif event == "accept_chat":
                payload = RoomPayload(**data)
                self.accept_chat(user, payload.roomId)
            elif event == "send_temp_message":
                payload = SendMessagePayload(**data)
                await self.send_temp_message(user, payload.roomId, payload.message, payload.type)
            elif event == "leave_chat":
                payload = RoomPayload(**data)
                self.leave_chat(user, payload.roomId)
            elif event in ("typing_start", "typing_stop"):
                room_id = data.get("roomId")
                self.set_typing(user, room_id if isinstance(room_id, str) else None, event == "typing_start")
            elif event == "get_active_chats":
                connection.send("active_chats", self.get_active_chats(user))
            else:
                raise ChatError(errors.INVALID_REQUEST, f"Unknown command: {event}")
        except ChatError as e:
            logger.warning(f"⚠️ {event} by {user.id} failed [{e.code}]: {e.message}")
            connection.send(e.event, e.to_payload())
        except ValidationError as e:
            logger.warning(f"⚠️ Invalid {event} payload from {user.id}: {e.errors()}")
            connection.send(
                error_event,
                {"message": f"Invalid {event} request", "code": errors.INVALID_REQUEST},
            )
        except Exception as e:
            logger.exception(f"❌ {event} by {user.id} crashed: {e}")
            connection.send(
                error_event,
                {"message": f"Failed to process {event}", "code": errors.INTERNAL_ERROR},
            )

    # ========================================================================
    # MAINTENANCE
    # ========================================================================

    def sweep_expired_invitations(self, now: Optional[datetime] = None) -> int:
        """Withdraw pending invitations older than the TTL; returns how many"""
        if self.invitation_ttl_seconds <= 0:
            return 0
        cutoff = (now or utcnow()) - timedelta(seconds=self.invitation_ttl_seconds)
        expired = [
            room
            for room in self.rooms.values()
            if room.status == RoomStatus.PENDING
            and room.invitation is not None
            and room.invitation.created_at <= cutoff
        ]
        for room in expired:
            invitation = room.invitation
            self._discard(room)
            self._notify(
                invitation.inviter.id,
                errors.CHAT_ERROR_EVENT,
                ChatError(
                    errors.INVITATION_EXPIRED,
                    f"Your chat invitation to {invitation.invitee.name} expired",
                    room_id=room.id,
                ).to_payload(),
            )
            self._notify(
                invitation.invitee.id,
                "chat_invitation_withdrawn",
                {"roomId": room.id, "by": invitation.inviter.to_dict(), "reason": "expired"},
            )
        if expired:
            logger.info(f"🧹 Expired {len(expired)} pending chat invitation(s)")
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Periodically expire invitations until cancelled"""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep_expired_invitations()
            except Exception as e:
                logger.error(f"❌ Invitation sweep failed: {e}")

    def stats(self) -> dict:
        counts = {status.value: 0 for status in RoomStatus}
        for room in self.rooms.values():
            counts[room.status.value] += 1
        return {"rooms": len(self.rooms), **counts, "connectedUsers": len(self.presence)}

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _notify(self, user_id: str, event: str, payload: Any) -> bool:
        connection = self.presence.get(user_id)
        if connection is None:
            return False
        connection.send(event, payload)
        return True

    def _ensure_no_open_room(self, user_a: str, user_b: str) -> None:
        room_id = self._open_by_pair.get(pair_key(user_a, user_b))
        room = self.rooms.get(room_id) if room_id else None
        if room is not None and room.is_open:
            raise ChatError(
                errors.DUPLICATE_INVITE,
                "A chat with this user is already pending or active",
                room_id=room_id,
            )

    async def _check_rate(self, scope: str, user_id: str, error_cls, room_id: Optional[str] = None) -> None:
        if self.rate_limiter is None:
            return
        # The limiter may talk to Redis, which must not stall the event loop
        if await asyncio.to_thread(self.rate_limiter.allow, scope, user_id):
            return
        if error_cls is MessageError:
            raise MessageError(errors.RATE_LIMITED, "You are sending messages too quickly", room_id=room_id)
        raise ChatError(errors.RATE_LIMITED, "Too many chat requests, please wait a moment")

    def _release_pair(self, room: ChatRoom) -> None:
        if self._open_by_pair.get(room.pair) == room.id:
            del self._open_by_pair[room.pair]

    def _discard(self, room: ChatRoom) -> None:
        self._release_pair(room)
        self.rooms.pop(room.id, None)
        logger.info(f"🗑️ Chat room {room.id} discarded")

    def _depart(self, room: ChatRoom, leaver: Participant, graceful: bool) -> None:
        if room.status == RoomStatus.PENDING:
            invitation = room.invitation
            self._discard(room)
            if invitation is not None and invitation.inviter.id == leaver.id:
                self._notify(
                    invitation.invitee.id,
                    "chat_invitation_withdrawn",
                    {
                        "roomId": room.id,
                        "by": leaver.user.to_dict(),
                        "reason": "withdrawn" if graceful else "disconnected",
                    },
                )
            elif invitation is not None:
                # Invitee declined
                self._notify(
                    invitation.inviter.id,
                    "user_left_chat",
                    {"roomId": room.id, "user": leaver.user.to_dict()},
                )
            return

        leaver.state = JoinState.LEFT
        self._release_pair(room)
        room.status = RoomStatus.CLOSED
        room.last_activity = utcnow()
        logger.info(
            f"👋 User {leaver.id} {'left' if graceful else 'dropped from'} chat room {room.id}"
        )

        event = "user_left_chat" if graceful else "user_disconnected"
        for member in room.joined_members():
            self._notify(member.id, event, {"roomId": room.id, "user": leaver.user.to_dict()})

        if room.all_left():
            self._discard(room)
