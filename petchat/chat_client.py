"""
Temporary chat client.

ChatClientState mirrors what the server has pushed: it never orders or
invents messages itself, it only replaces or appends what arrives.
ChatSessionClient owns the socket, issues the client intents and refreshes
the eligible-user list from the REST API every time it (re)connects.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
import websockets

from .config import CHAT_API_URL, CHAT_WS_URL

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"


class ChatClientError(Exception):
    """Raised when an intent cannot be sent"""


@dataclass
class ChatClientState:
    connection_state: str = DISCONNECTED
    user: Optional[dict] = None
    invitations: list[dict] = field(default_factory=list)
    active_room: Optional[dict] = None
    messages: list[dict] = field(default_factory=list)
    typing_users: dict[str, str] = field(default_factory=dict)  # user id -> name
    eligible_users: list[dict] = field(default_factory=list)
    active_chats: list[dict] = field(default_factory=list)
    notices: list[dict] = field(default_factory=list)
    last_error: Optional[dict] = None

    @property
    def connected(self) -> bool:
        return self.connection_state == CONNECTED

    @property
    def composer_enabled(self) -> bool:
        return (
            self.connected
            and self.active_room is not None
            and self.active_room.get("status") == "active"
        )

    def dismiss_error(self) -> None:
        self.last_error = None

    def _is_active_room(self, data: dict) -> bool:
        return self.active_room is not None and data.get("roomId") == self.active_room.get("roomId")

    def apply(self, event: str, data: Any) -> None:
        """Fold one server event into local state"""
        data = data if data is not None else {}

        if event == "connected":
            self.connection_state = CONNECTED
            self.user = data.get("user")
        elif event == "chat_invitation":
            if all(i.get("roomId") != data.get("roomId") for i in self.invitations):
                self.invitations.append(data)
        elif event == "chat_invitation_withdrawn":
            self.invitations = [i for i in self.invitations if i.get("roomId") != data.get("roomId")]
            self.notices.append({"event": event, **data})
        elif event == "chat_started":
            self.invitations = [i for i in self.invitations if i.get("roomId") != data.get("roomId")]
            self.active_room = {
                "roomId": data.get("roomId"),
                "status": data.get("status", "active"),
                "participants": data.get("participants", []),
                "appointmentDetails": data.get("appointmentDetails"),
            }
            self.messages = list(data.get("messages", []))
            self.typing_users = {}
        elif event == "chat_accepted":
            self.notices.append({"event": event, **data})
        elif event == "new_temp_message":
            if self._is_active_room(data) and all(m.get("id") != data.get("id") for m in self.messages):
                self.messages.append(data)
                sender = data.get("from") or {}
                self.typing_users.pop(sender.get("id"), None)
        elif event in ("user_left_chat", "user_disconnected"):
            if self._is_active_room(data):
                self.active_room["status"] = "closed"
                self.typing_users = {}
            self.notices.append({"event": event, **data})
        elif event == "user_typing":
            if self._is_active_room(data):
                user = data.get("user") or {}
                if data.get("typing"):
                    self.typing_users[user.get("id")] = user.get("name")
                else:
                    self.typing_users.pop(user.get("id"), None)
        elif event == "active_chats":
            self.active_chats = list(data) if isinstance(data, list) else []
        elif event in ("chat_error", "message_error"):
            self.last_error = {"event": event, **data}
        else:
            logger.debug(f"Ignoring unknown chat event {event}")

    def leave_active_room(self) -> None:
        self.active_room = None
        self.messages = []
        self.typing_users = {}


class ChatSessionClient:
    """
    Socket client for temporary chat.

    Example:
        client = ChatSessionClient(token)
        await client.run()   # in one task
        await client.start_chat("42", appointment_id="7")   # in another
    """

    def __init__(
        self,
        token: str,
        api_url: str = CHAT_API_URL,
        ws_url: str = CHAT_WS_URL,
        on_change: Optional[Callable[[str, ChatClientState], None]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.ws_url = ws_url
        self.on_change = on_change
        self.state = ChatClientState()
        self._http = http_client
        self._socket = None

    # ------------------------------------------------------------------ REST

    async def fetch_available_users(self) -> list[dict]:
        headers = {"Authorization": f"Bearer {self.token}"}
        url = f"{self.api_url}/chat/available-users"
        if self._http is not None:
            response = await self._http.get(url, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(url, headers=headers)
        response.raise_for_status()
        return response.json()

    async def refresh_eligible_users(self) -> None:
        try:
            self.state.eligible_users = await self.fetch_available_users()
            logger.info(f"📋 {len(self.state.eligible_users)} users available to chat")
        except httpx.HTTPError as e:
            logger.error(f"❌ Failed to fetch available chat users: {e}")
            self.state.last_error = {"event": "chat_error", "message": "Failed to load chat users"}

    # ---------------------------------------------------------------- socket

    async def handle_frame(self, frame: dict) -> None:
        event = frame.get("event")
        if not event:
            return
        self.state.apply(event, frame.get("data"))
        # Nothing survives a reconnect, so the user list is re-derived each time
        if event == "connected":
            await self.refresh_eligible_users()
        if self.on_change:
            self.on_change(event, self.state)

    async def run(self) -> None:
        """Connect and process server events until the socket closes"""
        self.state.connection_state = CONNECTING
        try:
            async with websockets.connect(f"{self.ws_url}?token={self.token}") as socket:
                self._socket = socket
                async for raw in socket:
                    try:
                        frame = json.loads(raw)
                    except ValueError:
                        logger.warning("⚠️ Ignoring non-JSON chat frame")
                        continue
                    await self.handle_frame(frame)
        finally:
            self._socket = None
            self.state.connection_state = DISCONNECTED
            logger.info("🔌 Chat socket closed")

    async def _emit(self, event: str, data: dict) -> None:
        if self._socket is None or not self.state.connected:
            raise ChatClientError(f"Cannot send {event}: not connected")
        await self._socket.send(json.dumps({"event": event, "data": data}))

    # --------------------------------------------------------------- intents

    async def start_chat(self, target_user_id: str, appointment_id: Optional[str] = None) -> None:
        data = {"targetUserId": target_user_id}
        if appointment_id is not None:
            data["appointmentId"] = appointment_id
        await self._emit("start_chat", data)

    async def accept_chat(self, room_id: str) -> None:
        await self._emit("accept_chat", {"roomId": room_id})

    async def send_message(self, message: str, message_type: str = "text") -> None:
        if not self.state.composer_enabled:
            raise ChatClientError("No active chat room")
        await self._emit(
            "send_temp_message",
            {"roomId": self.state.active_room["roomId"], "message": message, "type": message_type},
        )

    async def leave_chat(self, room_id: Optional[str] = None) -> None:
        room_id = room_id or (self.state.active_room or {}).get("roomId")
        if not room_id:
            raise ChatClientError("No chat room to leave")
        await self._emit("leave_chat", {"roomId": room_id})
        if self.state.active_room and self.state.active_room.get("roomId") == room_id:
            self.state.leave_active_room()

    async def typing(self, is_typing: bool) -> None:
        if not self.state.composer_enabled:
            return
        event = "typing_start" if is_typing else "typing_stop"
        await self._emit(event, {"roomId": self.state.active_room["roomId"]})

    async def get_active_chats(self) -> None:
        await self._emit("get_active_chats", {})
