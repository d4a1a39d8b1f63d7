"""Chat protocol errors - always delivered to the calling connection only"""

from typing import Optional

CHAT_ERROR_EVENT = "chat_error"
MESSAGE_ERROR_EVENT = "message_error"

# Authorization
INELIGIBLE = "ineligible"
INVALID_TARGET = "invalid_target"
# State
DUPLICATE_INVITE = "duplicate_invite"
NOT_FOUND = "not_found"
ROOM_NOT_ACTIVE = "room_not_active"
NOT_MEMBER = "not_member"
# Validation
INVALID_MESSAGE = "invalid_message"
INVALID_REQUEST = "invalid_request"
# Transport / lifecycle
TARGET_UNREACHABLE = "target_unreachable"
SESSION_REPLACED = "session_replaced"
INVITATION_EXPIRED = "invitation_expired"
RATE_LIMITED = "rate_limited"
INTERNAL_ERROR = "internal_error"


class ChatError(Exception):
    """Raised by the coordinator before any state change"""

    def __init__(
        self,
        code: str,
        message: str,
        event: str = CHAT_ERROR_EVENT,
        room_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.event = event
        self.room_id = room_id

    def to_payload(self) -> dict:
        payload = {"message": self.message, "code": self.code}
        if self.room_id:
            payload["roomId"] = self.room_id
        return payload


class MessageError(ChatError):
    """Failure of send_temp_message, reported as message_error"""

    def __init__(self, code: str, message: str, room_id: Optional[str] = None):
        super().__init__(code, message, event=MESSAGE_ERROR_EVENT, room_id=room_id)
