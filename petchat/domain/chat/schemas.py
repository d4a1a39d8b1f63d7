"""Chat domain schemas - Pydantic models for socket frames and REST responses"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

# ----------------------------------------------------------------------------
# Socket frames
# ----------------------------------------------------------------------------


class ChatFrame(BaseModel):
    """Envelope for every frame in both directions"""

    event: str = Field(..., min_length=1)
    data: Optional[dict[str, Any]] = None


class StartChatPayload(BaseModel):
    # Missing target is reported as invalid_target by the coordinator
    targetUserId: Optional[Union[int, str]] = None
    appointmentId: Optional[Union[int, str]] = None


class RoomPayload(BaseModel):
    roomId: str = Field(..., min_length=1)


class SendMessagePayload(RoomPayload):
    message: Optional[str] = None
    type: str = "text"


# ----------------------------------------------------------------------------
# REST
# ----------------------------------------------------------------------------


class AvailableUserResponse(BaseModel):
    """A user the caller may chat with, from their most recent shared appointment"""

    id: str
    name: str
    avatar: Optional[str] = None
    role: str
    lastAppointment: Optional[datetime] = None
    appointmentStatus: Optional[str] = None
    appointmentId: Optional[str] = None
    serviceName: Optional[str] = None
    isOnline: bool = False


class AppointmentContextResponse(BaseModel):
    id: str
    service: str
    date: Optional[datetime] = None
    time: Optional[str] = None
    status: str
    duration: Optional[int] = None
    client: Optional[str] = None
    staff: Optional[str] = None


class CanChatRequest(BaseModel):
    appointmentId: Optional[Union[int, str]] = None


class AppointmentSummaryResponse(BaseModel):
    id: str
    service: str
    date: Optional[str] = None
    time: Optional[str] = None
    status: Optional[str] = None


class CanChatResponse(BaseModel):
    canChat: bool
    reason: Optional[str] = None
    appointment: Optional[AppointmentSummaryResponse] = None


class ParticipantResponse(BaseModel):
    id: str
    name: str
    role: str
    state: str


class RoomInfoResponse(BaseModel):
    roomId: str
    status: str
    participants: list[ParticipantResponse]
    appointmentDetails: Optional[AppointmentSummaryResponse] = None
    messageCount: int
