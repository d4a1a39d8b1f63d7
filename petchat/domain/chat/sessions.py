"""In-memory records for temporary chat rooms.

Nothing here is persisted: rooms, invitations and messages live only as
long as the process and are owned by the ChatCoordinator.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional


class JoinState(str, Enum):
    INVITED = "invited"
    JOINED = "joined"
    LEFT = "left"


class RoomStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pair_key(user_a: str, user_b: str) -> frozenset:
    """Unordered key for a pair of users"""
    return frozenset((user_a, user_b))


@dataclass(frozen=True)
class UserRef:
    id: str
    name: str
    role: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "role": self.role}


def _format_date(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class AppointmentSummary:
    """Display-only appointment context attached to a room"""

    id: str
    service: str
    date: Optional[str] = None
    time: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_record(cls, record: Any) -> "AppointmentSummary":
        """
        Build the canonical summary from an Appointment row or a legacy dict.

        Older payloads carry the service either as a plain name or as an
        object with a ``name`` key; both collapse to a string here.
        """
        if isinstance(record, dict):
            raw_service = record.get("service") or record.get("service_name")
            scheduled = record.get("date") or record.get("scheduled_date")
            time_value = record.get("time") or record.get("start_time")
            status = record.get("status")
            appointment_id = record.get("id")
        else:
            raw_service = getattr(record, "service_name", None)
            scheduled = getattr(record, "scheduled_date", None)
            time_value = getattr(record, "start_time", None)
            status = getattr(record, "status", None)
            appointment_id = getattr(record, "id", None)

        if isinstance(raw_service, dict):
            raw_service = raw_service.get("name")

        return cls(
            id=str(appointment_id),
            service=raw_service or "Unknown Service",
            date=_format_date(scheduled),
            time=time_value,
            status=status,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "service": self.service,
            "date": self.date,
            "time": self.time,
            "status": self.status,
        }


@dataclass
class Participant:
    user: UserRef
    state: JoinState
    joined_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return self.user.id

    def to_dict(self) -> dict:
        return {**self.user.to_dict(), "state": self.state.value}


@dataclass(frozen=True)
class ChatMessage:
    id: str
    room_id: str
    seq: int
    sender: UserRef
    message: str
    type: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "roomId": self.room_id,
            "seq": self.seq,
            "from": self.sender.to_dict(),
            "message": self.message,
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Invitation:
    room_id: str
    inviter: UserRef
    invitee: UserRef
    appointment: Optional[AppointmentSummary]
    created_at: datetime

    def to_payload(self) -> dict:
        text = f"{self.inviter.name} wants to start a chat"
        if self.appointment:
            text += f" about appointment: {self.appointment.service}"
        return {
            "roomId": self.room_id,
            "from": {"id": self.inviter.id, "name": self.inviter.name},
            "appointmentDetails": self.appointment.to_dict() if self.appointment else None,
            "message": text,
        }


@dataclass
class ChatRoom:
    id: str
    participants: list[Participant]
    appointment: Optional[AppointmentSummary]
    invitation: Optional[Invitation]
    max_messages: int
    status: RoomStatus = RoomStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    messages: deque = field(init=False)
    _next_seq: int = field(default=1, init=False, repr=False)

    def __post_init__(self):
        self.messages = deque(maxlen=self.max_messages)

    @property
    def pair(self) -> frozenset:
        return pair_key(self.participants[0].id, self.participants[1].id)

    @property
    def is_open(self) -> bool:
        """Pending or active rooms hold the pair's single open slot"""
        return self.status in (RoomStatus.PENDING, RoomStatus.ACTIVE)

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.id == user_id:
                return p
        return None

    def others(self, user_id: str) -> list[Participant]:
        return [p for p in self.participants if p.id != user_id]

    def joined_members(self) -> list[Participant]:
        return [p for p in self.participants if p.state == JoinState.JOINED]

    def is_member(self, user_id: str) -> bool:
        participant = self.participant(user_id)
        return participant is not None and participant.state != JoinState.LEFT

    def all_left(self) -> bool:
        return all(p.state == JoinState.LEFT for p in self.participants)

    def append_message(self, message_id: str, sender: UserRef, body: str, kind: str) -> ChatMessage:
        now = utcnow()
        message = ChatMessage(
            id=message_id,
            room_id=self.id,
            seq=self._next_seq,
            sender=sender,
            message=body,
            type=kind,
            timestamp=now,
        )
        self._next_seq += 1
        self.messages.append(message)
        self.last_activity = now
        return message

    def snapshot(self) -> dict:
        """Full room state, sent as the chat_started payload"""
        return {
            "roomId": self.id,
            "status": self.status.value,
            "participants": [p.to_dict() for p in self.participants],
            "appointmentDetails": self.appointment.to_dict() if self.appointment else None,
            "messages": [m.to_dict() for m in self.messages],
        }

    def summary_for(self, user_id: str) -> dict:
        last_message = self.messages[-1].to_dict() if self.messages else None
        return {
            "roomId": self.id,
            "status": self.status.value,
            "participants": [p.to_dict() for p in self.others(user_id)],
            "lastMessage": last_message,
            "messageCount": len(self.messages),
            "appointmentDetails": self.appointment.to_dict() if self.appointment else None,
        }
