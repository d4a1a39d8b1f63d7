"""Chat directory service - who the current user may chat with, and why"""

import logging
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import ROLE_CLIENT, STAFF_ROLES, Appointment, User
from ...shared.validators import parse_id
from .eligibility import evaluate_eligibility, staff_client_pair
from .presence import PresenceDirectory
from .repository import ChatRepository
from .schemas import (
    AppointmentContextResponse,
    AppointmentSummaryResponse,
    AvailableUserResponse,
    CanChatResponse,
)

logger = logging.getLogger(__name__)

SHARED_APPOINTMENTS_LIMIT = 10


class ChatDirectoryService:
    """Service layer for the REST side of chat"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = ChatRepository()

    def get_available_users(
        self, user: User, presence: Optional[PresenceDirectory] = None
    ) -> list[AvailableUserResponse]:
        """One entry per counterpart, taken from the most recent shared appointment"""
        if user.role in STAFF_ROLES:
            appointments = self.repo.get_staff_appointments(self.db, user.id)
            counterpart = lambda a: a.client  # noqa: E731
        elif user.role == ROLE_CLIENT:
            appointments = self.repo.get_client_appointments(self.db, user.id)
            counterpart = lambda a: a.staff  # noqa: E731
        else:
            logger.info(f"User {user.id} with role {user.role} has no chat counterparts")
            return []

        seen: set[int] = set()
        available = []
        for appointment in appointments:
            other = counterpart(appointment)
            if other is None or not other.is_active or other.id in seen:
                continue
            seen.add(other.id)
            available.append(
                AvailableUserResponse(
                    id=str(other.id),
                    name=other.full_name,
                    avatar=other.avatar_url,
                    role=other.role,
                    lastAppointment=appointment.scheduled_date,
                    appointmentStatus=appointment.status,
                    appointmentId=str(appointment.id),
                    serviceName=appointment.service_name or "Unknown Service",
                    isOnline=presence.is_online(str(other.id)) if presence else False,
                )
            )

        logger.info(f"📋 {len(available)} available chat users for user {user.id} ({user.role})")
        return available

    def _get_other_user(self, user_id: str) -> User:
        parsed = parse_id(user_id)
        other = self.repo.get_user(self.db, parsed) if parsed else None
        if not other or not other.is_active:
            raise HTTPException(status_code=404, detail="User not found or inactive")
        return other

    def get_shared_appointments(self, user: User, other_user_id: str) -> list[AppointmentContextResponse]:
        """Recent appointments shared with another user, for chat context"""
        other = self._get_other_user(other_user_id)
        pair = staff_client_pair(user, other)
        if pair is None:
            return []

        staff_id, client_id = pair
        appointments = self.repo.get_shared_appointments(
            self.db, staff_id, client_id, limit=SHARED_APPOINTMENTS_LIMIT
        )
        return [self._appointment_context(a) for a in appointments]

    @staticmethod
    def _appointment_context(appointment: Appointment) -> AppointmentContextResponse:
        return AppointmentContextResponse(
            id=str(appointment.id),
            service=appointment.service_name or "Unknown Service",
            date=appointment.scheduled_date,
            time=appointment.start_time,
            status=appointment.status,
            duration=appointment.service_duration,
            client=appointment.client.full_name if appointment.client else None,
            staff=appointment.staff.full_name if appointment.staff else None,
        )

    def can_chat(self, user: User, target_user_id: str, appointment_id: Optional[str] = None) -> CanChatResponse:
        """Pairwise eligibility, the same rule the socket applies on start_chat"""
        target = self._get_other_user(target_user_id)
        fact = evaluate_eligibility(self.db, user.id, target.id, appointment_id)

        appointment = None
        if fact.eligible and fact.appointments:
            appointment = AppointmentSummaryResponse(**fact.appointments[0].to_dict())

        return CanChatResponse(
            canChat=fact.eligible,
            reason=None if fact.eligible else (fact.reason or "No shared appointments found"),
            appointment=appointment,
        )
