"""
Eligibility - decides whether two users may chat.

Staff (and business admins) may chat with a client, and a client with staff,
only while they share an appointment in a chat-eligible status. The
coordinator awaits ``check`` before creating any room and never caches
the answer.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Protocol

from sqlalchemy.orm import Session

from ...database import SessionLocal
from ...models import ROLE_CLIENT, STAFF_ROLES, User
from ...shared.validators import parse_id
from .repository import ChatRepository
from .sessions import AppointmentSummary, UserRef

logger = logging.getLogger(__name__)

NOT_ALLOWED_REASON = (
    "Chat not allowed. You can only chat with clients/staff you have appointments with."
)


@dataclass
class EligibilityFact:
    eligible: bool
    appointments: list[AppointmentSummary] = field(default_factory=list)
    target: Optional[UserRef] = None
    reason: Optional[str] = None


class EligibilityProvider(Protocol):
    async def check(
        self, caller: UserRef, target_id: str, appointment_id: Optional[str] = None
    ) -> EligibilityFact: ...

    async def record_chat_activity(self, appointment_id: str) -> None: ...


def user_ref(user: User) -> UserRef:
    return UserRef(id=str(user.id), name=user.full_name, role=user.role)


def staff_client_pair(caller: User, target: User) -> Optional[tuple[int, int]]:
    """Return (staff_id, client_id) when the roles allow a chat, else None"""
    if caller.role in STAFF_ROLES and target.role == ROLE_CLIENT:
        return caller.id, target.id
    if caller.role == ROLE_CLIENT and target.role in STAFF_ROLES:
        return target.id, caller.id
    return None


def evaluate_eligibility(
    db: Session, caller_id: int, target_id: Optional[int], appointment_id: Optional[str] = None
) -> EligibilityFact:
    """Check the (caller, target) pair against shared appointments"""
    caller = ChatRepository.get_user(db, caller_id)
    if not caller or not caller.is_active:
        return EligibilityFact(eligible=False, reason="Caller not found")

    target = ChatRepository.get_user(db, target_id) if target_id else None
    if not target or not target.is_active:
        return EligibilityFact(eligible=False, reason="Target user not found")

    pair = staff_client_pair(caller, target)
    if pair is None:
        return EligibilityFact(eligible=False, target=user_ref(target), reason=NOT_ALLOWED_REASON)

    parsed_appointment_id = None
    if appointment_id is not None:
        parsed_appointment_id = parse_id(appointment_id)
        if parsed_appointment_id is None:
            return EligibilityFact(
                eligible=False, target=user_ref(target), reason="Appointment not found"
            )

    staff_id, client_id = pair
    appointments = ChatRepository.get_shared_appointments(
        db, staff_id, client_id, appointment_id=parsed_appointment_id
    )
    if not appointments:
        reason = "Appointment not found" if parsed_appointment_id else NOT_ALLOWED_REASON
        return EligibilityFact(eligible=False, target=user_ref(target), reason=reason)

    return EligibilityFact(
        eligible=True,
        appointments=[AppointmentSummary.from_record(a) for a in appointments],
        target=user_ref(target),
    )


class AppointmentEligibilityProvider:
    """Eligibility backed by the appointments table; queries run off the event loop"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def _check_sync(
        self, caller_id: int, target_id: Optional[int], appointment_id: Optional[str]
    ) -> EligibilityFact:
        db = self.session_factory()
        try:
            return evaluate_eligibility(db, caller_id, target_id, appointment_id)
        finally:
            db.close()

    async def check(
        self, caller: UserRef, target_id: str, appointment_id: Optional[str] = None
    ) -> EligibilityFact:
        caller_id = parse_id(caller.id)
        if caller_id is None:
            return EligibilityFact(eligible=False, reason="Caller not found")
        fact = await asyncio.to_thread(
            self._check_sync, caller_id, parse_id(target_id), appointment_id
        )
        logger.debug(
            f"Eligibility {caller.id} -> {target_id} (appointment {appointment_id}): {fact.eligible}"
        )
        return fact

    def _touch_sync(self, appointment_id: int) -> None:
        db = self.session_factory()
        try:
            ChatRepository.touch_chat_activity(db, appointment_id, datetime.utcnow())
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def record_chat_activity(self, appointment_id: str) -> None:
        parsed = parse_id(appointment_id)
        if parsed is None:
            return
        await asyncio.to_thread(self._touch_sync, parsed)
