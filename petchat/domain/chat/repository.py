"""Chat repository - appointment and user queries behind chat eligibility"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from ...config import CHAT_ELIGIBLE_STATUSES
from ...models import Appointment, User


class ChatRepository:
    """Read access to the appointment data that decides who may chat"""

    @staticmethod
    def get_user(db: Session, user_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_shared_appointments(
        db: Session,
        staff_id: int,
        client_id: int,
        appointment_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[Appointment]:
        """Appointments linking a staff member and a client, most recent first"""
        query = db.query(Appointment).filter(
            Appointment.staff_id == staff_id,
            Appointment.client_id == client_id,
            Appointment.status.in_(CHAT_ELIGIBLE_STATUSES),
        )
        if appointment_id is not None:
            query = query.filter(Appointment.id == appointment_id)

        query = query.order_by(Appointment.scheduled_date.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    @staticmethod
    def get_staff_appointments(db: Session, staff_id: int) -> list[Appointment]:
        """Chat-eligible appointments assigned to a staff member, with clients loaded"""
        return (
            db.query(Appointment)
            .options(joinedload(Appointment.client))
            .filter(
                Appointment.staff_id == staff_id,
                Appointment.status.in_(CHAT_ELIGIBLE_STATUSES),
            )
            .order_by(Appointment.scheduled_date.desc())
            .all()
        )

    @staticmethod
    def get_client_appointments(db: Session, client_id: int) -> list[Appointment]:
        """Chat-eligible appointments of a client that have staff assigned"""
        return (
            db.query(Appointment)
            .options(joinedload(Appointment.staff))
            .filter(
                Appointment.client_id == client_id,
                Appointment.staff_id.isnot(None),
                Appointment.status.in_(CHAT_ELIGIBLE_STATUSES),
            )
            .order_by(Appointment.scheduled_date.desc())
            .all()
        )

    @staticmethod
    def touch_chat_activity(db: Session, appointment_id: int, when: datetime) -> bool:
        updated = (
            db.query(Appointment)
            .filter(Appointment.id == appointment_id)
            .update({Appointment.last_chat_activity: when}, synchronize_session=False)
        )
        db.commit()
        return updated > 0
