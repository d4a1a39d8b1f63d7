from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# User roles
ROLE_SUPER_ADMIN = "super_admin"
ROLE_BUSINESS_ADMIN = "business_admin"
ROLE_STAFF = "staff"
ROLE_CLIENT = "client"

STAFF_ROLES = (ROLE_STAFF, ROLE_BUSINESS_ADMIN)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=True)
    role = Column(String(50), nullable=False, index=True)  # super_admin, business_admin, staff, client
    avatar_url = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client_appointments = relationship(
        "Appointment", foreign_keys="Appointment.client_id", back_populates="client"
    )
    staff_appointments = relationship(
        "Appointment", foreign_keys="Appointment.staff_id", back_populates="staff"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or "Unknown User"


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    staff_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)  # assigned staff
    staff_assigned_at = Column(DateTime, nullable=True)
    service_name = Column(String(255), nullable=False)
    service_duration = Column(Integer, nullable=True)  # minutes
    scheduled_date = Column(DateTime, nullable=False, index=True)
    start_time = Column(String(10), nullable=True)  # HH:MM
    end_time = Column(String(10), nullable=True)  # HH:MM
    # scheduled, confirmed, in_progress, completed, cancelled, no_show, rescheduled
    status = Column(String(50), default="scheduled", nullable=False, index=True)
    notes = Column(Text, nullable=True)
    last_chat_activity = Column(DateTime, nullable=True)  # touched when a chat message is relayed
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client = relationship("User", foreign_keys=[client_id], back_populates="client_appointments")
    staff = relationship("User", foreign_keys=[staff_id], back_populates="staff_appointments")
