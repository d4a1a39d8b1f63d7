"""
Pytest configuration and fixtures for the chat tests.

The database is an in-memory SQLite engine and Redis is optional, so the
suite runs without any external services.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["CHAT_SWEEPER_ENABLED"] = "false"
os.environ["CHAT_START_RATE_LIMIT"] = "1000"
os.environ["CHAT_MESSAGE_RATE_LIMIT"] = "1000"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

from datetime import datetime  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402

from petchat.database import Base, SessionLocal, engine  # noqa: E402
from petchat.domain.chat.eligibility import NOT_ALLOWED_REASON, EligibilityFact  # noqa: E402
from petchat.domain.chat.sessions import AppointmentSummary, UserRef, pair_key  # noqa: E402
from petchat.models import Appointment, User  # noqa: E402


class FakeConnection:
    """Records every event pushed to it"""

    def __init__(self):
        self.frames = []
        self.close_code = None

    def send(self, event, payload):
        self.frames.append((event, payload))

    def terminate(self, code):
        self.close_code = code

    def events(self):
        return [event for event, _ in self.frames]

    def payloads(self, event):
        return [payload for name, payload in self.frames if name == event]

    def last(self, event):
        matches = self.payloads(event)
        return matches[-1] if matches else None


class FakeEligibility:
    """Eligibility provider backed by a fixed set of allowed pairs"""

    def __init__(self, users, allowed_pairs, appointment=None):
        self.users = {u.id: u for u in users}
        self.allowed = {pair_key(a, b) for a, b in allowed_pairs}
        self.appointment = appointment
        self.gate = None
        self.fail = False
        self.checks = 0
        self.activity = []

    async def check(self, caller, target_id, appointment_id=None):
        self.checks += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("database unavailable")
        target = self.users.get(str(target_id))
        if target is None:
            return EligibilityFact(eligible=False, reason="Target user not found")
        if pair_key(caller.id, target.id) not in self.allowed:
            return EligibilityFact(eligible=False, target=target, reason=NOT_ALLOWED_REASON)
        appointments = [self.appointment] if self.appointment else []
        return EligibilityFact(eligible=True, appointments=appointments, target=target)

    async def record_chat_activity(self, appointment_id):
        self.activity.append(appointment_id)


@pytest.fixture
def staff_ref():
    return UserRef(id="1", name="Sam Staff", role="staff")


@pytest.fixture
def client_ref():
    return UserRef(id="2", name="Cara Client", role="client")


@pytest.fixture
def stranger_ref():
    return UserRef(id="3", name="Stan Stranger", role="client")


@pytest.fixture
def appointment_summary():
    return AppointmentSummary(
        id="10", service="Full Groom", date="2026-10-20T09:00:00", time="09:00", status="scheduled"
    )


@pytest.fixture
def eligibility(staff_ref, client_ref, stranger_ref, appointment_summary):
    return FakeEligibility(
        [staff_ref, client_ref, stranger_ref],
        [(staff_ref.id, client_ref.id)],
        appointment=appointment_summary,
    )


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed(db_session):
    """Staff, two clients, an admin, and appointments linking some of them"""
    staff = User(email="sam@example.com", first_name="Sam", last_name="Staff", role="staff")
    client = User(email="cara@example.com", first_name="Cara", last_name="Client", role="client")
    other_client = User(email="olly@example.com", first_name="Olly", last_name="Other", role="client")
    inactive_client = User(
        email="ian@example.com", first_name="Ian", last_name="Inactive", role="client", is_active=False
    )
    admin = User(email="ada@example.com", first_name="Ada", last_name="Admin", role="super_admin")
    db_session.add_all([staff, client, other_client, inactive_client, admin])
    db_session.flush()

    recent = Appointment(
        client_id=client.id,
        staff_id=staff.id,
        service_name="Full Groom",
        service_duration=90,
        scheduled_date=datetime(2026, 10, 20, 9, 0),
        start_time="09:00",
        status="scheduled",
    )
    older = Appointment(
        client_id=client.id,
        staff_id=staff.id,
        service_name="Nail Trim",
        service_duration=15,
        scheduled_date=datetime(2026, 9, 1, 14, 30),
        start_time="14:30",
        status="completed",
    )
    cancelled = Appointment(
        client_id=other_client.id,
        staff_id=staff.id,
        service_name="Bath",
        scheduled_date=datetime(2026, 10, 1, 11, 0),
        start_time="11:00",
        status="cancelled",
    )
    inactive_link = Appointment(
        client_id=inactive_client.id,
        staff_id=staff.id,
        service_name="Bath",
        scheduled_date=datetime(2026, 10, 2, 11, 0),
        status="scheduled",
    )
    db_session.add_all([recent, older, cancelled, inactive_link])
    db_session.commit()

    return SimpleNamespace(
        staff=staff,
        client=client,
        other_client=other_client,
        inactive_client=inactive_client,
        admin=admin,
        recent=recent,
        older=older,
        cancelled=cancelled,
    )
