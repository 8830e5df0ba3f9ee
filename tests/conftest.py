import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")

from datetime import datetime
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from starboard import db
from starboard import models  # ensure models are registered with metadata
from starboard import notifications
from starboard.main import app
from starboard.members import add_member, create_family
from starboard.models import MemberRole, ScheduleType, TaskCategory
from starboard.templates import create_template


test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

def override_get_session():
    with Session(test_engine) as session:
        yield session


def reset_database():
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)


db.engine = test_engine
app.dependency_overrides[db.get_session] = override_get_session

NOW = datetime(2025, 3, 12, 10, 0, 0)


class RecordingNotifier(notifications.Notifier):
    def __init__(self):
        self.sent = []

    def send(self, event, recipients, title, body, data):
        self.sent.append((event, [member.id for member in recipients], body))

    def events(self):
        return [event for event, _, _ in self.sent]


@pytest.fixture(autouse=True)
def setup_db():
    reset_database()
    yield


@pytest.fixture(autouse=True)
def notifier():
    recorder = RecordingNotifier()
    notifications.set_notifier(recorder)
    yield recorder
    notifications.set_notifier(None)


@pytest.fixture
def client():
    reset_database()
    return TestClient(app)


@pytest.fixture
def session():
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def now():
    return NOW


def make_family(session: Session, guardians: int = 1, participants: int = 1):
    family = create_family(session, "Home")
    guardian_rows = [
        add_member(session, family.id, f"Guardian {i + 1}", role=MemberRole.guardian)
        for i in range(guardians)
    ]
    participant_rows = [
        add_member(session, family.id, f"Kid {i + 1}", role=MemberRole.participant)
        for i in range(participants)
    ]
    return SimpleNamespace(
        id=family.id,
        guardian=guardian_rows[0] if guardian_rows else None,
        guardians=guardian_rows,
        participant=participant_rows[0] if participant_rows else None,
        participants=participant_rows,
    )


def make_template(session: Session, family, title="Make bed", stars=5, **kwargs):
    kwargs.setdefault("category", TaskCategory.cleaning)
    kwargs.setdefault("schedule_type", ScheduleType.one_time)
    return create_template(session, family.id, family.guardian.id, title, stars, **kwargs)


@pytest.fixture
def family(session):
    """One guardian, one participant."""
    return make_family(session)


@pytest.fixture
def two_guardian_family(session):
    return make_family(session, guardians=2, participants=1)
