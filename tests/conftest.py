"""Global fixtures for the medication reminder processor tests."""
from datetime import datetime, timezone
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from medreminders.db.base import Base
from medreminders.reminders.dispatcher import NotificationService
from medreminders.reminders.models import (
    DeviceToken,
    Medication,
    MedicationLog,
    MedicationReminder,
    UserProfile,
)
from medreminders.reminders.schemas import PushPayload, PushResult


def utc(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class FakeTransport:
    """Records every batch; answers with the configured per-token outcome."""

    def __init__(self, outcomes: Optional[dict] = None):
        self.outcomes = outcomes or {}
        self.batches: List[List[PushPayload]] = []

    def send(self, payloads):
        self.batches.append(list(payloads))
        results = []
        for payload in payloads:
            outcome = self.outcomes.get(payload.to, "ok")
            if outcome == "ok":
                results.append(PushResult(status="ok", id=f"ticket-{payload.to}"))
            else:
                results.append(PushResult(status="error", message=outcome, error=outcome))
        return results

    @property
    def sent_payloads(self) -> List[PushPayload]:
        return [payload for batch in self.batches for payload in batch]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def notifier(transport, session_factory):
    return NotificationService(transport, session_factory=session_factory)


@pytest.fixture
def seed(db):
    """Insert rows with sensible defaults: seed.reminder(...), seed.medication(...), ..."""

    class Seeder:
        def reminder(self, id, user_id="user-1", medication_id=None, medication_name="Vitamin D",
                     times=("21:00",), enabled=True, **fields):
            row = MedicationReminder(
                id=id,
                user_id=user_id,
                medication_id=medication_id or f"med-{id}",
                medication_name=medication_name,
                times=list(times),
                enabled=enabled,
                **fields,
            )
            db.add(row)
            db.commit()
            return row

        def medication(self, id, user_id="user-1", name="Vitamin D", active=True, deleted_at=None):
            row = Medication(id=id, user_id=user_id, name=name, active=active, deleted_at=deleted_at)
            db.add(row)
            db.commit()
            return row

        def user(self, user_id, timezone=None):
            row = UserProfile(user_id=user_id, timezone=timezone)
            db.add(row)
            db.commit()
            return row

        def token(self, user_id, token, platform="ios"):
            row = DeviceToken(user_id=user_id, token=token, platform=platform)
            db.add(row)
            db.commit()
            return row

        def log(self, user_id, medication_id, scheduled_time, action, logged_at,
                scheduled_date=None, snooze_until=None):
            row = MedicationLog(
                user_id=user_id,
                medication_id=medication_id,
                scheduled_time=scheduled_time,
                scheduled_date=scheduled_date,
                action=action,
                logged_at=logged_at,
                snooze_until=snooze_until,
            )
            db.add(row)
            db.commit()
            return row

    return Seeder()
