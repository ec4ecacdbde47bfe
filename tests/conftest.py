"""Pytest configuration and shared fixtures."""
import os

# Keep the app module from creating a database file in the working directory
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from keytrack.database import Base, build_engine
from keytrack.models.audit import Issued, append_entry
from keytrack.models.domain import Admin, IssueRecord, Key, User
from keytrack.models.enums import IssueStatus, KeyStatus, UserRole
from keytrack.services.store import CandidateRecord, KeyInfo, RecordStoreError, StaleRecordError, UserInfo

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Create a fresh in-memory database for each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def sample_user(db_session):
    user = User(
        name="Ada Mensah",
        role=UserRole.STUDENT,
        user_id="STU-1001",
        email="ada@example.edu",
        phone="+10000000001"
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def sample_admin(db_session):
    admin = Admin(name="Front Desk", staff_id="STAFF-7", email="desk@example.edu")
    db_session.add(admin)
    db_session.commit()
    db_session.refresh(admin)
    return admin


@pytest.fixture
def sample_key(db_session):
    key = Key(label="LAB-204", location="Science Block, 2nd floor")
    db_session.add(key)
    db_session.commit()
    db_session.refresh(key)
    return key


@pytest.fixture
def make_record(db_session, sample_user, sample_key):
    """Insert an issue record directly with a given status and due date."""
    def _make(status=IssueStatus.ACTIVE, due_at=None, is_locked=False, security_notes=None, key=None):
        key = key or sample_key
        due_at = due_at or NOW + timedelta(days=1)
        issued_at = due_at - timedelta(days=7)
        record = IssueRecord(
            user_id=sample_user.id,
            key_id=key.id,
            issued_at=issued_at,
            due_at=due_at,
            status=status,
            audit_trail=append_entry([], Issued(timestamp=issued_at, actor="admin-1", notes="Key issued to user")),
            is_locked=is_locked,
            security_notes=security_notes
        )
        key.status = KeyStatus.CHECKED_OUT
        db_session.add(record)
        db_session.commit()
        db_session.refresh(record)
        return record
    return _make


def candidate(record_id="rec-1", status=IssueStatus.ACTIVE, days_past_due=0.0, now=NOW, **kwargs):
    """Build a CandidateRecord whose due_at is `days_past_due` days before now."""
    kwargs.setdefault("user", UserInfo(name="Ada Mensah", user_id="STU-1001", role="student", email="ada@example.edu"))
    kwargs.setdefault("key", KeyInfo(label="LAB-204", location="Science Block"))
    due_at = now - timedelta(days=days_past_due)
    kwargs.setdefault("issued_at", due_at - timedelta(days=7))
    return CandidateRecord(id=record_id, status=status, due_at=due_at, **kwargs)


class FakeStore:
    """In-memory RecordStore. Records are plain dicts keyed by id."""

    def __init__(self, candidates=()):
        self.rows = {}
        for c in candidates:
            self.rows[c.id] = {
                "candidate": c,
                "status": c.status,
                "audit_trail": list(c.audit_trail),
                "security_notes": c.security_notes,
                "is_locked": c.is_locked,
            }
        self.fail_fetch = None
        self.fail_update_for = {}
        self.updates = []

    def fetch_overdue_candidates(self, statuses):
        if self.fail_fetch is not None:
            raise self.fail_fetch
        statuses = set(statuses)
        result = []
        for row in self.rows.values():
            if row["status"] in statuses:
                c = row["candidate"]
                result.append(CandidateRecord(
                    id=c.id,
                    status=row["status"],
                    due_at=c.due_at,
                    issued_at=c.issued_at,
                    audit_trail=list(row["audit_trail"]),
                    security_notes=row["security_notes"],
                    is_locked=row["is_locked"],
                    user=c.user,
                    key=c.key
                ))
        return result

    def update_record(self, record_id, expected_status, update):
        if record_id in self.fail_update_for:
            raise self.fail_update_for[record_id]
        row = self.rows[record_id]
        if row["status"] != expected_status:
            raise StaleRecordError(record_id, expected_status, row["status"])
        if update.status is not None:
            row["status"] = update.status
        if update.audit_entry is not None:
            row["audit_trail"] = append_entry(row["audit_trail"], update.audit_entry)
        if update.security_notes is not None:
            row["security_notes"] = update.security_notes
        if update.is_locked is not None:
            row["is_locked"] = update.is_locked
        self.updates.append((record_id, expected_status, update))

    def close_record(self, record_id):
        """Simulate a manual return landing between fetch and write."""
        self.rows[record_id]["status"] = IssueStatus.CLOSED


class FakeNotifier:
    def __init__(self, fail_overdue=False, fail_escalation=False):
        self.overdue_alerts = []
        self.escalation_alerts = []
        self.fail_overdue = fail_overdue
        self.fail_escalation = fail_escalation

    def send_overdue_alert(self, notification):
        if self.fail_overdue:
            raise RuntimeError("mail relay down")
        self.overdue_alerts.append(notification)

    def send_escalation_alert(self, report):
        if self.fail_escalation:
            raise RuntimeError("security webhook down")
        self.escalation_alerts.append(report)


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def store_error():
    return RecordStoreError("connection reset")
