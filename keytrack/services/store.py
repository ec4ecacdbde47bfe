"""
Record store used by the overdue lifecycle processor.

The processor only sees plain snapshots (CandidateRecord), never ORM
objects, so it can be driven by the SQLAlchemy store in production and by
an in-memory fake in tests.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from keytrack.models.audit import append_entry
from keytrack.models.domain import IssueRecord
from keytrack.models.enums import IssueStatus
from keytrack.utils import as_utc


class RecordStoreError(Exception):
    """Raised when the record store cannot read or write."""


class StaleRecordError(RecordStoreError):
    """
    Raised when a record's status no longer matches what was read.

    This is the optimistic check that keeps a manual return (or a second
    writer) from being overwritten by a transition computed on old data.
    """
    def __init__(self, record_id: str, expected: IssueStatus, actual: Optional[IssueStatus] = None):
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Record {record_id} changed since it was read: "
            f"expected status {expected.value}, found {actual.value if actual else 'unknown'}"
        )


@dataclass(frozen=True)
class UserInfo:
    name: str
    user_id: str
    role: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class KeyInfo:
    label: str
    location: str


@dataclass(frozen=True)
class CandidateRecord:
    """An issue record as read at classification time, joined with user and key display fields."""
    id: str
    status: IssueStatus
    due_at: datetime
    issued_at: Optional[datetime] = None
    audit_trail: List[Dict[str, Any]] = field(default_factory=list)
    security_notes: Optional[str] = None
    is_locked: bool = False
    user: Optional[UserInfo] = None
    key: Optional[KeyInfo] = None


@dataclass(frozen=True)
class RecordUpdate:
    """
    Changes to apply to one record.

    audit_entry is appended to the latest stored trail, not to the trail in
    the snapshot, so entries written by someone else in between survive.
    """
    status: Optional[IssueStatus] = None
    audit_entry: Optional[Any] = None
    security_notes: Optional[str] = None
    is_locked: Optional[bool] = None


class RecordStore(Protocol):
    def fetch_overdue_candidates(self, statuses: Iterable[IssueStatus]) -> List[CandidateRecord]:
        ...

    def update_record(self, record_id: str, expected_status: IssueStatus, update: RecordUpdate) -> None:
        ...


def snapshot(record: IssueRecord) -> CandidateRecord:
    user = None
    if record.user is not None:
        user = UserInfo(
            name=record.user.name,
            user_id=record.user.user_id,
            role=record.user.role.value,
            email=record.user.email,
            phone=record.user.phone
        )
    key = None
    if record.key is not None:
        key = KeyInfo(label=record.key.label, location=record.key.location)

    return CandidateRecord(
        id=record.id,
        status=record.status,
        due_at=as_utc(record.due_at),
        issued_at=as_utc(record.issued_at),
        audit_trail=list(record.audit_trail or []),
        security_notes=record.security_notes,
        is_locked=bool(record.is_locked),
        user=user,
        key=key
    )


class SqlAlchemyRecordStore:
    """RecordStore backed by the application database."""

    def __init__(self, db: Session):
        self.db = db

    def fetch_overdue_candidates(self, statuses: Iterable[IssueStatus]) -> List[CandidateRecord]:
        statuses = list(statuses)
        try:
            records = (
                self.db.query(IssueRecord)
                .options(joinedload(IssueRecord.user), joinedload(IssueRecord.key))
                .filter(IssueRecord.status.in_(statuses))
                .order_by(IssueRecord.due_at.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise RecordStoreError(f"Failed to fetch issue records: {e}") from e
        return [snapshot(record) for record in records]

    def update_record(self, record_id: str, expected_status: IssueStatus, update: RecordUpdate) -> None:
        """
        Apply an update if, and only if, the record still has expected_status.

        Raises StaleRecordError on mismatch and RecordStoreError on database errors.
        """
        try:
            current = (
                self.db.query(IssueRecord)
                .populate_existing()
                .filter(IssueRecord.id == record_id)
                .first()
            )
            if current is None:
                raise RecordStoreError(f"Issue record {record_id} not found")
            if current.status != expected_status:
                raise StaleRecordError(record_id, expected_status, current.status)

            values: Dict[str, Any] = {}
            if update.status is not None:
                values[IssueRecord.status] = update.status
            if update.audit_entry is not None:
                values[IssueRecord.audit_trail] = append_entry(current.audit_trail, update.audit_entry)
            if update.security_notes is not None:
                values[IssueRecord.security_notes] = update.security_notes
            if update.is_locked is not None:
                values[IssueRecord.is_locked] = update.is_locked
            if not values:
                return

            # Status guard in the WHERE clause closes the gap between the read above and this write
            updated = (
                self.db.query(IssueRecord)
                .filter(IssueRecord.id == record_id, IssueRecord.status == expected_status)
                .update(values, synchronize_session=False)
            )
            if updated == 0:
                raise StaleRecordError(record_id, expected_status)
            self.db.commit()
        except RecordStoreError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RecordStoreError(f"Failed to update issue record {record_id}: {e}") from e
