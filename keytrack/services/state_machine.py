"""
Manual actions on issue records: issue, return, escalate and security notes.

These are the human side of the lifecycle. The overdue lifecycle processor
handles the automatic side; both write through a status-guarded UPDATE so
neither can overwrite a transition the other has just made.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from keytrack.models.audit import Escalated, Issued, Returned, SecurityNotesUpdated, append_entry
from keytrack.models.domain import Admin, IssueRecord, Key, User
from keytrack.models.enums import EscalationReason, IssueStatus, KeyStatus
from keytrack.utils import as_utc, utcnow

logger = logging.getLogger(__name__)

# Fixed at issuance (returned_at at closing); never editable through modify
IMMUTABLE_FIELDS = {"id", "issued_at", "due_at", "returned_at", "audit_trail", "key_id", "created_at"}
# Change only through issue/return/escalate
LIFECYCLE_FIELDS = {"status", "is_locked"}
# Editable while the record is not locked
EDITABLE_FIELDS = {"user_id", "admin_id"}


class RefusalError(Exception):
    """
    Raised when an action is refused by the system.
    This is NOT an error - it's the business rules working correctly.
    """
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class LockedRecordError(RefusalError):
    """Raised when an ordinary edit is attempted on an escalated (locked) record."""


class StateMachine:
    """Enforces issue-record invariants for actions taken by admins."""

    def __init__(self, db: Session):
        self.db = db

    def issue_key(
        self,
        user: User,
        key: Key,
        due_at: datetime,
        admin: Optional[Admin] = None,
        notes: Optional[str] = None,
        issued_at: Optional[datetime] = None
    ) -> IssueRecord:
        """
        Issue a key to a user.

        Refusals:
        - The key must be available
        - due_at must be later than issued_at
        """
        issued_at = as_utc(issued_at or utcnow())
        due_at = as_utc(due_at)

        if key.status != KeyStatus.AVAILABLE:
            raise RefusalError(f"REFUSAL: Key {key.label} is already checked out.")
        if due_at <= issued_at:
            raise RefusalError("REFUSAL: Due date must be after the issue time.")

        entry = Issued(
            timestamp=issued_at,
            actor=admin.id if admin else "unknown",
            notes=notes or "Key issued to user"
        )
        record = IssueRecord(
            user_id=user.id,
            key_id=key.id,
            admin_id=admin.id if admin else None,
            issued_at=issued_at,
            due_at=due_at,
            status=IssueStatus.ACTIVE,
            audit_trail=append_entry([], entry),
            is_locked=False
        )
        self.db.add(record)
        key.status = KeyStatus.CHECKED_OUT
        self.db.commit()
        self.db.refresh(record)

        logger.info(
            "Key issued",
            extra={"record_id": record.id, "key_id": key.id, "user_id": user.id}
        )
        return record

    def return_key(
        self,
        record: IssueRecord,
        admin: Optional[Admin] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> IssueRecord:
        """
        Close a record by returning its key. Allowed from any non-closed status, locked or not.

        A return after an overdue or escalated alert is noted in security_notes.
        """
        now = as_utc(now or utcnow())
        self.db.refresh(record)
        previous_status = record.status

        if previous_status == IssueStatus.CLOSED:
            raise RefusalError("REFUSAL: This key has already been returned.")

        entry = Returned(
            timestamp=now,
            actor=admin.id if admin else "unknown",
            notes=notes or "Key returned",
            previous_status=previous_status
        )
        values: Dict[Any, Any] = {
            IssueRecord.status: IssueStatus.CLOSED,
            IssueRecord.returned_at: now,
            IssueRecord.audit_trail: append_entry(record.audit_trail, entry),
        }
        if previous_status in (IssueStatus.OVERDUE, IssueStatus.ESCALATED):
            values[IssueRecord.security_notes] = (
                f"{notes or 'Key returned'} - Returned after {previous_status.value} alert"
            )

        self._guarded_update(record, previous_status, values)

        key = record.key
        if key is not None:
            key.status = KeyStatus.AVAILABLE
        self.db.commit()
        self.db.refresh(record)

        logger.info(
            "Key returned",
            extra={"record_id": record.id, "previous_status": previous_status.value}
        )
        return record

    def escalate_record(
        self,
        record: IssueRecord,
        admin: Optional[Admin] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> IssueRecord:
        """Escalate an active or overdue record to security by hand. Locks the record."""
        now = as_utc(now or utcnow())
        self.db.refresh(record)
        previous_status = record.status

        if previous_status not in (IssueStatus.ACTIVE, IssueStatus.OVERDUE):
            raise RefusalError(
                f"REFUSAL: Only active or overdue records can be escalated. Current status: {previous_status.value}"
            )

        notes = notes or "Record escalated due to overdue status"
        entry = Escalated(
            timestamp=now,
            actor=admin.id if admin else "unknown",
            notes=notes,
            escalation_reason=EscalationReason.MANUAL_ESCALATION
        )
        self._guarded_update(record, previous_status, {
            IssueRecord.status: IssueStatus.ESCALATED,
            IssueRecord.is_locked: True,
            IssueRecord.security_notes: notes,
            IssueRecord.audit_trail: append_entry(record.audit_trail, entry),
        })
        self.db.commit()
        self.db.refresh(record)

        logger.info("Record escalated by admin", extra={"record_id": record.id})
        return record

    def update_security_notes(
        self,
        record: IssueRecord,
        notes: str,
        admin: Optional[Admin] = None,
        now: Optional[datetime] = None
    ) -> IssueRecord:
        """Security notes are the one field an admin may edit, and only once the record is locked."""
        now = as_utc(now or utcnow())
        self.db.refresh(record)

        if not record.is_locked:
            raise RefusalError("REFUSAL: Security notes can only be edited on escalated records.")

        entry = SecurityNotesUpdated(
            timestamp=now,
            actor=admin.id if admin else "unknown",
            notes=notes
        )
        self._guarded_update(record, record.status, {
            IssueRecord.security_notes: notes,
            IssueRecord.audit_trail: append_entry(record.audit_trail, entry),
        })
        self.db.commit()
        self.db.refresh(record)
        return record

    def attempt_modify_record(self, record: IssueRecord, **changes) -> IssueRecord:
        """
        Apply ordinary edits to a record.

        Invariants:
        - issued_at, due_at, returned_at, key_id and audit_trail never change this way
        - status and is_locked change only through the lifecycle actions
        - a locked record accepts security notes and nothing else
        """
        immutable = sorted(set(changes) & IMMUTABLE_FIELDS)
        if immutable:
            raise ValueError(
                f"IMMUTABILITY VIOLATION: {', '.join(immutable)} cannot be changed after issuance"
            )
        lifecycle = sorted(set(changes) & LIFECYCLE_FIELDS)
        if lifecycle:
            raise ValueError(
                f"IMMUTABILITY VIOLATION: {', '.join(lifecycle)} change only through issue, return or escalate"
            )
        unknown = sorted(set(changes) - EDITABLE_FIELDS - {"security_notes"})
        if unknown:
            raise ValueError(f"Unknown fields: {', '.join(unknown)}")

        if record.is_locked:
            if set(changes) != {"security_notes"}:
                raise LockedRecordError(
                    "REFUSAL: This record is locked for security review. Only security notes can be edited."
                )
            return self.update_security_notes(record, changes["security_notes"])
        if "security_notes" in changes:
            raise RefusalError("REFUSAL: Security notes can only be edited on escalated records.")
        if record.status == IssueStatus.CLOSED:
            raise RefusalError("REFUSAL: Closed records cannot be edited.")

        for name, value in changes.items():
            setattr(record, name, value)
        self.db.commit()
        self.db.refresh(record)
        return record

    def _guarded_update(self, record: IssueRecord, expected_status: IssueStatus, values: Dict[Any, Any]) -> None:
        """UPDATE ... WHERE status = expected_status; refuse if someone else moved the record first."""
        updated = (
            self.db.query(IssueRecord)
            .filter(IssueRecord.id == record.id, IssueRecord.status == expected_status)
            .update(values, synchronize_session=False)
        )
        if updated == 0:
            self.db.rollback()
            raise RefusalError("REFUSAL: The record changed while you were editing it. Reload and try again.")
