"""
Tests for manual actions on issue records.

These tests prove:
- Issuing checks the key out and writes the first audit entry
- Returns close a record from any open or escalated status and free the key
- Escalated records are locked: security notes are the only edit allowed
- Fixed fields are provably immutable at the service layer
"""
import pytest
from datetime import timedelta

from conftest import NOW
from keytrack.models.audit import parse_audit_trail
from keytrack.models.domain import Key
from keytrack.models.enums import EscalationReason, IssueStatus, KeyStatus
from keytrack.services.state_machine import LockedRecordError, RefusalError, StateMachine


class TestIssue:
    """Issuing a key."""

    def test_issue_checks_out_key_and_writes_issued_entry(self, db_session, sample_user, sample_key, sample_admin):
        sm = StateMachine(db_session)

        record = sm.issue_key(sample_user, sample_key, due_at=NOW + timedelta(days=2), admin=sample_admin, issued_at=NOW)

        db_session.refresh(sample_key)
        assert record.status == IssueStatus.ACTIVE
        assert record.is_locked is False
        assert sample_key.status == KeyStatus.CHECKED_OUT
        [entry] = parse_audit_trail(record.audit_trail)
        assert entry.action == "issued"
        assert entry.actor == sample_admin.id
        assert entry.system_action is False

    def test_cannot_issue_checked_out_key(self, db_session, sample_user, sample_key):
        """A key out on loan is refused, not double-issued."""
        sm = StateMachine(db_session)
        sm.issue_key(sample_user, sample_key, due_at=NOW + timedelta(days=2), issued_at=NOW)

        with pytest.raises(RefusalError) as exc_info:
            sm.issue_key(sample_user, sample_key, due_at=NOW + timedelta(days=3), issued_at=NOW)

        assert "already checked out" in exc_info.value.message

    def test_due_date_must_follow_issue_time(self, db_session, sample_user, sample_key):
        sm = StateMachine(db_session)

        with pytest.raises(RefusalError):
            sm.issue_key(sample_user, sample_key, due_at=NOW, issued_at=NOW)

        db_session.refresh(sample_key)
        assert sample_key.status == KeyStatus.AVAILABLE


class TestReturn:
    """Returning a key closes the record."""

    def test_on_time_return(self, db_session, make_record, sample_admin, sample_key):
        record = make_record(IssueStatus.ACTIVE)
        sm = StateMachine(db_session)

        sm.return_key(record, admin=sample_admin, now=NOW)

        db_session.refresh(sample_key)
        assert record.status == IssueStatus.CLOSED
        assert record.returned_at is not None
        assert record.security_notes is None
        assert sample_key.status == KeyStatus.AVAILABLE
        last = parse_audit_trail(record.audit_trail)[-1]
        assert last.action == "returned"
        assert last.previous_status == IssueStatus.ACTIVE

    @pytest.mark.parametrize("status, locked", [
        (IssueStatus.OVERDUE, False),
        (IssueStatus.ESCALATED, True),
    ])
    def test_return_after_alert_is_noted(self, db_session, make_record, status, locked):
        record = make_record(status, due_at=NOW - timedelta(days=9), is_locked=locked)

        StateMachine(db_session).return_key(record, notes="Found in lab drawer", now=NOW)

        assert record.status == IssueStatus.CLOSED
        assert record.security_notes == f"Found in lab drawer - Returned after {status.value} alert"
        # Returning never unlocks
        assert record.is_locked is locked

    def test_cannot_return_twice(self, db_session, make_record):
        record = make_record(IssueStatus.ACTIVE)
        sm = StateMachine(db_session)
        sm.return_key(record, now=NOW)

        with pytest.raises(RefusalError):
            sm.return_key(record, now=NOW)

        assert [e["action"] for e in record.audit_trail] == ["issued", "returned"]


class TestManualEscalation:

    def test_escalate_overdue_record(self, db_session, make_record, sample_admin):
        record = make_record(IssueStatus.OVERDUE, due_at=NOW - timedelta(days=4))

        StateMachine(db_session).escalate_record(record, admin=sample_admin, notes="User unreachable", now=NOW)

        assert record.status == IssueStatus.ESCALATED
        assert record.is_locked is True
        assert record.security_notes == "User unreachable"
        last = parse_audit_trail(record.audit_trail)[-1]
        assert last.escalation_reason == EscalationReason.MANUAL_ESCALATION
        assert last.system_action is False

    @pytest.mark.parametrize("status", [IssueStatus.ESCALATED, IssueStatus.CLOSED])
    def test_only_open_records_can_be_escalated(self, db_session, make_record, status):
        record = make_record(status, is_locked=status == IssueStatus.ESCALATED)

        with pytest.raises(RefusalError):
            StateMachine(db_session).escalate_record(record, now=NOW)


class TestLockedRecords:
    """An escalated record is frozen except for security notes."""

    def test_security_notes_editable_when_locked(self, db_session, make_record, sample_admin):
        record = make_record(IssueStatus.ESCALATED, is_locked=True, security_notes="Auto-escalated")

        StateMachine(db_session).update_security_notes(
            record, "Campus security called the user", admin=sample_admin, now=NOW
        )

        assert record.security_notes == "Campus security called the user"
        last = parse_audit_trail(record.audit_trail)[-1]
        assert last.action == "security_notes_updated"
        assert last.actor == sample_admin.id

    def test_security_notes_refused_when_not_locked(self, db_session, make_record):
        record = make_record(IssueStatus.OVERDUE)

        with pytest.raises(RefusalError):
            StateMachine(db_session).update_security_notes(record, "too early", now=NOW)

    def test_ordinary_edit_refused_when_locked(self, db_session, make_record, sample_admin):
        record = make_record(IssueStatus.ESCALATED, is_locked=True)

        with pytest.raises(LockedRecordError):
            StateMachine(db_session).attempt_modify_record(record, admin_id=sample_admin.id)

        db_session.refresh(record)
        assert record.admin_id is None

    def test_modify_with_only_security_notes_goes_through(self, db_session, make_record):
        record = make_record(IssueStatus.ESCALATED, is_locked=True)

        StateMachine(db_session).attempt_modify_record(record, security_notes="Key recovered by security")

        assert record.security_notes == "Key recovered by security"
        assert record.audit_trail[-1]["action"] == "security_notes_updated"


class TestImmutability:
    """Fixed fields cannot be changed through the modify path."""

    @pytest.mark.parametrize("field", ["issued_at", "due_at", "returned_at", "key_id", "audit_trail"])
    def test_fixed_fields_rejected(self, db_session, make_record, field):
        record = make_record(IssueStatus.ACTIVE)

        with pytest.raises(ValueError, match="IMMUTABILITY VIOLATION"):
            StateMachine(db_session).attempt_modify_record(record, **{field: None})

    @pytest.mark.parametrize("field, value", [("status", IssueStatus.CLOSED), ("is_locked", True)])
    def test_lifecycle_fields_only_move_through_actions(self, db_session, make_record, field, value):
        record = make_record(IssueStatus.OVERDUE)

        with pytest.raises(ValueError, match="IMMUTABILITY VIOLATION"):
            StateMachine(db_session).attempt_modify_record(record, **{field: value})

        db_session.refresh(record)
        assert record.status == IssueStatus.OVERDUE
        assert record.is_locked is False

    def test_unknown_field_rejected(self, db_session, make_record):
        record = make_record(IssueStatus.ACTIVE)

        with pytest.raises(ValueError, match="Unknown fields"):
            StateMachine(db_session).attempt_modify_record(record, colour="red")

    def test_editable_field_on_open_record(self, db_session, make_record, sample_admin):
        record = make_record(IssueStatus.ACTIVE)

        StateMachine(db_session).attempt_modify_record(record, admin_id=sample_admin.id)

        assert record.admin_id == sample_admin.id

    def test_closed_record_is_not_editable(self, db_session, make_record, sample_admin):
        record = make_record(IssueStatus.CLOSED)

        with pytest.raises(RefusalError):
            StateMachine(db_session).attempt_modify_record(record, admin_id=sample_admin.id)


class TestConcurrentChange:

    def test_return_refused_if_record_moved_underneath(self, db_session, session_factory, make_record, monkeypatch):
        """A status change landing between read and write is refused, not overwritten."""
        record = make_record(IssueStatus.ACTIVE, due_at=NOW - timedelta(days=2))
        sm = StateMachine(db_session)
        original_refresh = db_session.refresh

        def refresh_then_escalate(obj, *args, **kwargs):
            original_refresh(obj, *args, **kwargs)
            monkeypatch.setattr(db_session, "refresh", original_refresh)
            other = session_factory()
            try:
                other_record = other.get(type(record), record.id)
                StateMachine(other).escalate_record(other_record, now=NOW)
            finally:
                other.close()

        monkeypatch.setattr(db_session, "refresh", refresh_then_escalate)

        with pytest.raises(RefusalError, match="changed while you were editing"):
            sm.return_key(record, now=NOW)

        db_session.refresh(record)
        assert record.status == IssueStatus.ESCALATED
        assert [e["action"] for e in record.audit_trail] == ["issued", "escalated"]
        assert db_session.get(Key, record.key_id).status == KeyStatus.CHECKED_OUT
