"""
Audit trail entries for issue records.

Entries are stored as JSON objects in IssueRecord.audit_trail. Each action
has its own variant with its own required fields; the `action` field is the
discriminator used to parse them back.

Invariants:
- Once written, never edited, reordered or deleted
- Append-only: writers build old_trail + [entry]
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from keytrack.models.enums import AuditAction, EscalationReason, IssueStatus

SYSTEM_ACTOR = "system"


class _AuditEntryBase(BaseModel):
    timestamp: datetime
    actor: str
    system_action: bool = False
    notes: Optional[str] = None

    class Config:
        frozen = True

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class Issued(_AuditEntryBase):
    action: Literal["issued"] = "issued"


class OverdueAlertSent(_AuditEntryBase):
    """First overdue alert. grace_period_ends is informational only."""
    action: Literal["overdue_alert_sent"] = "overdue_alert_sent"
    days_overdue: int
    grace_period_ends: datetime


class Escalated(_AuditEntryBase):
    action: Literal["escalated"] = "escalated"
    escalation_reason: EscalationReason
    days_overdue: Optional[int] = None


class Returned(_AuditEntryBase):
    action: Literal["returned"] = "returned"
    previous_status: IssueStatus


class SecurityNotesUpdated(_AuditEntryBase):
    action: Literal["security_notes_updated"] = "security_notes_updated"


AuditEntry = Annotated[
    Union[Issued, OverdueAlertSent, Escalated, Returned, SecurityNotesUpdated],
    Field(discriminator="action")
]

_trail_adapter = TypeAdapter(List[AuditEntry])


def parse_audit_trail(raw: Optional[List[Dict[str, Any]]]) -> List[AuditEntry]:
    """Parse a stored trail into typed entries. Raises pydantic.ValidationError on unknown shapes."""
    return _trail_adapter.validate_python(raw or [])


def append_entry(trail: Optional[List[Dict[str, Any]]], entry: _AuditEntryBase) -> List[Dict[str, Any]]:
    """Return a new trail list with entry appended. The input list is not touched."""
    return list(trail or []) + [entry.to_json()]


def find_first(trail: Optional[List[Dict[str, Any]]], action: AuditAction) -> Optional[Dict[str, Any]]:
    for raw in trail or []:
        if raw.get("action") == action.value:
            return raw
    return None
