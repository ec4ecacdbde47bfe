"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from keytrack.models.enums import (
    AlertKind,
    EscalationReason,
    IssueStatus,
    KeyStatus,
    UserRole
)


# User schemas
class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    role: UserRole
    user_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    name: str
    role: UserRole
    user_id: str
    email: Optional[str]
    phone: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# Admin schemas
class AdminCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    staff_id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: Optional[str] = None


class AdminResponse(BaseModel):
    id: str
    name: str
    staff_id: str
    email: str
    phone: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# Key schemas
class KeyCreate(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    location: str = Field(..., min_length=1, max_length=200)


class KeyResponse(BaseModel):
    id: str
    label: str
    location: str
    status: KeyStatus
    created_at: datetime

    class Config:
        from_attributes = True


# Issue record schemas
class IssueCreate(BaseModel):
    user_id: str
    key_id: str
    admin_id: Optional[str] = None
    due_at: datetime
    notes: Optional[str] = Field(None, max_length=500)


class IssueRecordResponse(BaseModel):
    id: str
    user_id: str
    key_id: str
    admin_id: Optional[str]
    issued_at: datetime
    due_at: datetime
    returned_at: Optional[datetime]
    status: IssueStatus
    audit_trail: List[Dict[str, Any]]
    security_notes: Optional[str]
    is_locked: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ReturnRequest(BaseModel):
    admin_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)


class EscalateRequest(BaseModel):
    admin_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)


class SecurityNotesUpdate(BaseModel):
    admin_id: Optional[str] = None
    security_notes: str = Field(..., min_length=1, max_length=5000)


class IssueRecordUpdate(BaseModel):
    """Ordinary edits; any other field in the body is refused by the lock/immutability guard."""
    user_id: Optional[str] = None
    admin_id: Optional[str] = None
    due_at: Optional[datetime] = None
    security_notes: Optional[str] = None


# Overdue check job
class _CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class RunSummaryResponse(_CamelModel):
    processed: int
    first_alerts: int
    reminders: int
    escalations: int
    failed: int
    skipped: int
    notification_failures: int
    interrupted: bool
    timestamp: datetime


class NotificationResponse(_CamelModel):
    record_id: str
    alert_type: AlertKind
    days_overdue: int
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    key_label: Optional[str] = None
    days_until_escalation: Optional[int] = None
    grace_period_ends: Optional[datetime] = None


class EscalationResponse(_CamelModel):
    record_id: str
    days_overdue: int
    escalation_reason: EscalationReason
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    key_label: Optional[str] = None


class RecordFailureResponse(_CamelModel):
    record_id: str
    error: str


class OverdueCheckResponse(_CamelModel):
    success: bool = True
    summary: RunSummaryResponse
    notifications: List[NotificationResponse] = []
    escalations: List[EscalationResponse] = []
    failures: List[RecordFailureResponse] = []
    skipped: List[str] = []


# Error responses
class RefusalResponse(BaseModel):
    """Response when an action is refused."""
    message: str


class JobErrorResponse(BaseModel):
    error: str
    details: str
    timestamp: datetime
