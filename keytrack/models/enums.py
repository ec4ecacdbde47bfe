"""Enums for the key tracker - these define the valid values for statuses, roles and actions."""
from enum import Enum


class IssueStatus(str, Enum):
    """The four statuses an issue record can be in. Progression is forward only."""
    ACTIVE = "active"
    OVERDUE = "overdue"
    ESCALATED = "escalated"
    CLOSED = "closed"


class KeyStatus(str, Enum):
    """Availability of a physical key."""
    AVAILABLE = "available"
    CHECKED_OUT = "checked_out"


class UserRole(str, Enum):
    STUDENT = "student"
    LECTURER = "lecturer"
    CLEANER = "cleaner"


class AuditAction(str, Enum):
    """Actions that may appear in an issue record's audit trail."""
    ISSUED = "issued"
    OVERDUE_ALERT_SENT = "overdue_alert_sent"
    ESCALATED = "escalated"
    RETURNED = "returned"
    SECURITY_NOTES_UPDATED = "security_notes_updated"


class AlertKind(str, Enum):
    """Kinds of user-facing overdue notification."""
    FIRST_OVERDUE = "first_overdue"
    GRACE_PERIOD_REMINDER = "grace_period_reminder"


class EscalationReason(str, Enum):
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    MANUAL_ESCALATION = "manual_escalation"


class RiskLevel(str, Enum):
    """Risk level attached to a security report, by days overdue."""
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Statuses the lifecycle processor looks at on every run
OPEN_STATUSES = (IssueStatus.ACTIVE, IssueStatus.OVERDUE)
