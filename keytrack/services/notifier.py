"""
Notifiers for overdue alerts and security escalations.

Delivery itself (email, SMS) happens outside this service. A notifier
either hands the message to a webhook or, when none is configured, only
logs it. Failures are raised as NotificationError; the lifecycle
processor decides what a failure means.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from keytrack.config import Settings
from keytrack.models.audit import find_first
from keytrack.models.enums import AlertKind, AuditAction, EscalationReason, RiskLevel
from keytrack.services.store import CandidateRecord
from keytrack.utils import isoformat

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

# Status codes worth another attempt
TRANSIENT_HTTP_CODES = frozenset({429, 500, 502, 503, 504})


class NotificationError(Exception):
    """Raised when a notification could not be delivered."""


@dataclass(frozen=True)
class OverdueNotification:
    record_id: str
    alert_type: AlertKind
    days_overdue: int
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    key_label: Optional[str] = None
    days_until_escalation: Optional[int] = None
    grace_period_ends: Optional[datetime] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["alert_type"] = self.alert_type.value
        payload["grace_period_ends"] = isoformat(self.grace_period_ends) or None
        return payload


@dataclass(frozen=True)
class EscalationNotice:
    record_id: str
    days_overdue: int
    escalation_reason: EscalationReason
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    key_label: Optional[str] = None


@dataclass(frozen=True)
class SecurityReport:
    """Everything the security division needs to follow up an escalated loan."""
    id: str
    user_info: Dict[str, str]
    key_info: Dict[str, str]
    timeline: Dict[str, str]
    security_notes: str
    days_overdue: int
    risk_level: RiskLevel

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["risk_level"] = self.risk_level.value
        return payload


def risk_level_for(days_overdue: int) -> RiskLevel:
    if days_overdue > 14:
        return RiskLevel.CRITICAL
    if days_overdue > 7:
        return RiskLevel.HIGH
    return RiskLevel.MEDIUM


def build_security_report(
    record: CandidateRecord,
    days_overdue: int,
    escalated_at: datetime,
    security_notes: Optional[str] = None
) -> SecurityReport:
    user = record.user
    key = record.key
    first_alert = find_first(record.audit_trail, AuditAction.OVERDUE_ALERT_SENT)

    return SecurityReport(
        id=record.id,
        user_info={
            "name": (user.name if user else None) or UNKNOWN,
            "user_id": (user.user_id if user else None) or UNKNOWN,
            "role": (user.role if user else None) or UNKNOWN,
            "email": (user.email if user else None) or UNKNOWN,
            "phone": (user.phone if user else None) or UNKNOWN,
        },
        key_info={
            "label": (key.label if key else None) or UNKNOWN,
            "location": (key.location if key else None) or UNKNOWN,
        },
        timeline={
            "issued_at": isoformat(record.issued_at),
            "due_at": isoformat(record.due_at),
            "first_alert": first_alert["timestamp"] if first_alert else "",
            "escalated_at": isoformat(escalated_at),
        },
        security_notes=security_notes if security_notes is not None else (record.security_notes or ""),
        days_overdue=days_overdue,
        risk_level=risk_level_for(days_overdue)
    )


class Notifier(Protocol):
    def send_overdue_alert(self, notification: OverdueNotification) -> None:
        ...

    def send_escalation_alert(self, report: SecurityReport) -> None:
        ...


class LoggingNotifier:
    """Notifier used when no webhook is configured: records what would have been sent."""

    def send_overdue_alert(self, notification: OverdueNotification) -> None:
        logger.info(
            "Overdue alert",
            extra={"notification": notification.to_payload()}
        )

    def send_escalation_alert(self, report: SecurityReport) -> None:
        logger.info(
            "Security escalation alert",
            extra={"report": report.to_payload()}
        )


def is_transient(exc: BaseException) -> bool:
    """Timeouts, connection errors and 429/5xx responses are retried; everything else is not."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_HTTP_CODES
    return isinstance(exc, httpx.TransportError)


class WebhookNotifier:
    """
    Posts notifications as JSON to a webhook with a bearer token.

    Transient failures are retried a bounded number of times with
    exponential backoff and jitter.
    """

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_initial: float = 0.5,
        backoff_max: float = 5.0,
        client: Optional[httpx.Client] = None
    ):
        self.url = url
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)
        self.headers = headers

    def send_overdue_alert(self, notification: OverdueNotification) -> None:
        self._post({"type": "overdue_alert", "notification": notification.to_payload()})

    def send_escalation_alert(self, report: SecurityReport) -> None:
        self._post({"type": "security_escalation", "report": report.to_payload()})

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _post(self, body: Dict[str, Any]) -> None:
        retrying = Retrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(multiplier=self.backoff_initial, max=self.backoff_max, jitter=self.backoff_initial),
            before_sleep=self._log_retry,
            reraise=True
        )
        try:
            for attempt in retrying:
                with attempt:
                    response = self.client.post(self.url, json=body, headers=self.headers)
                    response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Failed to deliver {body['type']} to {self.url}: {e}") from e

    def _log_retry(self, retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying notification delivery",
            extra={"attempt": retry_state.attempt_number, "error": str(exc)}
        )


def build_notifier(settings: Settings):
    """Webhook notifier when SECURITY_WEBHOOK_URL is set, logging notifier otherwise."""
    if settings.security_webhook_url:
        return WebhookNotifier(
            url=settings.security_webhook_url,
            token=settings.service_token,
            timeout=settings.notifier_timeout_seconds,
            max_attempts=settings.notifier_max_attempts
        )
    return LoggingNotifier()
