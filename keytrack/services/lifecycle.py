"""
Overdue lifecycle processor.

A batch job that walks every open issue record, advances its status by
elapsed time since due_at, appends an audit entry for each transition and
hands notifications to the notifier:

    active  --(>= 1 day past due)-----------------> overdue
    overdue --(>= escalation threshold past due)--> escalated (locked)
    overdue --(below threshold)-------------------> reminder only

Each record gets at most one transition per run, so a record that has been
ignored for weeks still goes active → overdue on one run and overdue →
escalated on the next. Nothing here ever moves a record backwards; closing
is a manual return.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from keytrack import metrics
from keytrack.models.audit import SYSTEM_ACTOR, Escalated, OverdueAlertSent
from keytrack.models.enums import OPEN_STATUSES, AlertKind, EscalationReason, IssueStatus
from keytrack.services.notifier import (
    EscalationNotice,
    Notifier,
    OverdueNotification,
    build_security_report,
)
from keytrack.services.store import CandidateRecord, RecordStore, RecordUpdate, StaleRecordError
from keytrack.utils import as_utc, days_until, utcnow, whole_days_between

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 3
DEFAULT_ESCALATION_THRESHOLD_DAYS = 7

# One run at a time per process; overlap across processes is the scheduler's job
_RUN_LOCK = threading.Lock()


class RunInProgressError(Exception):
    """Raised when a run is requested while another run in this process is still going."""


class Action(str, Enum):
    FIRST_ALERT = "first_alert"
    ESCALATE = "escalate"
    REMIND = "remind"
    NONE = "none"


@dataclass(frozen=True)
class Decision:
    action: Action
    days_overdue: int
    days_until_escalation: Optional[int] = None


@dataclass
class RecordFailure:
    record_id: str
    error: str


@dataclass
class RunSummary:
    timestamp: datetime
    processed: int = 0
    first_alerts: int = 0
    reminders: int = 0
    escalations: int = 0
    failed: int = 0
    skipped: int = 0
    notification_failures: int = 0
    interrupted: bool = False


@dataclass
class RunResult:
    summary: RunSummary
    notifications: List[OverdueNotification] = field(default_factory=list)
    escalations: List[EscalationNotice] = field(default_factory=list)
    failures: List[RecordFailure] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class OverdueLifecycleProcessor:
    """Advances overdue issue records. Collaborators are injected so runs are deterministic in tests."""

    def __init__(
        self,
        store: RecordStore,
        notifier: Notifier,
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
        escalation_threshold_days: int = DEFAULT_ESCALATION_THRESHOLD_DAYS
    ):
        self.store = store
        self.notifier = notifier
        self.grace_period_days = grace_period_days
        self.escalation_threshold_days = escalation_threshold_days

    def classify(self, record: CandidateRecord, now: datetime) -> Decision:
        """
        Decide what happens to one record at `now`.

        Pure function of (status, due_at, now) and the two thresholds.
        """
        days_overdue = whole_days_between(record.due_at, now)

        if record.status == IssueStatus.ACTIVE:
            if days_overdue >= 1:
                return Decision(Action.FIRST_ALERT, days_overdue)
            return Decision(Action.NONE, days_overdue)

        if record.status == IssueStatus.OVERDUE:
            if days_overdue >= self.escalation_threshold_days:
                return Decision(Action.ESCALATE, days_overdue)
            escalation_due = as_utc(record.due_at) + timedelta(days=self.escalation_threshold_days)
            return Decision(Action.REMIND, days_overdue, days_until(escalation_due, now))

        # Escalated and closed records are terminal for automatic processing
        return Decision(Action.NONE, days_overdue)

    def run(self, now: Optional[datetime] = None, stop_event: Optional[threading.Event] = None) -> RunResult:
        """
        Process every open record once.

        `now` is read once and used for every comparison and timestamp in
        the run. When stop_event is set, the record in hand is finished and
        no further records are started.

        Raises RunInProgressError if another run holds the lock, and lets a
        fetch failure propagate: nothing has been applied at that point.
        """
        if not _RUN_LOCK.acquire(blocking=False):
            raise RunInProgressError("An overdue check is already running")
        try:
            return self._run(as_utc(now or utcnow()), stop_event)
        finally:
            _RUN_LOCK.release()

    def _run(self, now: datetime, stop_event: Optional[threading.Event]) -> RunResult:
        result = RunResult(summary=RunSummary(timestamp=now))
        logger.info("Starting overdue check", extra={"now": now.isoformat()})

        try:
            candidates = self.store.fetch_overdue_candidates(OPEN_STATUSES)
        except Exception:
            metrics.record_run("fetch_failed")
            logger.exception("Failed to fetch overdue candidates")
            raise

        logger.info("Found open records to check", extra={"count": len(candidates)})

        for record in candidates:
            if stop_event is not None and stop_event.is_set():
                result.summary.interrupted = True
                logger.warning(
                    "Stop requested, leaving remaining records for the next run",
                    extra={"remaining": len(candidates) - result.summary.processed}
                )
                break

            result.summary.processed += 1
            decision = None
            try:
                decision = self.classify(record, now)
                self._apply(record, decision, now, result)
            except StaleRecordError as e:
                result.summary.skipped += 1
                result.skipped.append(record.id)
                metrics.record_skipped()
                logger.warning(
                    "Skipped transition: record changed since it was read",
                    extra={
                        "record_id": record.id,
                        "expected_status": e.expected.value,
                        "actual_status": e.actual.value if e.actual else None,
                    }
                )
            except Exception as e:
                # Isolation: one bad record never stops the batch
                result.summary.failed += 1
                result.failures.append(RecordFailure(record_id=record.id, error=str(e)))
                metrics.record_record_failure()
                logger.error(
                    "Failed to process issue record",
                    extra={"record_id": record.id, "action": decision.action.value if decision else None},
                    exc_info=True
                )

        metrics.record_run("interrupted" if result.summary.interrupted else "completed")
        logger.info("Overdue check completed", extra={"summary": vars(result.summary)})
        return result

    def _apply(self, record: CandidateRecord, decision: Decision, now: datetime, result: RunResult) -> None:
        if decision.action == Action.FIRST_ALERT:
            self._first_alert(record, decision, now, result)
        elif decision.action == Action.ESCALATE:
            self._escalate(record, decision, now, result)
        elif decision.action == Action.REMIND:
            self._remind(record, decision, result)

    def _first_alert(self, record: CandidateRecord, decision: Decision, now: datetime, result: RunResult) -> None:
        grace_period_ends = now + timedelta(days=self.grace_period_days)
        entry = OverdueAlertSent(
            timestamp=now,
            actor=SYSTEM_ACTOR,
            system_action=True,
            notes=(
                f"First overdue alert sent - {decision.days_overdue} days overdue, "
                f"grace period ends {grace_period_ends.isoformat()}"
            ),
            days_overdue=decision.days_overdue,
            grace_period_ends=grace_period_ends
        )
        self.store.update_record(
            record.id,
            IssueStatus.ACTIVE,
            RecordUpdate(
                status=IssueStatus.OVERDUE,
                audit_entry=entry,
                security_notes=f"Overdue alert sent on {now.isoformat()}"
            )
        )
        metrics.record_transition(IssueStatus.ACTIVE.value, IssueStatus.OVERDUE.value)
        logger.info(
            "Record marked overdue",
            extra={"record_id": record.id, "days_overdue": decision.days_overdue}
        )

        notification = OverdueNotification(
            record_id=record.id,
            alert_type=AlertKind.FIRST_OVERDUE,
            days_overdue=decision.days_overdue,
            user_name=record.user.name if record.user else None,
            user_email=record.user.email if record.user else None,
            key_label=record.key.label if record.key else None,
            grace_period_ends=grace_period_ends
        )
        result.notifications.append(notification)
        result.summary.first_alerts += 1
        self._send_overdue_alert(notification, result)

    def _escalate(self, record: CandidateRecord, decision: Decision, now: datetime, result: RunResult) -> None:
        notes = f"Auto-escalated: Grace period expired after {decision.days_overdue} days overdue"
        entry = Escalated(
            timestamp=now,
            actor=SYSTEM_ACTOR,
            system_action=True,
            notes=notes,
            escalation_reason=EscalationReason.GRACE_PERIOD_EXPIRED,
            days_overdue=decision.days_overdue
        )
        self.store.update_record(
            record.id,
            IssueStatus.OVERDUE,
            RecordUpdate(
                status=IssueStatus.ESCALATED,
                audit_entry=entry,
                security_notes=notes,
                is_locked=True
            )
        )
        metrics.record_transition(IssueStatus.OVERDUE.value, IssueStatus.ESCALATED.value)
        logger.info(
            "Record escalated to security",
            extra={"record_id": record.id, "days_overdue": decision.days_overdue}
        )

        result.escalations.append(EscalationNotice(
            record_id=record.id,
            days_overdue=decision.days_overdue,
            escalation_reason=EscalationReason.GRACE_PERIOD_EXPIRED,
            user_name=record.user.name if record.user else None,
            user_email=record.user.email if record.user else None,
            key_label=record.key.label if record.key else None
        ))
        result.summary.escalations += 1

        # Best effort: the escalation above is already committed. The report
        # carries the notes the record had before it was escalated.
        report = build_security_report(record, decision.days_overdue, now)
        try:
            self.notifier.send_escalation_alert(report)
        except Exception as e:
            result.summary.notification_failures += 1
            metrics.record_notification_failure("escalation")
            logger.warning(
                "Security notification failed; record stays escalated",
                extra={"record_id": record.id, "error": str(e)}
            )

    def _remind(self, record: CandidateRecord, decision: Decision, result: RunResult) -> None:
        notification = OverdueNotification(
            record_id=record.id,
            alert_type=AlertKind.GRACE_PERIOD_REMINDER,
            days_overdue=decision.days_overdue,
            user_name=record.user.name if record.user else None,
            user_email=record.user.email if record.user else None,
            key_label=record.key.label if record.key else None,
            days_until_escalation=decision.days_until_escalation
        )
        result.notifications.append(notification)
        result.summary.reminders += 1
        self._send_overdue_alert(notification, result)

    def _send_overdue_alert(self, notification: OverdueNotification, result: RunResult) -> None:
        try:
            self.notifier.send_overdue_alert(notification)
        except Exception as e:
            result.summary.notification_failures += 1
            metrics.record_notification_failure(notification.alert_type.value)
            logger.warning(
                "Overdue notification failed",
                extra={"record_id": notification.record_id, "error": str(e)}
            )
