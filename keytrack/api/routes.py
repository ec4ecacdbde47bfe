"""API routes for key issuance and the overdue check job."""
import logging
import secrets
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keytrack.api.schemas import (
    AdminCreate,
    AdminResponse,
    EscalateRequest,
    EscalationResponse,
    IssueCreate,
    IssueRecordResponse,
    IssueRecordUpdate,
    JobErrorResponse,
    KeyCreate,
    KeyResponse,
    NotificationResponse,
    OverdueCheckResponse,
    RecordFailureResponse,
    RefusalResponse,
    ReturnRequest,
    RunSummaryResponse,
    SecurityNotesUpdate,
    UserCreate,
    UserResponse
)
from keytrack.config import Settings, get_settings
from keytrack.database import get_db
from keytrack.models.domain import Admin, IssueRecord, Key, User
from keytrack.models.enums import IssueStatus
from keytrack.services.lifecycle import OverdueLifecycleProcessor, RunInProgressError, RunResult
from keytrack.services.notifier import build_notifier
from keytrack.services.state_machine import LockedRecordError, RefusalError, StateMachine
from keytrack.services.store import SqlAlchemyRecordStore
from keytrack.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

bearer_scheme = HTTPBearer(auto_error=False)


def get_notifier(settings: Settings = Depends(get_settings)):
    """Dependency yielding the configured notifier, closed after the request."""
    notifier = build_notifier(settings)
    try:
        yield notifier
    finally:
        close = getattr(notifier, "close", None)
        if close is not None:
            close()


def require_service_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings)
) -> None:
    """Bearer credential with service scope. No configured token means nobody gets in."""
    if (
        credentials is None
        or not settings.service_token
        or not secrets.compare_digest(credentials.credentials, settings.service_token)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing service token",
            headers={"WWW-Authenticate": "Bearer"}
        )


def _refused(e: RefusalError) -> HTTPException:
    code = status.HTTP_423_LOCKED if isinstance(e, LockedRecordError) else status.HTTP_403_FORBIDDEN
    return HTTPException(status_code=code, detail={"message": e.message})


def _get_or_404(db: Session, model, obj_id: str, name: str):
    obj = db.query(model).filter(model.id == obj_id).first()
    if not obj:
        raise HTTPException(status_code=404, detail=f"{name} not found")
    return obj


def _optional_admin(db: Session, admin_id: Optional[str]) -> Optional[Admin]:
    if admin_id is None:
        return None
    return _get_or_404(db, Admin, admin_id, "Admin")


# User endpoints
@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(user_data: UserCreate, db: Session = Depends(get_db)):
    """Register a key holder."""
    user = User(**user_data.model_dump())
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail=f"User id {user_data.user_id} is already registered")
    db.refresh(user)
    return user


@router.get("/users", response_model=List[UserResponse])
def list_users(db: Session = Depends(get_db)):
    return db.query(User).order_by(User.created_at.desc()).all()


# Admin endpoints
@router.post("/admins", response_model=AdminResponse, status_code=status.HTTP_201_CREATED)
def create_admin(admin_data: AdminCreate, db: Session = Depends(get_db)):
    """Register a staff member who can issue and receive keys."""
    admin = Admin(**admin_data.model_dump())
    db.add(admin)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail=f"Staff id {admin_data.staff_id} is already registered")
    db.refresh(admin)
    return admin


# Key endpoints
@router.post("/keys", response_model=KeyResponse, status_code=status.HTTP_201_CREATED)
def create_key(key_data: KeyCreate, db: Session = Depends(get_db)):
    """Register a key. New keys are available."""
    key = Key(label=key_data.label, location=key_data.location)
    db.add(key)
    db.commit()
    db.refresh(key)
    return key


@router.get("/keys", response_model=List[KeyResponse])
def list_keys(db: Session = Depends(get_db)):
    return db.query(Key).order_by(Key.label.asc()).all()


# Issue record endpoints
@router.post("/issue-records", response_model=IssueRecordResponse, status_code=status.HTTP_201_CREATED, responses={
    403: {"model": RefusalResponse, "description": "Refusal - key checked out or due date invalid"}
})
def issue_key(issue_data: IssueCreate, db: Session = Depends(get_db)):
    """Issue a key to a user. The record starts active and the key becomes checked out."""
    user = _get_or_404(db, User, issue_data.user_id, "User")
    key = _get_or_404(db, Key, issue_data.key_id, "Key")
    admin = _optional_admin(db, issue_data.admin_id)

    sm = StateMachine(db)
    try:
        return sm.issue_key(user, key, due_at=issue_data.due_at, admin=admin, notes=issue_data.notes)
    except RefusalError as e:
        raise _refused(e)


@router.get("/issue-records", response_model=List[IssueRecordResponse])
def list_issue_records(
    status_filter: Optional[IssueStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db)
):
    """List issue records, newest first, optionally by status."""
    query = db.query(IssueRecord)
    if status_filter is not None:
        query = query.filter(IssueRecord.status == status_filter)
    return query.order_by(IssueRecord.created_at.desc()).all()


@router.get("/issue-records/{record_id}", response_model=IssueRecordResponse)
def get_issue_record(record_id: str, db: Session = Depends(get_db)):
    return _get_or_404(db, IssueRecord, record_id, "Issue record")


@router.patch("/issue-records/{record_id}", response_model=IssueRecordResponse, responses={
    423: {"model": RefusalResponse, "description": "Record locked for security review"}
})
def update_issue_record(record_id: str, update_data: IssueRecordUpdate, db: Session = Depends(get_db)):
    """
    Edit a record.

    Locked records accept security notes only; due dates never change after issuance.
    """
    record = _get_or_404(db, IssueRecord, record_id, "Issue record")
    changes = update_data.model_dump(exclude_unset=True)

    sm = StateMachine(db)
    try:
        return sm.attempt_modify_record(record, **changes)
    except RefusalError as e:
        raise _refused(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/issue-records/{record_id}/return", response_model=IssueRecordResponse)
def return_key(record_id: str, return_data: ReturnRequest, db: Session = Depends(get_db)):
    """Return the key and close the record. Works on locked records too."""
    record = _get_or_404(db, IssueRecord, record_id, "Issue record")
    admin = _optional_admin(db, return_data.admin_id)

    sm = StateMachine(db)
    try:
        return sm.return_key(record, admin=admin, notes=return_data.notes)
    except RefusalError as e:
        raise _refused(e)


@router.put("/issue-records/{record_id}/escalate", response_model=IssueRecordResponse)
def escalate_record(record_id: str, escalate_data: EscalateRequest, db: Session = Depends(get_db)):
    """Escalate a record to security by hand. The record becomes locked."""
    record = _get_or_404(db, IssueRecord, record_id, "Issue record")
    admin = _optional_admin(db, escalate_data.admin_id)

    sm = StateMachine(db)
    try:
        return sm.escalate_record(record, admin=admin, notes=escalate_data.notes)
    except RefusalError as e:
        raise _refused(e)


@router.put("/issue-records/{record_id}/security-notes", response_model=IssueRecordResponse)
def update_security_notes(record_id: str, notes_data: SecurityNotesUpdate, db: Session = Depends(get_db)):
    record = _get_or_404(db, IssueRecord, record_id, "Issue record")
    admin = _optional_admin(db, notes_data.admin_id)

    sm = StateMachine(db)
    try:
        return sm.update_security_notes(record, notes_data.security_notes, admin=admin)
    except RefusalError as e:
        raise _refused(e)


# Overdue check job
def to_response(result: RunResult) -> OverdueCheckResponse:
    return OverdueCheckResponse(
        success=True,
        summary=RunSummaryResponse(**asdict(result.summary)),
        notifications=[NotificationResponse(**asdict(n)) for n in result.notifications],
        escalations=[EscalationResponse(**asdict(e)) for e in result.escalations],
        failures=[RecordFailureResponse(**asdict(f)) for f in result.failures],
        skipped=list(result.skipped)
    )


@router.post(
    "/jobs/overdue-check",
    response_model=OverdueCheckResponse,
    dependencies=[Depends(require_service_token)],
    responses={
        409: {"description": "Another overdue check is still running"},
        500: {"model": JobErrorResponse, "description": "Candidate records could not be read"}
    }
)
def run_overdue_check(
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier),
    settings: Settings = Depends(get_settings)
):
    """
    Run the overdue lifecycle once, for a scheduler or an operator.

    Per-record failures do not fail the request; they are listed under `failures`.
    """
    processor = OverdueLifecycleProcessor(
        store=SqlAlchemyRecordStore(db),
        notifier=notifier,
        grace_period_days=settings.grace_period_days,
        escalation_threshold_days=settings.escalation_threshold_days
    )
    try:
        result = processor.run()
    except RunInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except Exception as e:
        logger.error("Overdue check failed", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Overdue check failed",
                "details": str(e),
                "timestamp": utcnow().isoformat()
            }
        )
    return to_response(result)
