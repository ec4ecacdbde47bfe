"""Domain models - users, admins, keys and the issue records that link them."""
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Enum as SQLEnum, JSON, Text
from sqlalchemy.orm import relationship
from keytrack.database import Base
from keytrack.models.enums import IssueStatus, KeyStatus, UserRole
from keytrack.utils import new_id, utcnow


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    """A key holder: student, lecturer or cleaner."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole, values_callable=_enum_values), nullable=False)
    user_id = Column(String, nullable=False, unique=True, index=True)  # Institutional id on the card
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    issue_records = relationship("IssueRecord", back_populates="user")


class Admin(Base):
    """Staff member who issues and receives keys."""
    __tablename__ = "admins"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    staff_id = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Key(Base):
    """
    A physical room key.

    Status is flipped by issue and return only; the lifecycle processor never touches it.
    """
    __tablename__ = "keys"

    id = Column(String(36), primary_key=True, default=new_id)
    label = Column(String, nullable=False)
    location = Column(String, nullable=False)
    status = Column(SQLEnum(KeyStatus, values_callable=_enum_values), nullable=False, default=KeyStatus.AVAILABLE)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    issue_records = relationship("IssueRecord", back_populates="key")


class IssueRecord(Base):
    """
    The loan of one key to one user: active → overdue → escalated, or closed at any point.

    Invariants:
    - issued_at and due_at are fixed at issuance
    - returned_at is set once, when the record is closed
    - audit_trail is append-only; every write replaces it with old entries + new ones
    - is_locked is true iff the record has reached escalated
    """
    __tablename__ = "issue_records"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    key_id = Column(String(36), ForeignKey("keys.id"), nullable=False, index=True)
    admin_id = Column(String(36), ForeignKey("admins.id"), nullable=True)

    issued_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    due_at = Column(DateTime(timezone=True), nullable=False, index=True)
    returned_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(
        SQLEnum(IssueStatus, values_callable=_enum_values),
        nullable=False,
        default=IssueStatus.ACTIVE,
        index=True
    )
    audit_trail = Column(JSON, nullable=False, default=list)
    security_notes = Column(Text, nullable=True)
    is_locked = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="issue_records")
    key = relationship("Key", back_populates="issue_records")
    admin = relationship("Admin")
