"""SQLAlchemy ORM models for archived diagnosis sessions."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


class SessionRecord(Base):
    """A finished session, one row per ``session_id``."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), unique=True, nullable=False, index=True)
    incident_id = Column(String(128), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    outcome = Column(String(32), nullable=True, index=True)
    context_name = Column(String(128), default="")
    active_entry_id = Column(String(128), nullable=True)
    symptoms = Column(JSON, default=dict)
    visited_entries = Column(JSON, default=list)
    hypotheses = Column(JSON, default=list)
    report = Column(JSON, nullable=True)
    errors = Column(JSON, default=list)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True, index=True)
    archived_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False,
    )

    # Relationships
    audit_entries = relationship(
        "AuditEntry", back_populates="session", cascade="all, delete-orphan",
        order_by="AuditEntry.sequence",
    )
    evidence_entries = relationship(
        "EvidenceEntry", back_populates="session", cascade="all, delete-orphan",
    )
    action_entries = relationship(
        "ActionEntry", back_populates="session", cascade="all, delete-orphan",
    )


class AuditEntry(Base):
    """One status transition from a session's audit log."""

    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_pk = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=True)
    actor = Column(String(128), nullable=False)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=False)
    reason = Column(Text, default="")
    action_id = Column(String(128), nullable=True)
    evidence_before = Column(JSON, default=list)
    evidence_after = Column(JSON, default=list)

    session = relationship("SessionRecord", back_populates="audit_entries")

    __table_args__ = (
        Index("ix_audit_session_sequence", "session_pk", "sequence", unique=True),
    )


class EvidenceEntry(Base):
    """One probe outcome recorded during a session."""

    __tablename__ = "evidence_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_pk = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    evidence_id = Column(String(64), nullable=False)
    probe_id = Column(String(128), nullable=False, index=True)
    cause_id = Column(String(128), nullable=False)
    entry_id = Column(String(128), default="")
    outcome = Column(String(32), nullable=False)
    purpose = Column(String(32), default="diagnosis")
    timestamp = Column(DateTime, nullable=True)
    payload = Column(JSON, default=dict)
    signals = Column(JSON, default=dict)
    attempts = Column(Integer, default=1)

    session = relationship("SessionRecord", back_populates="evidence_entries")


class ActionEntry(Base):
    """One remediation event from a session's action log."""

    __tablename__ = "action_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_pk = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    record_id = Column(String(64), nullable=False)
    action_id = Column(String(128), nullable=False, index=True)
    cause_id = Column(String(128), default="")
    event = Column(String(32), nullable=False)
    actor = Column(String(128), nullable=False)
    risk = Column(String(32), nullable=True)
    timestamp = Column(DateTime, nullable=True)
    detail = Column(Text, default="")
    exit_code = Column(Integer, nullable=True)

    session = relationship("SessionRecord", back_populates="action_entries")
