"""Audit repository — archive finished sessions and query them back."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from engine.schema import SessionSnapshot
from engine.telemetry import get_logger

from .connection import DatabaseConnection
from .models import ActionEntry, AuditEntry, EvidenceEntry, SessionRecord

_logger = get_logger(__name__)


class AuditRepository:
    """Data-access layer over archived sessions.

    Instances satisfy the engine's ``SessionArchive`` protocol, so a
    repository can be passed straight to ``RemediationEngine(archive=...)``.

    Args:
        connection: A :class:`DatabaseConnection` instance.
    """

    def __init__(self, connection: DatabaseConnection) -> None:
        self._conn = connection

    # ------------------------------------------------------------------
    # Insert
    # ------------------------------------------------------------------

    def archive_session(self, snapshot: SessionSnapshot) -> int:
        """Persist *snapshot* with its audit, evidence and action logs.

        Archiving the same ``session_id`` again replaces the earlier row.

        Args:
            snapshot: A session snapshot, normally a terminal one.

        Returns:
            The primary key of the stored session row.
        """
        data = snapshot.model_dump(mode="json")
        with self._conn.session() as sess:
            existing = sess.execute(
                select(SessionRecord).where(SessionRecord.session_id == snapshot.session_id)
            ).scalar_one_or_none()
            if existing is not None:
                sess.delete(existing)
                sess.flush()

            record = SessionRecord(
                session_id=snapshot.session_id,
                incident_id=snapshot.incident_id,
                status=snapshot.status.value,
                outcome=snapshot.outcome.value if snapshot.outcome else None,
                context_name=snapshot.context_name,
                active_entry_id=snapshot.active_entry_id,
                symptoms=data["symptoms"],
                visited_entries=list(snapshot.visited_entries),
                hypotheses=data["hypotheses"],
                report=data["report"],
                errors=list(snapshot.errors),
                started_at=snapshot.created_at,
                finished_at=snapshot.updated_at,
            )
            for audit in snapshot.audit:
                record.audit_entries.append(AuditEntry(
                    sequence=audit.sequence,
                    timestamp=audit.timestamp,
                    actor=audit.actor,
                    from_status=audit.from_status.value if audit.from_status else None,
                    to_status=audit.to_status.value,
                    reason=audit.reason,
                    action_id=audit.action_id,
                    evidence_before=list(audit.evidence_before),
                    evidence_after=list(audit.evidence_after),
                ))
            for evidence, raw in zip(snapshot.evidence, data["evidence"]):
                record.evidence_entries.append(EvidenceEntry(
                    evidence_id=evidence.evidence_id,
                    probe_id=evidence.probe_id,
                    cause_id=evidence.cause_id,
                    entry_id=evidence.entry_id,
                    outcome=evidence.outcome.value,
                    purpose=evidence.purpose.value,
                    timestamp=evidence.timestamp,
                    payload=raw["payload"],
                    signals=dict(evidence.signals),
                    attempts=evidence.attempts,
                ))
            for action in snapshot.actions:
                record.action_entries.append(ActionEntry(
                    record_id=action.record_id,
                    action_id=action.action_id,
                    cause_id=action.cause_id,
                    event=action.event.value,
                    actor=action.actor,
                    risk=action.risk.value if action.risk else None,
                    timestamp=action.timestamp,
                    detail=action.detail,
                    exit_code=action.exit_code,
                ))
            sess.add(record)
            sess.flush()
            _logger.info(
                f"Archived session ({len(snapshot.audit)} audit, "
                f"{len(snapshot.evidence)} evidence, {len(snapshot.actions)} action records)",
                extra={"session_id": snapshot.session_id, "incident_id": snapshot.incident_id},
            )
            return record.id  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Retrieve an archived session by id.

        Returns:
            A dictionary of session fields, or ``None``.
        """
        with self._conn.session() as sess:
            row = self._find(sess, session_id)
            if row is None:
                return None
            return self._session_to_dict(row)

    def load_snapshot(self, session_id: str) -> Optional[SessionSnapshot]:
        """Rebuild the archived :class:`SessionSnapshot` of *session_id*.

        Returns ``None`` for an unknown session.
        """
        with self._conn.session() as sess:
            row = self._find(sess, session_id)
            if row is None:
                return None
            data = {
                "session_id": row.session_id,
                "incident_id": row.incident_id,
                "status": row.status,
                "outcome": row.outcome,
                "symptoms": row.symptoms or {},
                "context_name": row.context_name or "",
                "active_entry_id": row.active_entry_id,
                "visited_entries": row.visited_entries or [],
                "hypotheses": row.hypotheses or [],
                "evidence": [
                    dict(self._evidence_to_dict(e), session_id=session_id)
                    for e in sorted(row.evidence_entries, key=lambda e: e.id)
                ],
                "actions": [
                    dict(self._action_to_dict(a), session_id=session_id)
                    for a in sorted(row.action_entries, key=lambda a: a.id)
                ],
                "audit": [
                    dict(self._audit_to_dict(a), session_id=session_id)
                    for a in row.audit_entries
                ],
                "report": row.report,
                "errors": row.errors or [],
                "created_at": row.started_at,
                "updated_at": row.finished_at,
            }
        return SessionSnapshot.model_validate(data)

    def get_audit_trail(self, session_id: str) -> List[Dict[str, Any]]:
        """Return the audit log of *session_id* ordered by sequence.

        An unknown session yields an empty list.
        """
        with self._conn.session() as sess:
            stmt = (
                select(AuditEntry)
                .join(SessionRecord)
                .where(SessionRecord.session_id == session_id)
                .order_by(AuditEntry.sequence)
            )
            rows = sess.execute(stmt).scalars().all()
            return [self._audit_to_dict(r) for r in rows]

    def get_evidence(self, session_id: str) -> List[Dict[str, Any]]:
        """Return the evidence log of *session_id* in recording order."""
        with self._conn.session() as sess:
            stmt = (
                select(EvidenceEntry)
                .join(SessionRecord)
                .where(SessionRecord.session_id == session_id)
                .order_by(EvidenceEntry.id)
            )
            rows = sess.execute(stmt).scalars().all()
            return [self._evidence_to_dict(r) for r in rows]

    def get_actions(self, session_id: str) -> List[Dict[str, Any]]:
        """Return the action log of *session_id* in recording order."""
        with self._conn.session() as sess:
            stmt = (
                select(ActionEntry)
                .join(SessionRecord)
                .where(SessionRecord.session_id == session_id)
                .order_by(ActionEntry.id)
            )
            rows = sess.execute(stmt).scalars().all()
            return [self._action_to_dict(r) for r in rows]

    def list_sessions(
        self, outcome: Optional[str] = None, limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return archived sessions, most recently finished first.

        Args:
            outcome: Only include sessions with this outcome.
            limit: Maximum number to return (config default when ``None``).
        """
        limit = limit if limit is not None else self._conn.config.default_list_limit
        with self._conn.session() as sess:
            stmt = select(SessionRecord)
            if outcome:
                stmt = stmt.where(SessionRecord.outcome == outcome)
            stmt = stmt.order_by(
                SessionRecord.finished_at.desc(), SessionRecord.id.desc(),
            ).limit(limit)
            rows = sess.execute(stmt).scalars().all()
            return [self._session_to_dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Aggregations
    # ------------------------------------------------------------------

    def outcome_counts(self) -> Dict[str, int]:
        """Return the number of archived sessions per outcome."""
        with self._conn.session() as sess:
            stmt = (
                select(SessionRecord.outcome, func.count(SessionRecord.id))
                .group_by(SessionRecord.outcome)
            )
            rows = sess.execute(stmt).all()
            return {str(r[0] or "none"): int(r[1]) for r in rows}

    def session_count(self) -> int:
        """Return the total number of archived sessions."""
        with self._conn.session() as sess:
            return int(sess.execute(select(func.count(SessionRecord.id))).scalar_one())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _find(sess: Any, session_id: str) -> Optional[SessionRecord]:
        stmt = select(SessionRecord).where(SessionRecord.session_id == session_id)
        return sess.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _session_to_dict(row: SessionRecord) -> Dict[str, Any]:
        return {
            "id": row.id,
            "session_id": row.session_id,
            "incident_id": row.incident_id,
            "status": row.status,
            "outcome": row.outcome,
            "context_name": row.context_name,
            "active_entry_id": row.active_entry_id,
            "symptoms": row.symptoms,
            "visited_entries": row.visited_entries,
            "hypotheses": row.hypotheses,
            "report": row.report,
            "errors": row.errors,
            "started_at": row.started_at,
            "finished_at": row.finished_at,
            "archived_at": row.archived_at,
        }

    @staticmethod
    def _audit_to_dict(row: AuditEntry) -> Dict[str, Any]:
        return {
            "sequence": row.sequence,
            "timestamp": row.timestamp,
            "actor": row.actor,
            "from_status": row.from_status,
            "to_status": row.to_status,
            "reason": row.reason,
            "action_id": row.action_id,
            "evidence_before": row.evidence_before,
            "evidence_after": row.evidence_after,
        }

    @staticmethod
    def _evidence_to_dict(row: EvidenceEntry) -> Dict[str, Any]:
        return {
            "evidence_id": row.evidence_id,
            "probe_id": row.probe_id,
            "cause_id": row.cause_id,
            "entry_id": row.entry_id,
            "outcome": row.outcome,
            "purpose": row.purpose,
            "timestamp": row.timestamp,
            "payload": row.payload,
            "signals": row.signals,
            "attempts": row.attempts,
        }

    @staticmethod
    def _action_to_dict(row: ActionEntry) -> Dict[str, Any]:
        return {
            "record_id": row.record_id,
            "action_id": row.action_id,
            "cause_id": row.cause_id,
            "event": row.event,
            "actor": row.actor,
            "risk": row.risk,
            "timestamp": row.timestamp,
            "detail": row.detail,
            "exit_code": row.exit_code,
        }
