"""
Audit store — SQL persistence for finished diagnosis sessions.

Public API::

    from audit_store import AuditRepository, AuditStoreConfig, DatabaseConnection

    conn = DatabaseConnection(AuditStoreConfig(database_url="sqlite:///audit.db"))
    conn.create_tables()
    engine = RemediationEngine(store, archive=AuditRepository(conn))
"""

from audit_store.config import AuditStoreConfig
from audit_store.connection import DatabaseConnection
from audit_store.repository import AuditRepository

__all__ = ["AuditRepository", "AuditStoreConfig", "DatabaseConnection"]
