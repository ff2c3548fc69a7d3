"""Audit store configuration — frozen dataclass with sensible defaults."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AuditStoreConfig:
    """Immutable configuration for the audit store.

    Attributes:
        database_url: SQLAlchemy connection string.
        pool_size: Connection pool size for non-sqlite databases.
        max_overflow: Extra connections allowed above ``pool_size``.
        default_list_limit: Page size used by ``list_sessions``.
    """

    database_url: str = "sqlite:///rbengine_audit.db"
    pool_size: int = 5
    max_overflow: int = 10
    default_list_limit: int = 50

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url must not be empty")
        if self.pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        if self.max_overflow < 0:
            raise ValueError("max_overflow must be >= 0")
        if self.default_list_limit < 1:
            raise ValueError("default_list_limit must be >= 1")
