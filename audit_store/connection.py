"""Audit database access: engine setup, schema creation and sessions.

SQLite is the default backend.  Every SQLite connection has foreign-key
enforcement switched on, so replacing or deleting an archived session
row also removes its audit, evidence and action rows, and the directory
of a file database is created on first use.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from engine.telemetry import get_logger

from .config import AuditStoreConfig
from .models import Base

_logger = get_logger(__name__)


def _enable_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _is_memory(url: URL) -> bool:
    return url.database in (None, "", ":memory:")


class DatabaseConnection:
    """Engine and session factory for the audit archive.

    Args:
        config: Audit store configuration (uses ``database_url`` and the
            pool settings for non-SQLite backends).
    """

    def __init__(self, config: Optional[AuditStoreConfig] = None) -> None:
        self.config = config or AuditStoreConfig()
        self.url = make_url(self.config.database_url)
        self.is_sqlite = self.url.get_backend_name() == "sqlite"

        engine_kwargs: Dict[str, Any] = {}
        if self.is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory(self.url):
                engine_kwargs["poolclass"] = StaticPool
            else:
                Path(self.url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        else:
            engine_kwargs["pool_size"] = self.config.pool_size
            engine_kwargs["max_overflow"] = self.config.max_overflow
            engine_kwargs["pool_pre_ping"] = True

        self._engine: Engine = create_engine(self.url, **engine_kwargs)
        if self.is_sqlite:
            event.listen(self._engine, "connect", _enable_foreign_keys)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

    @property
    def display_url(self) -> str:
        """Database URL with any password masked, for logs and output."""
        return self.url.render_as_string(hide_password=True)

    def create_tables(self) -> None:
        """Create the archive tables that do not exist yet."""
        Base.metadata.create_all(self._engine)
        _logger.info(f"Audit archive ready at {self.display_url}")

    def ping(self) -> bool:
        """Return ``True`` if the database answers a trivial query."""
        try:
            with self._engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            _logger.warning(f"Audit database unreachable: {exc}")
            return False
        return True

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Yield a :class:`Session` committed on success.

        Rolls back on exception and always closes.
        """
        sess: Session = self._session_factory()
        try:
            yield sess
            sess.commit()
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()

    def close(self) -> None:
        """Dispose the engine and release pooled connections."""
        self._engine.dispose()
        _logger.info(f"Audit archive closed ({self.display_url})")
