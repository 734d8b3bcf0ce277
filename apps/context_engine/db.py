"""Database engine/session factory and schema bootstrap.

One Database instance per process, created at startup and passed to the
components that need it. Always filter by tenant_id in queries.
"""

import logging
from contextlib import contextmanager
from typing import Generator

import sqlalchemy.exc
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from apps.context_engine.models import Base

logger = logging.getLogger(__name__)


def _is_sqlite_memory(url: str) -> bool:
    url = url.strip().lower()
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"))


class Database:
    """Engine + session factory. `session()` is a transactional scope."""

    def __init__(self, url: str, *, echo: bool = False, connect_args: dict | None = None) -> None:
        self.url = url
        kwargs: dict = {"echo": echo}
        if _is_sqlite_memory(url):
            # Single shared connection so every session sees the same in-memory DB
            kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        elif url.strip().lower().startswith("sqlite"):
            kwargs.update(connect_args={"check_same_thread": False})
        else:
            kwargs.update(pool_pre_ping=True, connect_args=connect_args or {})
        self.engine: Engine = create_engine(url, **kwargs)
        self._sessionmaker = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine, expire_on_commit=False
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def is_postgres(self) -> bool:
        return self.dialect == "postgresql"

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope for DB operations."""
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        """True if the database answers SELECT 1."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except sqlalchemy.exc.SQLAlchemyError as e:
            logger.warning("database ping failed: %s", e)
            return False

    def ensure_tables(self) -> None:
        """Create all tables if they do not exist. Idempotent (checkfirst=True).
        On Postgres the vector extension is created first."""
        if self.is_postgres:
            with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        _create_all_safe(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def _create_all_safe(bind: Engine) -> None:
    """Run create_all with checkfirst=True; ignore Postgres 'already exists' errors for idempotency.
    Uses AUTOCOMMIT so partial progress persists when a duplicate index is hit."""
    conn = bind.connect().execution_options(isolation_level="AUTOCOMMIT")
    try:
        Base.metadata.create_all(bind=conn, checkfirst=True)
    except sqlalchemy.exc.ProgrammingError as e:
        orig = e.orig
        ok = False
        if orig is not None:
            err_name = getattr(orig.__class__, "__module__", "") + "." + getattr(orig.__class__, "__name__", "")
            ok = "DuplicateTable" in err_name or "DuplicateObject" in err_name
        if not ok:
            ok = "already exists" in str(e).lower()
        if not ok:
            raise
    finally:
        conn.close()
