"""Database access and the unit-of-work transaction scope."""

import logging
from pathlib import Path
from typing import Any, Callable

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        return
    path = url[len(prefix):]
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


class UnitOfWork:
    """
    One transactional scope over a single Session.

    Usage:
        with db.unit_of_work() as uow:
            uow.session.add(...)
            uow.after_commit(notify, order_id)

    Leaving the block normally commits; an exception rolls everything back
    and is re-raised. Hooks registered with ``after_commit`` run only after a
    successful commit, outside the transaction; a failing hook is logged and
    never propagates.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        self._session: Session | None = None
        self._hooks: list[tuple[Callable[..., Any], tuple, dict]] = []

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("UnitOfWork used outside of a 'with' block")
        return self._session

    def __enter__(self) -> "UnitOfWork":
        self._session = self._session_factory()
        self._hooks = []
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        session = self.session
        committed = False
        try:
            if exc_type is None:
                session.commit()
                committed = True
            else:
                session.rollback()
        finally:
            session.close()
            self._session = None

        if committed:
            self._run_hooks()
        else:
            self._hooks = []
        return False

    def after_commit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Queue ``fn(*args, **kwargs)`` to run once the transaction commits."""
        self._hooks.append((fn, args, kwargs))

    def _run_hooks(self) -> None:
        hooks, self._hooks = self._hooks, []
        for fn, args, kwargs in hooks:
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception("Post-commit hook %s failed", getattr(fn, "__name__", fn))


class Database:
    """Owns the engine and hands out units of work."""

    def __init__(self, url: str, echo: bool = False):
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.url = url
        _ensure_sqlite_dir(url)
        self.engine: Engine = create_engine(url, echo=echo, connect_args=connect_args)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        """Create all tables that don't exist yet."""
        Base.metadata.create_all(self.engine)

    def unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self._session_factory)

    def dispose(self) -> None:
        self.engine.dispose()
