from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, TypeVar

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

QUERY_LOGGER = logging.getLogger("itemtraxx.queries")

UNDEFINED_COLUMN = "42703"
UNDEFINED_TABLE = "42P01"

_SQLITE_MESSAGE_CODES = {
    "no such column": UNDEFINED_COLUMN,
    "no such table": UNDEFINED_TABLE,
}

T = TypeVar("T")


class QueryStatus(str, Enum):
    OK = "ok"
    MISSING_COLUMN = "missing_column"
    MISSING_RELATION = "missing_relation"
    FAILED = "failed"


@dataclass
class QueryOutcome:
    """Result of a statement run through the query layer.

    Storage errors are captured instead of raised so callers can pick a
    reduced query shape when a column or relation has not been migrated yet.
    """

    status: QueryStatus
    rows: list[dict[str, Any]] = field(default_factory=list)
    value: Any = None
    error_code: str | None = None
    error_message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is QueryStatus.OK

    def is_missing(self, name: str) -> bool:
        if self.status not in (QueryStatus.MISSING_COLUMN, QueryStatus.MISSING_RELATION):
            return False
        return name.lower() in self.error_message.lower()

    def is_missing_column(self, name: str) -> bool:
        return self.status is QueryStatus.MISSING_COLUMN and self.is_missing(name)

    def is_missing_relation(self, name: str) -> bool:
        return self.status is QueryStatus.MISSING_RELATION and self.is_missing(name)


def _error_code(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code:
        return str(code)
    message = str(orig if orig is not None else exc).lower()
    for fragment, mapped in _SQLITE_MESSAGE_CODES.items():
        if fragment in message:
            return mapped
    return None


def _failed_outcome(db: Session, exc: DBAPIError, label: str) -> QueryOutcome:
    db.rollback()
    code = _error_code(exc)
    message = str(getattr(exc, "orig", None) or exc)
    if code == UNDEFINED_COLUMN:
        status = QueryStatus.MISSING_COLUMN
    elif code == UNDEFINED_TABLE:
        status = QueryStatus.MISSING_RELATION
    else:
        status = QueryStatus.FAILED
    log = QUERY_LOGGER.warning if status is QueryStatus.FAILED else QUERY_LOGGER.info
    log("Query %s returned %s code=%s message=%s", label, status.value, code, message)
    return QueryOutcome(status=status, error_code=code, error_message=message)


def isoformat(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value)


def dialect_insert(db: Session):
    """Return the INSERT construct supporting ON CONFLICT for the bound dialect."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def run_rows(db: Session, stmt, label: str = "rows") -> QueryOutcome:
    try:
        rows = db.execute(stmt).mappings().all()
    except DBAPIError as exc:
        return _failed_outcome(db, exc, label)
    return QueryOutcome(status=QueryStatus.OK, rows=[dict(row) for row in rows])


def run_scalar(db: Session, stmt, label: str = "scalar") -> QueryOutcome:
    try:
        value = db.execute(stmt).scalar()
    except DBAPIError as exc:
        return _failed_outcome(db, exc, label)
    return QueryOutcome(status=QueryStatus.OK, value=value)


def run_write(
    db: Session,
    stmt,
    label: str = "write",
    params: Any = None,
    returning: bool = False,
) -> QueryOutcome:
    """Execute a write and commit it; RETURNING rows are collected when `returning` is set."""
    try:
        result = db.execute(stmt, params) if params is not None else db.execute(stmt)
        rows = [dict(row) for row in result.mappings().all()] if returning else []
        db.commit()
    except DBAPIError as exc:
        return _failed_outcome(db, exc, label)
    return QueryOutcome(status=QueryStatus.OK, rows=rows)


def gather_reads(session_factory: sessionmaker, readers: dict[str, Callable[[Session], T]]) -> dict[str, T]:
    """Run independent reads concurrently, one session per read."""

    def _run(reader: Callable[[Session], T]) -> T:
        with session_factory() as db:
            return reader(db)

    if not readers:
        return {}
    with ThreadPoolExecutor(max_workers=min(len(readers), 4)) as executor:
        futures = {key: executor.submit(_run, reader) for key, reader in readers.items()}
        return {key: future.result() for key, future in futures.items()}
