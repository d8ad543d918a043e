import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import models.gear_models  # noqa: F401
from db.base import Base


TENANT_ID = "11111111-1111-4111-8111-111111111111"
OTHER_TENANT_ID = "22222222-2222-4222-8222-222222222222"
ADMIN_ID = "aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa"
USER_ID = "bbbbbbbb-bbbb-4bbb-8bbb-bbbbbbbbbbbb"


def hours_ago(hours: float, now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(hours=hours)


class GearDatabase:
    """Temporary SQLite store shared by worker threads of a single test."""

    def __init__(self, create_tables: bool = True):
        self._tmp = tempfile.TemporaryDirectory()
        db_path = Path(self._tmp.name) / "itemtraxx.db"
        self.engine = create_engine(
            f"sqlite+pysqlite:///{db_path}",
            connect_args={"check_same_thread": False},
            future=True,
        )
        if create_tables:
            Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
            future=True,
        )

    def add(self, *objects) -> None:
        with self.session_factory() as db:
            db.add_all(objects)
            db.commit()

    def session(self):
        return self.session_factory()

    def close(self) -> None:
        self.engine.dispose()
        self._tmp.cleanup()
