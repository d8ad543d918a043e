from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


@lru_cache(maxsize=4)
def get_engine(db_url: str) -> Engine:
    return create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
    )


@lru_cache(maxsize=4)
def get_session_factory_for(db_url: str) -> sessionmaker:
    return sessionmaker(
        bind=get_engine(db_url),
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
