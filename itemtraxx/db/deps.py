from sqlalchemy.orm import sessionmaker

from settings import load_settings

from .session import get_session_factory_for


def get_gear_session_factory() -> sessionmaker:
    return get_session_factory_for(load_settings().db_url)
