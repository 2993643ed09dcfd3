from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from order_engine.core.config import get_settings
from order_engine.models.database import Base


def make_engine(url: str, echo: bool = False) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are opened from worker threads; writers wait on the file lock
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, echo=echo, pool_pre_ping=True, connect_args=connect_args)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


@lru_cache()
def get_engine() -> Engine:
    settings = get_settings()
    return make_engine(settings.database_url, echo=settings.sql_echo)


@lru_cache()
def get_session_factory() -> sessionmaker:
    """Session factory bound to the configured database."""
    return make_session_factory(get_engine())


def init_db(bind: Engine = None) -> None:
    Base.metadata.create_all(bind=bind or get_engine())
