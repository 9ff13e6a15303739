from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from . import models  # noqa: F401  registers the tables on SQLModel.metadata
from .config import get_settings

_engine: Optional[Engine] = None


def init_engine(database_url: str) -> Engine:
    """Create the engine for *database_url* and make sure every table exists"""
    global _engine

    connect_args = {}
    if database_url.startswith("sqlite"):
        # background jobs open sessions from worker threads
        connect_args["check_same_thread"] = False

    _engine = create_engine(database_url, connect_args=connect_args)
    SQLModel.metadata.create_all(_engine)
    return _engine


def get_engine() -> Engine:
    """FastAPI dependency; lazily initialises from settings"""
    if _engine is None:
        return init_engine(get_settings().database_url)
    return _engine
