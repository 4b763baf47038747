# splitlens/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL, DB_ECHO

IN_MEMORY_SQLITE = ("sqlite://", "sqlite:///:memory:")


def make_engine(url: str = DATABASE_URL, echo: bool = DB_ECHO):
    """
    Engine for `url`. SQLite connections are shared across FastAPI's worker
    threads, and an in-memory database is pinned to one connection so every
    session sees the same tables.
    """
    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in IN_MEMORY_SQLITE:
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = make_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()
