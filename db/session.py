from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import DATABASE_URL
from db.store import StoreBase


def make_store_sessionmaker(url: str = DATABASE_URL) -> sessionmaker | None:
    """Session factory for the external stop store, or None when unset."""
    if not url:
        return None
    engine = create_engine(
        url,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
    )
    return sessionmaker(autoflush=False, bind=engine)


def init_store(engine: Engine) -> None:
    """Create the stops table if it doesn't exist."""
    StoreBase.metadata.create_all(bind=engine)


def open_snapshot_engine(path: Path) -> Engine:
    """
    Read-only engine over a downloaded snapshot file.

    mode=ro makes SQLite refuse writes at the driver level; the pool hands
    each concurrent query its own connection, so worker threads never share
    a cursor.
    """
    return create_engine(
        f"sqlite:///file:{Path(path).resolve()}?mode=ro&uri=true",
        connect_args={"check_same_thread": False},
    )


def snapshot_session(engine: Engine) -> Session:
    return Session(bind=engine, autoflush=False)
