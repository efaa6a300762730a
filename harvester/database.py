from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR_ENV = "HARVEST_DATA_DIR"
DB_FILENAME = "harvest_runs.db"


def _determine_data_dir() -> Path:
    override = os.getenv(DATA_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return BASE_DIR / "data"


def _configure_sqlite(dbapi_connection, _connection_record) -> None:
    # Run status is read by the API while a background harvest writes tile rows.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def build_engine(database_url: str) -> Engine:
    built = create_engine(
        database_url,
        echo=False,
        connect_args={"check_same_thread": False},
    )
    event.listen(built, "connect", _configure_sqlite)
    return built


DATA_DIR = _determine_data_dir()
DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = DATA_DIR / DB_FILENAME
engine = build_engine(f"sqlite:///{DB_PATH}")


def init_db() -> None:
    """Create the run, tile and usage tables if they do not exist."""

    from . import models  # noqa: F401 registers the tables on SQLModel.metadata

    SQLModel.metadata.create_all(engine)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for ledger writes; rolled back if the block raises."""

    with Session(engine) as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
