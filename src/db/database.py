"""Generate database sessions"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.core.config import Settings
from src.db.schema import Base

# Several CLI processes share the same SQLite file: wait for a writer instead of failing right away
SQLITE_BUSY_TIMEOUT_S = 15


def create_db_engine(settings: Settings) -> Engine:
    url = settings.db_url
    connect_args = {}
    if url.startswith("sqlite"):
        settings.home.mkdir(parents=True, exist_ok=True)
        connect_args = {"timeout": SQLITE_BUSY_TIMEOUT_S}
    engine = create_engine(url, connect_args=connect_args)
    # Ensure all tables are created
    Base.metadata.create_all(bind=engine)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False)


@contextmanager
def open_db(settings: Settings) -> Generator[Session, None, None]:
    engine = create_db_engine(settings)
    db = make_session_factory(engine)()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()
