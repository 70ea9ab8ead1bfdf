from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from casino_rounds.config import Config
from casino_rounds.models import Base

# ---------------------------------------------------------------------
# DB INIT
# ---------------------------------------------------------------------

def create_db_engine(db_url: Optional[str] = None, echo: bool = False) -> Engine:
    db_url = db_url or Config.DB_URL
    connect_args = {}
    if db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    db_engine = create_engine(db_url, echo=echo, future=True, connect_args=connect_args)
    if db_engine.dialect.name == "sqlite":
        event.listen(db_engine, "connect", _sqlite_pragmas)
    return db_engine


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(db_engine: Engine) -> sessionmaker:
    return sessionmaker(bind=db_engine, expire_on_commit=False)


def init_db(db_engine: Engine) -> None:
    Base.metadata.create_all(db_engine)
