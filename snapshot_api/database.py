import os

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlmodel import create_engine, SQLModel, Session

from .models import BackupSchedule, DatabaseBackup  # noqa: F401  registers tables


def build_engine(database_url: str, echo: bool = False) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite:///"):
        # Ensure the data directory exists
        db_path = database_url[len("sqlite:///"):]
        db_dir = os.path.dirname(db_path)
        if db_dir and db_path != ":memory:":
            os.makedirs(db_dir, exist_ok=True)
        # The scheduler thread and request threads share the engine
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=echo, connect_args=connect_args, pool_pre_ping=True)


def create_db_and_tables(engine: Engine):
    SQLModel.metadata.create_all(engine)


def get_session(request: Request):
    with Session(request.app.state.engine) as session:
        yield session
