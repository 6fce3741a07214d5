from typing import Optional

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.engine import Engine
from sqlmodel import Session

from .backup_manager import BackupRunner
from .collector import SnapshotCollector, SqlDataSource
from .config import load_config, load_and_sync_schedules
from .database import build_engine, create_db_and_tables
from .encryption import KeyManager
from .logger import setup_logging, get_logger
from .notifications import EmailSender, NotificationDispatcher
from .routers import backups, schedules, system
from .scheduler import BackupScheduler
from .storage import StorageProvider, build_storage_provider

logger = get_logger(__name__)


def create_app(
    settings: Optional[dict] = None,
    engine: Optional[Engine] = None,
    source_engine: Optional[Engine] = None,
    storage: Optional[StorageProvider] = None,
    email_sender: Optional[EmailSender] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    app = FastAPI(title="Snapshot Backup API")

    @app.on_event("startup")
    def startup_event():
        config = settings if settings is not None else load_config()
        app.state.settings = config

        db_engine = engine or build_engine(config["database_url"])
        create_db_and_tables(db_engine)
        app.state.engine = db_engine

        with Session(db_engine) as session:
            load_and_sync_schedules(session, config)

        if source_engine is not None:
            data_engine = source_engine
        elif config.get("source_database_url") in (None, config["database_url"]):
            data_engine = db_engine
        else:
            data_engine = build_engine(config["source_database_url"])

        storage_provider = storage or build_storage_provider(config)
        app.state.storage = storage_provider
        notifier = NotificationDispatcher.from_config(config, email_sender)

        runner = BackupRunner(
            db_engine,
            SnapshotCollector(SqlDataSource(data_engine)),
            storage_provider,
            KeyManager.from_config(config),
            notifier,
        )
        app.state.runner = runner
        app.state.scheduler = BackupScheduler.from_config(db_engine, runner, storage_provider, config)

        if start_scheduler:
            app.state.scheduler.start()

    @app.on_event("shutdown")
    def shutdown_event():
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            scheduler.stop()

    app.include_router(schedules.router, prefix="/schedules", tags=["schedules"])
    app.include_router(backups.router, prefix="/backups", tags=["backups"])
    app.include_router(system.router, prefix="/system", tags=["system"])
    return app


setup_logging()
app = create_app()
Instrumentator().instrument(app).expose(app)
