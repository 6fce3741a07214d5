from datetime import datetime, timedelta
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .backup_manager import BackupRunner
from .error_parser import is_connection_error
from .logger import get_logger
from .metrics import POLL_ERRORS_TOTAL, RETENTION_DELETED_TOTAL, RETENTION_RUNS_TOTAL
from .models import BackupSchedule, DatabaseBackup, BACKUP_KIND_SCHEDULED
from .schedules import ensure_default_schedule, find_due_schedules
from .schemas import metadata_schedule_id
from .storage import StorageProvider
from .utils import to_naive_utc, utcnow

logger = get_logger(__name__)

POLL_JOB_ID = "due_backup_poll"
CLEANUP_JOB_ID = "backup_retention_cleanup"


def cleanup_old_backups(session: Session, storage: Optional[StorageProvider] = None, now: datetime = None) -> int:
    """
    Deletes scheduled backups older than their schedule's retention window.
    Entries whose metadata does not name a live schedule are kept.
    """
    now = to_naive_utc(now or utcnow())
    RETENTION_RUNS_TOTAL.inc()
    total_deleted = 0

    schedules = session.exec(select(BackupSchedule)).all()
    for schedule in schedules:
        cutoff = now - timedelta(days=schedule.retention_days)
        candidates = session.exec(
            select(DatabaseBackup).where(
                DatabaseBackup.backup_type == BACKUP_KIND_SCHEDULED,
                DatabaseBackup.created_at < cutoff,
            )
        ).all()

        for backup in candidates:
            if metadata_schedule_id(backup.metadata_json) != schedule.id:
                continue
            backup_id = backup.id
            storage_key = backup.storage_key
            try:
                session.delete(backup)
                session.commit()
            except Exception as e:
                logger.error(f"Failed to delete backup {backup_id} for '{schedule.name}': {e}")
                session.rollback()
                continue

            total_deleted += 1
            RETENTION_DELETED_TOTAL.labels(schedule_name=schedule.name).inc()
            logger.info(f"Deleted old backup '{backup_id}' for '{schedule.name}' (retention {schedule.retention_days} days).")

            if storage_key and storage is not None:
                try:
                    if not storage.delete(storage_key):
                        logger.warning(f"Storage object '{storage_key}' could not be deleted.")
                except Exception as e:
                    logger.warning(f"Storage object '{storage_key}' could not be deleted: {e}")

    if total_deleted > 0:
        logger.info(f"Cleaned up {total_deleted} old backups")
    return total_deleted


class BackupScheduler:
    """
    Owns the two recurring timers of the backup subsystem: the due-schedule
    poll and the retention sweep. A single instance is expected per
    deployment.
    """

    def __init__(
        self,
        engine: Engine,
        runner: BackupRunner,
        storage: Optional[StorageProvider] = None,
        poll_interval_seconds: int = 60,
        cleanup_interval_hours: int = 24,
        default_schedule: Optional[dict] = None,
    ):
        self.engine = engine
        self.runner = runner
        self.storage = storage
        self.poll_interval_seconds = poll_interval_seconds
        self.cleanup_interval_hours = cleanup_interval_hours
        self.default_schedule = default_schedule
        self._scheduler: Optional[BackgroundScheduler] = None
        self._running = False

    @classmethod
    def from_config(cls, engine: Engine, runner: BackupRunner, storage: StorageProvider, config: dict) -> "BackupScheduler":
        scheduler_conf = config.get("scheduler", {})
        return cls(
            engine,
            runner,
            storage=storage,
            poll_interval_seconds=scheduler_conf.get("poll_interval_seconds", 60),
            cleanup_interval_hours=scheduler_conf.get("cleanup_interval_hours", 24),
            default_schedule=config.get("default_schedule"),
        )

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        if self._running:
            logger.info("Backup scheduler already running")
            return

        try:
            with Session(self.engine) as session:
                ensure_default_schedule(session, self.default_schedule)
        except Exception as e:
            logger.error(f"Could not ensure the default backup schedule: {e}", exc_info=True)

        scheduler = BackgroundScheduler(executors={"default": ThreadPoolExecutor(2)})
        scheduler.add_job(
            self.check_and_execute_due_backups,
            trigger=IntervalTrigger(seconds=self.poll_interval_seconds),
            id=POLL_JOB_ID,
            name="Execute due backups",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.run_cleanup,
            trigger=IntervalTrigger(hours=self.cleanup_interval_hours),
            id=CLEANUP_JOB_ID,
            name="Enforce backup retention",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        self._running = True
        logger.info(
            f"Backup scheduler started (poll every {self.poll_interval_seconds}s, "
            f"cleanup every {self.cleanup_interval_hours}h)."
        )

    def stop(self):
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self._running = False
        logger.info("Backup scheduler stopped")

    def get_job(self, job_id: str):
        if self._scheduler is None:
            return None
        return self._scheduler.get_job(job_id)

    def check_and_execute_due_backups(self, now: datetime = None) -> int:
        """
        Runs every due schedule one after the other. Returns how many were
        executed. Errors never escape: the next tick simply tries again.
        """
        try:
            with Session(self.engine) as session:
                due_ids = [(s.id, s.name) for s in find_due_schedules(session, now)]
        except Exception as e:
            if is_connection_error(e):
                POLL_ERRORS_TOTAL.labels(kind="connection").inc()
                logger.warning(f"Connection error while polling for due backups, retrying next tick: {e}")
            else:
                POLL_ERRORS_TOTAL.labels(kind="other").inc()
                logger.error(f"Error while polling for due backups: {e}", exc_info=True)
            return 0

        executed = 0
        for schedule_id, schedule_name in due_ids:
            logger.info(f"Executing due backup: {schedule_name}")
            try:
                result = self.runner.execute_scheduled_backup(schedule_id)
            except Exception as e:
                logger.error(f"Unhandled error executing schedule '{schedule_name}': {e}", exc_info=True)
                continue
            executed += 1
            if not result.success:
                logger.warning(f"Scheduled backup '{schedule_name}' failed: {result.error}")
        return executed

    def run_cleanup(self, now: datetime = None) -> int:
        try:
            with Session(self.engine) as session:
                return cleanup_old_backups(session, self.storage, now)
        except Exception as e:
            logger.error(f"Error cleaning up old backups: {e}", exc_info=True)
            return 0
