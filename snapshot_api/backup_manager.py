import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.engine import Engine
from sqlalchemy.exc import InvalidRequestError
from sqlmodel import Session

from . import ledger
from .collector import SnapshotCollector
from .encryption import KeyManager
from .error_parser import summarize_error
from .logger import get_logger
from .metrics import (
    BACKUPS_TOTAL, BACKUP_DURATION_SECONDS, BACKUP_SIZE_BYTES, BACKUP_RECORDS,
    BACKUP_LAST_STATUS, BACKUP_LAST_SUCCESS_TIMESTAMP_SECONDS,
)
from .models import (
    BackupSchedule, DatabaseBackup, BACKUP_KIND_MANUAL, BACKUP_KIND_SCHEDULED,
    RUN_STATUS_FAILED, RUN_STATUS_SUCCESS,
)
from .notifications import FailureDetails, NotificationDispatcher, SuccessDetails
from .packager import CONTENT_TYPE, package_snapshot
from .schedules import record_run
from .schemas import CompletedMetadata, FailedMetadata, StartedMetadata
from .storage import StorageProvider, generate_backup_key, upload_backup

logger = get_logger(__name__)

MANUAL_LABEL = "manual"


@dataclass
class ExecutionResult:
    success: bool
    backup_id: Optional[int] = None
    error: Optional[str] = None


def _local_timestamp(tz_name: str) -> str:
    try:
        tz = ZoneInfo(tz_name)
    except Exception:
        tz = timezone.utc
    return datetime.now(tz).strftime("%Y-%m-%d %H:%M:%S %Z")


class BackupRunner:
    """
    Runs one backup end to end: ledger entry, collection, packaging,
    upload, ledger transition, schedule bookkeeping and notifications.
    """

    def __init__(
        self,
        engine: Engine,
        collector: SnapshotCollector,
        storage: StorageProvider,
        key_manager: KeyManager,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.engine = engine
        self.collector = collector
        self.storage = storage
        self.key_manager = key_manager
        self.notifier = notifier

    def execute_scheduled_backup(self, schedule_id: int) -> ExecutionResult:
        with Session(self.engine) as session:
            schedule = session.get(BackupSchedule, schedule_id)
            if not schedule:
                logger.warning(f"Schedule {schedule_id} not found, nothing to run.")
                return ExecutionResult(success=False, error="Schedule not found")

            name = schedule.name
            tz_name = schedule.timezone
            email_on_success = schedule.email_on_success
            email_on_failure = schedule.email_on_failure

            logger.info(f"Starting scheduled backup for '{name}' (schedule {schedule_id}).")
            start_time = time.time()
            backup, error = self._run(session, BACKUP_KIND_SCHEDULED, schedule.encryption_enabled, schedule)
            duration = time.time() - start_time

            if error is None:
                self._record_run(session, schedule, name, RUN_STATUS_SUCCESS, backup.id)
                if email_on_success and self.notifier:
                    self.notifier.notify_success(SuccessDetails(
                        backup_name=os.path.basename(backup.storage_key),
                        backup_id=str(backup.id),
                        schedule_name=name,
                        file_size=f"{backup.file_size / (1024 * 1024):.2f} MB",
                        duration=f"{round(duration)}s",
                        timestamp=_local_timestamp(tz_name),
                    ))
                return ExecutionResult(success=True, backup_id=backup.id)

            self._record_run(session, schedule, name, RUN_STATUS_FAILED)
            if email_on_failure and self.notifier:
                self.notifier.notify_failure(FailureDetails(
                    schedule_name=name,
                    error=error,
                    timestamp=_local_timestamp(tz_name),
                ))
            return ExecutionResult(success=False, backup_id=backup.id, error=error)

    def _record_run(self, session: Session, schedule: BackupSchedule, name: str, status: str,
                    backup_id: Optional[int] = None):
        # The schedule may have been deleted while the backup was running.
        try:
            session.refresh(schedule)
        except InvalidRequestError:
            session.rollback()
            logger.warning(f"Schedule '{name}' was deleted during its run; run bookkeeping skipped.")
            return
        record_run(session, schedule, status, backup_id)

    def run_manual_backup(self, encrypt: bool = True) -> ExecutionResult:
        with Session(self.engine) as session:
            logger.info("Starting manual backup.")
            backup, error = self._run(session, BACKUP_KIND_MANUAL, encrypt, None)
            return ExecutionResult(success=error is None, backup_id=backup.id, error=error)

    def _run(self, session: Session, backup_type: str, encrypt: bool, schedule: Optional[BackupSchedule]):
        schedule_id = schedule.id if schedule else None
        schedule_name = schedule.name if schedule else None
        label = schedule_name or MANUAL_LABEL

        backup = ledger.start_backup(session, backup_type, StartedMetadata(
            schedule_id=schedule_id,
            schedule_name=schedule_name,
            encryption_enabled=encrypt,
        ))
        start_time = time.time()

        try:
            payload = self.collector.collect(backup_type=backup_type, encrypted=encrypt)
            payload.schedule_id = schedule_id
            payload.schedule_name = schedule_name

            packaged = package_snapshot(payload, encrypt, self.key_manager)
            storage_key = generate_backup_key(backup_type, encrypt)
            locator = upload_backup(self.storage, storage_key, packaged.body, CONTENT_TYPE)
            duration = time.time() - start_time

            ledger.complete_backup(
                session,
                backup,
                file_size=packaged.size,
                record_count=payload.total_records,
                locator=locator,
                storage_key=storage_key,
                checksum=packaged.checksum,
                encryption=packaged.encryption,
                metadata=CompletedMetadata(
                    schedule_id=schedule_id,
                    schedule_name=schedule_name,
                    file_name=os.path.basename(storage_key),
                    file_key=storage_key,
                    tables=payload.tables,
                    record_counts=payload.record_counts,
                    encryption_enabled=encrypt,
                    duration_seconds=round(duration, 3),
                ),
            )
        except Exception as e:
            error = summarize_error(e)
            logger.error(f"Backup {backup.id} for '{label}' failed: {error}", exc_info=True)
            session.rollback()
            ledger.fail_backup(session, backup, FailedMetadata(
                schedule_id=schedule_id,
                schedule_name=schedule_name,
                error=error,
            ))
            BACKUPS_TOTAL.labels(schedule_name=label, backup_type=backup_type, status=backup.status).inc()
            BACKUP_LAST_STATUS.labels(schedule_name=label).set(0)
            return backup, error

        duration = time.time() - start_time
        logger.info(
            f"Backup {backup.id} for '{label}' completed: {backup.record_count} records, "
            f"{backup.file_size} bytes in {duration:.2f}s."
        )
        BACKUPS_TOTAL.labels(schedule_name=label, backup_type=backup_type, status=backup.status).inc()
        BACKUP_DURATION_SECONDS.labels(schedule_name=label).observe(duration)
        BACKUP_SIZE_BYTES.labels(schedule_name=label).set(backup.file_size)
        BACKUP_RECORDS.labels(schedule_name=label).set(backup.record_count)
        BACKUP_LAST_STATUS.labels(schedule_name=label).set(1)
        BACKUP_LAST_SUCCESS_TIMESTAMP_SECONDS.labels(schedule_name=label).set(time.time())
        return backup, None

    def delete_backup(self, backup_id: int) -> bool:
        logger.info(f"Attempting to delete backup_id: {backup_id}")
        with Session(self.engine) as session:
            backup = session.get(DatabaseBackup, backup_id)
            if not backup:
                logger.warning(f"Backup not found for backup_id: {backup_id}")
                return False

            if backup.storage_key:
                logger.debug(f"Deleting backup file from storage: {backup.storage_key}")
                if not self.storage.delete(backup.storage_key):
                    logger.error(f"Failed to delete backup file from storage: {backup.storage_key}")
                    return False

            session.delete(backup)
            session.commit()
            logger.info(f"Successfully deleted backup_id: {backup_id}")
            return True
