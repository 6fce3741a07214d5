"""
Backup ledger.

Every backup attempt is recorded as a ``DatabaseBackup`` row that starts
``in_progress`` and moves exactly once to ``completed`` or ``failed``.
The ``in_progress`` row is committed before any work starts so an
interrupted run leaves a trace behind.
"""
from typing import List, Optional

from sqlmodel import Session, select

from .encryption import EncryptedData
from .logger import get_logger
from .models import (
    DatabaseBackup, STATUS_COMPLETED, STATUS_FAILED, STATUS_IN_PROGRESS,
)
from .schemas import BackupStats, CompletedMetadata, FailedMetadata, StartedMetadata, dump_metadata
from .utils import utcnow

logger = get_logger(__name__)

ALLOWED_TRANSITIONS = {
    STATUS_IN_PROGRESS: {STATUS_COMPLETED, STATUS_FAILED},
    STATUS_COMPLETED: set(),
    STATUS_FAILED: set(),
}


class InvalidTransition(Exception):
    pass


def _transition(backup: DatabaseBackup, new_status: str):
    allowed = ALLOWED_TRANSITIONS.get(backup.status, set())
    if new_status not in allowed:
        raise InvalidTransition(f"Backup {backup.id} cannot move from '{backup.status}' to '{new_status}'")
    backup.status = new_status


def start_backup(session: Session, backup_type: str, metadata: StartedMetadata) -> DatabaseBackup:
    backup = DatabaseBackup(
        backup_type=backup_type,
        status=STATUS_IN_PROGRESS,
        metadata_json=dump_metadata(metadata),
    )
    session.add(backup)
    session.commit()
    session.refresh(backup)
    logger.debug(f"Backup {backup.id} ({backup_type}) started.")
    return backup


def complete_backup(
    session: Session,
    backup: DatabaseBackup,
    *,
    file_size: int,
    record_count: int,
    locator: str,
    storage_key: str,
    checksum: str,
    metadata: CompletedMetadata,
    encryption: Optional[EncryptedData] = None,
) -> DatabaseBackup:
    if not locator:
        raise ValueError(f"Backup {backup.id} cannot complete without a storage locator")

    _transition(backup, STATUS_COMPLETED)
    backup.file_size = file_size
    backup.record_count = record_count
    backup.backup_path = locator
    backup.storage_key = storage_key
    backup.checksum = checksum
    backup.completed_at = utcnow()
    backup.is_encrypted = encryption is not None
    if encryption is not None:
        backup.encryption_algorithm = encryption.algorithm
        backup.encryption_iv = encryption.iv
        backup.encryption_auth_tag = encryption.auth_tag
        backup.encryption_key_id = encryption.key_id
    backup.metadata_json = dump_metadata(metadata)

    session.add(backup)
    session.commit()
    session.refresh(backup)
    return backup


def fail_backup(session: Session, backup: DatabaseBackup, metadata: FailedMetadata) -> DatabaseBackup:
    _transition(backup, STATUS_FAILED)
    backup.backup_path = None
    backup.storage_key = None
    backup.is_encrypted = False
    backup.encryption_algorithm = None
    backup.encryption_iv = None
    backup.encryption_auth_tag = None
    backup.encryption_key_id = None
    backup.completed_at = utcnow()
    backup.metadata_json = dump_metadata(metadata)

    session.add(backup)
    session.commit()
    session.refresh(backup)
    return backup


def list_backups(session: Session, status: Optional[str] = None, limit: Optional[int] = None) -> List[DatabaseBackup]:
    statement = select(DatabaseBackup).order_by(DatabaseBackup.created_at.desc(), DatabaseBackup.id.desc())
    if status:
        statement = statement.where(DatabaseBackup.status == status)
    if limit:
        statement = statement.limit(limit)
    return session.exec(statement).all()


def get_backup_stats(session: Session) -> BackupStats:
    backups = session.exec(select(DatabaseBackup)).all()
    completed = [b for b in backups if b.status == STATUS_COMPLETED]
    completed.sort(key=lambda b: (b.created_at, b.id), reverse=True)
    last = completed[0] if completed else None
    return BackupStats(
        totalBackups=len(backups),
        completedBackups=len(completed),
        failedBackups=len([b for b in backups if b.status == STATUS_FAILED]),
        totalStorageUsed=sum(b.file_size or 0 for b in completed),
        lastBackupDate=last.created_at if last else None,
        lastBackupStatus=last.status if last else None,
    )
