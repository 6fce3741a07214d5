from typing import Optional
from datetime import datetime
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from .utils import utcnow

BACKUP_KIND_MANUAL = "manual"
BACKUP_KIND_SCHEDULED = "scheduled"

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

RUN_STATUS_SUCCESS = "success"
RUN_STATUS_FAILED = "failed"

# All timestamps are naive UTC (utils.utcnow) in plain DateTime columns.


class BackupSchedule(SQLModel, table=True):
    __tablename__ = "backup_schedules"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: Optional[str] = None
    cron_expression: str
    timezone: str = "America/New_York"
    is_enabled: bool = True
    retention_days: int = 30
    encryption_enabled: bool = True
    email_on_success: bool = True
    email_on_failure: bool = True
    last_run_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_run_status: Optional[str] = None
    last_run_backup_id: Optional[int] = None
    next_run_at: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class DatabaseBackup(SQLModel, table=True):
    __tablename__ = "database_backups"

    id: Optional[int] = Field(default=None, primary_key=True)
    backup_type: str = Field(index=True)
    status: str = STATUS_IN_PROGRESS
    file_size: Optional[int] = None
    record_count: Optional[int] = None
    backup_path: Optional[str] = None
    storage_key: Optional[str] = None
    checksum: Optional[str] = None
    is_encrypted: bool = False
    encryption_algorithm: Optional[str] = None
    encryption_iv: Optional[str] = None
    encryption_auth_tag: Optional[str] = None
    encryption_key_id: Optional[str] = None
    metadata_json: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
