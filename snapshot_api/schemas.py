import json
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


# --- Ledger metadata blobs ---

class StartedMetadata(BaseModel):
    stage: Literal["started"] = "started"
    schedule_id: Optional[int] = None
    schedule_name: Optional[str] = None
    encryption_enabled: bool = False


class CompletedMetadata(BaseModel):
    stage: Literal["completed"] = "completed"
    schedule_id: Optional[int] = None
    schedule_name: Optional[str] = None
    file_name: str
    file_key: str
    tables: List[str] = []
    record_counts: Dict[str, int] = {}
    encryption_enabled: bool = False
    duration_seconds: Optional[float] = None


class FailedMetadata(BaseModel):
    stage: Literal["failed"] = "failed"
    schedule_id: Optional[int] = None
    schedule_name: Optional[str] = None
    error: str


BackupMetadata = Annotated[
    Union[StartedMetadata, CompletedMetadata, FailedMetadata],
    Field(discriminator="stage"),
]

_metadata_adapter = TypeAdapter(BackupMetadata)


def dump_metadata(metadata: BaseModel) -> str:
    return metadata.model_dump_json()


def parse_metadata(raw: Optional[str]):
    """
    Parses a stored metadata blob. Missing, malformed or unknown content
    yields None.
    """
    if not raw:
        return None
    try:
        return _metadata_adapter.validate_python(json.loads(raw))
    except (ValueError, TypeError, ValidationError):
        return None


def metadata_schedule_id(raw: Optional[str]) -> Optional[int]:
    metadata = parse_metadata(raw)
    if metadata is None:
        return None
    return metadata.schedule_id


# --- Schedules ---

class ScheduleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    cron_expression: str = "0 3 * * *"
    timezone: str = "America/New_York"
    is_enabled: bool = True
    retention_days: int = Field(default=30, ge=0, le=365)
    encryption_enabled: bool = True
    email_on_success: bool = True
    email_on_failure: bool = True


class ScheduleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None
    is_enabled: Optional[bool] = None
    retention_days: Optional[int] = Field(default=None, ge=0, le=365)
    encryption_enabled: Optional[bool] = None
    email_on_success: Optional[bool] = None
    email_on_failure: Optional[bool] = None


class ScheduleDetail(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    cron_expression: str
    timezone: str
    is_enabled: bool
    retention_days: int
    encryption_enabled: bool
    email_on_success: bool
    email_on_failure: bool
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_run_backup_id: Optional[int] = None
    next_run_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SchedulePreview(BaseModel):
    cron_expression: str
    timezone: str
    next_runs: List[datetime]


class ScheduleStats(BaseModel):
    totalSchedules: int
    enabledSchedules: int
    recentBackups: int
    successRate: float
    failedCount: int
    nextScheduledBackup: Optional[datetime] = None


# --- Backups ---

class ManualBackupCreate(BaseModel):
    encrypt: bool = True


class ExecutionInfo(BaseModel):
    success: bool
    backup_id: Optional[int] = None
    error: Optional[str] = None


class BackupList(BaseModel):
    id: int
    backup_type: str
    status: str
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BackupDetail(BaseModel):
    id: int
    backup_type: str
    status: str
    file_size: Optional[int] = None
    record_count: Optional[int] = None
    backup_path: Optional[str] = None
    checksum: Optional[str] = None
    is_encrypted: bool
    encryption_algorithm: Optional[str] = None
    encryption_iv: Optional[str] = None
    encryption_auth_tag: Optional[str] = None
    encryption_key_id: Optional[str] = None
    metadata_json: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BackupStats(BaseModel):
    totalBackups: int
    completedBackups: int
    failedBackups: int
    totalStorageUsed: int
    lastBackupDate: Optional[datetime] = None
    lastBackupStatus: Optional[str] = None


class CleanupResult(BaseModel):
    deleted: int
