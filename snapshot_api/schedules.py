"""
Schedule registry.

Persisted backup schedules and their run bookkeeping. ``next_run_at`` is
recomputed whenever the expression, timezone or enabled state changes and
after every execution attempt.
"""
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, select

from .cron import next_run
from .logger import get_logger
from .models import BackupSchedule, DatabaseBackup, BACKUP_KIND_SCHEDULED, STATUS_COMPLETED, STATUS_FAILED
from .schemas import ScheduleCreate, ScheduleStats, ScheduleUpdate
from .utils import to_naive_utc, utcnow

logger = get_logger(__name__)

DEFAULT_SCHEDULE = {
    "name": "Daily Backup (3 AM Eastern)",
    "description": "Automated daily backup at 3:00 AM Eastern Time with AES-256-GCM encryption",
    "cron_expression": "0 3 * * *",
    "timezone": "America/New_York",
    "retention_days": 30,
}

RESCHEDULE_FIELDS = {"cron_expression", "timezone"}


def compute_next_run(cron_expression: str, timezone: str, now: datetime = None) -> datetime:
    """next_run as the naive UTC value stored on the schedule."""
    return to_naive_utc(next_run(cron_expression, timezone, now or utcnow()))


def get_schedule(session: Session, schedule_id: int) -> Optional[BackupSchedule]:
    return session.get(BackupSchedule, schedule_id)


def list_schedules(session: Session) -> List[BackupSchedule]:
    return session.exec(select(BackupSchedule).order_by(BackupSchedule.created_at.desc())).all()


def create_schedule(session: Session, data, commit: bool = True, now: datetime = None) -> BackupSchedule:
    """
    Validates and stores a new schedule. Invalid cron expressions and
    timezones raise before anything is written.
    """
    if not isinstance(data, ScheduleCreate):
        data = ScheduleCreate.model_validate(data)

    next_run_at = compute_next_run(data.cron_expression, data.timezone, now)
    schedule = BackupSchedule(**data.model_dump(), next_run_at=next_run_at)
    session.add(schedule)
    if commit:
        session.commit()
        session.refresh(schedule)
    logger.info(f"Created backup schedule '{schedule.name}', next run at {next_run_at}.")
    return schedule


def ensure_default_schedule(session: Session, defaults: dict = None, now: datetime = None) -> BackupSchedule:
    """Creates the daily default schedule unless one with its name exists."""
    defaults = {**DEFAULT_SCHEDULE, **(defaults or {})}
    existing = session.exec(
        select(BackupSchedule).where(BackupSchedule.name == defaults["name"])
    ).first()
    if existing:
        return existing

    schedule = create_schedule(
        session,
        ScheduleCreate(
            name=defaults["name"],
            description=defaults.get("description"),
            cron_expression=defaults["cron_expression"],
            timezone=defaults["timezone"],
            retention_days=defaults["retention_days"],
            encryption_enabled=True,
            is_enabled=True,
        ),
        now=now,
    )
    logger.info("Created default daily backup schedule.")
    return schedule


def update_schedule(session: Session, schedule_id: int, updates, now: datetime = None) -> Optional[BackupSchedule]:
    schedule = session.get(BackupSchedule, schedule_id)
    if not schedule:
        return None

    if not isinstance(updates, ScheduleUpdate):
        updates = ScheduleUpdate.model_validate(updates)
    update_data = updates.model_dump(exclude_unset=True)
    update_data = {k: v for k, v in update_data.items() if v is not None or k == "description"}
    logger.debug(f"Update data for schedule {schedule_id}: {update_data}")

    cron_expression = update_data.get("cron_expression", schedule.cron_expression)
    timezone = update_data.get("timezone", schedule.timezone)
    rescheduled = any(
        key in update_data and update_data[key] != getattr(schedule, key) for key in RESCHEDULE_FIELDS
    )
    re_enabled = update_data.get("is_enabled") is True and not schedule.is_enabled

    next_run_at = None
    if rescheduled or re_enabled:
        # Validate before touching the row
        next_run_at = compute_next_run(cron_expression, timezone, now)

    for key, value in update_data.items():
        setattr(schedule, key, value)
    if next_run_at is not None:
        schedule.next_run_at = next_run_at
    schedule.updated_at = utcnow()

    session.add(schedule)
    session.commit()
    session.refresh(schedule)
    return schedule


def delete_schedule(session: Session, schedule_id: int) -> bool:
    """Removes the schedule; its ledger history is left in place."""
    schedule = session.get(BackupSchedule, schedule_id)
    if not schedule:
        return False
    name = schedule.name
    session.delete(schedule)
    session.commit()
    logger.info(f"Deleted backup schedule {schedule_id} ('{name}').")
    return True


def find_due_schedules(session: Session, now: datetime = None) -> List[BackupSchedule]:
    now = to_naive_utc(now or utcnow())
    return session.exec(
        select(BackupSchedule)
        .where(BackupSchedule.is_enabled == True)  # noqa: E712
        .where(BackupSchedule.next_run_at != None)  # noqa: E711
        .where(BackupSchedule.next_run_at <= now)
        .order_by(BackupSchedule.next_run_at, BackupSchedule.id)
    ).all()


def record_run(
    session: Session,
    schedule: BackupSchedule,
    status: str,
    backup_id: Optional[int] = None,
    now: datetime = None,
) -> BackupSchedule:
    """Stores the outcome of an execution attempt and advances next_run_at."""
    now = to_naive_utc(now or utcnow())
    schedule.last_run_at = now
    schedule.last_run_status = status
    if backup_id is not None:
        schedule.last_run_backup_id = backup_id
    schedule.next_run_at = compute_next_run(schedule.cron_expression, schedule.timezone, now)
    session.add(schedule)
    session.commit()
    session.refresh(schedule)
    return schedule


def get_schedule_stats(session: Session, window: int = 10) -> ScheduleStats:
    schedules = session.exec(select(BackupSchedule)).all()
    recent = session.exec(
        select(DatabaseBackup)
        .where(DatabaseBackup.backup_type == BACKUP_KIND_SCHEDULED)
        .order_by(DatabaseBackup.created_at.desc(), DatabaseBackup.id.desc())
        .limit(window)
    ).all()

    success_count = len([b for b in recent if b.status == STATUS_COMPLETED])
    failed_count = len([b for b in recent if b.status == STATUS_FAILED])
    upcoming = sorted(s.next_run_at for s in schedules if s.is_enabled and s.next_run_at)

    return ScheduleStats(
        totalSchedules=len(schedules),
        enabledSchedules=len([s for s in schedules if s.is_enabled]),
        recentBackups=len(recent),
        successRate=(success_count / len(recent)) * 100 if recent else 0,
        failedCount=failed_count,
        nextScheduledBackup=upcoming[0] if upcoming else None,
    )
