from datetime import datetime

import pytest
from sqlalchemy import DateTime
from sqlmodel import select

from snapshot_api import ledger, schedules as registry
from snapshot_api.models import BackupSchedule, DatabaseBackup
from snapshot_api.schemas import ScheduleCreate, StartedMetadata

TIMESTAMP_COLUMNS = [
    (BackupSchedule, "last_run_at"),
    (BackupSchedule, "next_run_at"),
    (BackupSchedule, "created_at"),
    (BackupSchedule, "updated_at"),
    (DatabaseBackup, "created_at"),
    (DatabaseBackup, "completed_at"),
]


@pytest.mark.parametrize("model,column", TIMESTAMP_COLUMNS)
def test_timestamp_columns_are_plain_naive_datetimes(model, column):
    column_type = model.__table__.c[column].type
    assert type(column_type) is DateTime
    assert column_type.timezone is False


def test_naive_utc_values_round_trip(session):
    schedule = registry.create_schedule(session, ScheduleCreate(name="Nightly"), now=datetime(2025, 1, 15, 10, 0))
    registry.record_run(session, schedule, "success", now=datetime(2025, 1, 16, 8, 0, 3))
    backup = ledger.start_backup(session, "scheduled", StartedMetadata(schedule_id=schedule.id))

    session.expire_all()
    stored = session.exec(select(BackupSchedule)).one()
    assert stored.next_run_at == datetime(2025, 1, 17, 8, 0)
    assert stored.last_run_at == datetime(2025, 1, 16, 8, 0, 3)
    assert stored.next_run_at.tzinfo is None
    assert session.get(DatabaseBackup, backup.id).created_at.tzinfo is None


def test_due_query_compares_naive_values(session):
    schedule = registry.create_schedule(session, ScheduleCreate(name="Nightly"), now=datetime(2025, 1, 15, 10, 0))

    assert registry.find_due_schedules(session, datetime(2025, 1, 16, 7, 59)) == []
    assert [s.id for s in registry.find_due_schedules(session, datetime(2025, 1, 16, 8, 0))] == [schedule.id]
