import json
import logging
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlmodel import Session

from snapshot_api import schedules as registry
from snapshot_api.backup_manager import BackupRunner
from snapshot_api.collector import SnapshotCollector
from snapshot_api.encryption import KeyManager, calculate_checksum
from snapshot_api.models import BackupSchedule, DatabaseBackup, STATUS_COMPLETED, STATUS_FAILED
from snapshot_api.notifications import NotificationDispatcher
from snapshot_api.packager import open_envelope
from snapshot_api.schemas import ScheduleCreate, parse_metadata
from snapshot_api.utils import utcnow

from .conftest import FakeDataSource, MemoryStorage, RecordingEmailSender, TEST_DOMAINS


@pytest.fixture
def schedule(engine):
    with Session(engine) as session:
        schedule = registry.create_schedule(
            session, ScheduleCreate(name="Nightly", cron_expression="0 3 * * *", timezone="America/New_York"),
        )
        schedule.next_run_at = utcnow() - timedelta(minutes=1)
        session.add(schedule)
        session.commit()
        return schedule.id


def _load(engine, model, key):
    with Session(engine) as session:
        return session.get(model, key)


def test_successful_encrypted_scheduled_backup(runner, engine, schedule, storage, key_manager, email_sender):
    before = utcnow()
    result = runner.execute_scheduled_backup(schedule)

    assert result.success is True
    backup = _load(engine, DatabaseBackup, result.backup_id)
    assert backup.status == STATUS_COMPLETED
    assert backup.backup_type == "scheduled"
    assert backup.record_count == 5
    assert backup.is_encrypted is True
    assert backup.encryption_algorithm == "aes-256-gcm"
    assert backup.encryption_iv and backup.encryption_auth_tag
    assert backup.encryption_key_id == "test-key"
    assert backup.storage_key.startswith("backups/scheduled/")
    assert backup.storage_key.endswith(".json.encrypted")
    assert backup.backup_path == f"memory://{backup.storage_key}"

    body = storage.get(backup.storage_key)
    assert backup.file_size == len(body)
    assert backup.checksum == calculate_checksum(json.loads(body)["data"])
    document = open_envelope(body, key_manager)
    assert document["scheduleName"] == "Nightly"
    assert document["recordCounts"]["users"] == 2

    metadata = parse_metadata(backup.metadata_json)
    assert metadata.stage == "completed"
    assert metadata.schedule_id == schedule
    assert metadata.file_key == backup.storage_key

    stored = _load(engine, BackupSchedule, schedule)
    assert stored.last_run_status == "success"
    assert stored.last_run_backup_id == backup.id
    assert stored.last_run_at >= before
    assert stored.next_run_at > stored.last_run_at

    assert len(email_sender.sent) == 1
    assert email_sender.sent[0]["subject"] == "Backup completed: Nightly"
    assert email_sender.sent[0]["to"] == ["ops@example.com"]


def test_unencrypted_schedule_stores_plain_document(runner, engine, schedule, storage):
    with Session(engine) as session:
        registry.update_schedule(session, schedule, {"encryption_enabled": False})

    result = runner.execute_scheduled_backup(schedule)
    backup = _load(engine, DatabaseBackup, result.backup_id)

    assert backup.is_encrypted is False
    assert backup.encryption_iv is None
    assert backup.storage_key.endswith(".json")
    body = storage.get(backup.storage_key)
    assert json.loads(body)["encrypted"] is False
    assert backup.checksum == calculate_checksum(body)


def test_unreadable_domain_still_completes(engine, schedule, storage, key_manager, caplog):
    source = FakeDataSource({"users": [{"id": 1}]}, failing={"projects"})
    runner = BackupRunner(engine, SnapshotCollector(source, TEST_DOMAINS), storage, key_manager)

    with caplog.at_level(logging.WARNING):
        result = runner.execute_scheduled_backup(schedule)

    assert result.success is True
    assert "projects" in caplog.text
    document = open_envelope(storage.get(_load(engine, DatabaseBackup, result.backup_id).storage_key), key_manager)
    assert document["recordCounts"]["projects"] == 0


def test_upload_failure_marks_backup_failed(engine, schedule, data_source, key_manager, email_sender):
    runner = BackupRunner(
        engine,
        SnapshotCollector(data_source, TEST_DOMAINS),
        MemoryStorage(fail_uploads=True),
        key_manager,
        NotificationDispatcher(email_sender, ["ops@example.com"]),
    )
    before = _load(engine, BackupSchedule, schedule).next_run_at

    result = runner.execute_scheduled_backup(schedule)

    assert result.success is False
    assert "storage unavailable" in result.error
    backup = _load(engine, DatabaseBackup, result.backup_id)
    assert backup.status == STATUS_FAILED
    assert backup.backup_path is None
    assert parse_metadata(backup.metadata_json).error == result.error

    stored = _load(engine, BackupSchedule, schedule)
    assert stored.last_run_status == "failed"
    assert stored.next_run_at > before
    assert stored.next_run_at > stored.last_run_at

    assert [mail["subject"] for mail in email_sender.sent] == ["Backup FAILED: Nightly"]
    assert "storage unavailable" in email_sender.sent[0]["text"]


def test_missing_encryption_key_fails_without_plaintext_upload(engine, schedule, data_source, storage):
    runner = BackupRunner(engine, SnapshotCollector(data_source, TEST_DOMAINS), storage, KeyManager())

    result = runner.execute_scheduled_backup(schedule)

    assert result.success is False
    assert "encryption key" in result.error
    assert storage.objects == {}


def test_notification_failure_does_not_change_outcome(engine, schedule, data_source, storage, key_manager):
    runner = BackupRunner(
        engine,
        SnapshotCollector(data_source, TEST_DOMAINS),
        storage,
        key_manager,
        NotificationDispatcher(RecordingEmailSender(fail=True), ["ops@example.com"]),
    )

    result = runner.execute_scheduled_backup(schedule)

    assert result.success is True
    assert _load(engine, DatabaseBackup, result.backup_id).status == STATUS_COMPLETED
    assert _load(engine, BackupSchedule, schedule).last_run_status == "success"


def test_email_flags_are_respected(runner, engine, schedule, email_sender):
    with Session(engine) as session:
        registry.update_schedule(session, schedule, {"email_on_success": False})

    assert runner.execute_scheduled_backup(schedule).success
    assert email_sender.sent == []


def test_missing_schedule(runner):
    result = runner.execute_scheduled_backup(404)
    assert result.success is False
    assert result.error == "Schedule not found"
    assert result.backup_id is None


def test_manual_backup(runner, engine, storage, email_sender):
    result = runner.run_manual_backup(encrypt=False)

    backup = _load(engine, DatabaseBackup, result.backup_id)
    assert result.success
    assert backup.backup_type == "manual"
    assert backup.storage_key.startswith("backups/manual/")
    assert parse_metadata(backup.metadata_json).schedule_id is None
    assert email_sender.sent == []


def test_delete_backup_removes_object_and_entry(runner, engine, storage):
    result = runner.run_manual_backup()
    key = _load(engine, DatabaseBackup, result.backup_id).storage_key

    assert runner.delete_backup(result.backup_id) is True
    assert key not in storage.objects
    assert _load(engine, DatabaseBackup, result.backup_id) is None
    assert runner.delete_backup(result.backup_id) is False


def test_delete_backup_keeps_entry_when_storage_refuses(runner, engine, storage):
    result = runner.run_manual_backup()
    with patch.object(storage, "delete", return_value=False):
        assert runner.delete_backup(result.backup_id) is False
    assert _load(engine, DatabaseBackup, result.backup_id) is not None


class _DeletingDataSource(FakeDataSource):
    """Deletes the running schedule the first time a table is read."""

    def __init__(self, engine, schedule_id, tables):
        super().__init__(tables)
        self.engine = engine
        self.schedule_id = schedule_id

    def read_all(self, table):
        if not self.reads:
            with Session(self.engine) as session:
                registry.delete_schedule(session, self.schedule_id)
        return super().read_all(table)


def test_schedule_deleted_mid_run_still_returns_a_result(engine, schedule, data_source, storage, key_manager,
                                                          email_sender, caplog):
    source = _DeletingDataSource(engine, schedule, data_source.tables)
    runner = BackupRunner(
        engine,
        SnapshotCollector(source, TEST_DOMAINS),
        storage,
        key_manager,
        NotificationDispatcher(email_sender, ["ops@example.com"]),
    )

    with caplog.at_level(logging.WARNING):
        result = runner.execute_scheduled_backup(schedule)

    assert result.success is True
    assert _load(engine, BackupSchedule, schedule) is None
    backup = _load(engine, DatabaseBackup, result.backup_id)
    assert backup.status == STATUS_COMPLETED
    assert parse_metadata(backup.metadata_json).schedule_name == "Nightly"
    assert email_sender.sent[0]["subject"] == "Backup completed: Nightly"
    assert "was deleted during its run" in caplog.text


def test_schedule_deleted_mid_failed_run_still_notifies(engine, schedule, data_source, key_manager, email_sender):
    source = _DeletingDataSource(engine, schedule, data_source.tables)
    runner = BackupRunner(
        engine,
        SnapshotCollector(source, TEST_DOMAINS),
        MemoryStorage(fail_uploads=True),
        key_manager,
        NotificationDispatcher(email_sender, ["ops@example.com"]),
    )

    result = runner.execute_scheduled_backup(schedule)

    assert result.success is False
    assert _load(engine, DatabaseBackup, result.backup_id).status == STATUS_FAILED
    assert [mail["subject"] for mail in email_sender.sent] == ["Backup FAILED: Nightly"]
