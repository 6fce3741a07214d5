import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from snapshot_api.backup_manager import BackupRunner
from snapshot_api.collector import DataSource, Domain, SnapshotCollector
from snapshot_api.encryption import KeyManager, generate_key
from snapshot_api.models import BackupSchedule, DatabaseBackup  # noqa: F401
from snapshot_api.notifications import EmailSender, NotificationDispatcher
from snapshot_api.storage import StorageProvider


TEST_DOMAINS = (
    Domain("users", "users"),
    Domain("companies", "companies"),
    Domain("projects", "projects", ("users", "companies")),
    Domain("assessments", "assessments", ("projects",)),
)


class MemoryStorage(StorageProvider):
    def __init__(self, fail_uploads: bool = False):
        self.objects = {}
        self.deleted = []
        self.fail_uploads = fail_uploads

    def put(self, key, data, content_type):
        if self.fail_uploads:
            raise ConnectionError("storage unavailable")
        self.objects[key] = (data, content_type)
        return f"memory://{key}"

    def get(self, key):
        return self.objects[key][0]

    def delete(self, key):
        self.deleted.append(key)
        self.objects.pop(key, None)
        return True


class FakeDataSource(DataSource):
    def __init__(self, tables, failing=()):
        self.tables = tables
        self.failing = set(failing)
        self.reads = []

    def read_all(self, table):
        self.reads.append(table)
        if table in self.failing:
            raise RuntimeError(f"table {table} is temporarily unavailable")
        return list(self.tables.get(table, []))


class RecordingEmailSender(EmailSender):
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def send_email(self, to, subject, text, html):
        if self.fail:
            raise OSError("smtp down")
        self.sent.append({"to": list(to), "subject": subject, "text": text, "html": html})
        return True


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def key_manager():
    return KeyManager(generate_key(), key_id="test-key")


@pytest.fixture
def data_source():
    return FakeDataSource({
        "users": [{"id": 1, "name": "Admin"}, {"id": 2, "name": "Assessor"}],
        "companies": [{"id": 1, "name": "Acme Facilities"}],
        "projects": [{"id": 10, "userId": 1, "name": "HQ Building"}],
        "assessments": [{"id": 100, "projectId": 10, "score": 3.5}],
    })


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def runner(engine, data_source, storage, key_manager, email_sender):
    return BackupRunner(
        engine,
        SnapshotCollector(data_source, TEST_DOMAINS),
        storage,
        key_manager,
        NotificationDispatcher(email_sender, ["ops@example.com"]),
    )
