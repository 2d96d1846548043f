import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from crm_ingest.config import Settings
from crm_ingest.database import Base, get_db
from crm_ingest.main import create_app
from crm_ingest.models import (
    Connection,
    ConnectionSecret,
    Queue,
    QueueUser,
    SystemUser,
    WorkspaceWebhookSettings,
)

PROVIDER_SECRET = "test-provider-secret"
AUTOMATION_TOKEN = "test-automation-token"


class RecordingForwarder:
    """Stands in for Forwarder; records dispatches instead of calling out."""

    def __init__(self):
        self.dispatched = []

    def dispatch(self, target, envelope, log=None):
        self.dispatched.append(SimpleNamespace(target=target, envelope=envelope))
        return None

    async def drain(self, timeout=None):
        return None


class RecordingProfileFetcher:
    """Stands in for ProfileFetcher; keeps the lookups it was handed."""

    def __init__(self):
        self.dispatched = []

    def dispatch(self, lookup, log=None):
        if lookup is not None:
            self.dispatched.append(lookup)
        return None

    async def drain(self, timeout=None):
        return None


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN on its own; take over so SAVEPOINTs behave.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fetch(session_factory):
    """Read rows through a short-lived session so no transaction outlives the call."""

    def _fetch(model, *criteria, **filters):
        with session_factory() as session:
            return session.query(model).filter(*criteria).filter_by(**filters).all()

    return _fetch


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        enforce_auth=True,
        provider_secret=PROVIDER_SECRET,
        automation_token=AUTOMATION_TOKEN,
        fallback_forward_url="https://automation.example.com/webhook/inbound",
        fallback_forward_secret="fallback-secret",
        _env_file=None,
    )


@pytest.fixture
def forwarder():
    return RecordingForwarder()


@pytest.fixture
def profiles():
    return RecordingProfileFetcher()


@pytest.fixture
def make_client(session_factory, forwarder, profiles):
    def _make(settings: Settings) -> TestClient:
        app = create_app(settings=settings, forwarder=forwarder, profile_fetcher=profiles)

        def _get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client, settings):
    return make_client(settings)


@pytest.fixture
def workspace_id():
    return uuid.uuid4()


@pytest.fixture
def agents(db_session):
    users = [SystemUser(name=name, status="active") for name in ("A", "B", "C")]
    db_session.add_all(users)
    db_session.commit()
    return users


@pytest.fixture
def make_queue(db_session, workspace_id):
    def _make(members, distribution_type="sequential", last_assigned_index=0, **fields) -> Queue:
        fields.setdefault("is_active", True)
        queue = Queue(
            workspace_id=workspace_id,
            name=f"queue-{distribution_type}",
            distribution_type=distribution_type,
            last_assigned_index=last_assigned_index,
            **fields,
        )
        db_session.add(queue)
        db_session.flush()
        for position, user in enumerate(members):
            db_session.add(QueueUser(queue_id=queue.id, user_id=user.id, order_position=position))
        db_session.commit()
        return queue

    return _make


@pytest.fixture
def connection(db_session, workspace_id):
    conn = Connection(workspace_id=workspace_id, instance_name="wa1", status="connected")
    db_session.add(conn)
    db_session.commit()
    return conn


@pytest.fixture
def connection_secret(db_session, connection):
    row = ConnectionSecret(
        connection_id=connection.id,
        token="instance-api-key",
        evolution_url="https://evolution.example.com/",
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def webhook_settings(db_session, workspace_id):
    row = WorkspaceWebhookSettings(
        workspace_id=workspace_id,
        webhook_url="https://automation.example.com/webhook/wa1",
        webhook_secret="workspace-secret",
    )
    db_session.add(row)
    db_session.commit()
    return row


def provider_event(
    *,
    message_id="EVT1",
    remote_jid="5511999990000@s.whatsapp.net",
    from_me=False,
    message=None,
    push_name="Maria",
    instance="wa1",
    event="messages.upsert",
):
    return {
        "event": event,
        "instance": instance,
        "data": {
            "key": {"remoteJid": remote_jid, "id": message_id, "fromMe": from_me},
            "message": message if message is not None else {"conversation": "oi"},
            "pushName": push_name,
        },
    }


def provider_headers():
    return {"X-Secret": PROVIDER_SECRET}


def automation_headers():
    return {"Authorization": f"Bearer {AUTOMATION_TOKEN}"}
