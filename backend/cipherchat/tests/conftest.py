import os

os.environ["SECRET_KEY"] = "test-secret"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["SWEEP_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from cipherchat.db import database, models
from cipherchat.deps.db import get_db
from cipherchat.deps.services import get_message_service, get_storage
from cipherchat.services.message_service import MessageService
from cipherchat.storage import MemoryBlobStore
from cipherchat.ws.relay import Relay


class RecordingRelay(Relay):
    def __init__(self):
        self.user_events = []
        self.group_events = []

    def notify_user(self, user_id, event):
        self.user_events.append((user_id, event))

    def notify_group(self, group_id, event):
        self.group_events.append((group_id, event))

    def types_for_user(self, user_id):
        return [e["type"] for uid, e in self.user_events if uid == user_id]


@pytest.fixture
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'test.db'}"
    database.rebind(url)
    models.Base.metadata.create_all(bind=database.engine)
    yield url
    database.engine.dispose()


@pytest.fixture
def db(db_url):
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def store():
    return MemoryBlobStore()


@pytest.fixture
def client(db_url, relay, store):
    from cipherchat.main import app

    def _service(db: Session = Depends(get_db)):
        return MessageService(db, relay=relay)

    app.dependency_overrides[get_message_service] = _service
    app.dependency_overrides[get_storage] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
