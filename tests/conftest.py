"""
Pytest configuration and fixtures.
"""
import itertools
import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from unittest.mock import patch

from app.core.database import Base, get_db, get_session_factory
from app.main import app
from app.models import AccessKey, Server, KeyStatus, ExpirationType, DataLimitResetStrategy
from app.services.outline_client import (
    OutlineApiError,
    RemoteAccessKey,
    RemoteServerInfo,
    get_client_factory,
)

# File-based SQLite: sync passes run in worker threads with their own sessions
TEST_DATABASE_URL = "sqlite:///./test_keyfleet.db"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
    pool_pre_ping=False,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeOutlineServer:
    """In-memory stand-in for one remote management API."""

    def __init__(self, name="fake", metrics_enabled=True):
        self.name = name
        self.metrics_enabled = metrics_enabled
        self.keys = {}
        self.counters = {}
        self.limits = {}
        self.fail_all = False
        self.fail_on = set()
        self.calls = []
        self.delay = 0
        self._ids = itertools.count(1)

    def add_key(self, name="key", method="chacha20-ietf-poly1305"):
        key_id = str(next(self._ids))
        self.keys[key_id] = RemoteAccessKey(
            id=key_id,
            name=name,
            access_url=f"ss://secret-{self.name}-{key_id}@203.0.113.10:443/?outline=1",
            method=method,
            port=443,
        )
        self.counters[key_id] = 0
        return self.keys[key_id]

    def check(self, operation):
        self.calls.append(operation)
        if self.delay:
            time.sleep(self.delay)
        if self.fail_all or operation in self.fail_on:
            raise OutlineApiError(f"Simulated failure: {operation}", status_code=500)


class FakeOutlineClient:
    """Implements the OutlineClient surface on top of a FakeOutlineServer."""

    def __init__(self, remote: FakeOutlineServer):
        self.remote = remote

    def get_server_info(self):
        self.remote.check("get_server_info")
        return RemoteServerInfo(
            server_id=f"remote-{self.remote.name}",
            name=self.remote.name,
            version="1.9.0",
            metrics_enabled=self.remote.metrics_enabled,
        )

    def test_connection(self):
        try:
            self.get_server_info()
            return True
        except OutlineApiError:
            return False

    def list_keys(self):
        self.remote.check("list_keys")
        return list(self.remote.keys.values())

    def create_key(self, name, method=None):
        self.remote.check("create_key")
        return self.remote.add_key(name, method or "chacha20-ietf-poly1305")

    def delete_key(self, key_id):
        self.remote.check("delete_key")
        self.remote.keys.pop(key_id, None)
        self.remote.counters.pop(key_id, None)
        self.remote.limits.pop(key_id, None)

    def rename_key(self, key_id, name):
        self.remote.check("rename_key")
        if key_id not in self.remote.keys:
            raise OutlineApiError("Not found", status_code=404)
        self.remote.keys[key_id].name = name

    def set_data_limit(self, key_id, limit_bytes):
        self.remote.check("set_data_limit")
        self.remote.limits[key_id] = limit_bytes

    def remove_data_limit(self, key_id):
        self.remote.check("remove_data_limit")
        self.remote.limits.pop(key_id, None)

    def get_metrics(self):
        self.remote.check("get_metrics")
        if not self.remote.metrics_enabled:
            return None
        return dict(self.remote.counters)


class FakeFleet:
    """Maps server api_url to a fake remote; used as the client factory."""

    def __init__(self):
        self.remotes = {}

    def add(self, api_url, **kwargs):
        remote = FakeOutlineServer(name=api_url.rsplit("/", 1)[-1], **kwargs)
        self.remotes[api_url] = remote
        return remote

    def __call__(self, server):
        remote = self.remotes.get(server.api_url)
        if remote is None:
            raise OutlineApiError(f"Failed to connect to remote server: {server.api_url}")
        return FakeOutlineClient(remote)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create all tables once per test session."""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def clean_tables():
    """Empty every table after each test."""
    yield
    db = TestingSessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
    finally:
        db.close()


@pytest.fixture(scope="function", autouse=True)
def disable_api_key():
    """Disable API key authentication for all tests."""
    with patch("app.core.config.settings.API_KEY", None):
        yield


@pytest.fixture
def fleet():
    return FakeFleet()


def _override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(fleet):
    """
    Test client with the database, session factory and remote clients overridden.

    Scheduler startup is not triggered because the client is not used as a
    context manager.
    """
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_client_factory] = lambda: fleet

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client_with_auth(fleet):
    """Test client with API_KEY="test-key" configured."""
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_client_factory] = lambda: fleet

    with patch("app.core.config.settings.API_KEY", "test-key"):
        yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def db_session():
    """Database session for tests that need direct DB access."""
    db = TestingSessionLocal()
    try:
        yield db
        db.rollback()
    finally:
        db.close()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def make_server(db_session, fleet):
    """Create a Server row plus its fake remote. Returns (server, remote)."""
    counter = itertools.count(1)

    def _make(name=None, is_active=True, metrics_enabled=True):
        n = next(counter)
        name = name or f"server-{n}"
        api_url = f"https://203.0.113.{n}:8443/{name}"
        remote = fleet.add(api_url, metrics_enabled=metrics_enabled)
        server = Server(
            name=name,
            location="Frankfurt",
            api_url=api_url,
            api_cert_sha256="ab" * 32,
            is_active=is_active,
        )
        db_session.add(server)
        db_session.commit()
        db_session.refresh(server)
        return server, remote

    return _make


@pytest.fixture
def make_key(db_session):
    """Create an AccessKey row backed by a key on the given fake remote."""

    def _make(
        server,
        remote,
        name="alice",
        status=KeyStatus.ACTIVE,
        data_limit_bytes=None,
        expiration_type=ExpirationType.NEVER,
        expires_at=None,
        duration_days=None,
        used_bytes=0,
        usage_offset=0,
        reset_strategy=DataLimitResetStrategy.NEVER,
        created_at=None,
    ):
        remote_key = remote.add_key(name)
        key = AccessKey(
            server_id=server.id,
            remote_key_id=remote_key.id,
            name=name,
            access_url=remote_key.access_url,
            method=remote_key.method,
            status=status,
            used_bytes=used_bytes,
            usage_offset=usage_offset,
            data_limit_bytes=data_limit_bytes,
            data_limit_reset_strategy=reset_strategy,
            expiration_type=expiration_type,
            expires_at=expires_at,
            duration_days=duration_days,
        )
        if created_at is not None:
            key.created_at = created_at
        db_session.add(key)
        db_session.commit()
        db_session.refresh(key)
        return key

    return _make

