import os
from pathlib import Path
from uuid import uuid4

import pytest

# Settings are read once per process; pin the test environment before any app import
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("EMAIL_BACKEND", None)
os.environ.pop("ORDER_STATUS_POLICY", None)

import mongomock  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from config import get_settings  # noqa: E402
from fakes import RecordingEmailChannel  # noqa: E402
from notifications import reset_channels, set_email_channel  # noqa: E402


def pytest_collection_modifyitems(config, items):
    """Mark tests by module: HTTP tests are integration, the rest domain."""
    for item in items:
        if Path(item.fspath).name.startswith("test_api"):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.domain)


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    name = f"agriconnect_{uuid4().hex[:8]}"
    yield client[name]
    client.drop_database(name)


@pytest.fixture(autouse=True)
def email_channel():
    channel = RecordingEmailChannel()
    set_email_channel(channel)
    yield channel
    reset_channels()


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def client(db):
    from main import app, get_db

    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
