"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key")
# Keep the module-level engine off any real server
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")

import pytest

from tests.fakes import RecordingScheduler, Store, StubGateway


@pytest.fixture
def store() -> Store:
    s = Store()
    s.add_buyer(7)
    s.add_course(42)
    return s


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()
