"""
Pytest configuration and shared fixtures.

Settings are read from the environment when group_monitor.config is first
imported, so the test environment is set here before any app import.
"""

import os
import shutil
import tempfile

import pytest

TEST_DATA_DIR = tempfile.mkdtemp(prefix="group-monitor-tests-")

os.environ["DATA_DIR"] = TEST_DATA_DIR
os.environ["CLIENT_INIT_DELAY_SECONDS"] = "0"
# Long enough that a scheduled reinitialization never fires during a test
os.environ["REINIT_DELAY_SECONDS"] = "30"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("CLIENT_FACTORY", None)

# Clear settings cache before any app imports to ensure test env vars are used
from group_monitor.config import get_settings  # noqa: E402
get_settings.cache_clear()

from group_monitor.storage import FileStorage  # noqa: E402


def _clear_test_data_dir():
    for name in os.listdir(TEST_DATA_DIR):
        path = os.path.join(TEST_DATA_DIR, name)
        if os.path.isdir(path):
            shutil.rmtree(path)
        else:
            os.unlink(path)


@pytest.fixture
def storage(tmp_path):
    """Initialized store in a fresh temporary directory."""
    store = FileStorage(tmp_path / "data")
    store.initialize()
    return store


@pytest.fixture
def client():
    """Create test client with an empty data directory for each test."""
    from fastapi.testclient import TestClient
    from group_monitor.main import app

    _clear_test_data_dir()
    with TestClient(app) as test_client:
        yield test_client
    _clear_test_data_dir()
