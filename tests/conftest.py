"""
Pytest configuration and shared fixtures for the attendance monitor tests.
"""

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from attendance_monitor.api_client import BackendClient
from attendance_monitor.auth import StaticTokenProvider
from attendance_monitor.config import MonitorSettings

from fake_backend import VALID_TOKEN, create_fake_backend


@pytest.fixture
def settings(tmp_path):
    return MonitorSettings(
        backend_url="http://testserver",
        ws_url="ws://testserver",
        access_token=VALID_TOKEN,
        settle_delay_seconds=0.0,
        reconnect_seconds=0.05,
        poll_interval_seconds=0.05,
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def backend():
    return create_fake_backend()


@pytest.fixture
def client(settings, backend):
    return BackendClient(settings, StaticTokenProvider(VALID_TOKEN), session=TestClient(backend))
