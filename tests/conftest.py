"""Shared fixtures for the referral telemetry tests."""

import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from referral_telemetry.automation.scheduler import ManualScheduler
from referral_telemetry.core.config import (
    BackendConfig,
    BackendKind,
    EndpointConfig,
    TrackerSettings,
)


def make_response(status_code: int = 200, json_body=None):
    """Stand-in for a ``requests.Response``."""
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    if isinstance(json_body, Exception):
        response.json.side_effect = json_body
    else:
        response.json.return_value = json_body
    return response


class FakeClock:
    """Settable ``time.time`` replacement."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def temp_data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def settings():
    """Settings pointing at a configured Supabase project."""
    settings = TrackerSettings()
    settings.backend = BackendConfig(
        kind=BackendKind.SUPABASE,
        endpoint=EndpointConfig(url="https://proj.supabase.co", api_key="anon-key"),
    )
    return settings


@pytest.fixture
def http_session():
    """Mocked ``requests.Session``: creates return id 42, webhooks and beacons succeed."""
    session = MagicMock()
    session.request.return_value = make_response(201, [{"id": 42}])
    session.post.return_value = make_response(200)
    return session
