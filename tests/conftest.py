"""Shared fixtures for subtitle capture tests."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from subcapture.cache import SubtitleCacheManager
from subcapture.config import Settings
from subcapture.history import HistoryManager
from subcapture.router import MessageRouter
from subcapture.storage import MemoryStore

SAMPLE_VTT = """WEBVTT

1
00:00:00.000 --> 00:00:03.500
Hello world

2
00:00:03.500 --> 00:00:07.000
This is a test subtitle
"""

THUMBNAIL_VTT = "WEBVTT\n\n" + "".join(
    f"00:00:{i:02d}.000 --> 00:00:{i + 1:02d}.000\nthumbs.jpg#xywh={i * 160},0,160,90\n\n"
    for i in range(10)
)


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def config():
    """Settings isolated from the environment."""
    return Settings(_env_file=None, storage_backend="memory")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(store, config, clock):
    return SubtitleCacheManager(store, config, clock=clock)


@pytest.fixture
def history(store, config, clock):
    return HistoryManager(store, config, clock=clock)


@pytest.fixture
def router(cache, history):
    return MessageRouter(cache, history)


@pytest.fixture
def client(monkeypatch):
    """FastAPI TestClient backed by an in-memory store."""
    from subcapture.config import settings
    from subcapture.main import app

    monkeypatch.setattr(settings, "storage_backend", "memory")

    # Mock rate limiting to always allow during tests
    with patch("subcapture.main._check_rate_limit", return_value=True):
        with TestClient(app) as test_client:
            yield test_client


@pytest.fixture
def sample_vtt():
    return SAMPLE_VTT


@pytest.fixture
def thumbnail_vtt():
    return THUMBNAIL_VTT
