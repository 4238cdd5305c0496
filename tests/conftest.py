"""Shared test fixtures."""

from __future__ import annotations

import pytest

from jam_scribe.core.activity_log import ActivityLog
from jam_scribe.core.config import ConfigManager
from jam_scribe.core.events import EventKind, PerformanceEvent
from jam_scribe.core.scheduler import ManualScheduler
from jam_scribe.core.uploader import UploadResult


@pytest.fixture(scope="session")
def qapp():
    """Provide a QCoreApplication instance for the entire test session."""
    from PyQt6.QtCore import QCoreApplication

    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    yield app


@pytest.fixture
def config(tmp_path):
    """ConfigManager with temporary storage and a short inactivity timeout."""
    cfg = ConfigManager(config_dir=tmp_path / "config")
    cfg.set("recording.inactivity_timeout_seconds", 10)
    return cfg


@pytest.fixture
def activity_log():
    return ActivityLog()


@pytest.fixture
def scheduler():
    return ManualScheduler()


class FakeDispatcher:
    """Records attempts and replays scripted results (default: success)."""

    def __init__(self, results: list[UploadResult] | None = None) -> None:
        self.results = list(results or [])
        self.calls: list[tuple[str, str, object, str]] = []

    def attempt(self, file_name, content_type, data, destination) -> UploadResult:
        self.calls.append((file_name, content_type, data, destination))
        if self.results:
            return self.results.pop(0)
        return UploadResult.ok()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


def make_event(
    t_ms: float,
    kind: EventKind = EventKind.NOTE_ON,
    number: int = 60,
    value: int | None = 100,
    device: str = "PianoA",
    channel: int = 0,
) -> PerformanceEvent:
    return PerformanceEvent(device, kind, channel, number, value, t_ms)
