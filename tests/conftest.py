"""Shared fixtures for trafficlight tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from trafficlight.models import OutboundEvent
from trafficlight.storage import StateStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

TEST_RULES = {
    "ai_websites": [{"name": "ChatGPT", "pattern": "*.openai.com/*"}],
    "academic_platforms": [{"name": "Canvas", "pattern": "*.canvas.instructure.com/*"}],
}

AI_URL = "https://chat.openai.com"
PLATFORM_URL = "https://school.canvas.instructure.com/courses/12/assignments/3"
# An AI tool embedded in a Canvas page: both patterns match
RED_URL = "https://school.canvas.instructure.com/courses/12/external_tools/chat.openai.com/"
PLAIN_URL = "https://en.wikipedia.org/wiki/Traffic_light"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class EventRecorder:
    """Async subscriber that keeps every outbound event."""

    def __init__(self) -> None:
        self.events: list[OutboundEvent] = []

    async def __call__(self, event: OutboundEvent) -> None:
        self.events.append(event)

    def of_type(self, cls: type) -> list:
        return [e for e in self.events if isinstance(e, cls)]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
def memory_store() -> StateStore:
    """Provide a connected in-memory StateStore."""
    store = StateStore(Path(":memory:"))
    store.connect()
    yield store  # type: ignore[misc]
    store.close()


@pytest.fixture()
def tmp_db_path(tmp_path: Path) -> Path:
    """Provide a temporary DuckDB path."""
    return tmp_path / "state.db"
