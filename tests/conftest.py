import os
import tempfile

# must be set before anything under app/ is imported
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'app.db')}")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("LOG_LEVEL", "INFO")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("CLEANUP_INTERVAL_MINUTES", "0")
os.environ.setdefault("PROXIMITY_BACKEND", "sql")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine

from app.core.init_db import init_db
from app.services.location_store import LocationStore
from app.services.proximity_query import NearbyUser


class ManualClock:
    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeProximity:
    """Returns queued responses first, then `results`."""

    def __init__(self):
        self.results = []
        self.responses = []
        self.calls = []
        self.error = None
        self.on_query = None

    def find_nearby(self, lat, lng, *, exclude_user_id, **kwargs):
        self.calls.append({"lat": lat, "lng": lng, "exclude_user_id": exclude_user_id, **kwargs})
        if self.error is not None:
            raise self.error
        if self.on_query is not None:
            self.on_query(exclude_user_id)
        if self.responses:
            return list(self.responses.pop(0))
        return list(self.results)


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    async def notify(self, user_id, nearby):
        self.calls.append((user_id, nearby))


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return LocationStore(engine)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def proximity():
    return FakeProximity()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def neighbor(clock):
    def _make(user_id="bob_42", distance=12.5):
        return NearbyUser(user_id=user_id, distance_meters=distance, last_updated=clock())
    return _make
