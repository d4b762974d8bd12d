import os
import tempfile
from datetime import datetime, timedelta, timezone

os.environ.setdefault("MILESTONES_LOG_DIR", tempfile.mkdtemp(prefix="milestones-logs-"))

import pytest  # noqa: E402

from core.milestones.errors import SourceUnavailable  # noqa: E402
from core.milestones.models import Snapshot  # noqa: E402
from core.milestones.tracker import MilestoneTracker  # noqa: E402
from shared.storage.milestone_store import MilestoneStore  # noqa: E402


class FakeSource:
    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.calls = 0
        self.error = None

    def set(self, *rows):
        self.rows = [
            Snapshot(event_id=name, display_name=name, total_count=count)
            for name, count in rows
        ]

    async def fetch_all(self):
        self.calls += 1
        if self.error:
            raise SourceUnavailable(self.error)
        return list(self.rows)


class FakeNotifier:
    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    async def send(self, display_name, count):
        self.sent.append((display_name, count))
        return self.succeed


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store(tmp_path):
    return MilestoneStore(tmp_path / "milestones.db")


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(source, store, notifier, clock):
    return MilestoneTracker(source, store, notifier, clock=clock)
