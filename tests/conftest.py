from datetime import datetime, timedelta, timezone

import pytest

from dns_query import ResolutionError
from models import RecordType, Watch
from watch_store import MemoryWatchStore, SqliteWatchStore


NOW = datetime(2024, 10, 26, 12, 0, 0, tzinfo=timezone.utc)


class FakeResolver:
    """Stands in for DnsResolver: returns queued values or raises queued errors."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def resolve(self, domain, record_type, record_name):
        self.calls.append((domain, record_type, record_name))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryWatchStore()
    else:
        s = SqliteWatchStore(str(tmp_path / "watches.db"))
    yield s
    s.close()


@pytest.fixture
def watch(store):
    return store.add_watch(
        Watch(
            domain="example.com",
            record_type=RecordType.A,
            record_name="@",
            interval=timedelta(seconds=300),
            next_check_at=NOW,
        )
    )


def failing(message="NXDOMAIN"):
    return ResolutionError(message)
