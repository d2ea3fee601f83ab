"""
Shared test configuration and fixtures.
"""

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from domain.models.rates import RateSnapshot
from infrastructure.cache.durable import StoredRecord


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryDurableStore:
    """Dict-backed durable tier for exercising the cache without a database."""

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self.records: dict[str, StoredRecord] = {}

    async def get(self, key):
        return self.records.get(key)

    async def put(self, key, payload, inserted_at):
        self.records[key] = StoredRecord(key, payload, inserted_at, inserted_at)

    async def touch(self, key, accessed_at):
        if key in self.records:
            self.records[key] = replace(self.records[key], last_accessed_at=accessed_at)

    async def delete(self, key):
        self.records.pop(key, None)

    async def clear(self):
        self.records.clear()

    async def count(self):
        return len(self.records)

    async def close(self):
        pass


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 2, 12, 12, 0, tzinfo=UTC))


@pytest.fixture
def durable_store():
    return InMemoryDurableStore()


@pytest.fixture
def usd_snapshot(clock):
    """Snapshot used throughout: base USD, EUR 0.92, DOP 58.5"""
    return RateSnapshot(
        base='USD',
        rates={'EUR': 0.92, 'DOP': 58.5},
        fetched_at=clock(),
        provider='finyvo',
        source='ecb',
    )
