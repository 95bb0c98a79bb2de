# tests/conftest.py
import json
import logging
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from fakeredis import FakeServer, aioredis as fake_aioredis

from read_analytics.database import create_tables, make_engine, make_session_factory
from read_analytics.jobs import AggregationQueue
from read_analytics.store import AnalyticsStore


class FakeClock:
    """Jam manual untuk backoff, window, dan claim timestamp"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def utc_today():
    return datetime.now(timezone.utc).date()


async def pending_ids(queue):
    """task_id di list wait, urut FIFO"""
    return await queue.r.lrange(queue.wait_key, 0, -1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File SQLite: tiap sesi dapat koneksi sendiri, seperti di Postgres
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return AnalyticsStore(session_factory)


@pytest_asyncio.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis_client, clock):
    return AggregationQueue(redis_client, name="test-analytics", clock=clock)


@pytest.fixture
def logged_events(caplog):
    """Ambil payload JSON dari log_event() berdasarkan nama event"""
    caplog.set_level(logging.DEBUG, logger="read_analytics")

    def _events(name):
        found = []
        for record in caplog.records:
            if record.name != "read_analytics" or not record.getMessage().startswith("{"):
                continue
            payload = json.loads(record.getMessage())
            if payload["event"] == name:
                found.append(payload)
        return found

    return _events
