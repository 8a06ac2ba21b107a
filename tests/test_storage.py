import threading

import pytest
import redis

from src.core.errors import Ok
from src.core.use_cases.lifecycle_grouper import LifecycleGrouper
from src.infrastructure.cache import redis_service
from src.infrastructure.cache.cached_source import CachedRecordSource
from src.infrastructure.cache.redis_service import RedisService
from src.infrastructure.persistence import postgres_repo
from src.infrastructure.persistence.postgres_repo import TradeRepo
from factories import T0, decrease, encode_event, increase, increase_fields, record


class FakeRedis:
    def __init__(self, fail_ping=False):
        self.store = {}
        self.fail_ping = fail_ping
        self.threads = set()

    def ping(self):
        if self.fail_ping:
            raise redis.ConnectionError("refused")
        return True

    def get(self, key):
        self.threads.add(threading.get_ident())
        return self.store.get(key)

    def set(self, key, value):
        self.threads.add(threading.get_ident())
        self.store[key] = value

    def setex(self, key, ttl, value):
        self.store[key] = value


@pytest.fixture
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(redis_service.redis, "from_url", lambda url, **kwargs: client)
    return client


def test_redis_disabled_without_url(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    assert not RedisService().enabled


def test_redis_disabled_when_unreachable(monkeypatch):
    monkeypatch.setattr(redis_service.redis, "from_url", lambda url, **kwargs: FakeRedis(fail_ping=True))
    assert not RedisService("redis://localhost:6379/0").enabled


@pytest.mark.asyncio
async def test_cached_source_serves_records_from_cache(source, fake_redis):
    original = record("sig", T0, [encode_event("IncreasePositionEvent", increase_fields())])
    source.add_history("addr", [original])
    cached = CachedRecordSource(source, RedisService("redis://localhost:6379/0"))

    first = await cached.get_record("sig")
    second = await cached.get_record("sig")

    assert isinstance(second, Ok)
    assert first.value == second.value == original
    assert [c for c in source.calls if c[0] == "get_record"] == [("get_record", "sig")]
    assert "tradetrace:record:sig" in fake_redis.store


@pytest.mark.asyncio
async def test_cache_calls_run_off_the_event_loop_thread(source, fake_redis):
    source.add_history("addr", [record("sig", T0)])
    cached = CachedRecordSource(source, RedisService("redis://localhost:6379/0"))

    await cached.get_record("sig")
    await cached.get_record("sig")

    assert fake_redis.threads
    assert threading.get_ident() not in fake_redis.threads


@pytest.mark.asyncio
async def test_cached_source_passes_through_pages_and_misses(source, fake_redis):
    source.add_history("addr", [record("sig", T0)])
    cached = CachedRecordSource(source, RedisService("redis://localhost:6379/0"))

    page = await cached.list_records("addr", 10)
    missing = await cached.get_record("nope")

    assert [h.signature for h in page.value] == ["sig"]
    assert not isinstance(missing, Ok)
    assert fake_redis.store == {}


class FakeCursor:
    def __init__(self, log):
        self.log = log

    def execute(self, query, params=None):
        self.log.append(("execute", query))

    def close(self):
        pass


class FakeConnection:
    def __init__(self, log):
        self.log = log

    def cursor(self):
        return FakeCursor(self.log)

    def commit(self):
        self.log.append(("commit", None))

    def close(self):
        pass


def test_trade_repo_bulk_inserts_flat_records(monkeypatch):
    log = []
    inserted = []
    monkeypatch.setattr(postgres_repo.psycopg2, "connect", lambda dsn: FakeConnection(log))
    monkeypatch.setattr(postgres_repo, "execute_values", lambda cur, query, rows: inserted.extend(rows))

    result = LifecycleGrouper().group([
        increase(size=1000, collateral=100, t=T0),
        decrease(size=1000, pnl=30, t=T0 + 60, remaining=0),
    ])
    repo = TradeRepo("postgresql://localhost/tradetrace")
    saved = repo.bulk_insert_trades([t.to_record() for t in result.completed_trades])

    assert saved == 1
    assert "CREATE TABLE IF NOT EXISTS trades" in log[0][1]
    [row] = inserted
    assert row[0].endswith("-0")
    assert row[5:7] == ("long", "closed")
    assert row[12] == 30


def test_trade_repo_skips_empty_batches(monkeypatch):
    monkeypatch.setattr(postgres_repo.psycopg2, "connect", lambda dsn: FakeConnection([]))
    repo = TradeRepo("postgresql://localhost/tradetrace")

    assert repo.bulk_insert_trades([]) == 0
