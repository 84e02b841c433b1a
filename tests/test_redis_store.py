from datetime import datetime, timedelta, timezone

import pytest

from fraudguard.redis_store import (
    CachedDeviceRepository,
    IdempotencyStore,
    StoreError,
    TransactionCounter,
)


class FakePipeline:
    def __init__(self, client):
        self._client = client
        self._calls = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._calls.append((name, args, kwargs))
        return queue

    def execute(self):
        if self._client.fail:
            raise ConnectionError("redis down")
        return [getattr(self._client, n)(*a, **k) for n, a, k in self._calls]


class FakeRedis:
    def __init__(self):
        self.sets = {}
        self.zsets = {}
        self.strings = {}
        self.expiries = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    def pipeline(self):
        return FakePipeline(self)

    def sadd(self, key, *members):
        self._check()
        self.sets.setdefault(key, set()).update(members)

    def sismember(self, key, member):
        self._check()
        return member in self.sets.get(key, set())

    def exists(self, key):
        self._check()
        return int(key in self.sets)

    def get(self, key):
        self._check()
        return self.strings.get(key)

    def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        return True

    def zadd(self, key, mapping):
        self._check()
        self.zsets.setdefault(key, {}).update(mapping)

    def zcount(self, key, lo, hi):
        self._check()
        low, high = float(lo), float(hi)
        return sum(1 for s in self.zsets.get(key, {}).values() if low <= s <= high)

    def expire(self, key, ttl):
        self.expiries[key] = ttl


NOW = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
TTL = timedelta(minutes=10)


@pytest.fixture
def counter():
    return TransactionCounter(FakeRedis())


def test_counts_multiple_transactions_within_window(counter):
    for minutes in (1, 2, 3):
        counter.record("sender-count-multi", NOW - timedelta(minutes=minutes), TTL)
    assert counter.count_by_sender("sender-count-multi", NOW - timedelta(minutes=5)) == 3


def test_excludes_transactions_outside_window(counter):
    for minutes in (1, 2, 8):
        counter.record("sender-window", NOW - timedelta(minutes=minutes), TTL)
    assert counter.count_by_sender("sender-window", NOW - timedelta(minutes=5)) == 2


def test_different_senders_are_isolated(counter):
    counter.record("sender-iso-a", NOW, TTL)
    counter.record("sender-iso-a", NOW - timedelta(seconds=1), TTL)
    counter.record("sender-iso-b", NOW, TTL)
    since = NOW - timedelta(minutes=5)
    assert counter.count_by_sender("sender-iso-a", since) == 2
    assert counter.count_by_sender("sender-iso-b", since) == 1


def test_returns_zero_for_unknown_sender(counter):
    assert counter.count_by_sender("sender-unknown", NOW - timedelta(minutes=5)) == 0


def test_record_sets_expiry_on_sender_key():
    client = FakeRedis()
    TransactionCounter(client).record("s1", NOW, TTL)
    assert client.expiries == {"tx:count:s1": TTL}


def test_counter_errors_are_wrapped():
    client = FakeRedis()
    client.fail = True
    with pytest.raises(StoreError, match="sender s1"):
        TransactionCounter(client).count_by_sender("s1", NOW)


def test_idempotency_first_write_wins():
    store = IdempotencyStore(FakeRedis(), timedelta(hours=24))
    assert store.get("k") is None
    store.set("k", b"first")
    store.set("k", b"second")
    assert store.get("k") == b"first"


def test_idempotency_error_is_wrapped():
    client = FakeRedis()
    client.fail = True
    with pytest.raises(StoreError):
        IdempotencyStore(client, 60).get("k")


class Backing:
    def __init__(self, known):
        self.known = known
        self.calls = 0

    def is_known_device(self, sender_id, device_id):
        self.calls += 1
        return (sender_id, device_id) in self.known


def test_warm_up_serves_from_cache():
    backing = Backing(set())
    repo = CachedDeviceRepository(FakeRedis(), backing)
    repo.warm_up({"u1": ["d1", "d2"]})
    assert repo.is_known_device("u1", "d2") is True
    assert repo.is_known_device("u1", "d9") is False
    assert backing.calls == 0


def test_cache_miss_falls_through_and_populates():
    client = FakeRedis()
    backing = Backing({("u2", "d1")})
    repo = CachedDeviceRepository(client, backing)
    assert repo.is_known_device("u2", "d1") is True
    assert client.sets["devices:u2"] == {"d1"}
    assert repo.is_known_device("u2", "d1") is True
    assert backing.calls == 1


def test_unknown_uncached_sender_asks_backing():
    backing = Backing(set())
    repo = CachedDeviceRepository(FakeRedis(), backing)
    assert repo.is_known_device("u3", "d1") is False
    assert backing.calls == 1