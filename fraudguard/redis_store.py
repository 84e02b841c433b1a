"""Redis-backed device cache, idempotency store and transaction counter.

Each class takes a Redis client with the redis-py method names
(``sismember``, ``exists``, ``sadd``, ``get``, ``set``, ``zadd``, ``zcount``,
``expire`` and ``pipeline``).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from fraudguard.ports import DeviceRepository

_log = logging.getLogger(__name__)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


class StoreError(RuntimeError):
    """Raised when a Redis operation fails."""


def _device_key(sender_id: str) -> str:
    return f"devices:{sender_id}"


def _idempotency_key(key: str) -> str:
    return f"idempotency:{key}"


def _counter_key(sender_id: str) -> str:
    return f"tx:count:{sender_id}"


def _unix_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // _MILLISECOND


class CachedDeviceRepository:
    """Read-through Redis cache over a backing device repository."""

    def __init__(self, client: Any, backing: DeviceRepository) -> None:
        self._client = client
        self._backing = backing

    def warm_up(self, devices: Mapping[str, Sequence[str]]) -> None:
        """Load every sender's known devices into the cache in one pipeline."""
        pipe = self._client.pipeline()
        for sender_id, device_ids in devices.items():
            if device_ids:
                pipe.sadd(_device_key(sender_id), *device_ids)
        try:
            pipe.execute()
        except Exception as exc:
            raise StoreError(f"warming up device cache: {exc}") from exc
        _log.info("device cache warmed: %d senders", len(devices))

    def is_known_device(self, sender_id: str, device_id: str) -> bool:
        key = _device_key(sender_id)
        try:
            if self._client.sismember(key, device_id):
                return True
        except Exception:
            pass
        try:
            if self._client.exists(key) > 0:
                # The sender's set is cached and the device is not in it.
                return False
        except Exception:
            pass

        known = self._backing.is_known_device(sender_id, device_id)
        if known:
            try:
                self._client.sadd(key, device_id)
            except Exception as exc:
                _log.warning("device cache populate failed: sender=%s error=%s", sender_id, exc)
        return known


class IdempotencyStore:
    """Stores responses under idempotency keys; the first write wins."""

    def __init__(self, client: Any, ttl: timedelta | float) -> None:
        self._client = client
        self._ttl = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)

    def get(self, key: str) -> bytes | None:
        """Stored value for the key, or None when there is none."""
        try:
            value = self._client.get(_idempotency_key(key))
        except Exception as exc:
            raise StoreError(f"redis get idempotency {key}: {exc}") from exc
        if value is None:
            return None
        return value.encode() if isinstance(value, str) else bytes(value)

    def set(self, key: str, value: bytes) -> None:
        """Store the value unless the key already holds one."""
        try:
            self._client.set(_idempotency_key(key), value, ex=self._ttl, nx=True)
        except Exception as exc:
            raise StoreError(f"redis setnx idempotency {key}: {exc}") from exc


class TransactionCounter:
    """Counts a sender's transactions using a sorted set of timestamps."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def count_by_sender(self, sender_id: str, since: datetime) -> int:
        try:
            count = self._client.zcount(
                _counter_key(sender_id), str(_unix_millis(since)), "+inf"
            )
        except Exception as exc:
            raise StoreError(f"redis zcount for sender {sender_id}: {exc}") from exc
        return int(count)

    def record(self, sender_id: str, tx_time: datetime, ttl: timedelta | float) -> None:
        """Add a transaction time and refresh the key's expiry."""
        key = _counter_key(sender_id)
        millis = _unix_millis(tx_time)
        expiry = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
        pipe = self._client.pipeline()
        pipe.zadd(key, {millis: float(millis)})
        pipe.expire(key, expiry)
        try:
            pipe.execute()
        except Exception as exc:
            raise StoreError(f"redis pipeline for sender {sender_id}: {exc}") from exc