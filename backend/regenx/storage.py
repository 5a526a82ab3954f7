"""Keyed-record store and the retrying adapter every engine component talks to.

``RecordStore`` keeps hashes, plain string keys and sorted sets in memory, with
per-key expiry, and can mirror itself to a JSON snapshot under ``DATA_DIR`` so
familiars and pending jobs survive a restart. ``StoreAdapter`` wraps each call
in a bounded retry with exponential backoff: reads fall back to a caller
supplied value once retries run out, writes raise ``StoreUnavailableError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from .errors import StoreUnavailableError
from .timeutils import now_utc, to_epoch

T = TypeVar("T")

_logger = logging.getLogger(__name__)


class RecordStore:
    def __init__(self, snapshot_path: Optional[Path] = None, clock: Callable[[], Any] = now_utc) -> None:
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._strings: Dict[str, str] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._snapshot_path = snapshot_path
        if snapshot_path is not None:
            self._load_snapshot()

    def _now(self) -> float:
        return to_epoch(self._clock())

    def _load_snapshot(self) -> None:
        path = self._snapshot_path
        if path is None or not path.exists():
            return
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except json.JSONDecodeError:
            _logger.warning("Ignoring unreadable store snapshot at %s", path)
            return
        self._hashes = payload.get("hashes", {})
        self._strings = payload.get("strings", {})
        self._zsets = payload.get("zsets", {})
        self._expiry = payload.get("expiry", {})

    def _persist(self) -> None:
        path = self._snapshot_path
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "hashes": self._hashes,
            "strings": self._strings,
            "zsets": self._zsets,
            "expiry": self._expiry,
        }
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and self._now() >= deadline:
            self._drop(key)

    def _drop(self, key: str) -> bool:
        removed = False
        for bucket in (self._hashes, self._strings, self._zsets):
            if key in bucket:
                del bucket[key]
                removed = True
        self._expiry.pop(key, None)
        return removed

    def _exists(self, key: str) -> bool:
        self._purge_if_expired(key)
        return key in self._hashes or key in self._strings or key in self._zsets

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge_if_expired(key)
            return self._strings.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._drop(key)
            self._strings[key] = str(value)
            if ttl_seconds is not None:
                self._expiry[key] = self._now() + ttl_seconds
            self._persist()

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = sum(1 for key in keys if self._exists(key) and self._drop(key))
            self._persist()
            return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._exists(key)

    async def expire(self, key: str, seconds: float) -> bool:
        with self._lock:
            if not self._exists(key):
                return False
            self._expiry[key] = self._now() + seconds
            self._persist()
            return True

    async def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            if not self._exists(key):
                return None
            deadline = self._expiry.get(key)
            if deadline is None:
                return None
            return max(0.0, deadline - self._now())

    async def hget_all(self, key: str) -> Dict[str, str]:
        with self._lock:
            self._purge_if_expired(key)
            return dict(self._hashes.get(key, {}))

    async def hget(self, key: str, field: str) -> Optional[str]:
        with self._lock:
            self._purge_if_expired(key)
            return self._hashes.get(key, {}).get(field)

    async def hset(self, key: str, mapping: Mapping[str, Any]) -> int:
        with self._lock:
            self._purge_if_expired(key)
            record = self._hashes.setdefault(key, {})
            added = sum(1 for field in mapping if field not in record)
            record.update({field: str(value) for field, value in mapping.items()})
            self._persist()
            return added

    async def hsetnx(self, key: str, field: str, value: Any) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            record = self._hashes.setdefault(key, {})
            if field in record:
                return False
            record[field] = str(value)
            self._persist()
            return True

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            self._purge_if_expired(key)
            record = self._hashes.setdefault(key, {})
            value = int(record.get(field, "0")) + amount
            record[field] = str(value)
            self._persist()
            return value

    async def hdel(self, key: str, *fields: str) -> int:
        with self._lock:
            self._purge_if_expired(key)
            record = self._hashes.get(key, {})
            removed = sum(1 for field in fields if record.pop(field, None) is not None)
            if key in self._hashes and not record:
                self._drop(key)
            self._persist()
            return removed

    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        with self._lock:
            self._purge_if_expired(key)
            members = self._zsets.setdefault(key, {})
            added = sum(1 for member in mapping if member not in members)
            members.update({member: float(score) for member, score in mapping.items()})
            self._persist()
            return added

    async def zrem(self, key: str, *members: str) -> int:
        with self._lock:
            self._purge_if_expired(key)
            bucket = self._zsets.get(key, {})
            removed = sum(1 for member in members if bucket.pop(member, None) is not None)
            self._persist()
            return removed

    async def zscore(self, key: str, member: str) -> Optional[float]:
        with self._lock:
            self._purge_if_expired(key)
            return self._zsets.get(key, {}).get(member)

    async def zrange_by_score(self, key: str, minimum: float, maximum: float) -> List[Tuple[str, float]]:
        with self._lock:
            self._purge_if_expired(key)
            bucket = self._zsets.get(key, {})
            matches = [(member, score) for member, score in bucket.items() if minimum <= score <= maximum]
            return sorted(matches, key=lambda item: (item[1], item[0]))


class StoreAdapter:
    """Retrying facade over a ``RecordStore``."""

    def __init__(self, backend: RecordStore, retries: int = 3, base_delay: float = 1.0) -> None:
        self.backend = backend
        self.retries = max(1, retries)
        self.base_delay = base_delay

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as err:  # any backend failure is retried
                _logger.warning("Store operation failed (attempt %s/%s): %s", attempt + 1, self.retries, err)
                if attempt == self.retries - 1:
                    raise
            await asyncio.sleep((2 ** attempt) * self.base_delay)
            attempt += 1

    async def read(self, operation: Callable[[], Awaitable[T]], fallback: T) -> T:
        try:
            return await self._attempt(operation)
        except Exception:
            _logger.error("All store retry attempts exhausted. Using fallback value.")
            return fallback

    async def write(self, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await self._attempt(operation)
        except Exception as err:
            _logger.error("All store retry attempts exhausted for a write.")
            raise StoreUnavailableError(f"Record store unavailable: {err}") from err

    async def get(self, key: str) -> Optional[str]:
        return await self.read(lambda: self.backend.get(key), None)

    async def exists(self, key: str) -> bool:
        return await self.read(lambda: self.backend.exists(key), False)

    async def ttl(self, key: str) -> Optional[float]:
        return await self.read(lambda: self.backend.ttl(key), None)

    async def hget_all(self, key: str) -> Dict[str, str]:
        return await self.read(lambda: self.backend.hget_all(key), {})

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self.read(lambda: self.backend.hget(key, field), None)

    async def zscore(self, key: str, member: str) -> Optional[float]:
        return await self.read(lambda: self.backend.zscore(key, member), None)

    async def zrange_by_score(self, key: str, minimum: float, maximum: float) -> List[Tuple[str, float]]:
        return await self.read(lambda: self.backend.zrange_by_score(key, minimum, maximum), [])

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        await self.write(lambda: self.backend.set(key, value, ttl_seconds))

    async def delete(self, *keys: str) -> int:
        return await self.write(lambda: self.backend.delete(*keys))

    async def expire(self, key: str, seconds: float) -> bool:
        return await self.write(lambda: self.backend.expire(key, seconds))

    async def hset(self, key: str, mapping: Mapping[str, Any]) -> int:
        return await self.write(lambda: self.backend.hset(key, mapping))

    async def hsetnx(self, key: str, field: str, value: Any) -> bool:
        return await self.write(lambda: self.backend.hsetnx(key, field, value))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self.write(lambda: self.backend.hincrby(key, field, amount))

    async def hdel(self, key: str, *fields: str) -> int:
        return await self.write(lambda: self.backend.hdel(key, *fields))

    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        return await self.write(lambda: self.backend.zadd(key, mapping))

    async def zrem(self, key: str, *members: str) -> int:
        return await self.write(lambda: self.backend.zrem(key, *members))
