"""
Lookup Cache

TTL-keyed store in front of the registry connectors, keyed by
(source family, normalized key).

- Expiry is checked at read time; an expired entry reads as a miss and is
  overwritten by the next put
- A hit bumps the entry's hit counter without touching its payload
- Reads and writes are atomic per key

Two stores share the contract: MemoryLookupCache (process-local, default)
and DatabaseLookupCache (lookup_cache table, shared between workers).
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from database.repositories import CacheRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
TTL = Union[int, float, timedelta]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _ttl_delta(ttl: TTL) -> timedelta:
    delta = ttl if isinstance(ttl, timedelta) else timedelta(seconds=float(ttl))
    if delta <= timedelta(0):
        raise ValueError(f"TTL must be positive, got {ttl!r}")
    return delta


@dataclass(frozen=True)
class CachedRecord:
    """A source's native payload plus expiry and access bookkeeping"""
    source_family: str
    key: str
    payload: Any
    expires_at: datetime
    created_at: datetime
    hit_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= _as_utc(self.expires_at)


class LookupCache(ABC):
    """get/put contract shared by every cache store"""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    def get(self, source_family: str, key: str) -> Optional[CachedRecord]:
        """Return the live record for a key, or None on miss/expiry."""

    @abstractmethod
    def put(self, source_family: str, key: str, payload: Any, ttl: TTL) -> CachedRecord:
        """Store a payload, replacing any previous record for the key."""


class MemoryLookupCache(LookupCache):
    """Thread-safe in-process cache."""

    def __init__(self, clock: Clock = utcnow):
        super().__init__(clock)
        self._entries: Dict[Tuple[str, str], CachedRecord] = {}
        self._lock = threading.Lock()

    def get(self, source_family: str, key: str) -> Optional[CachedRecord]:
        now = self.now()
        with self._lock:
            record = self._entries.get((source_family, key))
            if record is None or record.is_expired(now):
                return None
            record = replace(record, hit_count=record.hit_count + 1)
            self._entries[(source_family, key)] = record
        return replace(record, payload=copy.deepcopy(record.payload))

    def put(self, source_family: str, key: str, payload: Any, ttl: TTL) -> CachedRecord:
        now = self.now()
        record = CachedRecord(
            source_family=source_family,
            key=key,
            payload=copy.deepcopy(payload),
            expires_at=now + _ttl_delta(ttl),
            created_at=now,
        )
        with self._lock:
            self._entries[(source_family, key)] = record
        return record

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DatabaseLookupCache(LookupCache):
    """Cache stored in the lookup_cache table, one transaction per call.

    Database errors degrade to a miss (get) or a skipped write (put) so a
    cache outage never fails a screening.
    """

    def __init__(self, db_provider, clock: Clock = utcnow):
        super().__init__(clock)
        self._db = db_provider

    def get(self, source_family: str, key: str) -> Optional[CachedRecord]:
        now = self.now()
        try:
            with self._db.session_scope() as session:
                repo = CacheRepository(session)
                entry = repo.get_entry(source_family, key)
                if entry is None or now >= _as_utc(entry.expires_at):
                    return None
                hits = repo.record_hit(source_family, key, now)
                return CachedRecord(
                    source_family=source_family,
                    key=key,
                    payload=copy.deepcopy(entry.payload),
                    expires_at=_as_utc(entry.expires_at),
                    created_at=_as_utc(entry.created_at),
                    hit_count=hits,
                )
        except SQLAlchemyError as e:
            logger.warning("Cache read failed for %s/%s: %s", source_family, key, e)
            return None

    def put(self, source_family: str, key: str, payload: Any, ttl: TTL) -> CachedRecord:
        now = self.now()
        record = CachedRecord(
            source_family=source_family,
            key=key,
            payload=copy.deepcopy(payload),
            expires_at=now + _ttl_delta(ttl),
            created_at=now,
        )
        try:
            with self._db.session_scope() as session:
                CacheRepository(session).upsert(
                    source_family, key, record.payload, record.expires_at, now
                )
        except SQLAlchemyError as e:
            logger.warning("Cache write failed for %s/%s: %s", source_family, key, e)
        return record


def create_cache(backend: str, db_provider=None, clock: Clock = utcnow) -> LookupCache:
    """Build the cache store named by `cache.backend`."""
    if backend == "database":
        if db_provider is None:
            raise ValueError("database cache backend needs a database provider")
        return DatabaseLookupCache(db_provider, clock=clock)
    if backend == "memory":
        return MemoryLookupCache(clock=clock)
    raise ValueError(f"Unknown cache backend: {backend}")
