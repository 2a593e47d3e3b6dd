"""
Tests for the lookup cache stores (memory and database backed).
"""

import threading
from collections import defaultdict
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from database.repositories import CacheRepository
from lookup_cache import DatabaseLookupCache, MemoryLookupCache, create_cache


@pytest.fixture(params=["memory", "database"])
def cache(request, clock, db_provider):
    """Each contract test runs against both stores."""
    if request.param == "memory":
        return MemoryLookupCache(clock=clock)
    return DatabaseLookupCache(db_provider, clock=clock)


class TestCacheContract:
    """get/put behaviour shared by every store."""

    def test_miss_on_empty(self, cache):
        assert cache.get("company_registry", "br:id:1") is None

    def test_put_then_get(self, cache):
        cache.put("company_registry", "k", {"records": [1, 2]}, ttl=60)
        record = cache.get("company_registry", "k")
        assert record is not None
        assert record.payload == {"records": [1, 2]}
        assert record.hit_count == 1

    def test_entry_live_before_ttl(self, cache, clock):
        cache.put("company_registry", "k", {"v": 1}, ttl=3600)
        clock.advance(seconds=3599)
        assert cache.get("company_registry", "k") is not None

    def test_entry_absent_at_ttl(self, cache, clock):
        """now >= write_time + ttl reads as a miss."""
        cache.put("company_registry", "k", {"v": 1}, ttl=3600)
        clock.advance(seconds=3600)
        assert cache.get("company_registry", "k") is None

    def test_families_are_separate(self, cache):
        cache.put("company_registry", "k", {"v": 1}, ttl=60)
        assert cache.get("government_sanctions", "k") is None

    def test_hits_counted_without_touching_payload(self, cache):
        cache.put("sanctions_aggregator", "k", {"v": 1}, ttl=60)
        cache.get("sanctions_aggregator", "k")
        cache.get("sanctions_aggregator", "k")
        record = cache.get("sanctions_aggregator", "k")
        assert record.hit_count == 3
        assert record.payload == {"v": 1}

    def test_put_replaces_and_resets_hits(self, cache):
        cache.put("company_registry", "k", {"v": 1}, ttl=60)
        cache.get("company_registry", "k")
        cache.put("company_registry", "k", {"v": 2}, ttl=60)
        record = cache.get("company_registry", "k")
        assert record.payload == {"v": 2}
        assert record.hit_count == 1

    def test_expired_entry_overwritten(self, cache, clock):
        cache.put("company_registry", "k", {"v": 1}, ttl=10)
        clock.advance(seconds=20)
        cache.put("company_registry", "k", {"v": 2}, ttl=10)
        assert cache.get("company_registry", "k").payload == {"v": 2}

    def test_timedelta_ttl(self, cache, clock):
        cache.put("company_registry", "k", {"v": 1}, ttl=timedelta(hours=1))
        clock.advance(minutes=59)
        assert cache.get("company_registry", "k") is not None

    def test_returned_payload_is_a_copy(self, cache):
        cache.put("company_registry", "k", {"records": [1]}, ttl=60)
        cache.get("company_registry", "k").payload["records"].append(2)
        assert cache.get("company_registry", "k").payload == {"records": [1]}

    def test_non_positive_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.put("company_registry", "k", {"v": 1}, ttl=0)


class TestMemoryCacheConcurrency:
    """Concurrent get/put on one key never exposes a partial record."""

    WRITERS = 2
    READERS = 4
    PUTS = 200
    GETS = 500

    @staticmethod
    def payload(writer, seq):
        return {
            'writer': writer,
            'seq': seq,
            'records': [{'id': f"{writer}:{seq}", 'n': n} for n in range(20)],
        }

    def test_same_key_under_contention(self):
        cache = MemoryLookupCache()
        cache.put("sanctions_aggregator", "k", self.payload(self.WRITERS, 0), ttl=3600)
        barrier = threading.Barrier(self.WRITERS + self.READERS)
        seen = [[] for _ in range(self.READERS)]

        def write(writer):
            barrier.wait()
            for seq in range(self.PUTS):
                cache.put("sanctions_aggregator", "k", self.payload(writer, seq), ttl=3600)

        def read(reader):
            barrier.wait()
            for _ in range(self.GETS):
                seen[reader].append(cache.get("sanctions_aggregator", "k"))

        threads = [threading.Thread(target=write, args=(w,)) for w in range(self.WRITERS)]
        threads += [threading.Thread(target=read, args=(r,)) for r in range(self.READERS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        assert not any(thread.is_alive() for thread in threads)

        hits_by_write = defaultdict(list)
        for records in seen:
            assert len(records) == self.GETS
            last_hits = {}
            for record in records:
                assert record is not None
                written = (record.payload['writer'], record.payload['seq'])
                assert record.payload == self.payload(*written)
                assert record.hit_count > last_hits.get(written, 0)
                last_hits[written] = record.hit_count
                hits_by_write[written].append(record.hit_count)

        # every get on one stored record saw its own increment
        for hits in hits_by_write.values():
            assert sorted(hits) == list(range(1, len(hits) + 1))


class TestDatabaseCache:
    """Database store specifics."""

    def test_row_written(self, db_provider, clock):
        cache = DatabaseLookupCache(db_provider, clock=clock)
        cache.put("government_sanctions", "br_ceis:id:1", {"status": "ok"}, ttl=60)
        with db_provider.session_scope() as session:
            entry = CacheRepository(session).get_entry("government_sanctions", "br_ceis:id:1")
            assert entry is not None
            assert entry.payload == {"status": "ok"}
            assert entry.hit_count == 0

    def test_read_error_degrades_to_miss(self, clock):
        provider = MagicMock()
        provider.session_scope.side_effect = OperationalError("SELECT", {}, Exception("down"))
        cache = DatabaseLookupCache(provider, clock=clock)
        assert cache.get("company_registry", "k") is None

    def test_write_error_is_not_raised(self, clock):
        provider = MagicMock()
        provider.session_scope.side_effect = OperationalError("INSERT", {}, Exception("down"))
        cache = DatabaseLookupCache(provider, clock=clock)
        record = cache.put("company_registry", "k", {"v": 1}, ttl=60)
        assert record.payload == {"v": 1}

    def test_purge_expired(self, db_provider, clock):
        cache = DatabaseLookupCache(db_provider, clock=clock)
        cache.put("company_registry", "old", {"v": 1}, ttl=10)
        cache.put("company_registry", "new", {"v": 2}, ttl=1000)
        clock.advance(seconds=100)
        with db_provider.session_scope() as session:
            assert CacheRepository(session).purge_expired(clock()) == 1


class TestCreateCache:
    """Backend selection from configuration."""

    def test_memory(self):
        assert isinstance(create_cache("memory"), MemoryLookupCache)

    def test_database(self, db_provider):
        assert isinstance(create_cache("database", db_provider=db_provider), DatabaseLookupCache)

    def test_database_needs_provider(self):
        with pytest.raises(ValueError):
            create_cache("database")

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_cache("redis")
