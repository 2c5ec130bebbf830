import importlib.util
import time
import unittest
from unittest import mock

from freezegun import freeze_time

from attendance_engine.cache import CacheManager, MemoryCacheBackend, RedisCacheBackend, cache, cache_key
from attendance_engine.domain.jobs.job_lock import acquire_job_lock, release_job_lock
from attendance_engine.metrics import LogMetricsExporter, MetricsExporter, flush_cache_metrics, set_metrics_exporter
from attendance_engine.services.missed_session_service import list_missed_sessions, run_daily_detection
from attendance_engine.services.read_cache import MISSED_SESSIONS_PREFIX, invalidate_missed_session_views, missed_sessions_key
from reconciliation_seed import MONDAY, SqliteTestCase, clock


class CacheTests(unittest.TestCase):
    def setUp(self):
        invalidate_missed_session_views()

    def test_cache_hit_miss(self):
        key = missed_sessions_key('list:probe')
        self.assertIsNone(cache.get_cached(key))
        cache.set_cached(key, {'ok': True}, ttl=5)
        self.assertEqual(cache.get_cached(key), {'ok': True})

    def test_invalidation_clears_every_missed_session_view(self):
        cache.set_cached(missed_sessions_key('list:a'), {'a': 1}, ttl=5)
        cache.set_cached(missed_sessions_key('stats:b'), {'b': 2}, ttl=5)
        cache.set_cached(cache_key('other', 'c'), {'c': 3}, ttl=5)
        invalidate_missed_session_views()
        self.assertIsNone(cache.get_cached(missed_sessions_key('list:a')))
        self.assertIsNone(cache.get_cached(missed_sessions_key('stats:b')))
        self.assertEqual(cache.get_cached(cache_key('other', 'c')), {'c': 3})
        cache.invalidate(cache_key('other', 'c'))

    def test_memory_entries_expire(self):
        with freeze_time('2026-03-10 04:30:00') as frozen:
            backend = MemoryCacheBackend()
            backend.set('k', 'v', ttl=10)
            frozen.tick(5)
            self.assertEqual(backend.get('k'), 'v')
            frozen.tick(6)
            self.assertIsNone(backend.get('k'))

    def test_set_if_absent_only_claims_once(self):
        backend = MemoryCacheBackend()
        self.assertTrue(backend.set_if_absent('job', 'a', ttl=30))
        self.assertFalse(backend.set_if_absent('job', 'b', ttl=30))
        self.assertEqual(backend.get('job'), 'a')
        backend.delete('job')
        self.assertTrue(backend.set_if_absent('job', 'c', ttl=30))

    def test_job_lock_is_exclusive_and_owner_released(self):
        token = acquire_job_lock('cache_probe', ttl_seconds=30)
        self.assertIsNotNone(token)
        self.assertIsNone(acquire_job_lock('cache_probe', ttl_seconds=30))
        release_job_lock('cache_probe', 'someone-else')
        self.assertIsNone(acquire_job_lock('cache_probe', ttl_seconds=30))
        release_job_lock('cache_probe', token)
        again = acquire_job_lock('cache_probe', ttl_seconds=30)
        self.assertIsNotNone(again)
        release_job_lock('cache_probe', again)


class CapturingExporter(MetricsExporter):
    def __init__(self):
        self.minutes = []

    def export_cache_minute(self, *, minute_start, counts):
        self.minutes.append(counts)


class CacheMetricsTests(unittest.TestCase):
    def setUp(self):
        flush_cache_metrics()
        self.exporter = CapturingExporter()
        set_metrics_exporter(self.exporter)
        self.addCleanup(set_metrics_exporter, LogMetricsExporter())

    def test_hits_and_misses_are_exported_on_flush(self):
        key = missed_sessions_key('stats:metrics-probe')
        cache.get_cached(key)
        cache.set_cached(key, {'ok': True}, ttl=5)
        cache.get_cached(key)
        cache.invalidate(key)
        flush_cache_metrics()

        totals = {}
        for counts in self.exporter.minutes:
            for name, value in counts.items():
                totals[name] = totals.get(name, 0) + value
        self.assertEqual(totals, {'cache_miss': 1, 'cache_hit': 1, 'cache_invalidate': 1})


class MissedSessionViewCacheTests(SqliteTestCase):
    db_name = 'test_cache_views.db'

    def test_detection_refreshes_cached_listing(self):
        empty = list_missed_sessions(self.db, time_provider=clock())
        self.assertEqual(empty['summary']['total'], 0)

        run_daily_detection(self.db, target_date=MONDAY, time_provider=clock())
        refreshed = list_missed_sessions(self.db, time_provider=clock())
        self.assertEqual(refreshed['summary']['total'], 5)


class FakeRedisClient:
    def __init__(self):
        self._store = {}

    def setex(self, key, ttl, value):
        self._store[key] = (time.time() + ttl, value)

    def set(self, key, value, nx=False, ex=None):
        if nx and self.get(key) is not None:
            return None
        self._store[key] = (time.time() + (ex or 3600), value)
        return True

    def get(self, key):
        item = self._store.get(key)
        if not item:
            return None
        expires_at, value = item
        if time.time() >= expires_at:
            self._store.pop(key, None)
            return None
        return value

    def delete(self, *keys):
        for key in keys:
            self._store.pop(key, None)

    def scan(self, cursor=0, match='*', count=100):
        prefix = match[:-1] if match.endswith('*') else match
        return 0, [key for key in self._store.keys() if key.startswith(prefix)]


@unittest.skipUnless(importlib.util.find_spec('redis'), 'redis extra not installed')
class RedisBackendTests(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch('redis.Redis.from_url', return_value=FakeRedisClient())
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_redis_backend_roundtrip(self):
        manager = CacheManager(backend=RedisCacheBackend('redis://localhost:6379/0'))
        manager.set_cached(missed_sessions_key('stats:2026-03-10'), {'total_pending': 2}, ttl=5)
        self.assertEqual(manager.get_cached(missed_sessions_key('stats:2026-03-10')), {'total_pending': 2})
        manager.invalidate_prefix(MISSED_SESSIONS_PREFIX)
        self.assertIsNone(manager.get_cached(missed_sessions_key('stats:2026-03-10')))

    def test_redis_set_if_absent(self):
        backend = RedisCacheBackend('redis://localhost:6379/0')
        self.assertTrue(backend.set_if_absent('job_lock:probe', 'a', ttl=5))
        self.assertFalse(backend.set_if_absent('job_lock:probe', 'b', ttl=5))


if __name__ == '__main__':
    unittest.main()
