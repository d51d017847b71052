import unittest

from response_cache import ResponseCache


class _Clock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ResponseCacheTests(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock()
        self.cache = ResponseCache(default_ttl_seconds=600, clock=self.clock)

    def test_get_returns_none_for_unknown_key(self):
        self.assertIsNone(self.cache.get("forecast:paris"))

    def test_set_then_get_returns_value_within_ttl(self):
        payload = {"location": "Paris", "forecast": {"daily": {"time": ["2024-06-01"]}}}
        self.cache.set("forecast:paris", payload, ttl_seconds=60)
        self.clock.advance(59)
        self.assertEqual(self.cache.get("forecast:paris"), payload)

    def test_entry_expires_exactly_at_ttl(self):
        self.cache.set("aq:0.0:0.0", {"sample": None}, ttl_seconds=300)
        self.clock.advance(300)
        self.assertIsNone(self.cache.get("aq:0.0:0.0"))
        self.assertEqual(len(self.cache), 0)

    def test_default_ttl_applies_when_not_given(self):
        self.cache.set("k", 1)
        self.clock.advance(599)
        self.assertEqual(self.cache.get("k"), 1)
        self.clock.advance(1)
        self.assertIsNone(self.cache.get("k"))

    def test_set_overwrites_value_and_expiry(self):
        self.cache.set("k", "old", ttl_seconds=10)
        self.clock.advance(8)
        self.cache.set("k", "new", ttl_seconds=10)
        self.clock.advance(8)
        self.assertEqual(self.cache.get("k"), "new")

    def test_non_positive_ttl_rejected(self):
        with self.assertRaises(ValueError):
            self.cache.set("k", 1, ttl_seconds=0)

    def test_sweep_evicts_only_expired_entries(self):
        self.cache.set("short", 1, ttl_seconds=5)
        self.cache.set("long", 2, ttl_seconds=500)
        self.clock.advance(10)
        self.assertEqual(self.cache.sweep(), 1)
        self.assertEqual(len(self.cache), 1)
        self.assertEqual(self.cache.get("long"), 2)

    def test_stats_count_hits_and_misses(self):
        self.cache.set("k", 1)
        self.cache.get("k")
        self.cache.get("k")
        self.cache.get("missing")
        self.assertEqual(self.cache.stats(), {"entries": 1, "hits": 2, "misses": 1})

    def test_delete_and_clear(self):
        self.cache.set("a", 1)
        self.cache.set("b", 2)
        self.assertTrue(self.cache.delete("a"))
        self.assertFalse(self.cache.delete("a"))
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)

    def test_background_sweep_start_is_idempotent(self):
        cache = ResponseCache(check_period_seconds=3600)
        cache.start_background_sweep()
        first = cache._sweeper_thread
        cache.start_background_sweep()
        self.assertIs(cache._sweeper_thread, first)
        cache.stop_background_sweep()
        self.assertIsNone(cache._sweeper_thread)


if __name__ == "__main__":
    unittest.main()
