import asyncio
import threading
import time
import unittest

from webrag.exceptions import IndexBuildError
from webrag.index_cache import IndexCache, cache_key


class _FakeIndex:
    def __init__(self, urls):
        self.urls = urls

    def __len__(self):
        return 1


class _CountingBuilder:
    def __init__(self, delay_s=0.0, error=None):
        self.delay_s = delay_s
        self.error = error
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, urls):
        with self._lock:
            self.calls.append(urls)
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return _FakeIndex(urls)


class TestCacheKey(unittest.TestCase):
    def test_key_is_order_insensitive_and_deduplicated(self):
        self.assertEqual(cache_key(["b", "a"]), "a|b")
        self.assertEqual(cache_key(["a", "b", "a"]), cache_key(["b", "a"]))


class TestIndexCache(unittest.IsolatedAsyncioTestCase):
    async def asyncTearDown(self):
        if hasattr(self, "cache"):
            await self.cache.close()

    async def test_concurrent_requests_share_a_single_build(self):
        builder = _CountingBuilder(delay_s=0.05)
        self.cache = IndexCache(builder, max_entries=4)

        results = await asyncio.gather(*(self.cache.get_or_build(["https://a", "https://b"]) for _ in range(10)))

        self.assertEqual(len(builder.calls), 1)
        self.assertTrue(all(result is results[0] for result in results))
        self.assertEqual(self.cache.stats()["builds_started"], 1)

    async def test_url_order_hits_same_entry(self):
        builder = _CountingBuilder()
        self.cache = IndexCache(builder)

        first = await self.cache.get_or_build(["https://a", "https://b"])
        self.assertTrue(self.cache.is_cached(["https://b", "https://a"]))
        second = await self.cache.get_or_build(["https://b", "https://a"])

        self.assertIs(first, second)
        self.assertEqual(len(builder.calls), 1)
        self.assertEqual(builder.calls[0], ("https://a", "https://b"))
        self.assertEqual(self.cache.stats()["hits"], 1)

    async def test_concurrent_failure_is_shared_and_not_cached(self):
        builder = _CountingBuilder(delay_s=0.05, error=IndexBuildError("fetch failed", url="https://a"))
        self.cache = IndexCache(builder)

        results = await asyncio.gather(
            *(self.cache.get_or_build(["https://a"]) for _ in range(5)),
            return_exceptions=True,
        )

        self.assertEqual(len(builder.calls), 1)
        self.assertTrue(all(isinstance(result, IndexBuildError) for result in results))
        self.assertFalse(self.cache.is_cached(["https://a"]))
        self.assertFalse(self.cache.is_building(["https://a"]))

        builder.error = None
        index = await self.cache.get_or_build(["https://a"])
        self.assertIsInstance(index, _FakeIndex)
        self.assertEqual(len(builder.calls), 2)

    async def test_unexpected_builder_errors_become_build_errors(self):
        self.cache = IndexCache(_CountingBuilder(error=ValueError("bad html")))
        with self.assertRaises(IndexBuildError):
            await self.cache.get_or_build(["https://a"])

    async def test_waiter_cancellation_does_not_cancel_shared_build(self):
        builder = _CountingBuilder(delay_s=0.1)
        self.cache = IndexCache(builder)

        impatient = asyncio.create_task(self.cache.get_or_build(["https://a"]))
        await asyncio.sleep(0.02)
        impatient.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await impatient

        index = await self.cache.get_or_build(["https://a"])
        self.assertIsInstance(index, _FakeIndex)
        self.assertEqual(len(builder.calls), 1)

    async def test_lru_evicts_least_recently_used_key(self):
        builder = _CountingBuilder()
        self.cache = IndexCache(builder, max_entries=2)

        await self.cache.get_or_build(["https://a"])
        await self.cache.get_or_build(["https://b"])
        await self.cache.get_or_build(["https://a"])  # refresh recency of a
        await self.cache.get_or_build(["https://c"])

        self.assertTrue(self.cache.is_cached(["https://a"]))
        self.assertFalse(self.cache.is_cached(["https://b"]))
        self.assertTrue(self.cache.is_cached(["https://c"]))
        self.assertEqual(self.cache.stats()["evictions"], 1)

    async def test_zero_max_entries_is_unbounded(self):
        self.cache = IndexCache(_CountingBuilder(), max_entries=0)
        for i in range(5):
            await self.cache.get_or_build([f"https://{i}"])
        self.assertEqual(len(self.cache), 5)

    async def test_cancelled_build_reports_build_error_to_waiters(self):
        builder = _CountingBuilder(delay_s=0.1)
        self.cache = IndexCache(builder)

        waiter = asyncio.create_task(self.cache.get_or_build(["https://a"]))
        await asyncio.sleep(0.02)
        self.assertTrue(self.cache.cancel_build(["https://a"], force=True))

        with self.assertRaises(IndexBuildError):
            await waiter
        self.assertFalse(self.cache.is_cached(["https://a"]))
        # Let the worker thread finish before the loop closes.
        await asyncio.sleep(0.12)


    async def test_cancel_build_waits_until_no_caller_is_waiting(self):
        builder = _CountingBuilder(delay_s=0.1)
        self.cache = IndexCache(builder)

        impatient = asyncio.create_task(self.cache.get_or_build(["https://a"]))
        patient = asyncio.create_task(self.cache.get_or_build(["https://a"]))
        await asyncio.sleep(0.02)
        self.assertEqual(self.cache.waiters(["https://a"]), 2)

        impatient.cancel()
        await asyncio.wait({impatient})
        self.assertEqual(self.cache.waiters(["https://a"]), 1)
        self.assertFalse(self.cache.cancel_build(["https://a"]))

        index = await patient
        self.assertIsInstance(index, _FakeIndex)
        self.assertEqual(self.cache.waiters(["https://a"]), 0)
        self.assertEqual(len(builder.calls), 1)

    async def test_abandoned_build_can_be_cancelled(self):
        self.cache = IndexCache(_CountingBuilder(delay_s=0.1))

        waiter = asyncio.create_task(self.cache.get_or_build(["https://a"]))
        await asyncio.sleep(0.02)
        waiter.cancel()
        await asyncio.wait({waiter})

        self.assertTrue(self.cache.cancel_build(["https://a"]))
        await asyncio.sleep(0.01)
        self.assertFalse(self.cache.is_building(["https://a"]))
        self.assertFalse(self.cache.is_cached(["https://a"]))
        # Let the worker thread finish before the loop closes.
        await asyncio.sleep(0.12)


if __name__ == "__main__":
    unittest.main()
