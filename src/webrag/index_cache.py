# /webrag/index_cache.py
"""
Process-lifetime cache of built chunk indexes keyed by the normalized URL set.

Builds are single-flight: concurrent requests for the same key share one
in-flight build task and all observe its result or its failure. Completed
indexes live in a bounded LRU; a failed build leaves nothing behind.
"""
from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable

from .chunk_index import ChunkIndex
from .config import INDEX_BUILD_MAX_WORKERS, INDEX_CACHE_MAX_ENTRIES
from .exceptions import IndexBuildError
from .observability import get_logger

logger = get_logger(__name__)

KEY_SEPARATOR = "|"


def normalize_urls(urls: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted({str(url) for url in urls}))


def cache_key(urls: Iterable[str]) -> str:
    """Order-insensitive key for a set of source URLs."""
    return KEY_SEPARATOR.join(normalize_urls(urls))


def _retrieve_task_exception(task: asyncio.Task) -> None:
    # Marks the outcome as observed even when every waiter has already given up.
    if not task.cancelled():
        task.exception()


class IndexCache:
    """Single-flight, LRU-bounded cache of ChunkIndex objects."""

    def __init__(
        self,
        builder: Callable[[tuple[str, ...]], ChunkIndex] = ChunkIndex.build,
        *,
        max_entries: int = INDEX_CACHE_MAX_ENTRIES,
        max_workers: int = INDEX_BUILD_MAX_WORKERS,
    ):
        self._builder = builder
        self._max = max(0, int(max_entries))
        self._entries: OrderedDict[str, ChunkIndex] = OrderedDict()
        self._inflight: dict[str, asyncio.Task] = {}
        # Callers currently awaiting an in-flight build, per key.
        self._waiters: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="index-build")
        self._closed = False

        self._hits = 0
        self._misses = 0
        self._builds_started = 0
        self._build_failures = 0
        self._evictions = 0

    def is_cached(self, urls: Iterable[str]) -> bool:
        """True only when a completed index exists for the URL set."""
        return cache_key(urls) in self._entries

    def is_building(self, urls: Iterable[str]) -> bool:
        return cache_key(urls) in self._inflight

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_build(self, urls: Iterable[str]) -> ChunkIndex:
        """
        Returns the cached index for the URL set, building it at most once.
        Raises IndexBuildError when the shared build fails.
        """
        normalized = normalize_urls(urls)
        key = KEY_SEPARATOR.join(normalized)
        async with self._lock:
            if self._closed:
                raise RuntimeError("index cache is closed")
            index = self._entries.get(key)
            if index is not None:
                self._entries.move_to_end(key)
                self._hits += 1
                logger.info("index_cache_hit", urls=len(normalized))
                return index
            task = self._inflight.get(key)
            if task is None:
                self._misses += 1
                self._builds_started += 1
                task = asyncio.get_running_loop().create_task(
                    self._build_and_store(key, normalized),
                    name=f"index-build:{key}",
                )
                task.add_done_callback(_retrieve_task_exception)
                self._inflight[key] = task
            else:
                logger.info("index_cache_join_inflight", urls=len(normalized))
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            # Shielded so a waiter's cancellation (e.g. its deadline) never cancels the shared build.
            return await asyncio.shield(task)
        finally:
            self._release_waiter(key)

    def _release_waiter(self, key: str) -> None:
        remaining = self._waiters.get(key, 0) - 1
        if remaining > 0:
            self._waiters[key] = remaining
        else:
            self._waiters.pop(key, None)

    def waiters(self, urls: Iterable[str]) -> int:
        """Number of callers still awaiting the in-flight build for the URL set."""
        return self._waiters.get(cache_key(urls), 0)

    async def _build_and_store(self, key: str, urls: tuple[str, ...]) -> ChunkIndex:
        logger.info("index_build_started", urls=len(urls))
        start = time.perf_counter()
        loop = asyncio.get_running_loop()
        try:
            index = await loop.run_in_executor(self._executor, self._builder, urls)
        except IndexBuildError:
            self._build_failures += 1
            logger.error("index_build_failed", urls=len(urls), elapsed_ms=round((time.perf_counter() - start) * 1000.0, 2))
            raise
        except asyncio.CancelledError as exc:
            # Surfaces to every waiter as a build failure rather than as their own cancellation.
            self._build_failures += 1
            logger.warning("index_build_cancelled", urls=len(urls))
            raise IndexBuildError("Document index build was cancelled") from exc
        except Exception as exc:
            self._build_failures += 1
            logger.error("index_build_failed", urls=len(urls), error=str(exc))
            raise IndexBuildError(f"Failed to build document index ({exc})") from exc
        else:
            self._store(key, index)
            logger.info(
                "index_build_finished",
                urls=len(urls),
                chunks=len(index),
                elapsed_ms=round((time.perf_counter() - start) * 1000.0, 2),
            )
            return index
        finally:
            self._inflight.pop(key, None)

    def _store(self, key: str, index: ChunkIndex) -> None:
        self._entries[key] = index
        self._entries.move_to_end(key)
        while self._max and len(self._entries) > self._max:
            evicted_key, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.info("index_cache_evicted", key=evicted_key, size=len(self._entries))

    def cancel_build(self, urls: Iterable[str], *, force: bool = False) -> bool:
        """
        Cancels the in-flight build for a URL set once nobody is waiting on it,
        or unconditionally with `force`. Executor work already started still
        runs to completion.
        """
        key = cache_key(urls)
        task = self._inflight.get(key)
        if task is None or task.done():
            return False
        waiting = self.waiters(urls)
        if waiting and not force:
            logger.info("index_build_cancel_skipped", waiters=waiting)
            return False
        return task.cancel()

    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "max_entries": self._max,
            "inflight": len(self._inflight),
            "waiters": sum(self._waiters.values()),
            "hits": self._hits,
            "misses": self._misses,
            "builds_started": self._builds_started,
            "build_failures": self._build_failures,
            "evictions": self._evictions,
        }

    async def close(self) -> None:
        """Drops all entries, cancels in-flight builds and releases the worker pool."""
        async with self._lock:
            self._closed = True
            tasks = list(self._inflight.values())
            for task in tasks:
                task.cancel()
            self._entries.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._executor.shutdown(wait=False, cancel_futures=True)
