from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from src.services.errors import TransportError

logger = logging.getLogger(__name__)

CacheKey = Tuple[Any, ...]
Fetcher = Callable[[], Awaitable[Any]]
StateCallback = Callable[["QueryState"], None]

_MISSING = object()


@dataclass(frozen=True)
class QueryState:
    status: str = "idle"  # idle | loading | success | error
    data: Any = None
    error: Optional[BaseException] = None
    updated_at: Optional[float] = None
    is_fetching: bool = False

    @property
    def is_error(self) -> bool:
        return self.status == "error"


@dataclass
class _Entry:
    data: Any = _MISSING
    error: Optional[BaseException] = None
    updated_at: Optional[float] = None
    valid: bool = False
    generation: int = 0
    task: Optional[asyncio.Task] = None
    task_generation: int = -1
    fetcher: Optional[Fetcher] = None
    watches: List["QueryWatch"] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return self.data is not _MISSING

    @property
    def fetching(self) -> bool:
        return self.task is not None and not self.task.done() and self.task_generation == self.generation


class QueryWatch:
    """Subscription to one cache key; results stop arriving once closed."""

    def __init__(self, cache: "QueryCache", key: CacheKey, callback: StateCallback) -> None:
        self._cache = cache
        self.key = key
        self._callback = callback
        self.active = True

    def deliver(self, state: QueryState) -> None:
        if self.active:
            self._callback(state)

    def close(self) -> None:
        if not self.active:
            return
        self.active = False
        self._cache._detach(self)


class QueryCache:
    """Keyed async cache with in-flight deduplication and stale-while-revalidate.

    Keys are tuples; invalidation matches on key prefixes. Every write to an
    entry's data or error goes through ``_commit``, which drops results whose
    request generation has been superseded by an invalidation or a clear.
    Generations come from one counter shared by every entry, so a key that is
    dropped and created again never reuses a generation.
    """

    def __init__(
        self,
        stale_after: float = 300.0,
        retries: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stale_after = stale_after
        self._retries = retries
        self._clock = clock
        self._entries: Dict[CacheKey, _Entry] = {}
        self._generations = itertools.count(1)

    async def fetch(self, key: CacheKey, fetcher: Fetcher) -> Any:
        while True:
            entry = self._entries.get(key)
            if entry is not None and entry.valid and entry.has_data:
                entry.fetcher = fetcher
                if self._is_stale(entry) and not entry.fetching:
                    logger.debug("Serving stale entry and revalidating", extra={"cache_key": key})
                    self._ensure_task(key, fetcher)
                return entry.data

            generation, task = self._ensure_task(key, fetcher)
            data = await asyncio.shield(task)
            current = self._entries.get(key)
            if current is not None and current.generation == generation:
                return data
            # Invalidated or cleared while in flight; the result may predate the change.

    def peek(self, key: CacheKey) -> Any:
        entry = self._entries.get(key)
        if entry is not None and entry.valid and entry.has_data:
            return entry.data
        return None

    def state(self, key: CacheKey) -> QueryState:
        entry = self._entries.get(key)
        if entry is None:
            return QueryState()
        return self._snapshot(entry)

    def watch(self, key: CacheKey, fetcher: Fetcher, callback: StateCallback) -> QueryWatch:
        entry = self._entry(key)
        entry.fetcher = fetcher
        handle = QueryWatch(self, key, callback)
        entry.watches.append(handle)
        if entry.valid and entry.has_data:
            handle.deliver(self._snapshot(entry))
            if self._is_stale(entry) and not entry.fetching:
                self._ensure_task(key, fetcher)
        else:
            already_fetching = entry.fetching
            self._ensure_task(key, fetcher)
            if already_fetching:
                handle.deliver(self._snapshot(entry))
        return handle

    def invalidate(self, *prefix: Any) -> int:
        matched = [key for key in self._entries if key[: len(prefix)] == prefix]
        for key in matched:
            entry = self._entries[key]
            entry.valid = False
            entry.generation = next(self._generations)
            entry.task = None
            if not entry.watches:
                del self._entries[key]
            elif entry.fetcher is not None and self._has_running_loop():
                self._ensure_task(key, entry.fetcher)
        if matched:
            logger.info("Invalidated %d cache entries", len(matched), extra={"prefix": prefix})
        return len(matched)

    def clear(self) -> None:
        for entry in self._entries.values():
            entry.generation = next(self._generations)
        self._entries.clear()
        logger.info("Cleared query cache")

    def keys(self) -> List[CacheKey]:
        return list(self._entries)

    def prefetch(self, key: CacheKey, fetcher: Fetcher) -> None:
        """Start loading ``key`` in the background unless it is servable or already loading."""
        entry = self._entries.get(key)
        if entry is not None and (entry.fetching or (entry.valid and entry.has_data)):
            return
        if self._has_running_loop():
            self._ensure_task(key, fetcher)

    def _entry(self, key: CacheKey) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(generation=next(self._generations))
            self._entries[key] = entry
        return entry

    def _ensure_task(self, key: CacheKey, fetcher: Fetcher) -> tuple[int, asyncio.Task]:
        entry = self._entry(key)
        entry.fetcher = fetcher
        if entry.fetching:
            return entry.generation, entry.task  # type: ignore[return-value]
        generation = entry.generation
        task = asyncio.get_running_loop().create_task(self._run(key, fetcher, generation))
        task.add_done_callback(self._consume_result)
        entry.task = task
        entry.task_generation = generation
        self._notify(key)
        return generation, task

    async def _run(self, key: CacheKey, fetcher: Fetcher, generation: int) -> Any:
        attempt = 0
        while True:
            try:
                data = await fetcher()
                break
            except TransportError as exc:
                if attempt >= self._retries:
                    self._commit(key, generation, error=exc)
                    raise
                attempt += 1
                logger.info("Retrying query after transport error (%s)", exc, extra={"cache_key": key})
            except Exception as exc:
                self._commit(key, generation, error=exc)
                raise
        self._commit(key, generation, data=data)
        return data

    def _commit(self, key: CacheKey, generation: int, *, data: Any = _MISSING, error: Optional[BaseException] = None) -> None:
        entry = self._entries.get(key)
        if entry is None or entry.generation != generation:
            logger.debug("Discarding superseded query result", extra={"cache_key": key})
            return
        if error is not None:
            entry.error = error
        else:
            entry.data = data
            entry.error = None
            entry.valid = True
            entry.updated_at = self._clock()
        self._notify(key)

    def _notify(self, key: CacheKey) -> None:
        entry = self._entries.get(key)
        if entry is None or not entry.watches:
            return
        snapshot = self._snapshot(entry)
        for handle in list(entry.watches):
            handle.deliver(snapshot)

    def _snapshot(self, entry: _Entry) -> QueryState:
        servable = entry.valid and entry.has_data
        if entry.error is not None and not entry.fetching:
            status = "error"
        elif servable:
            status = "success"
        elif entry.fetching:
            status = "loading"
        else:
            status = "idle"
        return QueryState(
            status=status,
            data=entry.data if servable else None,
            error=entry.error,
            updated_at=entry.updated_at,
            is_fetching=entry.fetching,
        )

    def _detach(self, handle: QueryWatch) -> None:
        entry = self._entries.get(handle.key)
        if entry is not None and handle in entry.watches:
            entry.watches.remove(handle)
            if not entry.watches and not entry.valid and not entry.fetching:
                del self._entries[handle.key]

    def _is_stale(self, entry: _Entry) -> bool:
        return entry.updated_at is None or self._clock() - entry.updated_at >= self._stale_after

    @staticmethod
    def _has_running_loop() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    @staticmethod
    def _consume_result(task: asyncio.Task) -> None:
        if not task.cancelled():
            task.exception()
