from __future__ import annotations

import asyncio

import pytest

from src.services.cache import QueryCache
from src.services.errors import TransportError, ValidationError

KEY = ("packages", "brand-a", "client-1", ())


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_concurrent_reads_share_one_request():
    calls = []

    async def scenario():
        cache = QueryCache()
        gate = asyncio.Event()

        async def fetcher():
            calls.append(1)
            await gate.wait()
            return ["pkg-1"]

        readers = [asyncio.create_task(cache.fetch(KEY, fetcher)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        return await asyncio.gather(*readers)

    results = asyncio.run(scenario())

    assert results == [["pkg-1"]] * 3
    assert len(calls) == 1


def test_stale_entry_is_served_while_revalidating():
    clock = ManualClock()
    versions = iter(["v1", "v2"])

    async def scenario():
        cache = QueryCache(stale_after=300, clock=clock)

        async def fetcher():
            return next(versions)

        first = await cache.fetch(KEY, fetcher)
        clock.now = 301
        served = await cache.fetch(KEY, fetcher)
        await asyncio.sleep(0.01)
        return first, served, cache.peek(KEY)

    first, served, refreshed = asyncio.run(scenario())

    assert first == "v1"
    assert served == "v1"
    assert refreshed == "v2"


def test_fresh_entry_is_served_without_refetch():
    calls = []

    async def scenario():
        cache = QueryCache(stale_after=300, clock=ManualClock())

        async def fetcher():
            calls.append(1)
            return "cached"

        await cache.fetch(KEY, fetcher)
        return await cache.fetch(KEY, fetcher)

    assert asyncio.run(scenario()) == "cached"
    assert len(calls) == 1


def test_transport_error_is_retried_once():
    attempts = []

    async def scenario():
        cache = QueryCache(retries=1)

        async def fetcher():
            attempts.append(1)
            if len(attempts) == 1:
                raise TransportError("timeout")
            return "recovered"

        return await cache.fetch(KEY, fetcher)

    assert asyncio.run(scenario()) == "recovered"
    assert len(attempts) == 2


def test_persistent_transport_error_surfaces_as_error_state():
    attempts = []

    async def scenario():
        cache = QueryCache(retries=1)

        async def fetcher():
            attempts.append(1)
            raise TransportError("down")

        with pytest.raises(TransportError):
            await cache.fetch(KEY, fetcher)
        return cache.state(KEY)

    state = asyncio.run(scenario())

    assert len(attempts) == 2
    assert state.is_error
    assert isinstance(state.error, TransportError)
    assert state.data is None


def test_domain_errors_are_not_retried():
    attempts = []

    async def scenario():
        cache = QueryCache(retries=3)

        async def fetcher():
            attempts.append(1)
            raise ValidationError("bad payload")

        with pytest.raises(ValidationError):
            await cache.fetch(KEY, fetcher)

    asyncio.run(scenario())
    assert len(attempts) == 1


def test_response_started_before_invalidation_never_overwrites_newer_data():
    async def scenario():
        cache = QueryCache()
        gate = asyncio.Event()
        calls = []

        async def fetcher():
            calls.append(1)
            if len(calls) == 1:
                await gate.wait()
                return "before-mutation"
            return "after-mutation"

        early_reader = asyncio.create_task(cache.fetch(KEY, fetcher))
        await asyncio.sleep(0)
        cache.invalidate("packages", "brand-a")
        late = await cache.fetch(KEY, fetcher)
        gate.set()
        early = await early_reader
        return early, late, cache.peek(KEY), len(calls)

    early, late, current, calls = asyncio.run(scenario())

    assert late == "after-mutation"
    assert early == "after-mutation"
    assert current == "after-mutation"
    assert calls == 2


def test_invalidate_matches_prefix_only():
    other = ("packages", "brand-b", "client-1", ())
    bookings = ("bookings", "brand-a", "client-1", ())

    async def scenario():
        cache = QueryCache()

        async def fetcher():
            return "data"

        for key in (KEY, other, bookings):
            await cache.fetch(key, fetcher)
        invalidated = cache.invalidate("packages", "brand-a")
        return invalidated, cache.peek(KEY), cache.peek(other), cache.peek(bookings)

    invalidated, packages_a, packages_b, bookings_a = asyncio.run(scenario())

    assert invalidated == 1
    assert packages_a is None
    assert packages_b == "data"
    assert bookings_a == "data"


def test_watchers_receive_updates_until_closed():
    seen = []
    versions = iter(["v1", "v2", "v3"])

    async def scenario():
        cache = QueryCache()

        async def fetcher():
            return next(versions)

        watch = cache.watch(KEY, fetcher, seen.append)
        await asyncio.sleep(0.01)
        cache.invalidate("packages")
        await asyncio.sleep(0.01)
        watch.close()
        cache.invalidate("packages")
        await cache.fetch(KEY, fetcher)

    asyncio.run(scenario())

    delivered = [state.data for state in seen if state.status == "success"]
    assert delivered == ["v1", "v2"]
    assert seen[0].status == "loading"


def test_clear_drops_every_entry():
    async def scenario():
        cache = QueryCache()

        async def fetcher():
            return "data"

        await cache.fetch(KEY, fetcher)
        cache.clear()
        return cache.keys(), cache.peek(KEY)

    keys, value = asyncio.run(scenario())

    assert keys == []
    assert value is None


def test_response_started_before_clear_never_overwrites_newer_data():
    async def scenario():
        cache = QueryCache()
        gate = asyncio.Event()

        async def previous_session():
            await gate.wait()
            return "previous-session"

        async def current_session():
            return "current-session"

        early_reader = asyncio.create_task(cache.fetch(KEY, previous_session))
        await asyncio.sleep(0)
        cache.clear()
        late = await cache.fetch(KEY, current_session)
        gate.set()
        early = await early_reader
        return early, late, cache.peek(KEY)

    early, late, current = asyncio.run(scenario())

    assert late == "current-session"
    assert current == "current-session"
    assert early == "current-session"


def test_invalidated_entries_without_watchers_are_dropped():
    other = ("packages", "brand-a", "client-1", (("history", True),))

    async def scenario():
        cache = QueryCache()

        async def fetcher():
            return "data"

        await cache.fetch(KEY, fetcher)
        await cache.fetch(other, fetcher)
        watch = cache.watch(other, fetcher, lambda state: None)
        cache.invalidate("packages", "brand-a")
        kept = cache.keys()
        await asyncio.sleep(0.01)
        watch.close()
        cache.invalidate("packages", "brand-a")
        return kept, cache.keys()

    kept, remaining = asyncio.run(scenario())

    assert kept == [other]
    assert remaining == []
