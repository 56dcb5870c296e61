from __future__ import annotations

import asyncio

import httpx
import pytest

from src.services.entitlements import DateRange, ResourceType
from src.services.errors import AuthError, TransportError, ValidationError
from tests.fakes import TODAY, make_context, signed_in_context


def test_keys_are_scoped_by_tenant_and_identity(server):
    async def scenario():
        context = await signed_in_context(server)
        try:
            key_a = context.entitlements.key(ResourceType.PACKAGES, {"history": False})
            context.tenants.set_active_tenant_id("brand-b")
            key_b = context.entitlements.key(ResourceType.PACKAGES, {"history": False, "unused": None})
            return key_a, key_b
        finally:
            await context.aclose()

    key_a, key_b = asyncio.run(scenario())

    assert key_a == ("packages", "brand-a", "client-1", (("history", False),))
    assert key_b == ("packages", "brand-b", "client-1", (("history", False),))


def test_queries_require_a_signed_in_client(server):
    async def scenario():
        context = make_context(server)
        await context.start()
        try:
            with pytest.raises(AuthError):
                await context.entitlements.query_active_packages()
        finally:
            await context.aclose()

    asyncio.run(scenario())
    assert server.calls == []


def test_partitions_follow_the_active_tenant(server):
    server.add_package("pkg-a", brand="brand-a")
    server.add_package("pkg-b", brand="brand-b")

    async def scenario():
        context = await signed_in_context(server)
        try:
            first = await context.entitlements.query_active_packages()
            context.tenants.set_active_tenant_id("brand-b")
            second = await context.entitlements.query_active_packages()
            return [item.id for item in first], [item.id for item in second]
        finally:
            await context.aclose()

    assert asyncio.run(scenario()) == (["pkg-a"], ["pkg-b"])


def test_repeated_failures_surface_as_transport_error_not_empty_list(server):
    server.add_package("pkg-a")
    server.fail("GET", "/api/package/client", httpx.ConnectError("reset"), httpx.ConnectError("reset"))

    async def scenario():
        context = await signed_in_context(server)
        try:
            with pytest.raises(TransportError):
                await context.entitlements.query_active_packages()
            state = context.entitlements.state(ResourceType.PACKAGES, {"history": False})
            recovered = await context.entitlements.query_active_packages()
            return state, recovered
        finally:
            await context.aclose()

    state, recovered = asyncio.run(scenario())

    assert state.is_error
    assert state.data is None
    assert server.count("GET", "/api/package/client") == 3
    assert [item.id for item in recovered] == ["pkg-a"]


def test_single_transport_failure_is_absorbed(server):
    server.add_package("pkg-a")
    server.fail("GET", "/api/package/client", httpx.ConnectError("reset"))

    async def scenario():
        context = await signed_in_context(server)
        try:
            return await context.entitlements.query_active_packages()
        finally:
            await context.aclose()

    packages = asyncio.run(scenario())
    assert [item.id for item in packages] == ["pkg-a"]


def test_session_queries_pass_date_range_and_class_filter(server):
    server.add_session("session-1")

    async def scenario():
        context = await signed_in_context(server)
        try:
            return await context.entitlements.query_available_sessions(
                DateRange(TODAY, TODAY), class_id="class-yoga"
            )
        finally:
            await context.aclose()

    sessions = asyncio.run(scenario())

    assert [item.id for item in sessions] == ["session-1"]
    _, _, params, _ = next(call for call in server.calls if call[1] == "/session/availability")
    assert params == {
        "brandId": "brand-a",
        "startDate": TODAY.isoformat(),
        "endDate": TODAY.isoformat(),
        "classId": "class-yoga",
    }


def test_history_queries_use_their_own_partition(server):
    server.add_session("session-1")
    server.add_booking("session-1", status="cancelled")

    async def scenario():
        context = await signed_in_context(server)
        try:
            active = await context.entitlements.query_active_bookings()
            history = await context.entitlements.query_booking_history()
            return active, history
        finally:
            await context.aclose()

    active, history = asyncio.run(scenario())

    assert active == []
    assert [booking.status.value for booking in history] == ["cancelled"]
    assert server.count("GET", "/booking") == 2


def test_malformed_payload_is_reported_as_validation_error(server):
    server.packages["brand-a"].append({"_id": "pkg-bad", "initialCredits": 1, "remainingCredits": 5, "status": "active"})

    async def scenario():
        context = await signed_in_context(server)
        try:
            await context.entitlements.query_active_packages()
        finally:
            await context.aclose()

    with pytest.raises(ValidationError):
        asyncio.run(scenario())
