from __future__ import annotations

import asyncio

import pytest

from src.adapters.preference_store import ACTIVE_TENANT_KEY, CREDENTIAL_KEY, IDENTITY_KEY, MemoryPreferenceStore
from src.services.errors import ValidationError
from src.services.tenant import TenantSource, resolve_tenant_id
from tests.fakes import make_context, signed_in_context


@pytest.mark.parametrize(
    "memberships, navigation, persisted, expected, source, discard",
    [
        (["a", "b"], "z", "b", "z", TenantSource.NAVIGATION, False),
        (["a", "b"], None, "b", "b", TenantSource.PERSISTED, False),
        (["a", "b"], None, "x", "a", TenantSource.FIRST_MEMBERSHIP, True),
        (["a", "b"], None, None, "a", TenantSource.FIRST_MEMBERSHIP, False),
        ([], None, "x", None, TenantSource.NONE, True),
        (None, None, "x", None, TenantSource.NONE, False),
    ],
)
def test_resolve_tenant_id_precedence(memberships, navigation, persisted, expected, source, discard):
    resolution = resolve_tenant_id(memberships, navigation, persisted)

    assert resolution.tenant_id == expected
    assert resolution.source is source
    assert resolution.discard_persisted is discard


def test_login_selects_first_membership(server):
    async def scenario():
        context = await signed_in_context(server)
        try:
            return context.tenants.active_tenant_id, context.tenants.source
        finally:
            await context.aclose()

    tenant_id, source = asyncio.run(scenario())

    assert tenant_id == "brand-a"
    assert source is TenantSource.FIRST_MEMBERSHIP


def test_stale_persisted_tenant_is_discarded_on_restore(server):
    preferences = MemoryPreferenceStore(
        {
            CREDENTIAL_KEY: server.token,
            IDENTITY_KEY: server.identity,
            ACTIVE_TENANT_KEY: "brand-gone",
        }
    )

    async def scenario():
        context = make_context(server, preferences=preferences)
        await context.start()
        try:
            return context.tenants.active_tenant_id
        finally:
            await context.aclose()

    assert asyncio.run(scenario()) == "brand-a"
    assert ACTIVE_TENANT_KEY not in preferences.values


def test_navigation_address_wins_over_stored_choice(server):
    async def scenario():
        context = await signed_in_context(server)
        try:
            context.tenants.set_active_tenant_id("brand-b")
            context.tenants.update_navigation("brand-a")
            navigated = (context.tenants.active_tenant_id, context.tenants.source)
            context.tenants.update_navigation(None)
            return navigated, context.tenants.active_tenant_id, context.preferences.get(ACTIVE_TENANT_KEY)
        finally:
            await context.aclose()

    navigated, after_leaving, stored = asyncio.run(scenario())

    assert navigated == ("brand-a", TenantSource.NAVIGATION)
    assert after_leaving == "brand-b"
    assert stored == "brand-b"


def test_selecting_a_non_member_tenant_is_rejected(server):
    async def scenario():
        context = await signed_in_context(server)
        try:
            with pytest.raises(ValidationError):
                context.tenants.set_active_tenant_id("brand-elsewhere")
            return context.tenants.active_tenant_id
        finally:
            await context.aclose()

    assert asyncio.run(scenario()) == "brand-a"


def test_tenant_listeners_fire_on_change_only(server):
    changes = []

    async def scenario():
        context = await signed_in_context(server)
        context.tenants.subscribe(lambda previous, current: changes.append((previous, current)))
        try:
            context.tenants.set_active_tenant_id("brand-a")
            context.tenants.set_active_tenant_id("brand-b")
        finally:
            await context.aclose()

    asyncio.run(scenario())
    assert changes == [("brand-a", "brand-b")]


def test_refresh_loads_tenant_metadata_and_tolerates_missing_tenant(server):
    async def scenario():
        context = await signed_in_context(server)
        try:
            loaded = await context.tenants.refresh()
            del server.tenants["brand-b"]
            context.tenants.set_active_tenant_id("brand-b")
            missing = await context.tenants.refresh()
            return loaded, missing, context.tenants.active_tenant_id
        finally:
            await context.aclose()

    loaded, missing, active = asyncio.run(scenario())

    assert loaded.name == "Studio A"
    assert missing is None
    assert active == "brand-b"
