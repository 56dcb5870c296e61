from __future__ import annotations

import asyncio
from datetime import date

from src.services.auth import SessionEvent
from src.services.schedule_state import NavigationStateStore
from tests.fakes import TODAY, signed_in_context


class StubTenants:
    def __init__(self) -> None:
        self.listeners = []

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def switch(self, previous, current):
        for listener in self.listeners:
            listener(previous, current)


class StubAuth:
    def __init__(self) -> None:
        self.listeners = []

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def emit(self, event):
        for listener in self.listeners:
            listener(event)


def test_default_cursor_is_today_without_selection():
    store = NavigationStateStore(today=lambda: TODAY)

    cursor = store.cursor("brand-a")

    assert cursor.current_anchor_date == TODAY
    assert cursor.selected_date is None


def test_cursor_survives_between_views_of_the_same_tenant():
    store = NavigationStateStore(today=lambda: TODAY)

    store.set_anchor_date("brand-a", date(2026, 10, 26))
    store.set_selected_date("brand-a", date(2026, 10, 28))

    cursor = store.cursor("brand-a")
    assert cursor.current_anchor_date == date(2026, 10, 26)
    assert cursor.selected_date == date(2026, 10, 28)


def test_switching_tenant_resets_the_cursor():
    tenants = StubTenants()
    store = NavigationStateStore(tenants=tenants, today=lambda: TODAY)
    store.set_selected_date("brand-a", date(2026, 10, 22))

    tenants.switch("brand-a", "brand-b")

    assert store.cursor("brand-b").selected_date is None
    assert store.cursor("brand-b").current_anchor_date == TODAY
    assert store.cursor("brand-a").selected_date is None


def test_login_and_logout_reset_the_cursor():
    auth = StubAuth()
    store = NavigationStateStore(auth=auth, today=lambda: TODAY)

    store.set_selected_date("brand-a", date(2026, 10, 22))
    auth.emit(SessionEvent.LOGOUT)
    assert store.cursor("brand-a").selected_date is None

    store.set_selected_date("brand-a", date(2026, 10, 23))
    auth.emit(SessionEvent.IDENTITY_CHANGED)
    assert store.cursor("brand-a").selected_date == date(2026, 10, 23)

    auth.emit(SessionEvent.LOGIN)
    assert store.cursor("brand-a").selected_date is None


def test_wired_store_resets_when_active_tenant_changes(server):
    async def scenario():
        context = await signed_in_context(server)
        try:
            context.schedule.set_selected_date("brand-a", date(2026, 10, 22))
            context.tenants.set_active_tenant_id("brand-b")
            return context.schedule.cursor("brand-b"), context.schedule.cursor("brand-a")
        finally:
            await context.aclose()

    cursor_b, cursor_a = asyncio.run(scenario())

    assert cursor_b.selected_date is None
    assert cursor_a.selected_date is None
