from __future__ import annotations

from typing import Callable, Set

from src.services.cache import QueryState, QueryWatch
from src.services.entitlements import EntitlementCache


class BookingStatusIndex:
    """Answers "has the client booked this session?" from the cached bookings.

    Reads go straight to the cache on every call. A read that finds the
    bookings partition missing or invalidated starts reloading it, and
    ``is_loading`` stays true until the reload lands.
    """

    def __init__(self, entitlements: EntitlementCache) -> None:
        self._entitlements = entitlements

    @property
    def is_loading(self) -> bool:
        if not self._entitlements.has_scope:
            return False
        state = self._entitlements.active_bookings_state()
        return state.status in ("idle", "loading")

    def booked_session_ids(self) -> Set[str]:
        if not self._entitlements.has_scope:
            return set()
        bookings = self._entitlements.peek_active_bookings()
        if bookings is None:
            self._entitlements.prefetch_active_bookings()
            return set()
        return {booking.session_id for booking in bookings if booking.is_active}

    def is_booked(self, session_id: str) -> bool:
        return session_id in self.booked_session_ids()

    async def ensure_loaded(self) -> Set[str]:
        bookings = await self._entitlements.query_active_bookings()
        return {booking.session_id for booking in bookings if booking.is_active}

    def watch(self, callback: Callable[[Set[str]], None]) -> QueryWatch:
        def deliver(state: QueryState) -> None:
            if state.status == "success":
                callback({booking.session_id for booking in state.data if booking.is_active})

        return self._entitlements.watch_active_bookings(deliver)
