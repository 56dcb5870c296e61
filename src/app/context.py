from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Optional

import httpx

from src.adapters.api_client import RemoteApiClient
from src.adapters.preference_store import JsonFilePreferenceStore, MemoryPreferenceStore, PreferenceStore
from src.app.config import Settings
from src.services.auth import SessionAuthStore
from src.services.booking_status import BookingStatusIndex
from src.services.cache import QueryCache
from src.services.eligibility import Clock, EligibilityEngine, utc_now
from src.services.entitlements import EntitlementCache
from src.services.purchases import PurchaseService
from src.services.schedule_state import NavigationStateStore
from src.services.tenant import TenantResolver

logger = logging.getLogger(__name__)


@dataclass
class BookingContext:
    """Every long-lived component of one client, wired together."""

    settings: Settings
    api: RemoteApiClient
    preferences: PreferenceStore
    auth: SessionAuthStore
    tenants: TenantResolver
    cache: QueryCache
    entitlements: EntitlementCache
    booking_status: BookingStatusIndex
    eligibility: EligibilityEngine
    purchases: PurchaseService
    schedule: NavigationStateStore
    started: bool = field(default=False)

    async def start(self) -> None:
        """Restore a persisted session once, then settle the active tenant."""
        if self.started:
            return
        self.started = True
        try:
            await self.auth.bootstrap()
            self.tenants.resolve()
        except Exception:
            self.started = False
            raise

    async def aclose(self) -> None:
        self.cache.clear()
        await self.api.aclose()


def build_booking_context(
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    preferences: Optional[PreferenceStore] = None,
    clock: Clock = utc_now,
    today: Callable[[], date] = date.today,
) -> BookingContext:
    if preferences is None:
        if settings.preferences_path:
            preferences = JsonFilePreferenceStore(settings.preferences_path)
        else:
            preferences = MemoryPreferenceStore()

    api = RemoteApiClient(settings.api_base_url, timeout=settings.request_timeout_seconds, transport=transport)
    auth = SessionAuthStore(api, preferences)
    tenants = TenantResolver(auth, api, preferences)
    cache = QueryCache(stale_after=settings.stale_after_seconds, retries=settings.transport_retries)
    entitlements = EntitlementCache(api, auth, tenants, cache)
    logger.debug("Built booking context", extra={"api_base_url": settings.api_base_url})
    return BookingContext(
        settings=settings,
        api=api,
        preferences=preferences,
        auth=auth,
        tenants=tenants,
        cache=cache,
        entitlements=entitlements,
        booking_status=BookingStatusIndex(entitlements),
        eligibility=EligibilityEngine(api, auth, tenants, entitlements, clock=clock),
        purchases=PurchaseService(api, tenants, entitlements),
        schedule=NavigationStateStore(tenants, auth, today=today),
    )
