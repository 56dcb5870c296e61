from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from src.adapters.api_client import RemoteApiClient
from src.schemas.entitlements import (
    BookableSession,
    BookingRecord,
    ClassDefinition,
    CreditPackageInstance,
    PackageDefinition,
    SubscriptionInstance,
    SubscriptionPlan,
)
from src.services.auth import SessionAuthStore, SessionEvent
from src.services.cache import CacheKey, QueryCache, QueryState, QueryWatch, StateCallback
from src.services.errors import AuthError, ValidationError
from src.services.parsing import parse_record, parse_records
from src.services.tenant import TenantResolver

logger = logging.getLogger(__name__)


class ResourceType(str, Enum):
    PACKAGES = "packages"
    SUBSCRIPTIONS = "subscriptions"
    SESSIONS = "sessions"
    BOOKINGS = "bookings"
    CLASSES = "classes"
    PACKAGE_CATALOG = "package_catalog"
    SUBSCRIPTION_PLANS = "subscription_plans"


ENTITLEMENT_RESOURCES = (
    ResourceType.PACKAGES,
    ResourceType.SUBSCRIPTIONS,
    ResourceType.BOOKINGS,
    ResourceType.SESSIONS,
)


@dataclass(frozen=True)
class DateRange:
    start: Optional[date] = None
    end: Optional[date] = None

    def as_params(self) -> Dict[str, Optional[str]]:
        return {
            "start_date": self.start.isoformat() if self.start else None,
            "end_date": self.end.isoformat() if self.end else None,
        }


class EntitlementCache:
    """Tenant- and identity-scoped view of server data.

    Every key is ``(resource_type, tenant_id, identity_id, filters)`` so a
    mutation can invalidate by ``(resource_type, tenant_id)`` prefix.
    """

    def __init__(
        self,
        api: RemoteApiClient,
        auth: SessionAuthStore,
        tenants: TenantResolver,
        cache: QueryCache,
    ) -> None:
        self._api = api
        self._auth = auth
        self._tenants = tenants
        self._cache = cache
        auth.subscribe(self._on_session_event)

    @property
    def has_scope(self) -> bool:
        return self._auth.is_authenticated and self._tenants.active_tenant_id is not None

    def key(
        self,
        resource: ResourceType,
        filters: Optional[Mapping[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> CacheKey:
        identity = self._auth.identity
        if identity is None or not self._auth.is_authenticated:
            raise AuthError("No signed-in client")
        tenant = tenant_id or self._tenants.active_tenant_id
        if tenant is None:
            raise ValidationError("No active tenant selected")
        normalized = tuple(sorted((name, value) for name, value in (filters or {}).items() if value is not None))
        return (resource.value, tenant, identity.id, normalized)

    async def query_active_packages(self) -> List[CreditPackageInstance]:
        return await self._query(ResourceType.PACKAGES, {"history": False}, self._load_packages(False))

    async def query_package_history(self) -> List[CreditPackageInstance]:
        return await self._query(ResourceType.PACKAGES, {"history": True}, self._load_packages(True))

    async def query_active_subscriptions(self) -> List[SubscriptionInstance]:
        return await self._query(ResourceType.SUBSCRIPTIONS, {"history": False}, self._load_subscriptions(False))

    async def query_subscription_history(self) -> List[SubscriptionInstance]:
        return await self._query(ResourceType.SUBSCRIPTIONS, {"history": True}, self._load_subscriptions(True))

    async def query_available_sessions(
        self,
        date_range: Optional[DateRange] = None,
        class_id: Optional[str] = None,
    ) -> List[BookableSession]:
        params = dict((date_range or DateRange()).as_params())
        params["class_id"] = class_id

        async def load(tenant_id: str) -> List[BookableSession]:
            data = await self._api.list_available_sessions(
                tenant_id, start_date=params["start_date"], end_date=params["end_date"], class_id=class_id
            )
            return parse_records(BookableSession, data, container_key="sessions")

        return await self._query(ResourceType.SESSIONS, {"view": "available", **params}, load)

    async def query_session(self, session_id: str) -> BookableSession:
        async def load(tenant_id: str) -> BookableSession:
            return parse_record(BookableSession, await self._api.get_session(session_id))

        return await self._query(ResourceType.SESSIONS, {"view": "detail", "session_id": session_id}, load)

    async def query_active_bookings(self) -> List[BookingRecord]:
        return await self._query(ResourceType.BOOKINGS, {"history": False}, self._load_bookings(False))

    async def query_booking_history(self) -> List[BookingRecord]:
        return await self._query(ResourceType.BOOKINGS, {"history": True}, self._load_bookings(True))

    async def query_classes(self) -> List[ClassDefinition]:
        async def load(tenant_id: str) -> List[ClassDefinition]:
            classes = parse_records(ClassDefinition, await self._api.list_classes(tenant_id))
            return [item for item in classes if item.status in (None, "active")]

        return await self._query(ResourceType.CLASSES, None, load)

    async def query_package_catalog(self) -> List[PackageDefinition]:
        async def load(tenant_id: str) -> List[PackageDefinition]:
            return parse_records(PackageDefinition, await self._api.list_package_catalog(tenant_id))

        return await self._query(ResourceType.PACKAGE_CATALOG, None, load)

    async def query_subscription_plans(self) -> List[SubscriptionPlan]:
        async def load(tenant_id: str) -> List[SubscriptionPlan]:
            return parse_records(SubscriptionPlan, await self._api.list_subscription_plans(tenant_id))

        return await self._query(ResourceType.SUBSCRIPTION_PLANS, None, load)

    def peek_active_bookings(self) -> Optional[List[BookingRecord]]:
        return self._cache.peek(self.key(ResourceType.BOOKINGS, {"history": False}))

    def active_bookings_state(self) -> QueryState:
        return self._cache.state(self.key(ResourceType.BOOKINGS, {"history": False}))

    def watch_active_bookings(self, callback: StateCallback) -> QueryWatch:
        key = self.key(ResourceType.BOOKINGS, {"history": False})
        fetch = self._load_bookings(False)
        return self._cache.watch(key, lambda: fetch(key[1]), callback)

    def prefetch_active_bookings(self) -> None:
        key = self.key(ResourceType.BOOKINGS, {"history": False})
        fetch = self._load_bookings(False)
        self._cache.prefetch(key, lambda: fetch(key[1]))

    def state(self, resource: ResourceType, filters: Optional[Mapping[str, Any]] = None) -> QueryState:
        return self._cache.state(self.key(resource, filters))

    def invalidate(self, *resources: ResourceType, tenant_id: Optional[str] = None) -> int:
        tenant = tenant_id or self._tenants.active_tenant_id
        if tenant is None:
            return 0
        return sum(self._cache.invalidate(resource.value, tenant) for resource in resources)

    async def refetch_entitlements(self, tenant_id: Optional[str] = None) -> None:
        """Drop and reload everything booking eligibility depends on.

        Partitions of ``tenant_id`` (default: the active tenant) are always
        invalidated; they are only reloaded while that tenant is still active.
        """
        tenant = tenant_id or self._tenants.active_tenant_id
        logger.info("Refetching entitlements", extra={"tenant_id": tenant})
        self.invalidate(*ENTITLEMENT_RESOURCES, tenant_id=tenant)
        if tenant is None or tenant != self._tenants.active_tenant_id:
            return
        await self.query_active_packages()
        await self.query_active_subscriptions()
        await self.query_active_bookings()

    async def _query(
        self,
        resource: ResourceType,
        filters: Optional[Mapping[str, Any]],
        loader: Callable[[str], Awaitable[Any]],
    ) -> Any:
        key = self.key(resource, filters)
        tenant_id = key[1]
        return await self._cache.fetch(key, lambda: loader(tenant_id))

    def _load_packages(self, history: bool) -> Callable[[str], Awaitable[List[CreditPackageInstance]]]:
        async def load(tenant_id: str) -> List[CreditPackageInstance]:
            return parse_records(CreditPackageInstance, await self._api.list_packages(tenant_id, history=history))

        return load

    def _load_subscriptions(self, history: bool) -> Callable[[str], Awaitable[List[SubscriptionInstance]]]:
        async def load(tenant_id: str) -> List[SubscriptionInstance]:
            return parse_records(SubscriptionInstance, await self._api.list_subscriptions(tenant_id, history=history))

        return load

    def _load_bookings(self, history: bool) -> Callable[[str], Awaitable[List[BookingRecord]]]:
        async def load(tenant_id: str) -> List[BookingRecord]:
            return parse_records(BookingRecord, await self._api.list_bookings(tenant_id, history=history))

        return load

    def _on_session_event(self, event: SessionEvent) -> None:
        if event.ends_session or event is SessionEvent.LOGIN:
            self._cache.clear()
