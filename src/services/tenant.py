from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

from pydantic import ValidationError as SchemaError

from src.adapters.api_client import RemoteApiClient
from src.adapters.preference_store import ACTIVE_TENANT_KEY, PreferenceStore
from src.schemas.entitlements import Tenant
from src.services.auth import SessionAuthStore, SessionEvent
from src.services.errors import AuthError, BookingPlatformError, ValidationError

logger = logging.getLogger(__name__)

TenantListener = Callable[[Optional[str], Optional[str]], None]


class TenantSource(str, Enum):
    NAVIGATION = "navigation"
    PERSISTED = "persisted"
    FIRST_MEMBERSHIP = "first_membership"
    NONE = "none"


@dataclass(frozen=True)
class TenantResolution:
    tenant_id: Optional[str]
    source: TenantSource
    discard_persisted: bool = False


def resolve_tenant_id(
    membership_ids: Optional[Sequence[str]],
    navigation_id: Optional[str] = None,
    persisted_id: Optional[str] = None,
) -> TenantResolution:
    """Pick the active tenant.

    The navigation address wins unconditionally. A persisted choice is only
    honoured while it is still one of the identity's memberships, otherwise it
    is flagged for removal. ``membership_ids`` is ``None`` while no identity
    is known, in which case a persisted value is left untouched.
    """
    if navigation_id:
        return TenantResolution(navigation_id, TenantSource.NAVIGATION)
    if membership_ids is None:
        return TenantResolution(None, TenantSource.NONE)

    discard = False
    if persisted_id:
        if persisted_id in membership_ids:
            return TenantResolution(persisted_id, TenantSource.PERSISTED)
        discard = True
    if membership_ids:
        return TenantResolution(membership_ids[0], TenantSource.FIRST_MEMBERSHIP, discard_persisted=discard)
    return TenantResolution(None, TenantSource.NONE, discard_persisted=discard)


class TenantResolver:
    """Keeps the active tenant in sync with identity, navigation and preference."""

    def __init__(self, auth: SessionAuthStore, api: RemoteApiClient, preferences: PreferenceStore) -> None:
        self._auth = auth
        self._api = api
        self._preferences = preferences
        self._navigation_tenant_id: Optional[str] = None
        self._active_tenant_id: Optional[str] = None
        self._active_tenant: Optional[Tenant] = None
        self._source = TenantSource.NONE
        self._listeners: List[TenantListener] = []
        auth.subscribe(self._on_session_event)

    @property
    def active_tenant_id(self) -> Optional[str]:
        return self._active_tenant_id

    @property
    def active_tenant(self) -> Optional[Tenant]:
        return self._active_tenant

    @property
    def source(self) -> TenantSource:
        return self._source

    @property
    def is_loading(self) -> bool:
        return self._auth.is_loading

    def subscribe(self, listener: TenantListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def resolve(self) -> Optional[str]:
        identity = self._auth.identity if self._auth.is_authenticated else None
        memberships = identity.membership_ids if identity is not None else None
        persisted = self._preferences.get(ACTIVE_TENANT_KEY)
        resolution = resolve_tenant_id(memberships, self._navigation_tenant_id, persisted)
        if resolution.discard_persisted:
            logger.info("Discarding stored tenant that is no longer a membership", extra={"tenant_id": persisted})
            self._preferences.delete(ACTIVE_TENANT_KEY)
        self._source = resolution.source
        self._apply(resolution.tenant_id)
        return self._active_tenant_id

    def update_navigation(self, tenant_id: Optional[str]) -> Optional[str]:
        self._navigation_tenant_id = tenant_id or None
        return self.resolve()

    def set_active_tenant_id(self, tenant_id: str) -> Optional[str]:
        identity = self._auth.identity
        if identity is not None and tenant_id not in identity.membership_ids:
            raise ValidationError(f"Tenant {tenant_id} is not one of the client's memberships")
        self._preferences.set(ACTIVE_TENANT_KEY, tenant_id)
        # Selecting a tenant moves the client to that tenant's address.
        self._navigation_tenant_id = None
        return self.resolve()

    async def refresh(self) -> Optional[Tenant]:
        tenant_id = self.resolve()
        if tenant_id is None:
            self._active_tenant = None
            return None
        try:
            data = await self._api.get_tenant(tenant_id)
            tenant: Optional[Tenant] = Tenant.model_validate(data)
        except AuthError:
            raise
        except (BookingPlatformError, SchemaError) as exc:
            logger.warning("Tenant metadata unavailable: %s", exc, extra={"tenant_id": tenant_id})
            tenant = None
        if tenant_id == self._active_tenant_id:
            self._active_tenant = tenant
        return self._active_tenant

    def _apply(self, tenant_id: Optional[str]) -> None:
        previous = self._active_tenant_id
        if tenant_id == previous:
            return
        self._active_tenant_id = tenant_id
        self._active_tenant = None
        logger.info("Active tenant changed", extra={"previous": previous, "tenant_id": tenant_id, "source": self._source.value})
        for listener in list(self._listeners):
            listener(previous, tenant_id)

    def _on_session_event(self, event: SessionEvent) -> None:
        self.resolve()
