from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from src.app.config import get_settings
from src.app.context import BookingContext, build_booking_context
from src.services.auth import SessionAuthStore
from src.services.booking_status import BookingStatusIndex
from src.services.eligibility import EligibilityEngine
from src.services.entitlements import EntitlementCache
from src.services.errors import ValidationError
from src.services.schedule_state import NavigationStateStore
from src.services.tenant import TenantResolver


@lru_cache(maxsize=1)
def get_booking_context() -> BookingContext:
    return build_booking_context(get_settings())


async def close_booking_context() -> None:
    if get_booking_context.cache_info().currsize:
        await get_booking_context().aclose()
        get_booking_context.cache_clear()


async def get_started_context(context: BookingContext = Depends(get_booking_context)) -> BookingContext:
    await context.start()
    return context


def get_auth_store(context: BookingContext = Depends(get_started_context)) -> SessionAuthStore:
    return context.auth


def get_tenant_resolver(context: BookingContext = Depends(get_started_context)) -> TenantResolver:
    return context.tenants


def get_entitlements(context: BookingContext = Depends(get_started_context)) -> EntitlementCache:
    return context.entitlements


def get_eligibility_engine(context: BookingContext = Depends(get_started_context)) -> EligibilityEngine:
    return context.eligibility


def get_booking_status(context: BookingContext = Depends(get_started_context)) -> BookingStatusIndex:
    return context.booking_status


def get_schedule_state(context: BookingContext = Depends(get_started_context)) -> NavigationStateStore:
    return context.schedule


def get_active_tenant_id(tenants: TenantResolver = Depends(get_tenant_resolver)) -> str:
    tenant_id = tenants.active_tenant_id
    if tenant_id is None:
        raise ValidationError("No active tenant selected")
    return tenant_id
