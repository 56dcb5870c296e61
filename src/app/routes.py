from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from src.app.config import Settings, get_settings
from src.app.dependencies import (
    get_active_tenant_id,
    get_auth_store,
    get_booking_status,
    get_eligibility_engine,
    get_entitlements,
    get_schedule_state,
    get_tenant_resolver,
)
from src.schemas.api import (
    BookingRequest,
    CancellationResponse,
    EligibilityResponse,
    InvitationAcceptRequest,
    InvitationCheckRequest,
    InvitationTokenRequest,
    LoginRequest,
    MembershipResponse,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    ScheduleStateResponse,
    ScheduleStateUpdate,
    SessionResponse,
    SessionView,
    TenantResponse,
    TenantSelection,
)
from src.schemas.entitlements import BookableSession, BookingRecord, Invitation
from src.services.auth import SessionAuthStore
from src.services.booking_status import BookingStatusIndex
from src.services.eligibility import EligibilityEngine
from src.services.entitlements import DateRange, EntitlementCache
from src.services.errors import AuthError
from src.services.schedule_state import NavigationCursor, NavigationStateStore
from src.services.tenant import TenantResolver

router = APIRouter()


def _session_response(auth: SessionAuthStore, tenants: TenantResolver) -> SessionResponse:
    return SessionResponse(
        authenticated=auth.is_authenticated,
        identity=auth.identity if auth.is_authenticated else None,
        active_tenant_id=tenants.active_tenant_id,
    )


def _tenant_response(auth: SessionAuthStore, tenants: TenantResolver) -> TenantResponse:
    identity = auth.identity
    return TenantResponse(
        active_tenant_id=tenants.active_tenant_id,
        source=tenants.source.value,
        tenant=tenants.active_tenant,
        memberships=identity.tenants if identity is not None else [],
    )


def _session_view(session: BookableSession, is_booked: bool) -> SessionView:
    return SessionView(
        id=session.id,
        class_id=session.class_id,
        class_name=session.class_ref.name if session.class_ref else None,
        start=session.start,
        duration_minutes=session.duration_minutes,
        capacity=session.capacity,
        available_spots=session.available_spots,
        status=session.status,
        is_booked=is_booked,
    )


def _schedule_response(tenant_id: str, cursor: NavigationCursor) -> ScheduleStateResponse:
    return ScheduleStateResponse(
        tenant_id=tenant_id,
        current_anchor_date=cursor.current_anchor_date,
        selected_date=cursor.selected_date,
    )


@router.get("/health", status_code=status.HTTP_200_OK)
def health(settings: Settings = Depends(get_settings)) -> dict:
    return {"app": settings.app_name, "status": "ok"}


@router.post("/api/v1/auth/login", response_model=SessionResponse)
async def login(
    payload: LoginRequest,
    auth: SessionAuthStore = Depends(get_auth_store),
    tenants: TenantResolver = Depends(get_tenant_resolver),
) -> SessionResponse:
    await auth.login(payload.email, payload.password, payload.tenant_id)
    if payload.tenant_id and auth.identity is not None and payload.tenant_id in auth.identity.membership_ids:
        tenants.set_active_tenant_id(payload.tenant_id)
    await tenants.refresh()
    return _session_response(auth, tenants)


@router.post("/api/v1/auth/logout", response_model=SessionResponse)
async def logout(
    auth: SessionAuthStore = Depends(get_auth_store),
    tenants: TenantResolver = Depends(get_tenant_resolver),
) -> SessionResponse:
    auth.logout()
    return _session_response(auth, tenants)


@router.get("/api/v1/auth/me", response_model=SessionResponse)
def me(
    auth: SessionAuthStore = Depends(get_auth_store),
    tenants: TenantResolver = Depends(get_tenant_resolver),
) -> SessionResponse:
    if not auth.is_authenticated:
        raise AuthError("Not signed in")
    return _session_response(auth, tenants)


@router.put("/api/v1/auth/profile", response_model=SessionResponse)
async def update_profile(
    payload: ProfileUpdateRequest,
    auth: SessionAuthStore = Depends(get_auth_store),
    tenants: TenantResolver = Depends(get_tenant_resolver),
) -> SessionResponse:
    await auth.update_profile(payload.changes())
    return _session_response(auth, tenants)


@router.post("/api/v1/auth/password")
async def change_password(
    payload: PasswordChangeRequest,
    auth: SessionAuthStore = Depends(get_auth_store),
) -> dict:
    await auth.change_password(payload.current_password, payload.new_password, payload.confirm_password)
    return {"status": "ok"}


@router.post("/api/v1/invitations/verify", response_model=Invitation)
async def verify_invitation(
    payload: InvitationTokenRequest,
    auth: SessionAuthStore = Depends(get_auth_store),
) -> Invitation:
    return await auth.verify_invitation(payload.token)


@router.post("/api/v1/invitations/check", response_model=List[Invitation])
async def check_invitations(
    payload: InvitationCheckRequest,
    auth: SessionAuthStore = Depends(get_auth_store),
) -> List[Invitation]:
    return await auth.check_invitations(payload.email)


@router.post("/api/v1/invitations/accept", response_model=SessionResponse)
async def accept_invitation(
    payload: InvitationAcceptRequest,
    auth: SessionAuthStore = Depends(get_auth_store),
    tenants: TenantResolver = Depends(get_tenant_resolver),
) -> SessionResponse:
    await auth.accept_invitation(payload.token, payload.profile())
    await tenants.refresh()
    return _session_response(auth, tenants)


@router.get("/api/v1/tenant", response_model=TenantResponse)
async def get_tenant(
    auth: SessionAuthStore = Depends(get_auth_store),
    tenants: TenantResolver = Depends(get_tenant_resolver),
) -> TenantResponse:
    if tenants.active_tenant is None:
        await tenants.refresh()
    return _tenant_response(auth, tenants)


@router.put("/api/v1/tenant", response_model=TenantResponse)
async def select_tenant(
    payload: TenantSelection,
    auth: SessionAuthStore = Depends(get_auth_store),
    tenants: TenantResolver = Depends(get_tenant_resolver),
) -> TenantResponse:
    if not auth.is_authenticated:
        raise AuthError("Not signed in")
    tenants.set_active_tenant_id(payload.tenant_id)
    await tenants.refresh()
    return _tenant_response(auth, tenants)


@router.get("/api/v1/sessions", response_model=List[SessionView])
async def list_sessions(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    class_id: Optional[str] = Query(default=None),
    tenant: Optional[str] = Query(default=None, description="Tenant addressed by the current view"),
    tenants: TenantResolver = Depends(get_tenant_resolver),
    entitlements: EntitlementCache = Depends(get_entitlements),
    booking_status: BookingStatusIndex = Depends(get_booking_status),
) -> List[SessionView]:
    if tenant is not None:
        tenants.update_navigation(tenant)
    sessions = await entitlements.query_available_sessions(DateRange(start_date, end_date), class_id=class_id)
    booked = await booking_status.ensure_loaded()
    return [_session_view(session, session.id in booked) for session in sessions]


@router.get("/api/v1/sessions/{session_id}/eligibility", response_model=EligibilityResponse)
async def session_eligibility(
    session_id: str,
    engine: EligibilityEngine = Depends(get_eligibility_engine),
) -> EligibilityResponse:
    eligibility = await engine.evaluate(session_id)
    return EligibilityResponse(
        session_id=session_id,
        methods=list(eligibility.methods),
        already_booked=eligibility.already_booked,
        default_package_id=eligibility.default_package_id,
        default_subscription_id=eligibility.default_subscription_id,
        package_ids=[package.id for package in eligibility.packages],
        subscription_ids=[subscription.id for subscription in eligibility.subscriptions],
    )


@router.get("/api/v1/bookings", response_model=List[BookingRecord])
async def list_bookings(
    history: bool = Query(default=False),
    entitlements: EntitlementCache = Depends(get_entitlements),
) -> List[BookingRecord]:
    if history:
        return await entitlements.query_booking_history()
    return await entitlements.query_active_bookings()


@router.post("/api/v1/bookings", response_model=BookingRecord, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingRequest,
    engine: EligibilityEngine = Depends(get_eligibility_engine),
) -> BookingRecord:
    return await engine.submit_booking(payload.session_id, payload.method, payload.instrument_id)


@router.delete("/api/v1/bookings/{booking_id}", response_model=CancellationResponse)
async def cancel_booking(
    booking_id: str,
    reason: Optional[str] = Query(default=None),
    engine: EligibilityEngine = Depends(get_eligibility_engine),
) -> CancellationResponse:
    result = await engine.cancel_booking(booking_id, reason)
    return CancellationResponse(
        booking_id=result.booking_id,
        booking_type=result.booking_type,
        instrument_id=result.instrument_id,
        credits_restored=result.credits_restored,
    )


@router.get("/api/v1/membership", response_model=MembershipResponse)
async def membership(engine: EligibilityEngine = Depends(get_eligibility_engine)) -> MembershipResponse:
    summary = await engine.membership_status()
    return MembershipResponse(
        has_active_credits=summary.has_active_credits,
        has_active_subscription=summary.has_active_subscription,
        has_any_active_membership=summary.has_any_active_membership,
        active_credits_count=summary.active_credits_count,
        active_subscriptions_count=summary.active_subscriptions_count,
        total_credits_remaining=summary.total_credits_remaining,
    )


@router.get("/api/v1/schedule-state", response_model=ScheduleStateResponse)
def get_schedule_state_route(
    tenant_id: str = Depends(get_active_tenant_id),
    schedule: NavigationStateStore = Depends(get_schedule_state),
) -> ScheduleStateResponse:
    return _schedule_response(tenant_id, schedule.cursor(tenant_id))


@router.put("/api/v1/schedule-state", response_model=ScheduleStateResponse)
def update_schedule_state(
    payload: ScheduleStateUpdate,
    tenant_id: str = Depends(get_active_tenant_id),
    schedule: NavigationStateStore = Depends(get_schedule_state),
) -> ScheduleStateResponse:
    cursor = schedule.cursor(tenant_id)
    if payload.current_anchor_date is not None:
        cursor = schedule.set_anchor_date(tenant_id, payload.current_anchor_date)
    if payload.clear_selection:
        cursor = schedule.set_selected_date(tenant_id, None)
    elif payload.selected_date is not None:
        cursor = schedule.set_selected_date(tenant_id, payload.selected_date)
    return _schedule_response(tenant_id, cursor)
