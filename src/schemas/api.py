from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.schemas.entitlements import BookingType, Identity, Tenant


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)
    tenant_id: Optional[str] = Field(default=None, description="Tenant the client is signing in through")


class SessionResponse(BaseModel):
    authenticated: bool
    identity: Optional[Identity] = None
    active_tenant_id: Optional[str] = None


class InvitationTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class InvitationCheckRequest(BaseModel):
    email: str = Field(..., min_length=3)


class InvitationAcceptRequest(BaseModel):
    token: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None

    def profile(self) -> dict:
        return self.model_dump(exclude={"token"}, exclude_none=True)


class ProfileUpdateRequest(BaseModel):
    """Fields sent as-is to the remote profile endpoint; unset fields are left alone."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None

    def changes(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)
    confirm_password: str = Field(..., min_length=1)


class TenantSelection(BaseModel):
    tenant_id: str = Field(..., min_length=1)


class TenantResponse(BaseModel):
    active_tenant_id: Optional[str] = None
    source: str
    tenant: Optional[Tenant] = None
    memberships: List[Tenant] = Field(default_factory=list)


class SessionView(BaseModel):
    id: str
    class_id: Optional[str] = None
    class_name: Optional[str] = None
    start: datetime
    duration_minutes: int = 0
    capacity: int = 0
    available_spots: int = 0
    status: str
    is_booked: bool = False


class EligibilityResponse(BaseModel):
    session_id: str
    methods: List[BookingType]
    already_booked: bool = False
    default_package_id: Optional[str] = None
    default_subscription_id: Optional[str] = None
    package_ids: List[str] = Field(default_factory=list)
    subscription_ids: List[str] = Field(default_factory=list)


class BookingRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    method: BookingType
    instrument_id: Optional[str] = Field(default=None, description="Package or subscription to consume")


class CancellationResponse(BaseModel):
    booking_id: str
    booking_type: BookingType
    instrument_id: Optional[str] = None
    credits_restored: Optional[int] = None


class MembershipResponse(BaseModel):
    has_active_credits: bool
    has_active_subscription: bool
    has_any_active_membership: bool
    active_credits_count: int
    active_subscriptions_count: int
    total_credits_remaining: int


class ScheduleStateResponse(BaseModel):
    tenant_id: str
    current_anchor_date: date
    selected_date: Optional[date] = None


class ScheduleStateUpdate(BaseModel):
    current_anchor_date: Optional[date] = None
    selected_date: Optional[date] = None
    clear_selection: bool = False
