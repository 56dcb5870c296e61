from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _as_reference(value: Any) -> Any:
    """Server references arrive either populated (an object) or as a bare id."""
    if isinstance(value, str):
        return {"id": value}
    return value


def _reference_id(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("_id") or value.get("id")
    return value


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RemoteRecord(BaseModel):
    """Read-only mirror of a record owned by the remote API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("id", "_id"))


class Tenant(RemoteRecord):
    name: str = ""
    description: Optional[str] = None
    logo: Optional[str] = None
    status: Optional[str] = None


class Identity(RemoteRecord):
    name: str = ""
    email: str = ""
    status: Optional[str] = None
    tenants: List[Tenant] = Field(default_factory=list, validation_alias=AliasChoices("brands", "tenants"))
    primary_tenant_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("primaryBrand", "primaryTenantId", "primary_tenant_id")
    )

    @field_validator("tenants", mode="before")
    @classmethod
    def _coerce_tenants(cls, value: Any) -> Any:
        if value is None:
            return []
        return [_as_reference(item) for item in value]

    @field_validator("primary_tenant_id", mode="before")
    @classmethod
    def _coerce_primary(cls, value: Any) -> Any:
        return _reference_id(value)

    @property
    def membership_ids(self) -> List[str]:
        return [tenant.id for tenant in self.tenants]

    def tenant(self, tenant_id: str) -> Optional[Tenant]:
        for tenant in self.tenants:
            if tenant.id == tenant_id:
                return tenant
        return None


class Invitation(BaseModel):
    """A tenant's pending invitation for an email address to join as a client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    email: str
    tenant: Tenant = Field(validation_alias=AliasChoices("brand", "tenant"))
    client_data: Optional[Dict[str, Any]] = None
    expires: Optional[datetime] = None
    token: Optional[str] = None

    @field_validator("tenant", mode="before")
    @classmethod
    def _coerce_tenant(cls, value: Any) -> Any:
        return _as_reference(value)

    @field_validator("expires")
    @classmethod
    def _expires_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class ClassRef(RemoteRecord):
    name: str = ""
    instructor: Optional[Dict[str, Any]] = None


class FrequencyLimit(BaseModel):
    count: int = Field(ge=0)
    period: Literal["day", "week", "month"]


class FrequencyWindow(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    count: int = 0
    reset_date: Optional[datetime] = None

    @field_validator("reset_date")
    @classmethod
    def _reset_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class SubscriptionPlan(RemoteRecord):
    name: str = ""
    description: Optional[str] = None
    price: Optional[float] = None
    duration_days: Optional[int] = None
    frequency_limit: Optional[FrequencyLimit] = None
    allow_all_classes: bool = True
    included_classes: List[ClassRef] = Field(default_factory=list)
    status: Optional[str] = None

    @field_validator("included_classes", mode="before")
    @classmethod
    def _coerce_classes(cls, value: Any) -> Any:
        if value is None:
            return []
        return [_as_reference(item) for item in value]

    def covers_class(self, class_id: Optional[str]) -> bool:
        if self.allow_all_classes or not self.included_classes:
            return True
        return class_id is not None and any(item.id == class_id for item in self.included_classes)


class PackageRef(RemoteRecord):
    name: str = ""
    credits: Optional[int] = None


class CreditPackageInstance(RemoteRecord):
    package: Optional[PackageRef] = None
    initial_credits: int
    remaining_credits: int
    start_date: Optional[datetime] = None
    expiry_date: datetime
    status: str = "active"

    @field_validator("package", mode="before")
    @classmethod
    def _coerce_package(cls, value: Any) -> Any:
        return _as_reference(value)

    @field_validator("start_date", "expiry_date")
    @classmethod
    def _dates_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_credit_bounds(self) -> "CreditPackageInstance":
        if not 0 <= self.remaining_credits <= self.initial_credits:
            raise ValueError(
                f"remainingCredits {self.remaining_credits} outside [0, {self.initial_credits}] for package {self.id}"
            )
        return self


class SubscriptionInstance(RemoteRecord):
    plan: Optional[SubscriptionPlan] = Field(
        default=None, validation_alias=AliasChoices("subscriptionPlan", "plan")
    )
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: str = "active"
    frequency_tracking: Dict[str, FrequencyWindow] = Field(default_factory=dict)

    @field_validator("start_date", "end_date")
    @classmethod
    def _dates_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @model_validator(mode="before")
    @classmethod
    def _lift_plan_fields(cls, data: Any) -> Any:
        # Older payloads carry the plan limits on the subscription itself.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        plan = _as_reference(data.pop("subscriptionPlan", data.pop("plan", None)))
        if plan is None or isinstance(plan, dict):
            plan = dict(plan or {})
            for key in ("frequencyLimit", "allowAllClasses", "includedClasses"):
                if key in data and key not in plan:
                    plan[key] = data[key]
            if plan and "id" not in plan and "_id" not in plan:
                plan["id"] = ""
        if plan:
            data["subscriptionPlan"] = plan
        for key in ("frequencyTracking", "frequency_tracking"):
            tracking = data.get(key)
            if isinstance(tracking, dict):
                data[key] = {
                    window: {"count": value} if isinstance(value, int) else value
                    for window, value in tracking.items()
                }
        return data

    @property
    def frequency_limit(self) -> Optional[FrequencyLimit]:
        return self.plan.frequency_limit if self.plan else None


class BookableSession(RemoteRecord):
    class_ref: Optional[ClassRef] = Field(default=None, validation_alias=AliasChoices("class", "classRef", "class_ref"))
    start: datetime = Field(validation_alias=AliasChoices("dateTime", "startDateTime", "start"))
    duration_minutes: int = Field(default=0, validation_alias=AliasChoices("duration", "durationMinutes", "duration_minutes"))
    capacity: int = 0
    available_spots: int = 0
    status: str = "scheduled"

    @field_validator("class_ref", mode="before")
    @classmethod
    def _coerce_class(cls, value: Any) -> Any:
        return _as_reference(value)

    @field_validator("start")
    @classmethod
    def _start_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def class_id(self) -> Optional[str]:
        return self.class_ref.id if self.class_ref else None


class BookingType(str, Enum):
    INDIVIDUAL = "individual"
    PACKAGE_CREDIT = "packageCredit"
    SUBSCRIPTION = "subscription"

    @classmethod
    def from_label(cls, label: str) -> "BookingType":
        legacy = {"monthly": cls.PACKAGE_CREDIT, "credits": cls.PACKAGE_CREDIT, "package": cls.PACKAGE_CREDIT}
        if label in legacy:
            return legacy[label]
        try:
            return cls(label)
        except ValueError as exc:
            raise ValueError(f"Unsupported booking type: {label}") from exc


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @classmethod
    def from_label(cls, label: str) -> "BookingStatus":
        aliases = {
            "active": cls.CONFIRMED,
            "booked": cls.CONFIRMED,
            "attended": cls.COMPLETED,
            "no-show": cls.COMPLETED,
            "canceled": cls.CANCELLED,
        }
        if label in aliases:
            return aliases[label]
        return cls(label)


class SessionRef(RemoteRecord):
    start: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("dateTime", "start"))
    available_spots: Optional[int] = None
    status: Optional[str] = None


class BookingRecord(RemoteRecord):
    session: SessionRef
    client_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("client", "clientId", "client_id"))
    booking_type: BookingType
    consumed_instrument_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "consumedInstrumentRef", "packageBooking", "packageBookingId", "subscription", "subscriptionId",
            "consumedInstrumentId", "consumed_instrument_id",
        ),
    )
    status: BookingStatus = BookingStatus.CONFIRMED
    created_at: Optional[datetime] = None

    @field_validator("session", mode="before")
    @classmethod
    def _coerce_session(cls, value: Any) -> Any:
        return _as_reference(value)

    @field_validator("client_id", "consumed_instrument_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _reference_id(value)

    @field_validator("booking_type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        return BookingType.from_label(value) if isinstance(value, str) else value

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        return BookingStatus.from_label(value) if isinstance(value, str) else value

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def is_active(self) -> bool:
        return self.status in (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class ClassDefinition(RemoteRecord):
    name: str = ""
    description: Optional[str] = None
    duration: Optional[int] = None
    capacity: Optional[int] = None
    status: Optional[str] = None


class PackageDefinition(RemoteRecord):
    name: str = ""
    description: Optional[str] = None
    credits: int = 0
    validity_days: Optional[int] = None
    price: Optional[float] = None
    status: Optional[str] = None


class PaymentIntent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    client_secret: str
    amount: float
    item_name: str = ""


class PaymentDetails(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    amount: float = Field(ge=0)
    transaction_id: Optional[str] = None
