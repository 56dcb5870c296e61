from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence, Set, Tuple, Union

from src.adapters.api_client import RemoteApiClient
from src.schemas.entitlements import (
    BookableSession,
    BookingRecord,
    BookingType,
    CreditPackageInstance,
    SubscriptionInstance,
)
from src.services.auth import SessionAuthStore
from src.services.entitlements import ENTITLEMENT_RESOURCES, EntitlementCache
from src.services.errors import (
    AlreadyBooked,
    AuthError,
    BookingPlatformError,
    DomainConflict,
    DuplicateSubmissionError,
    IneligibleMethodError,
    InstrumentExhausted,
    NotFoundError,
    SessionClosed,
    SessionFull,
    TransportError,
    ValidationError,
)
from src.services.membership import MembershipStatus, summarize_membership, usable_packages, usable_subscriptions
from src.services.parsing import parse_record
from src.services.tenant import TenantResolver

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

UNBOOKABLE_SESSION_STATUSES = frozenset({"cancelled", "canceled", "completed"})
DEFAULT_CANCEL_REASON = "Client cancelled"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Eligibility:
    session: BookableSession
    methods: Tuple[BookingType, ...]
    packages: Tuple[CreditPackageInstance, ...] = ()
    subscriptions: Tuple[SubscriptionInstance, ...] = ()
    already_booked: bool = False
    held_methods: Tuple[BookingType, ...] = ()

    @property
    def is_bookable(self) -> bool:
        return bool(self.methods)

    @property
    def default_package_id(self) -> Optional[str]:
        return self.packages[0].id if self.packages else None

    @property
    def default_subscription_id(self) -> Optional[str]:
        return self.subscriptions[0].id if self.subscriptions else None

    def offers(self, method: BookingType) -> bool:
        return method in self.methods

    def instrument_for(self, method: BookingType, instrument_id: Optional[str] = None) -> Optional[str]:
        """Resolve which package or subscription a booking should consume."""
        if method is BookingType.INDIVIDUAL:
            return None
        candidates = self.packages if method is BookingType.PACKAGE_CREDIT else self.subscriptions
        if instrument_id is None:
            return candidates[0].id if candidates else None
        if any(candidate.id == instrument_id for candidate in candidates):
            return instrument_id
        raise IneligibleMethodError(f"{instrument_id} cannot be used to book session {self.session.id}")

    def rejection(self, method: BookingType) -> BookingPlatformError:
        """The error explaining why ``method`` is not offered for this session."""
        session = self.session
        if self.already_booked:
            return AlreadyBooked(f"Session {session.id} is already booked")
        if session.status in UNBOOKABLE_SESSION_STATUSES:
            return SessionClosed(f"Session {session.id} is {session.status}")
        if session.available_spots <= 0:
            return SessionFull(f"Session {session.id} has no available spots")
        if method is not BookingType.INDIVIDUAL and method in self.held_methods:
            return InstrumentExhausted(f"No usable {method.value} instrument for session {session.id}")
        return IneligibleMethodError(
            f"{method.value} is not available for session {session.id}",
            payload={"available": [item.value for item in self.methods]},
        )


def compute_eligibility(
    session: BookableSession,
    packages: Sequence[CreditPackageInstance],
    subscriptions: Sequence[SubscriptionInstance],
    *,
    now: datetime,
    already_booked: bool = False,
) -> Eligibility:
    """Which booking methods the client may use for ``session`` right now.

    Instruments are filtered to those usable for this session. Pay-per-class
    is only offered when no package or subscription applies, and nothing is
    offered for a full, closed or already booked session.
    """
    credits = tuple(usable_packages(packages, now))
    plans = tuple(usable_subscriptions(subscriptions, now, class_id=session.class_id, session_start=session.start))

    methods = []
    open_for_booking = session.available_spots > 0 and session.status not in UNBOOKABLE_SESSION_STATUSES
    if open_for_booking and not already_booked:
        if plans:
            methods.append(BookingType.SUBSCRIPTION)
        if credits:
            methods.append(BookingType.PACKAGE_CREDIT)
        if not plans and not credits:
            methods.append(BookingType.INDIVIDUAL)

    return Eligibility(
        session=session,
        methods=tuple(methods),
        packages=credits,
        subscriptions=plans,
        already_booked=already_booked,
        held_methods=tuple(
            kind
            for kind, held in ((BookingType.SUBSCRIPTION, subscriptions), (BookingType.PACKAGE_CREDIT, packages))
            if held
        ),
    )


@dataclass(frozen=True)
class CancellationResult:
    booking_id: str
    booking_type: BookingType
    instrument_id: Optional[str] = None
    credits_before: Optional[int] = None
    credits_after: Optional[int] = None

    @property
    def credits_restored(self) -> Optional[int]:
        if self.credits_before is None or self.credits_after is None:
            return None
        return self.credits_after - self.credits_before


class EligibilityEngine:
    """Evaluates and performs bookings against the cached entitlements.

    Submissions are single-flight per session: a second submit for a session
    whose first submit has not settled is rejected without a request.
    """

    def __init__(
        self,
        api: RemoteApiClient,
        auth: SessionAuthStore,
        tenants: TenantResolver,
        entitlements: EntitlementCache,
        clock: Clock = utc_now,
    ) -> None:
        self._api = api
        self._auth = auth
        self._tenants = tenants
        self._entitlements = entitlements
        self._clock = clock
        self._in_flight: Set[Tuple[str, str]] = set()

    def is_submitting(self, session_id: str) -> bool:
        return ("book", session_id) in self._in_flight

    async def evaluate(self, session: Union[str, BookableSession]) -> Eligibility:
        if isinstance(session, str):
            session = await self._entitlements.query_session(session)
        packages, subscriptions, bookings = await asyncio.gather(
            self._entitlements.query_active_packages(),
            self._entitlements.query_active_subscriptions(),
            self._entitlements.query_active_bookings(),
        )
        already_booked = any(booking.session_id == session.id and booking.is_active for booking in bookings)
        return compute_eligibility(
            session, packages, subscriptions, now=self._clock(), already_booked=already_booked
        )

    async def membership_status(self) -> MembershipStatus:
        packages, subscriptions = await asyncio.gather(
            self._entitlements.query_active_packages(),
            self._entitlements.query_active_subscriptions(),
        )
        return summarize_membership(packages, subscriptions, self._clock())

    async def submit_booking(
        self,
        session_id: str,
        method: Union[BookingType, str],
        instrument_id: Optional[str] = None,
    ) -> BookingRecord:
        if isinstance(method, str) and not isinstance(method, BookingType):
            try:
                method = BookingType.from_label(method)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc

        flight = ("book", session_id)
        if flight in self._in_flight:
            raise DuplicateSubmissionError(f"A booking for session {session_id} is already being submitted")
        self._in_flight.add(flight)
        try:
            tenant_id = self._require_tenant()
            eligibility = await self.evaluate(session_id)
            if not eligibility.offers(method):
                error = eligibility.rejection(method)
                if isinstance(error, DomainConflict):
                    logger.info(
                        "Booking refused before submission; refreshing entitlements",
                        extra={"session_id": session_id, "method": method.value, "error_code": error.code},
                    )
                    await self._refetch_after_conflict(tenant_id)
                raise error
            instrument = eligibility.instrument_for(method, instrument_id)
            try:
                payload = await self._dispatch(tenant_id, session_id, method, instrument)
            except DomainConflict:
                logger.warning(
                    "Booking rejected by a server-side conflict; refreshing entitlements",
                    extra={"session_id": session_id, "method": method.value},
                )
                await self._refetch_after_conflict(tenant_id)
                raise
            except TransportError:
                # The request may have been applied; make the next read go to the server.
                self._entitlements.invalidate(*ENTITLEMENT_RESOURCES, tenant_id=tenant_id)
                raise
            record = self._parse_booking(payload, session_id, method, instrument)
            self._entitlements.invalidate(*ENTITLEMENT_RESOURCES, tenant_id=tenant_id)
            await self._reload_bookings(tenant_id)
            logger.info(
                "Booked session",
                extra={"session_id": session_id, "method": method.value, "booking_id": record.id},
            )
            return record
        finally:
            self._in_flight.discard(flight)

    async def cancel_booking(self, booking_id: str, reason: Optional[str] = None) -> CancellationResult:
        flight = ("cancel", booking_id)
        if flight in self._in_flight:
            raise DuplicateSubmissionError(f"Booking {booking_id} is already being cancelled")
        self._in_flight.add(flight)
        try:
            tenant_id = self._require_tenant()
            bookings = await self._entitlements.query_active_bookings()
            booking = next((item for item in bookings if item.id == booking_id), None)
            if booking is None:
                raise NotFoundError(f"No active booking {booking_id}")

            credits_before = None
            if booking.booking_type is BookingType.PACKAGE_CREDIT:
                credits_before = await self._remaining_credits(booking.consumed_instrument_id)
                await self._api.cancel_package_booking(booking_id, reason or DEFAULT_CANCEL_REASON)
            else:
                await self._api.cancel_booking(booking_id)
            self._entitlements.invalidate(*ENTITLEMENT_RESOURCES, tenant_id=tenant_id)
            await self._reload_bookings(tenant_id)

            credits_after = None
            if credits_before is not None:
                credits_after = await self._remaining_credits(booking.consumed_instrument_id)
            result = CancellationResult(
                booking_id=booking_id,
                booking_type=booking.booking_type,
                instrument_id=booking.consumed_instrument_id,
                credits_before=credits_before,
                credits_after=credits_after,
            )
            if result.credits_restored is not None and result.credits_restored != 1:
                logger.warning(
                    "Cancellation restored an unexpected number of credits",
                    extra={
                        "booking_id": booking_id,
                        "package_id": booking.consumed_instrument_id,
                        "restored": result.credits_restored,
                    },
                )
            logger.info("Cancelled booking", extra={"booking_id": booking_id, "method": booking.booking_type.value})
            return result
        finally:
            self._in_flight.discard(flight)

    def _require_tenant(self) -> str:
        if not self._auth.is_authenticated:
            raise AuthError("No signed-in client")
        tenant_id = self._tenants.active_tenant_id
        if tenant_id is None:
            raise ValidationError("No active tenant selected")
        return tenant_id

    async def _dispatch(
        self, tenant_id: str, session_id: str, method: BookingType, instrument_id: Optional[str]
    ) -> object:
        if method is BookingType.SUBSCRIPTION:
            return await self._api.create_subscription_booking(tenant_id, session_id, instrument_id or "")
        if method is BookingType.PACKAGE_CREDIT:
            return await self._api.create_package_booking(tenant_id, session_id, instrument_id or "")
        return await self._api.create_individual_booking(tenant_id, session_id)

    async def _refetch_after_conflict(self, tenant_id: str) -> None:
        try:
            await self._entitlements.refetch_entitlements(tenant_id)
        except BookingPlatformError as exc:
            # Partitions stay invalidated, so the next read still goes to the server.
            logger.warning("Refetch after booking conflict failed: %s", exc)

    async def _reload_bookings(self, tenant_id: str) -> None:
        if self._tenants.active_tenant_id != tenant_id:
            return
        try:
            await self._entitlements.query_active_bookings()
        except BookingPlatformError as exc:
            logger.warning("Reloading bookings after a mutation failed: %s", exc)

    async def _remaining_credits(self, package_id: Optional[str]) -> Optional[int]:
        if package_id is None:
            return None
        for query in (self._entitlements.query_active_packages, self._entitlements.query_package_history):
            for package in await query():
                if package.id == package_id:
                    return package.remaining_credits
        return None

    @staticmethod
    def _parse_booking(
        payload: object, session_id: str, method: BookingType, instrument_id: Optional[str]
    ) -> BookingRecord:
        if isinstance(payload, dict):
            data = dict(payload.get("booking") or payload)
            data.setdefault("session", session_id)
            data.setdefault("bookingType", method.value)
            if instrument_id is not None:
                data.setdefault("consumedInstrumentRef", instrument_id)
            payload = data
        return parse_record(BookingRecord, payload)
