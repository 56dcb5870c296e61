from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from src.services.errors import (
    AuthError,
    BookingPlatformError,
    DomainConflict,
    InstrumentExhausted,
    NotFoundError,
    SessionFull,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SESSION_FULL_HINTS = ("session is full", "fully booked", "no available spots", "no spots")
EXHAUSTED_HINTS = (
    "remaining credits",
    "no credits",
    "insufficient credits",
    "frequency limit",
    "booking limit reached",
    "package has expired",
    "package expired",
    "subscription has expired",
    "subscription expired",
)


def _error_message(body: Any) -> tuple[str, Optional[str]]:
    if not isinstance(body, dict):
        return (str(body) if body else ""), None
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or body.get("message") or ""), error.get("code")
    return str(error or body.get("message") or ""), body.get("code")


def classify_failure(status: int, body: Any) -> BookingPlatformError:
    """Translate a remote failure into the client error taxonomy."""
    message, code = _error_message(body)
    normalized_code = (code or "").upper()
    lowered = message.lower()

    if status == 401:
        return AuthError(message or "Unauthorized", status=status, payload=body)
    if status == 404:
        return NotFoundError(message or "Not found", status=status, payload=body)
    if status >= 500:
        return TransportError(message or f"Server error {status}", status=status, payload=body)

    if normalized_code == "SESSION_FULL" or any(hint in lowered for hint in SESSION_FULL_HINTS):
        return SessionFull(message, status=status, payload=body)
    if normalized_code == "INSTRUMENT_EXHAUSTED" or any(hint in lowered for hint in EXHAUSTED_HINTS):
        return InstrumentExhausted(message, status=status, payload=body)
    if status == 409:
        return DomainConflict(message, status=status, payload=body)
    return ValidationError(message or f"Request rejected ({status})", status=status, payload=body)


class RemoteApiClient:
    """Async client for the booking platform's REST API.

    Responses are unwrapped from the ``{"success", "data", "error"}`` envelope.
    Every failure is raised as a :class:`BookingPlatformError` subclass.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self._credential_provider: Callable[[], Optional[str]] = lambda: None
        self._on_unauthorized: Optional[Callable[[], None]] = None

    def bind_session(
        self,
        credential_provider: Callable[[], Optional[str]],
        on_unauthorized: Optional[Callable[[], None]] = None,
    ) -> None:
        self._credential_provider = credential_provider
        self._on_unauthorized = on_unauthorized

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Any:
        headers = {}
        token = self._credential_provider() if authenticated else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        clean_params = {key: value for key, value in (params or {}).items() if value is not None}

        try:
            response = await self._client.request(method, path, params=clean_params or None, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Request timed out: %s %s", method, path)
            raise TransportError(f"Timed out after {self.timeout}s calling {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("Request failed: %s %s (%s)", method, path, exc)
            raise TransportError(f"Could not reach booking API: {exc}") from exc

        body = self._decode(response)
        if response.is_success and not (isinstance(body, dict) and body.get("success") is False):
            if isinstance(body, dict) and "data" in body:
                return body["data"]
            return body

        error = classify_failure(response.status_code, body)
        logger.warning(
            "Booking API rejected %s %s",
            method,
            path,
            extra={"status": response.status_code, "error_code": error.code},
        )
        if isinstance(error, AuthError) and authenticated and self._on_unauthorized is not None:
            self._on_unauthorized()
        raise error

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def aclose(self) -> None:
        await self._client.aclose()

    # Identity

    async def login(self, email: str, password: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/client/login",
            params={"brandId": tenant_id},
            json={"email": email, "password": password},
            authenticated=False,
        )

    async def register(self, payload: Dict[str, Any], tenant_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.request(
            "POST", "/client/register", params={"brandId": tenant_id}, json=payload, authenticated=False
        )

    async def get_current_identity(self) -> Dict[str, Any]:
        return await self.request("GET", "/client/me")

    async def update_profile(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("PUT", "/client/me", json=changes)

    async def change_password(self, current_password: str, new_password: str) -> Any:
        return await self.request(
            "POST",
            "/client/change-password",
            json={"currentPassword": current_password, "newPassword": new_password, "confirmPassword": new_password},
        )

    async def get_tenant(self, tenant_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/brand/{tenant_id}")

    # Invitations

    async def verify_invitation(self, token: str) -> Dict[str, Any]:
        return await self.request("POST", "/invitation/verify", json={"token": token}, authenticated=False)

    async def check_invitations(self, email: str) -> Any:
        return await self.request("POST", "/invitation/check", json={"email": email}, authenticated=False)

    async def accept_invitation(self, token: str, profile: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request(
            "POST", "/invitation/accept", json={**profile, "token": token}, authenticated=False
        )

    # Catalog

    async def list_classes(self, tenant_id: str, status: str = "active") -> Any:
        return await self.request("GET", "/class", params={"brandId": tenant_id, "status": status})

    async def list_available_sessions(
        self,
        tenant_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        class_id: Optional[str] = None,
    ) -> Any:
        return await self.request(
            "GET",
            "/session/availability",
            params={"brandId": tenant_id, "startDate": start_date, "endDate": end_date, "classId": class_id},
        )

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/session/{session_id}/details")

    async def list_package_catalog(self, tenant_id: str) -> Any:
        return await self.request("GET", "/api/package", params={"brandId": tenant_id})

    async def list_subscription_plans(self, tenant_id: str) -> Any:
        return await self.request("GET", "/subscription-plan", params={"brandId": tenant_id})

    # Entitlements

    async def list_packages(self, tenant_id: str, history: bool = False) -> Any:
        return await self.request(
            "GET", "/api/package/client", params={"brandId": tenant_id, "history": "true" if history else None}
        )

    async def list_subscriptions(self, tenant_id: str, history: bool = False) -> Any:
        return await self.request(
            "GET", "/subscription-plan/client", params={"brandId": tenant_id, "history": "true" if history else None}
        )

    async def list_bookings(self, tenant_id: str, history: bool = False) -> Any:
        return await self.request(
            "GET", "/booking", params={"brandId": tenant_id, "type": "history" if history else None}
        )

    # Mutations

    async def create_individual_booking(self, tenant_id: str, session_id: str) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/booking",
            json={"session": session_id, "bookingType": "individual", "client": "auto", "brandId": tenant_id},
        )

    async def create_package_booking(self, tenant_id: str, session_id: str, package_id: str) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/booking/package",
            json={"packageBookingId": package_id, "sessionId": session_id, "brandId": tenant_id},
        )

    async def create_subscription_booking(self, tenant_id: str, session_id: str, subscription_id: str) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/booking/subscription",
            json={"sessionId": session_id, "subscriptionId": subscription_id, "brandId": tenant_id},
        )

    async def cancel_booking(self, booking_id: str) -> Any:
        return await self.request("DELETE", f"/booking/{booking_id}")

    async def cancel_package_booking(self, booking_id: str, reason: str = "Client cancelled") -> Any:
        return await self.request("POST", "/booking/cancel-package", json={"bookingId": booking_id, "reason": reason})

    async def purchase_package(self, tenant_id: str, package_id: str, payment: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request(
            "POST", "/api/package/purchase", json={"package": package_id, "payment": payment, "brandId": tenant_id}
        )

    async def purchase_subscription(self, tenant_id: str, plan_id: str, payment: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/subscription-plan/purchase",
            json={"subscriptionPlan": plan_id, "payment": payment, "brandId": tenant_id},
        )

    async def cancel_subscription(self, subscription_id: str) -> Any:
        return await self.request("POST", f"/subscription-plan/cancel/{subscription_id}")

    async def create_payment_intent(self, tenant_id: str, kind: str, item_id: str) -> Dict[str, Any]:
        if kind == "subscription":
            body = {"type": "subscription", "planId": item_id, "brandId": tenant_id}
        else:
            body = {"type": "package", "itemId": item_id}
        return await self.request("POST", "/payment/create-intent", json=body)
