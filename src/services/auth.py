from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as SchemaError

from src.adapters.api_client import RemoteApiClient
from src.adapters.preference_store import ACTIVE_TENANT_KEY, CREDENTIAL_KEY, IDENTITY_KEY, PreferenceStore
from src.schemas.entitlements import Identity, Invitation
from src.services.errors import AuthError, NotFoundError, TransportError, ValidationError
from src.services.parsing import parse_record, parse_records

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    RESTORED = "restored"
    LOGIN = "login"
    IDENTITY_CHANGED = "identity_changed"
    LOGOUT = "logout"
    UNAUTHORIZED = "unauthorized"

    @property
    def ends_session(self) -> bool:
        return self in (SessionEvent.LOGOUT, SessionEvent.UNAUTHORIZED)


SessionListener = Callable[[SessionEvent], None]


class SessionAuthStore:
    """Owns the bearer credential and the signed-in identity.

    Login, registration, invitation acceptance and restore persist the
    credential and an identity snapshot. Logout and any 401 from the API
    clear the credential, the snapshot and the last selected tenant together,
    then notify listeners so scoped state is disposed.
    """

    def __init__(self, api: RemoteApiClient, preferences: PreferenceStore) -> None:
        self._api = api
        self._preferences = preferences
        self._credential: Optional[str] = None
        self._identity: Optional[Identity] = None
        self._listeners: List[SessionListener] = []
        self.is_loading = True
        api.bind_session(credential_provider=lambda: self._credential, on_unauthorized=self.handle_unauthorized)

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def credential(self) -> Optional[str]:
        return self._credential

    @property
    def is_authenticated(self) -> bool:
        return self._credential is not None and self._identity is not None

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def bootstrap(self) -> Optional[Identity]:
        """Restore a persisted session and confirm it with the server.

        A credential the server rejects, or one that no usable identity can
        be found for, is cleared. When the server is unreachable or returns an
        unreadable profile, the stored snapshot is kept.
        """
        self.is_loading = True
        try:
            token = self._preferences.get(CREDENTIAL_KEY)
            if not token:
                return None
            self._credential = token
            self._identity = self._restore_snapshot(self._preferences.get(IDENTITY_KEY))
            try:
                await self.refresh_identity()
            except AuthError:
                logger.info("Stored credential rejected; session cleared")
            except NotFoundError:
                logger.info("Stored client no longer exists; session cleared")
                self._end_session(SessionEvent.LOGOUT)
            except (TransportError, ValidationError) as exc:
                logger.warning("Could not refresh identity during bootstrap (%s); using stored snapshot", exc)
            if self.is_authenticated:
                self._emit(SessionEvent.RESTORED)
            elif self._credential is not None:
                logger.warning("No usable identity for the stored credential; session cleared")
                self._end_session(SessionEvent.LOGOUT)
            return self._identity
        finally:
            self.is_loading = False

    async def login(self, email: str, password: str, tenant_id: Optional[str] = None) -> Identity:
        self.is_loading = True
        try:
            payload = await self._api.login(email, password, tenant_id)
            return self._establish(payload)
        finally:
            self.is_loading = False

    async def register(self, payload: Dict[str, Any], tenant_id: Optional[str] = None) -> Identity:
        self.is_loading = True
        try:
            response = await self._api.register(payload, tenant_id)
            return self._establish(response)
        finally:
            self.is_loading = False

    async def verify_invitation(self, token: str) -> Invitation:
        return parse_record(Invitation, await self._api.verify_invitation(token))

    async def check_invitations(self, email: str) -> List[Invitation]:
        return parse_records(Invitation, await self._api.check_invitations(email), container_key="invitations")

    async def accept_invitation(self, token: str, profile: Dict[str, Any]) -> Identity:
        """Join a tenant through an invitation; the response signs the client in."""
        self.is_loading = True
        try:
            response = await self._api.accept_invitation(token, profile)
            return self._establish(response)
        finally:
            self.is_loading = False

    async def update_profile(self, changes: Dict[str, Any]) -> Optional[Identity]:
        self._require_session()
        await self._api.update_profile(changes)
        logger.info("Profile updated", extra={"fields": sorted(changes)})
        return await self.refresh_identity()

    async def change_password(self, current_password: str, new_password: str, confirm_password: str) -> None:
        self._require_session()
        if new_password != confirm_password:
            raise ValidationError("New password and confirmation do not match")
        await self._api.change_password(current_password, new_password)
        logger.info("Password changed", extra={"identity_id": self._identity.id if self._identity else None})

    async def refresh_identity(self) -> Optional[Identity]:
        if self._credential is None:
            return None
        identity = parse_record(Identity, await self._api.get_current_identity())
        self._identity = identity
        self._preferences.set(IDENTITY_KEY, identity.model_dump(mode="json"))
        self._emit(SessionEvent.IDENTITY_CHANGED)
        return identity

    def logout(self) -> None:
        self._end_session(SessionEvent.LOGOUT)

    def handle_unauthorized(self) -> None:
        if self._credential is None and self._identity is None:
            return
        logger.warning("Credential rejected by booking API; signing out")
        self._end_session(SessionEvent.UNAUTHORIZED)

    def _require_session(self) -> None:
        if not self.is_authenticated:
            raise AuthError("No signed-in client")

    def _establish(self, payload: Any) -> Identity:
        client = payload.get("client") if isinstance(payload, dict) else None
        token = payload.get("token") if isinstance(payload, dict) else None
        if not client or not token:
            raise ValidationError("Authentication response did not include a credential and client profile")
        identity = parse_record(Identity, client)
        self._credential = token
        self._identity = identity
        self._preferences.set(CREDENTIAL_KEY, token)
        self._preferences.set(IDENTITY_KEY, identity.model_dump(mode="json"))
        logger.info("Signed in", extra={"identity_id": identity.id, "tenants": len(identity.tenants)})
        self._emit(SessionEvent.LOGIN)
        return identity

    def _restore_snapshot(self, snapshot: Any) -> Optional[Identity]:
        if not snapshot:
            return None
        try:
            return Identity.model_validate(snapshot)
        except SchemaError:
            logger.warning("Discarding unreadable identity snapshot")
            self._preferences.delete(IDENTITY_KEY)
            return None

    def _end_session(self, event: SessionEvent) -> None:
        self._credential = None
        self._identity = None
        self._preferences.delete(CREDENTIAL_KEY, IDENTITY_KEY, ACTIVE_TENANT_KEY)
        self._emit(event)

    def _emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            listener(event)
