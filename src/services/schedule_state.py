from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import Callable, Dict, Optional

from src.services.auth import SessionAuthStore, SessionEvent
from src.services.tenant import TenantResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NavigationCursor:
    current_anchor_date: date
    selected_date: Optional[date] = None


class NavigationStateStore:
    """Remembers where the client is in the schedule, separately per tenant.

    Cursors are dropped whenever the active tenant changes or a session
    starts or ends, so a new tenant always opens on today with nothing
    selected.
    """

    def __init__(
        self,
        tenants: Optional[TenantResolver] = None,
        auth: Optional[SessionAuthStore] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._today = today
        self._cursors: Dict[str, NavigationCursor] = {}
        if tenants is not None:
            tenants.subscribe(self._on_tenant_changed)
        if auth is not None:
            auth.subscribe(self._on_session_event)

    def cursor(self, tenant_id: str) -> NavigationCursor:
        return self._cursors.get(tenant_id) or NavigationCursor(current_anchor_date=self._today())

    def set_anchor_date(self, tenant_id: str, anchor_date: date) -> NavigationCursor:
        cursor = replace(self.cursor(tenant_id), current_anchor_date=anchor_date)
        self._cursors[tenant_id] = cursor
        return cursor

    def set_selected_date(self, tenant_id: str, selected_date: Optional[date]) -> NavigationCursor:
        cursor = replace(self.cursor(tenant_id), selected_date=selected_date)
        self._cursors[tenant_id] = cursor
        return cursor

    def reset(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id is None:
            self._cursors.clear()
        else:
            self._cursors.pop(tenant_id, None)

    def _on_tenant_changed(self, previous: Optional[str], current: Optional[str]) -> None:
        logger.debug("Resetting schedule navigation", extra={"previous": previous, "tenant_id": current})
        self.reset()

    def _on_session_event(self, event: SessionEvent) -> None:
        if event.ends_session or event is SessionEvent.LOGIN:
            self.reset()
