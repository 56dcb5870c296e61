from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Union

from src.adapters.api_client import RemoteApiClient
from src.schemas.entitlements import CreditPackageInstance, PaymentDetails, PaymentIntent, SubscriptionInstance
from src.services.entitlements import EntitlementCache, ResourceType
from src.services.errors import ValidationError
from src.services.parsing import parse_record
from src.services.tenant import TenantResolver

logger = logging.getLogger(__name__)

PaymentKind = Literal["package", "subscription"]


class PurchaseService:
    """Buys and cancels instruments, keeping the entitlement cache honest."""

    def __init__(self, api: RemoteApiClient, tenants: TenantResolver, entitlements: EntitlementCache) -> None:
        self._api = api
        self._tenants = tenants
        self._entitlements = entitlements

    async def purchase_package(
        self, package_id: str, payment: Union[PaymentDetails, Dict[str, Any]]
    ) -> CreditPackageInstance:
        tenant_id = self._require_tenant()
        data = await self._api.purchase_package(tenant_id, package_id, self._payment_body(payment))
        self._entitlements.invalidate(ResourceType.PACKAGES, tenant_id=tenant_id)
        logger.info("Purchased package", extra={"tenant_id": tenant_id, "package_id": package_id})
        return parse_record(CreditPackageInstance, data)

    async def purchase_subscription(
        self, plan_id: str, payment: Union[PaymentDetails, Dict[str, Any]]
    ) -> SubscriptionInstance:
        tenant_id = self._require_tenant()
        data = await self._api.purchase_subscription(tenant_id, plan_id, self._payment_body(payment))
        self._entitlements.invalidate(ResourceType.SUBSCRIPTIONS, tenant_id=tenant_id)
        logger.info("Purchased subscription", extra={"tenant_id": tenant_id, "plan_id": plan_id})
        return parse_record(SubscriptionInstance, data)

    async def cancel_subscription(self, subscription_id: str) -> None:
        tenant_id = self._require_tenant()
        await self._api.cancel_subscription(subscription_id)
        self._entitlements.invalidate(ResourceType.SUBSCRIPTIONS, tenant_id=tenant_id)
        logger.info("Cancelled subscription", extra={"tenant_id": tenant_id, "subscription_id": subscription_id})

    async def create_payment_intent(self, kind: PaymentKind, item_id: str) -> PaymentIntent:
        if kind not in ("package", "subscription"):
            raise ValidationError(f"Unsupported payment kind: {kind}")
        tenant_id = self._require_tenant()
        data = await self._api.create_payment_intent(tenant_id, kind, item_id)
        return parse_record(PaymentIntent, data)

    def _require_tenant(self) -> str:
        tenant_id = self._tenants.active_tenant_id
        if tenant_id is None:
            raise ValidationError("No active tenant selected")
        return tenant_id

    @staticmethod
    def _payment_body(payment: Union[PaymentDetails, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(payment, dict):
            payment = parse_record(PaymentDetails, payment)
        return payment.model_dump(by_alias=True, exclude_none=True)
