from __future__ import annotations

import asyncio

import pytest

from src.schemas.entitlements import PaymentDetails
from src.services.errors import ValidationError
from src.services.purchases import PurchaseService
from tests.fakes import signed_in_context


def test_purchasing_a_package_refreshes_the_package_partition(server):
    server.add_package("pkg-1", remaining=2)

    async def scenario():
        context = await signed_in_context(server)
        try:
            before = await context.entitlements.query_active_packages()
            bought = await context.purchases.purchase_package("pkg-10", PaymentDetails(amount=120, transaction_id="tx-1"))
            after = await context.entitlements.query_active_packages()
            return before, bought, after
        finally:
            await context.aclose()

    before, bought, after = asyncio.run(scenario())

    assert [item.id for item in before] == ["pkg-1"]
    assert bought.remaining_credits == 10
    assert {item.id for item in after} == {"pkg-1", bought.id}
    _, _, _, body = next(call for call in server.calls if call[1] == "/api/package/purchase")
    assert body["payment"] == {"amount": 120.0, "transactionId": "tx-1"}
    assert body["brandId"] == "brand-a"


def test_subscription_purchase_and_cancellation_update_subscriptions(server):
    async def scenario():
        context = await signed_in_context(server)
        try:
            assert await context.entitlements.query_active_subscriptions() == []
            subscription = await context.purchases.purchase_subscription("plan-unlimited", {"amount": 49})
            active = await context.entitlements.query_active_subscriptions()
            await context.purchases.cancel_subscription(subscription.id)
            status = await context.eligibility.membership_status()
            return subscription, active, status
        finally:
            await context.aclose()

    subscription, active, status = asyncio.run(scenario())

    assert [item.id for item in active] == [subscription.id]
    assert status.has_active_subscription is False


def test_payment_intent_is_returned_from_processor(server):
    async def scenario():
        context = await signed_in_context(server)
        try:
            return await context.purchases.create_payment_intent("package", "pkg-10")
        finally:
            await context.aclose()

    intent = asyncio.run(scenario())

    assert intent.client_secret == "pi_secret_123"
    assert intent.item_name == "pkg-10"


def test_unknown_payment_kind_is_rejected(server):
    async def scenario():
        context = await signed_in_context(server)
        try:
            with pytest.raises(ValidationError):
                await context.purchases.create_payment_intent("gift-card", "x")
        finally:
            await context.aclose()

    asyncio.run(scenario())
    assert not any(call[1] == "/payment/create-intent" for call in server.calls)


def test_purchases_require_an_active_tenant(server):
    async def scenario():
        context = await signed_in_context(server)
        context.auth.logout()
        service = PurchaseService(context.api, context.tenants, context.entitlements)
        try:
            with pytest.raises(ValidationError):
                await service.purchase_package("pkg-10", {"amount": 10})
        finally:
            await context.aclose()

    asyncio.run(scenario())
