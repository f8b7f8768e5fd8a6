"""Payment reconciliation: gateway reads are the only source of paid truth."""

from decimal import Decimal

import pytest

from app.core.exceptions import (
    BadRequestError,
    GatewayUnavailable,
    NotFoundError,
    PanelUnavailable,
    UntrustedPaymentStatusError,
)
from app.models.hosting_service import SagaState
from app.services import payments as payments_service
from app.services.gopay import GatewayPaymentStatus, PaymentState
from fakes import seed_order

pytestmark = pytest.mark.asyncio


async def test_paid_order_is_provisioned_end_to_end(store, panel, gateway, coordinator):
    await seed_order(store, order_id=42, price=Decimal("500"), domain_name="example.cz")
    gateway.set_state("3000000042", PaymentState.PAID)

    result = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert result.payment_status == "paid"
    assert result.status == "active"
    assert result.provisioning.result == "provisioned"
    order = await store.get_order(42)
    assert order.paid_at is not None
    assert order.gateway_status == "PAID"
    service = await store.get_hosting_service_by_order(42)
    assert service.saga_state == SagaState.PROVISIONED
    assert service.hestia_created is True
    assert service.hestia_domain == "example.cz"

    calls = len(panel.calls)
    again = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert again.provisioning is None
    assert again.status == "active"
    assert len(panel.calls) == calls
    assert len(panel.users) == 1


async def test_forged_paid_notification_does_not_mark_paid(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.CREATED)

    result = await payments_service.handle_notification(
        store, gateway, coordinator, None, b'{"id": "3000000042", "state": "PAID"}'
    )

    assert result.payment_status == "unpaid"
    assert result.provisioning is None
    assert (await store.get_order(42)).payment_status == "unpaid"
    assert panel.calls == []


async def test_raw_status_cannot_update_order(store):
    order = await seed_order(store)

    with pytest.raises(UntrustedPaymentStatusError):
        await payments_service.apply_payment_status(store, order, "PAID")
    with pytest.raises(UntrustedPaymentStatusError):
        await payments_service.apply_payment_status(store, order, {"id": "3000000042", "state": "PAID"})

    assert (await store.get_order(42)).payment_status == "unpaid"


async def test_status_for_other_payment_is_rejected(store):
    order = await seed_order(store)

    with pytest.raises(UntrustedPaymentStatusError):
        await payments_service.apply_payment_status(
            store, order, GatewayPaymentStatus(intent_id="999", state=PaymentState.PAID)
        )


async def test_stale_read_does_not_regress_paid_order(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.PAID)
    await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    order = await store.get_order(42)
    regressed = await payments_service.apply_payment_status(
        store, order, GatewayPaymentStatus(intent_id="3000000042", state=PaymentState.CREATED)
    )
    cancelled = await payments_service.apply_payment_status(
        store, order, GatewayPaymentStatus(intent_id="3000000042", state=PaymentState.CANCELED)
    )

    assert regressed.payment_status == cancelled.payment_status == "paid"
    assert (await store.get_order(42)).gateway_status == "PAID"


@pytest.mark.parametrize(
    "state,payment_status,status",
    [
        (PaymentState.CANCELED, "failed", "cancelled"),
        (PaymentState.AUTHORIZATION_DECLINED, "failed", "cancelled"),
        (PaymentState.PAYMENT_METHOD_DISABLED, "failed", "cancelled"),
        (PaymentState.TIMEOUTED, "failed", "expired"),
    ],
)
async def test_unsuccessful_payments_close_the_order(store, panel, gateway, coordinator, state, payment_status, status):
    await seed_order(store)
    gateway.set_state("3000000042", state)

    result = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert (result.payment_status, result.status) == (payment_status, status)
    assert panel.calls == []


async def test_pending_states_leave_order_unpaid(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.AUTHORIZED)

    result = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert result.payment_status == "unpaid"
    assert result.final is False
    assert (await store.get_order(42)).gateway_status == "AUTHORIZED"


async def test_failed_payment_can_still_be_paid(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.CANCELED)
    await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")
    gateway.set_state("3000000042", PaymentState.PAID)

    result = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert result.payment_status == "paid"
    assert result.provisioning.result == "provisioned"


async def test_refund_suspends_provisioned_account(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.PAID)
    await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")
    gateway.set_state("3000000042", PaymentState.REFUNDED)

    result = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert result.payment_status == "refunded"
    assert result.status == "cancelled"
    service = await store.get_hosting_service_by_order(42)
    assert service.status == "suspended"
    assert service.hestia_username in panel.suspended


async def test_partial_refund_keeps_order_paid(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.PAID)
    await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")
    gateway.set_state("3000000042", PaymentState.PARTIALLY_REFUNDED)

    result = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert result.payment_status == "paid"
    assert result.status == "active"
    assert (await store.get_order(42)).gateway_status == "PARTIALLY_REFUNDED"


async def test_refund_during_provisioning_suspends_new_account(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.PAID)
    create_web_domain = panel.create_web_domain

    async def refund_then_create(username, domain, ip=None):
        gateway.set_state("3000000042", PaymentState.REFUNDED)
        refunded = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")
        assert refunded.payment_status == "refunded"
        return await create_web_domain(username, domain, ip)

    panel.create_web_domain = refund_then_create

    result = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert result.provisioning.result == "provisioned"
    order = await store.get_order(42)
    assert order.payment_status == "refunded"
    assert order.status == "cancelled"
    service = await store.get_hosting_service_by_order(42)
    assert service.saga_state == SagaState.PROVISIONED
    assert service.status == "suspended"
    assert service.hestia_username in panel.suspended


async def test_partial_refund_as_first_read_marks_order_paid(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.PARTIALLY_REFUNDED)

    result = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert result.payment_status == "paid"
    assert result.provisioning.result == "provisioned"
    order = await store.get_order(42)
    assert order.gateway_status == "PARTIALLY_REFUNDED"
    assert order.paid_at is not None


async def test_partial_refund_after_full_refund_is_ignored(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.script("3000000042", [PaymentState.PAID, PaymentState.REFUNDED, PaymentState.PARTIALLY_REFUNDED])
    for _ in range(2):
        await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    result = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")

    assert result.payment_status == "refunded"
    assert result.provisioning is None
    assert (await store.get_hosting_service_by_order(42)).status == "suspended"


async def test_paid_order_with_failed_provisioning_is_retried_on_next_notification(
    store, panel, gateway, coordinator
):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.PAID)
    panel.fail["create_user"] = PanelUnavailable("v-add-user failed after 3 attempts: timeout")

    first = await payments_service.reconcile_payment(store, gateway, coordinator, "3000000042")
    assert first.payment_status == "paid"
    assert first.provisioning.result == "failed"

    del panel.fail["create_user"]
    second = await payments_service.handle_notification(store, gateway, coordinator, "3000000042")

    assert second.provisioning.result == "provisioned"
    assert second.status == "active"


async def test_unknown_payment_id(store, gateway, coordinator):
    with pytest.raises(NotFoundError):
        await payments_service.reconcile_payment(store, gateway, coordinator, "nope")


async def test_notification_without_id_is_rejected(store, gateway, coordinator):
    with pytest.raises(BadRequestError):
        await payments_service.handle_notification(store, gateway, coordinator, None, b"not json")


async def test_return_flow_polls_until_final(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.script("3000000042", [PaymentState.CREATED, PaymentState.AUTHORIZED, PaymentState.PAID])

    result = await payments_service.reconcile_return(store, gateway, coordinator, "3000000042", attempts=5, interval=0)

    assert gateway.status_reads == 3
    assert result.payment_status == "paid"
    assert result.provisioning.result == "provisioned"


async def test_return_flow_gives_up_after_attempts(store, panel, gateway, coordinator):
    await seed_order(store)
    gateway.set_state("3000000042", PaymentState.CREATED)

    result = await payments_service.reconcile_return(store, gateway, coordinator, "3000000042", attempts=3, interval=0)

    assert gateway.status_reads == 3
    assert result.payment_status == "unpaid"
    assert result.customer_view() == {"order_id": 42, "status": "pending", "payment_status": "unpaid"}


async def test_checkout_creates_order_and_payment(store, gateway):
    body = payments_service.CheckoutRequest(
        plan_id="basic",
        plan_name="Basic",
        price=Decimal("500"),
        customer_name="Jana Novakova",
        customer_email="Jana.Novakova@Example.cz",
        domain_name="WWW.Example.cz",
    )

    resp = await payments_service.create_checkout(store, gateway, body, user_id="user-1")

    order = await store.get_order(resp.order_id)
    assert order.payment_id == resp.payment_id
    assert order.payment_status == "unpaid"
    assert order.status == "pending"
    assert order.domain_name == "example.cz"
    assert order.customer_email == "jana.novakova@example.cz"
    assert resp.redirect_url.endswith(resp.payment_id)
    created = gateway.created[0]
    assert created["amount"] == 50000
    assert created["notify_url"] == "https://api.test/v1/payments/notify"
    assert created["return_url"] == "https://api.test/v1/payments/return"


async def test_checkout_gateway_failure_leaves_order_unpaid(store, gateway):
    gateway.fail_create = GatewayUnavailable("GoPay request timed out")
    body = payments_service.CheckoutRequest(
        plan_id="basic", plan_name="Basic", price=Decimal("500"),
        customer_name="Jana", customer_email="jana@example.cz",
    )

    with pytest.raises(GatewayUnavailable):
        await payments_service.create_checkout(store, gateway, body)

    order = await store.get_order(1)
    assert order.payment_status == "unpaid"
    assert order.payment_id is None
